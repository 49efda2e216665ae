"""FastAPI server exposing the exam practice endpoints."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Literal

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
import uvicorn

from exam_practice.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT
from exam_practice.core.markdown_renderer import renderer
from exam_practice.core.models import QuizMode, QuizResult, SessionStatus
from exam_practice.core.quiz_manager import ExamNotFoundError, QuizManager
from exam_practice.core.records import QuizResultRecord
from exam_practice.core.scoring import calculate_analytics, calculate_pass_status, estimate_completion_time

# --- Payloads ---


class ApiPayload(BaseModel):
  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartPayload(ApiPayload):
  """Payload schema for starting or resuming an exam."""

  mode: QuizMode | None = None


class AnswerPayload(ApiPayload):
  """Payload schema for submitted answers."""

  question_id: str
  selection: list[str] = Field(default_factory=list)


class FlagPayload(ApiPayload):
  question_id: str


class NavigatePayload(ApiPayload):
  index: int | None = None
  direction: Literal["next", "previous"] | None = None


class ConnectivityPayload(ApiPayload):
  online: bool


class AbandonedActionPayload(ApiPayload):
  """Targets one abandoned action, or all of them when ``actionId`` is omitted."""

  action_id: str | None = None


# --- Views ---


def _iso(value: datetime | None) -> str | None:
  return value.isoformat() if value is not None else None


def _session_view(manager: QuizManager) -> dict[str, object]:
  session_manager = manager.session_manager
  session = session_manager.session
  exam = session_manager.exam
  if session is None or exam is None:
    return {"status": SessionStatus.UNINITIALIZED.value}

  question = session_manager.current_question()
  reveal = session.submitted or session.mode is QuizMode.PRACTICE
  selection = session.answers.get(question.id, [])
  progress = session_manager.quiz_progress()
  timer = manager.timer
  elapsed = session_manager.time_elapsed()
  return {
    "status": session_manager.status.value,
    "examId": exam.id,
    "examTitle": exam.title,
    "mode": session.mode.value,
    "startTime": _iso(session.start_time),
    "currentQuestionIndex": session.current_question_index,
    "currentQuestion": {
      "id": question.id,
      "number": question.number,
      "type": question.type.value,
      "html": renderer.render_fragment(question.text),
      "requiredSelections": question.required_selections,
      "options": [
        {"id": option.id, "letter": option.letter, "html": renderer.render_inline(option.text)}
        for option in question.options
      ],
      "selection": selection,
      "flagged": question.id in session.flagged_questions,
      "correctAnswers": list(question.correct_answers) if reveal and selection else None,
      "explanationHtml": (
        renderer.render_fragment(question.explanation)
        if reveal and selection and question.explanation
        else None
      ),
    },
    "answers": session.answers,
    "flaggedQuestions": sorted(session.flagged_questions),
    "progress": {
      "answered": progress.answered,
      "total": progress.total,
      "percentage": progress.percentage,
    },
    "navigation": [
      {
        "questionNumber": item.question_number,
        "isAnswered": item.is_answered,
        "isFlagged": item.is_flagged,
        "isActive": item.is_active,
        "isCorrect": item.is_correct,
      }
      for item in session_manager.navigation_items()
    ],
    "canUndo": session_manager.can_undo(),
    "canRedo": session_manager.can_redo(),
    "timeElapsed": elapsed,
    "estimatedRemaining": estimate_completion_time(
      session.current_question_index, progress.total, elapsed
    ),
    "timer": {
      "status": timer.status(),
      "display": timer.formatted(),
      "remaining": timer.remaining(),
      "progress": timer.progress(),
      "warnings": [warning.message for warning in timer.active_warnings()],
    },
  }


def _result_view(result: QuizResult) -> dict[str, object]:
  view: dict[str, Any] = QuizResultRecord.from_result(result).to_json_dict()
  status = calculate_pass_status(result.percentage)
  analytics = calculate_analytics(result)
  view["resultId"] = result.result_id
  view["passStatus"] = {"passed": status.passed, "grade": status.grade, "message": status.message}
  view["analytics"] = {
    "timePerQuestion": analytics.time_per_question,
    "accuracyByType": analytics.accuracy_by_type,
    "strongAreas": analytics.strong_areas,
    "weakAreas": analytics.weak_areas,
  }
  return view


def _get_quiz_manager_dependency(quiz_manager: QuizManager):
  def dependency() -> QuizManager:
    return quiz_manager

  return dependency


def _raise_for(exc: Exception) -> None:
  if isinstance(exc, ExamNotFoundError):
    raise HTTPException(status_code=404, detail=str(exc)) from exc
  if isinstance(exc, ValueError):
    raise HTTPException(status_code=422, detail=str(exc)) from exc
  if isinstance(exc, RuntimeError):
    raise HTTPException(status_code=409, detail=str(exc)) from exc
  raise exc


def create_api_app(quiz_manager: QuizManager, manage_lifecycle: bool = True) -> FastAPI:
  """Create a FastAPI application wired to the provided quiz manager."""

  @asynccontextmanager
  async def lifespan(_: FastAPI):
    if manage_lifecycle:
      quiz_manager.start()
    yield
    if manage_lifecycle:
      quiz_manager.shutdown()

  app = FastAPI(title="Exam Practice API", version="0.1.0", lifespan=lifespan)
  quiz_manager_dep = _get_quiz_manager_dependency(quiz_manager)

  # --- Exams ---

  @app.get("/exams")
  async def list_exams(manager: QuizManager = Depends(quiz_manager_dep)) -> list[dict[str, object]]:
    return [
      {
        "id": row.id,
        "title": row.title,
        "description": row.description,
        "questionCount": row.question_count,
        "timeLimitMinutes": row.time_limit_minutes,
        "attempts": row.attempts,
        "bestScore": row.best_score,
        "averageScore": row.average_score,
        "lastAttempted": _iso(row.last_attempted),
      }
      for row in manager.list_exams()
    ]

  @app.post("/exams/{exam_id}/start", status_code=201)
  async def start_exam(
    exam_id: str,
    payload: StartPayload | None = None,
    manager: QuizManager = Depends(quiz_manager_dep),
  ) -> dict[str, object]:
    try:
      manager.start_exam(exam_id, payload.mode if payload else None)
    except (ExamNotFoundError, ValueError) as exc:
      _raise_for(exc)
    return _session_view(manager)

  # --- Session ---

  @app.get("/session")
  async def get_session(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    return _session_view(manager)

  @app.post("/session/answer")
  async def answer_question(
    payload: AnswerPayload, manager: QuizManager = Depends(quiz_manager_dep)
  ) -> dict[str, object]:
    try:
      manager.answer_question(payload.question_id, payload.selection)
    except (ValueError, RuntimeError) as exc:
      _raise_for(exc)
    return _session_view(manager)

  @app.post("/session/flag")
  async def toggle_flag(
    payload: FlagPayload, manager: QuizManager = Depends(quiz_manager_dep)
  ) -> dict[str, object]:
    try:
      manager.toggle_flag(payload.question_id)
    except (ValueError, RuntimeError) as exc:
      _raise_for(exc)
    return _session_view(manager)

  @app.post("/session/navigate")
  async def navigate(
    payload: NavigatePayload, manager: QuizManager = Depends(quiz_manager_dep)
  ) -> dict[str, object]:
    try:
      manager.navigate(index=payload.index, direction=payload.direction)
    except (ValueError, RuntimeError) as exc:
      _raise_for(exc)
    return _session_view(manager)

  @app.post("/session/undo")
  async def undo(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    try:
      applied = manager.undo()
    except RuntimeError as exc:
      _raise_for(exc)
    return {"applied": applied, "session": _session_view(manager)}

  @app.post("/session/redo")
  async def redo(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    try:
      applied = manager.redo()
    except RuntimeError as exc:
      _raise_for(exc)
    return {"applied": applied, "session": _session_view(manager)}

  @app.post("/session/pause")
  async def pause_timer(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    try:
      manager.pause_timer()
    except RuntimeError as exc:
      _raise_for(exc)
    return _session_view(manager)

  @app.post("/session/resume")
  async def resume_timer(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    try:
      manager.resume_timer()
    except RuntimeError as exc:
      _raise_for(exc)
    return _session_view(manager)

  @app.post("/session/submit")
  async def submit(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    try:
      result = manager.submit()
    except RuntimeError as exc:
      _raise_for(exc)
    return _result_view(result)

  # --- Results ---

  @app.get("/results")
  async def list_results(
    q: str = "",
    exam_id: str | None = Query(default=None, alias="examId"),
    sort_by: Literal["date", "score"] = Query(default="date", alias="sortBy"),
    manager: QuizManager = Depends(quiz_manager_dep),
  ) -> list[dict[str, object]]:
    results = manager.results.search(q)
    if exam_id is not None:
      results = [r for r in manager.results.get_exam_results(exam_id, sort_by) if r in results]
    return [_result_view(result) for result in results]

  @app.get("/results/stats")
  async def result_stats(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    stats = manager.results.stats()
    return {
      "totalAttempts": stats.total_attempts,
      "averageScore": stats.average_score,
      "bestScore": stats.best_score,
      "worstScore": stats.worst_score,
      "totalTimeSpent": stats.total_time_spent,
      "examsCovered": stats.exams_covered,
      "passRate": stats.pass_rate,
    }

  @app.get("/results/export")
  async def export_results(
    fmt: Literal["json", "csv"] = Query(default="json", alias="format"),
    manager: QuizManager = Depends(quiz_manager_dep),
  ) -> Response:
    media_type = "text/csv" if fmt == "csv" else "application/json"
    return Response(content=manager.export_results(fmt), media_type=media_type)

  @app.delete("/results/{exam_id}/{result_id}")
  async def delete_result(
    exam_id: str, result_id: str, manager: QuizManager = Depends(quiz_manager_dep)
  ) -> dict[str, object]:
    if not manager.delete_result(exam_id, result_id):
      raise HTTPException(status_code=404, detail=f"Result {result_id} for exam {exam_id} not found.")
    return {"deleted": True}

  # --- Preferences ---

  @app.get("/preferences")
  async def get_preferences(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    return manager.preferences.preferences.to_json_dict()

  @app.put("/preferences")
  async def update_preferences(
    updates: dict[str, Any] = Body(...), manager: QuizManager = Depends(quiz_manager_dep)
  ) -> dict[str, object]:
    applied = manager.preferences.update_multiple(updates)
    if updates and applied < len(updates):
      raise HTTPException(
        status_code=422,
        detail=f"Rejected {len(updates) - applied} invalid preference value(s).",
      )
    return manager.preferences.preferences.to_json_dict()

  # --- Storage ---

  @app.get("/storage/usage")
  async def storage_usage(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    usage = manager.storage_usage()
    return {
      "used": usage.used,
      "available": usage.available,
      "percentage": usage.percentage,
      "breakdown": usage.breakdown,
      "warnings": usage.warnings,
    }

  @app.post("/storage/repair")
  async def repair_storage(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    report = manager.repair_storage()
    return {
      "isHealthy": report.is_healthy,
      "repairsAttempted": report.repairs_attempted,
      "errors": report.errors,
    }

  @app.get("/storage/backup")
  async def create_backup(manager: QuizManager = Depends(quiz_manager_dep)) -> Response:
    blob = manager.create_backup()
    if blob is None:
      raise HTTPException(status_code=500, detail="Backup creation failed.")
    return Response(content=blob, media_type="application/json")

  @app.post("/storage/restore")
  async def restore_backup(
    request: Request, manager: QuizManager = Depends(quiz_manager_dep)
  ) -> dict[str, object]:
    try:
      blob = (await request.body()).decode("utf-8")
    except UnicodeDecodeError as exc:
      raise HTTPException(status_code=422, detail="Backup must be UTF-8 text.") from exc
    if not manager.restore_backup(blob):
      raise HTTPException(status_code=500, detail="Backup restoration failed; stored data left unchanged.")
    return {"restored": True}

  # --- Connectivity ---

  @app.post("/connectivity")
  async def set_connectivity(
    payload: ConnectivityPayload, manager: QuizManager = Depends(quiz_manager_dep)
  ) -> dict[str, object]:
    delivered = await manager.set_online(payload.online)
    return {"delivered": delivered, **manager.sync_overview()}

  @app.get("/sync")
  async def sync_status(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    return {**manager.sync_overview(), "queue": manager.queue.export_pending()}

  @app.post("/sync/abandoned/retry")
  async def retry_abandoned(
    payload: AbandonedActionPayload | None = None, manager: QuizManager = Depends(quiz_manager_dep)
  ) -> dict[str, object]:
    revived = manager.retry_abandoned(payload.action_id if payload else None)
    return {"revived": revived, **manager.sync_overview()}

  @app.post("/sync/abandoned/dismiss")
  async def dismiss_abandoned(
    payload: AbandonedActionPayload | None = None, manager: QuizManager = Depends(quiz_manager_dep)
  ) -> dict[str, object]:
    dismissed = manager.dismiss_abandoned(payload.action_id if payload else None)
    return {"dismissed": dismissed, **manager.sync_overview()}

  @app.delete("/sync/pending")
  async def clear_pending(manager: QuizManager = Depends(quiz_manager_dep)) -> dict[str, object]:
    manager.clear_pending_actions()
    return manager.sync_overview()

  return app


async def serve_api(
  quiz_manager: QuizManager,
  host: str = DEFAULT_HOST,
  port: int = DEFAULT_PORT,
  log_level: str = "info",
) -> None:
  """Serve the API on the current event loop until the server shuts down."""
  app = create_api_app(quiz_manager)
  config = uvicorn.Config(app=app, host=host, port=port, log_level=log_level.lower())
  server = uvicorn.Server(config)
  await server.serve()
