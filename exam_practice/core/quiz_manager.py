"""Business logic tying the exam practice services together for the API."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from exam_practice.core import scoring
from exam_practice.core.models import (
    ActionType,
    Exam,
    QuizMode,
    QuizResult,
    QuizSession,
    SessionStatus,
    StateManagerConfig,
)
from exam_practice.core.scheduling import Scheduler
from exam_practice.core.services.durable_store import DurableStore, RepairReport, StorageUsage
from exam_practice.core.services.exam_repository import ExamMetadata, ExamRepository
from exam_practice.core.services.offline_queue import OfflineActionQueue, ProcessAction
from exam_practice.core.services.preferences import PreferencesManager
from exam_practice.core.services.quiz_session import QuizSessionManager
from exam_practice.core.services.quiz_timer import QuizTimer
from exam_practice.core.services.results_history import ResultsHistory

logger = logging.getLogger(__name__)


class ExamNotFoundError(LookupError):
    """Raised when an exam id does not resolve to a loadable exam."""


class QuizManager:
    """Facade for quiz services: exams, session, timer, results, preferences and sync queue.

    Everything runs on one event loop, so the services are used without locking.
    """

    def __init__(
        self,
        store: DurableStore,
        scheduler: Scheduler,
        repository: ExamRepository,
        process_action: ProcessAction,
        config: StateManagerConfig | None = None,
        online: bool = True,
    ) -> None:
        self._store = store
        self._repository = repository
        config = config or StateManagerConfig()

        # Services
        self._session = QuizSessionManager(store, scheduler, config)
        self._timer = QuizTimer(scheduler)
        self._results = ResultsHistory(store)
        self._preferences = PreferencesManager(store)
        self._queue = OfflineActionQueue(
            store,
            scheduler,
            process_action,
            max_retries=config.offline_retry_attempts,
            online=online,
        )
        self._last_result: QuizResult | None = None

    @property
    def store(self) -> DurableStore:
        return self._store

    @property
    def session_manager(self) -> QuizSessionManager:
        return self._session

    @property
    def timer(self) -> QuizTimer:
        return self._timer

    @property
    def results(self) -> ResultsHistory:
        return self._results

    @property
    def preferences(self) -> PreferencesManager:
        return self._preferences

    @property
    def queue(self) -> OfflineActionQueue:
        return self._queue

    # --- Lifecycle ---

    def start(self) -> RepairReport:
        """Check stored data, then load preferences, history and the sync queue."""
        report = self._store.validate_and_repair()
        if not report.is_healthy:
            logger.error("Storage problems found at startup: %s", "; ".join(report.errors))
        self._preferences.load()
        self._results.load()
        self._queue.start()
        return report

    def shutdown(self) -> None:
        self._queue.stop()
        self._timer.stop()
        self._session.clear()
        self._preferences.destroy()

    # --- Exams ---

    def list_exams(self) -> list[ExamMetadata]:
        stats = {}
        for exam_id in self._repository.exam_ids():
            exam_stats = self._results.get_exam_stats(exam_id)
            if exam_stats is not None:
                stats[exam_id] = exam_stats
        return self._repository.list_metadata(stats)

    def get_exam(self, exam_id: str) -> Exam:
        exam = self._repository.get_exam(exam_id)
        if exam is None:
            raise ExamNotFoundError(f"Exam {exam_id} not found.")
        return exam

    def start_exam(self, exam_id: str, mode: QuizMode | None = None) -> QuizSession:
        """Start or resume ``exam_id``; the mode defaults to the user's preference."""
        exam = self.get_exam(exam_id)
        mode = mode or self._preferences.preferences.default_quiz_mode or QuizMode.EXAM
        session = self._session.init(exam, mode)
        self._last_result = None
        if exam.time_limit_minutes:
            remaining = exam.time_limit_minutes * 60 - self._session.time_elapsed()
            self._timer.start(max(remaining, 1.0))
        else:
            self._timer.start()
        return session

    # --- Session ---

    def answer_question(self, question_id: str, selection: Sequence[str]) -> None:
        exam = self._require_active_exam()
        question = exam.get_question(question_id)
        if question is None:
            raise ValueError(f"Question {question_id} is not part of exam {exam.id}.")
        if not question.accepts_selection(selection):
            raise ValueError(
                f"Question {question_id} accepts up to {question.required_selections} "
                "distinct option(s) from its own option list."
            )
        self._session.answer_question(question_id, selection)
        self._queue.queue_action(
            ActionType.ANSWER,
            {"examId": exam.id, "questionId": question_id, "selection": list(selection)},
        )

    def toggle_flag(self, question_id: str) -> bool:
        exam = self._require_active_exam()
        flagged = self._session.toggle_flag(question_id)
        self._queue.queue_action(
            ActionType.FLAG, {"examId": exam.id, "questionId": question_id, "flagged": flagged}
        )
        return flagged

    def navigate(self, index: int | None = None, direction: str | None = None) -> int:
        """Move by ``direction`` ("next"/"previous") or jump to ``index``."""
        exam = self._require_active_exam()
        if direction == "next":
            target = self._session.next_question()
        elif direction == "previous":
            target = self._session.previous_question()
        elif direction is None and index is not None:
            target = self._session.go_to_question(index)
        else:
            raise ValueError("Provide either an index or a direction of 'next' or 'previous'.")
        self._queue.queue_action(ActionType.NAVIGATION, {"examId": exam.id, "index": target})
        return target

    def undo(self) -> bool:
        self._require_active_exam()
        return self._session.undo_answer()

    def redo(self) -> bool:
        self._require_active_exam()
        return self._session.redo_answer()

    def pause_timer(self) -> str:
        self._require_active_exam()
        self._timer.pause()
        return self._timer.status()

    def resume_timer(self) -> str:
        self._require_active_exam()
        self._timer.resume()
        return self._timer.status()

    def submit(self) -> QuizResult:
        """Score the attempt and record it; repeated calls return the same result."""
        if self._session.status is SessionStatus.SUBMITTED and self._last_result is not None:
            return self._last_result
        exam = self._require_active_exam()
        session = self._session.submit()
        self._timer.stop()
        result = scoring.score(exam, session.answers, session.start_time, session.end_time)
        self._results.add(result)
        self._last_result = result
        self._queue.queue_action(
            ActionType.SUBMIT,
            {"examId": exam.id, "resultId": result.result_id, "percentage": result.percentage},
        )
        logger.info("Exam %s scored %d/%d", exam.id, result.score, result.total_questions)
        return result

    def abandon_session(self) -> None:
        """Drop the in-memory attempt; its saved progress stays resumable."""
        self._timer.stop()
        self._session.clear()

    @property
    def last_result(self) -> QuizResult | None:
        return self._last_result

    # --- Results ---

    def delete_result(self, exam_id: str, result_id: str) -> bool:
        return self._results.delete(exam_id, result_id)

    def export_results(self, fmt: str = "json") -> str:
        """Serialize the results history; raises ValueError for unknown formats."""
        return self._results.export(fmt)

    # --- Storage ---

    def storage_usage(self) -> StorageUsage:
        return self._store.usage()

    def repair_storage(self) -> RepairReport:
        report = self._store.validate_and_repair()
        self._results.load()
        return report

    def create_backup(self) -> str | None:
        return self._store.create_full_backup()

    def restore_backup(self, blob: str) -> bool:
        """Replace all stored data; reloads the services that cache stored state."""
        if not self._store.restore_full_backup(blob):
            return False
        self._session.clear()
        self._timer.stop()
        self._preferences.load()
        self._results.load()
        self._queue.start()
        return True

    # --- Connectivity ---

    async def set_online(self, online: bool) -> int:
        if online:
            return await self._queue.handle_online()
        self._queue.handle_offline()
        return 0

    def sync_overview(self) -> dict[str, Any]:
        status = self._queue.status()
        return {
            "isOnline": status.is_online,
            "syncStatus": status.sync_status,
            "connectionStatus": self._queue.connection_status(),
            "pendingCount": status.pending_count,
            "abandonedCount": status.abandoned_count,
            "lastSyncTime": status.last_sync_time.isoformat() if status.last_sync_time else None,
        }

    def retry_abandoned(self, action_id: str | None = None) -> int:
        return self._queue.retry_abandoned(action_id)

    def dismiss_abandoned(self, action_id: str | None = None) -> int:
        return self._queue.dismiss_abandoned(action_id)

    def clear_pending_actions(self) -> None:
        self._queue.clear_pending()

    # --- Internals ---

    def _require_active_exam(self) -> Exam:
        status = self._session.status
        if status is SessionStatus.UNINITIALIZED:
            raise RuntimeError("No quiz in progress. Start an exam first.")
        if status is SessionStatus.SUBMITTED:
            raise RuntimeError("The quiz has already been submitted.")
        return self._session.exam
