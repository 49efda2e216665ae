"""Service owning the state of the active quiz attempt."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable, Sequence

from exam_practice.constants.quiz_constants import MAX_NAVIGATION_PATTERNS
from exam_practice.core.models import (
    AnswerHistoryEntry,
    Exam,
    NavigationItem,
    NavigationPattern,
    NavigationReason,
    Question,
    QuizAnalytics,
    QuizMode,
    QuizProgress,
    QuizSession,
    SessionStatus,
    StateManagerConfig,
    StateSnapshot,
)
from exam_practice.core.records import QuizStateRecord
from exam_practice.core.scheduling import ScheduledTask, Scheduler
from exam_practice.core.scoring import is_answer_correct
from exam_practice.core.services.durable_store import DurableStore
from exam_practice.utils.observable import Observable

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SessionState:
    """Point-in-time view handed to subscribers."""

    status: SessionStatus
    session: QuizSession | None
    can_undo: bool
    can_redo: bool
    analytics: QuizAnalytics


class QuizSessionManager:
    """Tracks answers, navigation, flags and undo/redo for one attempt.

    Every mutation is persisted through the durable store right away. Store
    failures never reach the caller; they are reported on the store's error
    channel while the in-memory state keeps the user's change.
    """

    def __init__(
        self,
        store: DurableStore,
        scheduler: Scheduler,
        config: StateManagerConfig | None = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._config = config or StateManagerConfig()
        self._changes: Observable[SessionState] = Observable("quiz session")
        self._exam: Exam | None = None
        self._session: QuizSession | None = None
        self._status = SessionStatus.UNINITIALIZED
        self._history: list[AnswerHistoryEntry] = []
        self._undone: list[AnswerHistoryEntry] = []
        self._snapshots: list[StateSnapshot] = []
        self._cursor = 0
        self._analytics = QuizAnalytics()
        self._auto_save: ScheduledTask | None = None

    # --- Lifecycle ---

    def init(self, exam: Exam, mode: QuizMode = QuizMode.EXAM) -> QuizSession:
        """Start ``exam``, resuming an unsubmitted saved attempt if one exists."""
        if not exam.questions:
            raise ValueError(f"Exam {exam.id} has no questions.")
        self.clear()

        saved = self._store.load_quiz_state(exam.id)
        if saved is not None and not saved.submitted and saved.exam_id == exam.id:
            saved.current_question_index = self._clamp(saved.current_question_index, exam)
            self._session = saved
            self._analytics = QuizAnalytics(
                total_time_spent=saved.time_elapsed or 0.0,
                flags_used=len(saved.flagged_questions),
            )
            logger.info(
                "Resumed quiz %s at question %d with %d answer(s)",
                exam.id,
                saved.current_question_index + 1,
                len(saved.answers),
            )
        else:
            self._session = QuizSession(exam_id=exam.id, mode=mode, start_time=self._scheduler.now())
            logger.info("Started quiz %s in %s mode", exam.id, mode.value)

        self._exam = exam
        self._status = SessionStatus.ACTIVE
        self._snapshots = [self._snapshot()]
        self._cursor = 0
        self._auto_save = self._scheduler.call_every(self._config.auto_save_interval, self._auto_save_tick)
        self._persist()
        self._notify()
        return self._session.clone()

    def submit(self) -> QuizSession:
        """Freeze the attempt and drop its in-progress record.

        Calling it again returns the same frozen session.
        """
        if self._status is SessionStatus.SUBMITTED:
            return self._session.clone()
        session = self._require_active()
        if session is None:
            raise RuntimeError("No active quiz session to submit.")

        end_time = self._scheduler.now()
        session.end_time = end_time
        session.submitted = True
        session.time_elapsed = max(0.0, (end_time - session.start_time).total_seconds())

        self._analytics.total_time_spent = session.time_elapsed
        self._analytics.average_question_time = (
            session.time_elapsed / len(session.answers) if session.answers else 0.0
        )
        self._cancel_auto_save()
        self._store.clear_quiz_state(session.exam_id)
        self._status = SessionStatus.SUBMITTED
        logger.info(
            "Submitted quiz %s: %d answered in %.0fs",
            session.exam_id,
            len(session.answers),
            session.time_elapsed,
        )
        self._notify()
        return session.clone()

    def clear(self) -> None:
        """Discard the attempt and all in-memory history. Stored results are untouched."""
        self._cancel_auto_save()
        had_session = self._status is not SessionStatus.UNINITIALIZED
        self._exam = None
        self._session = None
        self._status = SessionStatus.UNINITIALIZED
        self._history = []
        self._undone = []
        self._snapshots = []
        self._cursor = 0
        self._analytics = QuizAnalytics()
        if had_session:
            self._notify()

    # --- Mutations ---

    def answer_question(self, question_id: str, selection: Sequence[str]) -> None:
        session = self._require_active()
        if session is None:
            return
        self._require_question(question_id)

        previous = tuple(session.answers.get(question_id, ()))
        new = tuple(selection)
        self._set_answer(question_id, new)

        del self._snapshots[self._cursor + 1:]
        self._undone.clear()
        self._history.append(
            AnswerHistoryEntry(
                question_id=question_id,
                previous_answers=previous,
                new_answers=new,
                timestamp=self._scheduler.now(),
            )
        )
        self._snapshots.append(self._snapshot())
        self._cursor += 1
        if len(self._history) > self._config.max_history_size:
            del self._history[0]
            del self._snapshots[0]
            self._cursor -= 1

        self._persist()
        self._notify()

    def toggle_flag(self, question_id: str) -> bool:
        """Flag or unflag a question; returns whether it is flagged afterwards."""
        session = self._require_active()
        if session is None:
            return question_id in self._session.flagged_questions
        self._require_question(question_id)

        if question_id in session.flagged_questions:
            session.flagged_questions.discard(question_id)
            flagged = False
        else:
            session.flagged_questions.add(question_id)
            flagged = True
        if self._config.enable_analytics:
            self._analytics.flags_used += 1 if flagged else -1

        self._persist()
        self._notify()
        return flagged

    def go_to_question(self, index: int, reason: NavigationReason = NavigationReason.JUMP) -> int:
        """Move to ``index`` (clamped into range); returns the resulting index."""
        session = self._require_active()
        if session is None:
            return self._session.current_question_index

        target = self._clamp(index, self._exam)
        current = session.current_question_index
        if self._config.enable_analytics:
            self._analytics.navigation_patterns.append(
                NavigationPattern(
                    from_question=current,
                    to_question=target,
                    timestamp=self._scheduler.now(),
                    reason=reason,
                )
            )
            del self._analytics.navigation_patterns[:-MAX_NAVIGATION_PATTERNS]
            if target < current:
                self._analytics.questions_revisited += 1
        session.current_question_index = target

        self._persist()
        self._notify()
        return target

    def next_question(self) -> int:
        session = self._require_active()
        if session is None:
            return self._session.current_question_index
        return self.go_to_question(session.current_question_index + 1, NavigationReason.NEXT)

    def previous_question(self) -> int:
        session = self._require_active()
        if session is None:
            return self._session.current_question_index
        return self.go_to_question(session.current_question_index - 1, NavigationReason.PREVIOUS)

    def undo_answer(self) -> bool:
        if self._status is not SessionStatus.ACTIVE or not self._history:
            return False

        # Keep the pre-undo state so redo returns to it exactly.
        self._snapshots[self._cursor] = self._snapshot()
        entry = self._history.pop()
        self._undone.append(entry)
        self._cursor -= 1
        self._set_answer(entry.question_id, entry.previous_answers)

        self._persist()
        self._notify()
        return True

    def redo_answer(self) -> bool:
        if self._status is not SessionStatus.ACTIVE or self._cursor >= len(self._snapshots) - 1:
            return False

        self._cursor += 1
        self._session = self._snapshots[self._cursor].session.clone()
        self._history.append(self._undone.pop())

        self._persist()
        self._notify()
        return True

    # --- Observation ---

    def subscribe(self, listener: Callable[[SessionState], None]) -> Callable[[], None]:
        return self._changes.subscribe(listener)

    def get_state(self) -> SessionState:
        return SessionState(
            status=self._status,
            session=self._session.clone() if self._session is not None else None,
            can_undo=self.can_undo(),
            can_redo=self.can_redo(),
            analytics=self._analytics.copy(),
        )

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def exam(self) -> Exam | None:
        return self._exam

    @property
    def session(self) -> QuizSession | None:
        return self._session.clone() if self._session is not None else None

    def can_undo(self) -> bool:
        return self._status is SessionStatus.ACTIVE and bool(self._history)

    def can_redo(self) -> bool:
        return self._status is SessionStatus.ACTIVE and self._cursor < len(self._snapshots) - 1

    def get_analytics(self) -> QuizAnalytics:
        return self._analytics.copy()

    def current_question(self) -> Question | None:
        if self._exam is None or self._session is None:
            return None
        return self._exam.questions[self._session.current_question_index]

    def quiz_progress(self) -> QuizProgress:
        if self._exam is None or self._session is None:
            return QuizProgress(answered=0, total=0, percentage=0.0)
        total = self._exam.question_count
        answered = sum(1 for question in self._exam.questions if self._session.answers.get(question.id))
        return QuizProgress(
            answered=answered,
            total=total,
            percentage=answered * 100 / total if total else 0.0,
        )

    def navigation_items(self) -> list[NavigationItem]:
        """Per-question status for a question grid.

        Correctness is only revealed in practice mode or after submission.
        """
        if self._exam is None or self._session is None:
            return []
        session = self._session
        reveal = session.submitted or session.mode is QuizMode.PRACTICE
        items = []
        for index, question in enumerate(self._exam.questions):
            selection = session.answers.get(question.id) or []
            items.append(
                NavigationItem(
                    question_number=question.number,
                    is_answered=bool(selection),
                    is_flagged=question.id in session.flagged_questions,
                    is_active=index == session.current_question_index,
                    is_correct=is_answer_correct(question, selection) if reveal and selection else None,
                )
            )
        return items

    def time_elapsed(self) -> float:
        if self._session is None:
            return 0.0
        if self._session.time_elapsed is not None and self._session.submitted:
            return self._session.time_elapsed
        return max(0.0, (self._scheduler.now() - self._session.start_time).total_seconds())

    def export_session(self) -> dict[str, Any] | None:
        """JSON-ready dump of the session, analytics and history depth."""
        if self._session is None:
            return None
        analytics = self._analytics
        return {
            "session": QuizStateRecord.from_session(self._session, saved_at=self._scheduler.now()).to_json_dict(),
            "status": self._status.value,
            "analytics": {
                "totalTimeSpent": analytics.total_time_spent,
                "averageQuestionTime": analytics.average_question_time,
                "questionsRevisited": analytics.questions_revisited,
                "flagsUsed": analytics.flags_used,
                "navigationPatterns": [
                    {
                        "fromQuestion": pattern.from_question,
                        "toQuestion": pattern.to_question,
                        "timestamp": pattern.timestamp.isoformat(),
                        "reason": pattern.reason.value,
                    }
                    for pattern in analytics.navigation_patterns
                ],
            },
            "historyLength": len(self._history),
            "exportedAt": self._scheduler.now().isoformat(),
        }

    # --- Internals ---

    def _require_active(self) -> QuizSession | None:
        """Return the live session, ``None`` once submitted; raise when nothing was started."""
        if self._status is SessionStatus.UNINITIALIZED:
            raise RuntimeError("No active quiz session.")
        if self._status is SessionStatus.SUBMITTED:
            logger.debug("Ignoring mutation of submitted quiz %s", self._session.exam_id)
            return None
        return self._session

    def _require_question(self, question_id: str) -> None:
        if self._exam.get_question(question_id) is None:
            raise ValueError(f"Question {question_id} is not part of exam {self._exam.id}.")

    def _set_answer(self, question_id: str, selection: Sequence[str]) -> None:
        if selection:
            self._session.answers[question_id] = list(selection)
        else:
            self._session.answers.pop(question_id, None)

    def _snapshot(self) -> StateSnapshot:
        return StateSnapshot(session=self._session.clone(), timestamp=self._scheduler.now())

    @staticmethod
    def _clamp(index: int, exam: Exam) -> int:
        return max(0, min(index, exam.question_count - 1))

    def _persist(self) -> None:
        if not self._store.save_quiz_state(self._session.exam_id, self._session):
            logger.debug("Persisting quiz %s failed; state kept in memory", self._session.exam_id)

    def _auto_save_tick(self) -> None:
        if self._status is SessionStatus.ACTIVE:
            self._persist()

    def _cancel_auto_save(self) -> None:
        if self._auto_save is not None:
            self._auto_save.cancel()
            self._auto_save = None

    def _notify(self) -> None:
        self._changes.emit(self.get_state())
