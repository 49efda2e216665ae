"""Domain models for the exam practice application."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from exam_practice.constants.quiz_constants import (
    AUTO_SAVE_INTERVAL_SECONDS,
    MAX_HISTORY_SIZE,
)
from exam_practice.constants.network_constants import MAX_RETRY_ATTEMPTS
from exam_practice.constants.storage_constants import WARNING_THRESHOLD


class QuestionType(str, Enum):
    """Single-answer (MCQ) or multi-answer with exactly two picks (MCMA)."""

    SINGLE = "MCQ"
    MULTI = "MCMA"


class QuizMode(str, Enum):
    PRACTICE = "practice"
    EXAM = "exam"


class NavigationReason(str, Enum):
    NEXT = "next"
    PREVIOUS = "previous"
    JUMP = "jump"
    REVIEW = "review"


class ActionType(str, Enum):
    ANSWER = "answer"
    FLAG = "flag"
    NAVIGATION = "navigation"
    SUBMIT = "submit"


class ActionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRY_SCHEDULED = "retry_scheduled"
    ABANDONED = "abandoned"


class StorageErrorType(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    CORRUPTED_DATA = "corrupted_data"
    NETWORK_ERROR = "network_error"
    PERMISSION_DENIED = "permission_denied"


@dataclass(slots=True, frozen=True)
class Option:
    """One selectable option of a question."""

    id: str
    letter: str
    text: str


@dataclass(slots=True, frozen=True)
class Question:
    """Multiple-choice question with one or exactly two correct options."""

    id: str
    number: int
    type: QuestionType
    text: str
    options: tuple[Option, ...]
    correct_answers: tuple[str, ...]
    explanation: str | None = None

    def __post_init__(self) -> None:
        option_ids = {option.id for option in self.options}
        unknown = [answer for answer in self.correct_answers if answer not in option_ids]
        if unknown:
            raise ValueError(
                f"Question {self.id} lists correct answers that are not options: {unknown}"
            )
        expected = 2 if self.type is QuestionType.MULTI else 1
        if len(set(self.correct_answers)) != expected:
            raise ValueError(
                f"Question {self.id} of type {self.type.value} must have exactly "
                f"{expected} correct answer(s)."
            )

    @property
    def required_selections(self) -> int:
        return 2 if self.type is QuestionType.MULTI else 1

    def accepts_selection(self, selection: list[str] | tuple[str, ...]) -> bool:
        """Return True if ``selection`` is a well-formed (possibly partial) answer.

        Multi-answer questions accept a pending single pick as well as the
        full pair. Every id must belong to this question and appear once.
        """
        option_ids = {option.id for option in self.options}
        if len(set(selection)) != len(selection):
            return False
        if any(option_id not in option_ids for option_id in selection):
            return False
        return len(selection) <= self.required_selections


@dataclass(slots=True, frozen=True)
class Exam:
    """An immutable exam definition produced by the markdown importer."""

    id: str
    title: str
    questions: tuple[Question, ...]
    description: str | None = None
    time_limit_minutes: int | None = None

    @property
    def question_count(self) -> int:
        return len(self.questions)

    def get_question(self, question_id: str) -> Question | None:
        return next((q for q in self.questions if q.id == question_id), None)


@dataclass(slots=True)
class QuizSession:
    """Mutable state of one attempt at an exam."""

    exam_id: str
    mode: QuizMode
    start_time: datetime
    current_question_index: int = 0
    answers: dict[str, list[str]] = field(default_factory=dict)
    flagged_questions: set[str] = field(default_factory=set)
    end_time: datetime | None = None
    submitted: bool = False
    time_elapsed: float | None = None

    def clone(self) -> QuizSession:
        """Return a value copy that shares no mutable containers with ``self``."""
        return QuizSession(
            exam_id=self.exam_id,
            mode=self.mode,
            start_time=self.start_time,
            current_question_index=self.current_question_index,
            answers={qid: list(selection) for qid, selection in self.answers.items()},
            flagged_questions=set(self.flagged_questions),
            end_time=self.end_time,
            submitted=self.submitted,
            time_elapsed=self.time_elapsed,
        )


@dataclass(slots=True, frozen=True)
class AnswerHistoryEntry:
    question_id: str
    previous_answers: tuple[str, ...]
    new_answers: tuple[str, ...]
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class StateSnapshot:
    session: QuizSession
    timestamp: datetime
    version: int = 1


@dataclass(slots=True, frozen=True)
class NavigationPattern:
    from_question: int
    to_question: int
    timestamp: datetime
    reason: NavigationReason


@dataclass(slots=True)
class QuizAnalytics:
    """Navigation and timing statistics collected during a session."""

    total_time_spent: float = 0.0
    average_question_time: float = 0.0
    questions_revisited: int = 0
    flags_used: int = 0
    navigation_patterns: list[NavigationPattern] = field(default_factory=list)

    def copy(self) -> QuizAnalytics:
        return QuizAnalytics(
            total_time_spent=self.total_time_spent,
            average_question_time=self.average_question_time,
            questions_revisited=self.questions_revisited,
            flags_used=self.flags_used,
            navigation_patterns=list(self.navigation_patterns),
        )


@dataclass(slots=True, frozen=True)
class QuestionResult:
    question_id: str
    question_number: int
    question_text: str
    type: QuestionType
    user_answers: tuple[str, ...]
    correct_answers: tuple[str, ...]
    is_correct: bool
    options: tuple[Option, ...]
    explanation: str | None = None


@dataclass(slots=True, frozen=True)
class QuizResult:
    """Scored outcome of a submitted session."""

    exam_id: str
    exam_title: str
    score: int
    percentage: float
    total_questions: int
    correct_answers: int
    incorrect_answers: int
    skipped_answers: int
    time_elapsed: float
    start_time: datetime
    end_time: datetime
    question_results: tuple[QuestionResult, ...] = ()

    @property
    def result_id(self) -> str:
        """Stable identifier derived from the attempt start time (milliseconds)."""
        return str(int(self.start_time.timestamp() * 1000))


@dataclass(slots=True)
class PendingAction:
    """A user action waiting to be delivered to the sync target."""

    id: str
    type: ActionType
    data: Any
    timestamp: datetime
    retry_count: int = 0
    status: ActionStatus = ActionStatus.PENDING
    last_error: str | None = None


@dataclass(slots=True, frozen=True)
class StorageError:
    type: StorageErrorType
    message: str
    timestamp: datetime
    recoverable: bool = True


@dataclass(slots=True, frozen=True)
class StateManagerConfig:
    """Tunables for the quiz session manager."""

    auto_save_interval: float = AUTO_SAVE_INTERVAL_SECONDS
    max_history_size: int = MAX_HISTORY_SIZE
    offline_retry_attempts: int = MAX_RETRY_ATTEMPTS
    storage_quota_warning_threshold: float = WARNING_THRESHOLD * 100
    enable_analytics: bool = True

    def __post_init__(self) -> None:
        if self.auto_save_interval <= 0:
            raise ValueError("Auto-save interval must be positive.")
        if self.max_history_size < 1:
            raise ValueError("History size must be at least 1.")


@dataclass(slots=True, frozen=True)
class NavigationItem:
    question_number: int
    is_answered: bool
    is_flagged: bool
    is_active: bool
    is_correct: bool | None = None


@dataclass(slots=True, frozen=True)
class QuizProgress:
    answered: int
    total: int
    percentage: float


class SessionStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    SUBMITTED = "submitted"
