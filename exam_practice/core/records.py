"""Pydantic schemas for everything written to durable storage.

Records use camelCase field names on disk so files written by older
versions of the application stay readable. Domain objects never touch
JSON directly; they are converted through these models.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from exam_practice.constants.storage_constants import QUIZ_STATE_VERSION
from exam_practice.core.models import (
    ActionStatus,
    ActionType,
    Option,
    PendingAction,
    QuestionResult,
    QuestionType,
    QuizMode,
    QuizResult,
    QuizSession,
)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class StoredRecord(BaseModel):
    """Base class for persisted records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class QuizStateRecord(StoredRecord):
    exam_id: str = Field(min_length=1)
    mode: QuizMode = QuizMode.EXAM
    current_question_index: int = Field(default=0, ge=0)
    answers: list[tuple[str, list[str]]] = Field(default_factory=list)
    flagged_questions: list[str] = Field(default_factory=list)
    start_time: UtcDatetime
    end_time: UtcDatetime | None = None
    submitted: bool = False
    time_elapsed: float | None = None
    saved_at: UtcDatetime | None = None
    version: int = 0

    @classmethod
    def from_session(cls, session: QuizSession, saved_at: datetime) -> QuizStateRecord:
        return cls(
            exam_id=session.exam_id,
            mode=session.mode,
            current_question_index=session.current_question_index,
            answers=[(qid, list(selection)) for qid, selection in session.answers.items()],
            flagged_questions=sorted(session.flagged_questions),
            start_time=session.start_time,
            end_time=session.end_time,
            submitted=session.submitted,
            time_elapsed=session.time_elapsed,
            saved_at=saved_at,
            version=QUIZ_STATE_VERSION,
        )

    def to_session(self) -> QuizSession:
        return QuizSession(
            exam_id=self.exam_id,
            mode=self.mode,
            start_time=self.start_time,
            current_question_index=self.current_question_index,
            answers={qid: list(selection) for qid, selection in self.answers},
            flagged_questions=set(self.flagged_questions),
            end_time=self.end_time,
            submitted=self.submitted,
            time_elapsed=self.time_elapsed,
        )


class OptionRecord(StoredRecord):
    id: str
    letter: str
    text: str


class QuestionResultRecord(StoredRecord):
    question_id: str
    question_number: int
    question_text: str
    type: QuestionType
    user_answers: list[str] = Field(default_factory=list)
    correct_answers: list[str] = Field(default_factory=list)
    is_correct: bool
    explanation: str | None = None
    options: list[OptionRecord] = Field(default_factory=list)


class QuizResultRecord(StoredRecord):
    """A scored attempt; range checks reject records that could not be produced by scoring."""

    exam_id: str = Field(min_length=1)
    exam_title: str = Field(min_length=1)
    score: int = Field(ge=0)
    percentage: float = Field(ge=0, le=100)
    total_questions: int = Field(ge=0)
    correct_answers: int = Field(ge=0)
    incorrect_answers: int = Field(ge=0)
    skipped_answers: int = Field(ge=0)
    time_elapsed: float = Field(ge=0)
    start_time: UtcDatetime
    end_time: UtcDatetime
    question_results: list[QuestionResultRecord] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: QuizResult) -> QuizResultRecord:
        return cls(
            exam_id=result.exam_id,
            exam_title=result.exam_title,
            score=result.score,
            percentage=result.percentage,
            total_questions=result.total_questions,
            correct_answers=result.correct_answers,
            incorrect_answers=result.incorrect_answers,
            skipped_answers=result.skipped_answers,
            time_elapsed=result.time_elapsed,
            start_time=result.start_time,
            end_time=result.end_time,
            question_results=[
                QuestionResultRecord(
                    question_id=item.question_id,
                    question_number=item.question_number,
                    question_text=item.question_text,
                    type=item.type,
                    user_answers=list(item.user_answers),
                    correct_answers=list(item.correct_answers),
                    is_correct=item.is_correct,
                    explanation=item.explanation,
                    options=[
                        OptionRecord(id=o.id, letter=o.letter, text=o.text) for o in item.options
                    ],
                )
                for item in result.question_results
            ],
        )

    def to_result(self) -> QuizResult:
        return QuizResult(
            exam_id=self.exam_id,
            exam_title=self.exam_title,
            score=self.score,
            percentage=self.percentage,
            total_questions=self.total_questions,
            correct_answers=self.correct_answers,
            incorrect_answers=self.incorrect_answers,
            skipped_answers=self.skipped_answers,
            time_elapsed=self.time_elapsed,
            start_time=self.start_time,
            end_time=self.end_time,
            question_results=tuple(
                QuestionResult(
                    question_id=item.question_id,
                    question_number=item.question_number,
                    question_text=item.question_text,
                    type=item.type,
                    user_answers=tuple(item.user_answers),
                    correct_answers=tuple(item.correct_answers),
                    is_correct=item.is_correct,
                    explanation=item.explanation,
                    options=tuple(Option(id=o.id, letter=o.letter, text=o.text) for o in item.options),
                )
                for item in self.question_results
            ),
        )


class ExamStatsRecord(StoredRecord):
    """Per-exam aggregate used by exam listings."""

    exam_id: str = Field(min_length=1)
    attempts: int = Field(default=0, ge=0)
    best_score: float = Field(default=0.0, ge=0, le=100)
    scores: list[float] = Field(default_factory=list)
    last_attempted: UtcDatetime | None = None

    @property
    def average_score(self) -> float | None:
        if not self.scores:
            return None
        return sum(self.scores) / len(self.scores)


class PendingActionRecord(StoredRecord):
    id: str
    type: ActionType
    data: Any = None
    timestamp: UtcDatetime
    retry_count: int = Field(default=0, ge=0)
    status: ActionStatus = ActionStatus.PENDING
    last_error: str | None = None

    @classmethod
    def from_action(cls, action: PendingAction) -> PendingActionRecord:
        return cls(
            id=action.id,
            type=action.type,
            data=action.data,
            timestamp=action.timestamp,
            retry_count=action.retry_count,
            status=action.status,
            last_error=action.last_error,
        )

    def to_action(self) -> PendingAction:
        return PendingAction(
            id=self.id,
            type=self.type,
            data=self.data,
            timestamp=self.timestamp,
            retry_count=self.retry_count,
            status=self.status,
            last_error=self.last_error,
        )


class OfflineStateRecord(StoredRecord):
    pending_actions: list[PendingActionRecord] = Field(default_factory=list)
    abandoned_actions: list[PendingActionRecord] = Field(default_factory=list)
    last_sync_time: UtcDatetime | None = None


class FullBackupRecord(StoredRecord):
    """Whole-store export: raw string values keyed by storage key."""

    version: int = Field(ge=1)
    timestamp: UtcDatetime | None = None
    data: dict[str, str]
