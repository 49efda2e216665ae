"""Service for the history of scored attempts and per-exam statistics."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable, Literal

from pydantic import ValidationError

from exam_practice.constants.quiz_constants import (
    DEFAULT_TREND_DAYS,
    DUPLICATE_RESULT_WINDOW_SECONDS,
    PASSING_SCORE,
    RECENT_RESULTS_COUNT,
)
from exam_practice.constants.storage_constants import (
    EXAM_STATS_PREFIX,
    QUIZ_RESULTS_KEY,
    RESULTS_HISTORY_LIMIT,
)
from exam_practice.core.models import QuizResult, StorageErrorType
from exam_practice.core.records import ExamStatsRecord, QuizResultRecord
from exam_practice.core.results_exporter import ExportFormat, export_results
from exam_practice.core.services.durable_store import DurableStore
from exam_practice.utils.observable import Observable

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ResultStats:
    total_attempts: int
    average_score: float
    best_score: float
    worst_score: float
    total_time_spent: float
    exams_covered: int
    pass_rate: float


@dataclass(slots=True, frozen=True)
class ExamPerformance:
    exam_id: str
    exam_title: str
    attempts: int
    best_score: float
    average_score: float
    last_attempt: datetime


@dataclass(slots=True, frozen=True)
class TrendPoint:
    date: datetime
    score: float
    exam_id: str
    exam_title: str


def exam_stats_key(exam_id: str) -> str:
    return f"{EXAM_STATS_PREFIX}{exam_id}"


class ResultsHistory:
    """Keeps the newest results, most recent first, capped at ``limit``."""

    def __init__(self, store: DurableStore, limit: int = RESULTS_HISTORY_LIMIT) -> None:
        self._store = store
        self._limit = limit
        self._results: list[QuizResult] = []
        self._changes: Observable[list[QuizResult]] = Observable("results history")

    def load(self) -> list[QuizResult]:
        self._results = sorted(self._store.load_quiz_results(), key=lambda r: r.end_time, reverse=True)
        self._notify()
        return list(self._results)

    @property
    def results(self) -> list[QuizResult]:
        return list(self._results)

    def subscribe(self, listener: Callable[[list[QuizResult]], None]) -> Callable[[], None]:
        return self._changes.subscribe(listener)

    def add(self, result: QuizResult) -> bool:
        """Store a new result; rejects invalid records and near-simultaneous duplicates."""
        try:
            QuizResultRecord.from_result(result)
        except ValidationError as exc:
            self._store.report_error(
                StorageErrorType.CORRUPTED_DATA,
                f"Invalid result data for exam {result.exam_id}: {exc.error_count()} invalid field(s)",
            )
            return False
        counted = result.correct_answers + result.incorrect_answers + result.skipped_answers
        if counted != result.total_questions:
            self._store.report_error(
                StorageErrorType.CORRUPTED_DATA,
                f"Invalid result data for exam {result.exam_id}: answer counts do not add up",
            )
            return False

        window = timedelta(seconds=DUPLICATE_RESULT_WINDOW_SECONDS)
        if any(
            existing.exam_id == result.exam_id and abs(existing.end_time - result.end_time) < window
            for existing in self._results
        ):
            logger.warning("Duplicate result for exam %s detected, skipping", result.exam_id)
            return False

        updated = sorted([result, *self._results], key=lambda r: r.end_time, reverse=True)[: self._limit]
        if not self._store.save_quiz_results(updated):
            return False
        self._results = updated
        self._update_exam_stats(result)
        logger.info("Recorded result for %s: %.1f%%", result.exam_id, result.percentage)
        self._notify()
        return True

    def delete(self, exam_id: str, result_id: str) -> bool:
        remaining = [
            r for r in self._results if not (r.exam_id == exam_id and r.result_id == result_id)
        ]
        if len(remaining) == len(self._results):
            return False
        if not self._store.save_quiz_results(remaining):
            return False
        self._results = remaining
        self._notify()
        return True

    def clear(self) -> None:
        """Remove every stored result together with the per-exam statistics."""
        self._store.remove(QUIZ_RESULTS_KEY)
        for key in self._store.keys(EXAM_STATS_PREFIX):
            self._store.remove(key)
        self._results = []
        self._notify()

    def get_exam_results(
        self, exam_id: str, sort_by: Literal["date", "score"] = "date"
    ) -> list[QuizResult]:
        matching = [r for r in self._results if r.exam_id == exam_id]
        if sort_by == "score":
            return sorted(matching, key=lambda r: r.percentage, reverse=True)
        return sorted(matching, key=lambda r: r.end_time, reverse=True)

    def get_result(self, exam_id: str, result_id: str) -> QuizResult | None:
        return next(
            (r for r in self._results if r.exam_id == exam_id and r.result_id == result_id),
            None,
        )

    def search(
        self,
        query: str = "",
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> list[QuizResult]:
        needle = query.lower()
        return [
            r
            for r in self._results
            if (not needle or needle in r.exam_title.lower() or needle in r.exam_id.lower())
            and (date_from is None or r.end_time >= date_from)
            and (date_to is None or r.end_time <= date_to)
        ]

    def export(self, fmt: ExportFormat = "json") -> str:
        return export_results(self._results, fmt)

    def get_trends(self, exam_id: str | None = None, days: int = DEFAULT_TREND_DAYS) -> list[TrendPoint]:
        cutoff = self._store.now() - timedelta(days=days)
        recent = [
            r
            for r in self._results
            if (exam_id is None or r.exam_id == exam_id) and r.end_time >= cutoff
        ]
        return [
            TrendPoint(date=r.end_time, score=r.percentage, exam_id=r.exam_id, exam_title=r.exam_title)
            for r in sorted(recent, key=lambda r: r.end_time)
        ]

    def stats(self) -> ResultStats:
        if not self._results:
            return ResultStats(0, 0.0, 0.0, 0.0, 0.0, 0, 0.0)
        scores = [r.percentage for r in self._results]
        passed = sum(1 for score in scores if score >= PASSING_SCORE)
        return ResultStats(
            total_attempts=len(scores),
            average_score=round(sum(scores) / len(scores), 1),
            best_score=round(max(scores), 1),
            worst_score=round(min(scores), 1),
            total_time_spent=sum(r.time_elapsed for r in self._results),
            exams_covered=len({r.exam_id for r in self._results}),
            pass_rate=round(passed * 100 / len(scores), 1),
        )

    def recent(self, limit: int = RECENT_RESULTS_COUNT) -> list[QuizResult]:
        return self._results[:limit]

    def exam_performance(self) -> list[ExamPerformance]:
        grouped: dict[str, list[QuizResult]] = {}
        for result in self._results:
            grouped.setdefault(result.exam_id, []).append(result)
        rows = [
            ExamPerformance(
                exam_id=exam_id,
                exam_title=attempts[0].exam_title,
                attempts=len(attempts),
                best_score=max(r.percentage for r in attempts),
                average_score=sum(r.percentage for r in attempts) / len(attempts),
                last_attempt=max(r.end_time for r in attempts),
            )
            for exam_id, attempts in grouped.items()
        ]
        return sorted(rows, key=lambda row: row.last_attempt, reverse=True)

    def get_exam_stats(self, exam_id: str) -> ExamStatsRecord | None:
        data = self._store.read(exam_stats_key(exam_id))
        if data is None:
            return None
        try:
            return ExamStatsRecord.model_validate(data)
        except ValidationError:
            logger.warning("Ignoring invalid stats record for exam %s", exam_id)
            return None

    def _update_exam_stats(self, result: QuizResult) -> None:
        stats = self.get_exam_stats(result.exam_id) or ExamStatsRecord(exam_id=result.exam_id)
        updated = ExamStatsRecord(
            exam_id=result.exam_id,
            attempts=stats.attempts + 1,
            best_score=max(stats.best_score, result.percentage),
            scores=[*stats.scores, result.percentage],
            last_attempted=result.end_time,
        )
        self._store.write(exam_stats_key(result.exam_id), updated.to_json_dict())

    def _notify(self) -> None:
        self._changes.emit(list(self._results))
