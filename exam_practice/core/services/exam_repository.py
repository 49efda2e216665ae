"""Service for locating, loading and caching exam definitions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from pathlib import Path
import re

from exam_practice.core.exam_importer import ExamImportError, load_exam_from_file
from exam_practice.core.models import Exam
from exam_practice.core.records import ExamStatsRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ExamMetadata:
    """Listing entry: exam summary joined with the user's attempt statistics."""

    id: str
    title: str
    question_count: int
    description: str | None = None
    time_limit_minutes: int | None = None
    attempts: int = 0
    best_score: float | None = None
    average_score: float | None = None
    last_attempted: datetime | None = None


def _natural_key(exam_id: str) -> list[int | str]:
    return [int(part) if part.isdigit() else part for part in re.split(r"(\d+)", exam_id)]


class ExamRepository:
    """Exams stored as ``<exam id>.md`` files in one directory, plus registered in-memory exams."""

    def __init__(self, exams_dir: Path | None = None, default_time_limit_minutes: int | None = None) -> None:
        self._exams_dir = exams_dir
        self._default_time_limit = default_time_limit_minutes
        self._cache: dict[str, Exam] = {}

    def register(self, exam: Exam) -> None:
        """Make an already-built exam available under its id."""
        if not exam.questions:
            raise ValueError("Exam must contain at least one question.")
        self._cache[exam.id] = exam

    def exam_ids(self) -> list[str]:
        ids = set(self._cache)
        if self._exams_dir is not None and self._exams_dir.is_dir():
            ids.update(path.stem for path in self._exams_dir.glob("*.md"))
        return sorted(ids, key=_natural_key)

    def get_exam(self, exam_id: str) -> Exam | None:
        """Return the exam, loading it on first use; ``None`` if missing or unreadable."""
        cached = self._cache.get(exam_id)
        if cached is not None:
            return cached
        if self._exams_dir is None:
            return None
        path = self._exams_dir / f"{exam_id}.md"
        if not path.is_file():
            return None
        try:
            exam = load_exam_from_file(path, exam_id)
        except ExamImportError as exc:
            logger.error("Error loading exam %s: %s", exam_id, exc)
            return None
        if exam.time_limit_minutes is None and self._default_time_limit is not None:
            exam = Exam(
                id=exam.id,
                title=exam.title,
                questions=exam.questions,
                description=exam.description,
                time_limit_minutes=self._default_time_limit,
            )
        self._cache[exam_id] = exam
        logger.info("Loaded exam %s with %d questions", exam_id, exam.question_count)
        return exam

    def list_metadata(self, stats: dict[str, ExamStatsRecord] | None = None) -> list[ExamMetadata]:
        stats = stats or {}
        rows = []
        for exam_id in self.exam_ids():
            exam = self.get_exam(exam_id)
            if exam is None:
                continue
            exam_stats = stats.get(exam_id)
            rows.append(
                ExamMetadata(
                    id=exam.id,
                    title=exam.title,
                    question_count=exam.question_count,
                    description=exam.description,
                    time_limit_minutes=exam.time_limit_minutes,
                    attempts=exam_stats.attempts if exam_stats else 0,
                    best_score=exam_stats.best_score if exam_stats else None,
                    average_score=exam_stats.average_score if exam_stats else None,
                    last_attempted=exam_stats.last_attempted if exam_stats else None,
                )
            )
        return rows

    def clear_cache(self) -> None:
        """Forget file-loaded exams so edits on disk are picked up; registered exams stay."""
        if self._exams_dir is None:
            return
        self._cache = {
            exam_id: exam
            for exam_id, exam in self._cache.items()
            if not (self._exams_dir / f"{exam_id}.md").is_file()
        }
