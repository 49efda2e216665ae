from __future__ import annotations

import pytest

from exam_practice.core.models import Exam, Option, Question, QuestionType
from exam_practice.core.scheduling import ManualScheduler
from exam_practice.core.services.durable_store import DurableStore
from exam_practice.core.services.storage_backends import MemoryStorageBackend


def make_question(number: int, correct: str = "B", letters: str = "ABCD") -> Question:
    options = tuple(
        Option(id=f"{number}-{letter}", letter=letter, text=f"Option {letter}") for letter in letters
    )
    correct_ids = tuple(f"{number}-{letter}" for letter in correct)
    return Question(
        id=str(number),
        number=number,
        type=QuestionType.MULTI if len(correct_ids) > 1 else QuestionType.SINGLE,
        text=f"Question {number}?",
        options=options,
        correct_answers=correct_ids,
        explanation=f"Explanation for question {number}.",
    )


def make_exam(exam_id: str = "exam-1", count: int = 10, time_limit_minutes: int | None = None) -> Exam:
    questions = [make_question(number) for number in range(1, count + 1)]
    return Exam(
        id=exam_id,
        title=f"Practice Exam {exam_id}",
        questions=tuple(questions),
        time_limit_minutes=time_limit_minutes,
    )


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def backend() -> MemoryStorageBackend:
    return MemoryStorageBackend()


@pytest.fixture
def store(backend, scheduler) -> DurableStore:
    return DurableStore(backend, clock=scheduler.now)


@pytest.fixture
def exam() -> Exam:
    return make_exam()


@pytest.fixture
def mixed_exam() -> Exam:
    """Three questions: two single-answer and one multi-answer (B and D)."""
    return Exam(
        id="mixed",
        title="Mixed Exam",
        questions=(make_question(1, "A"), make_question(2, "BD"), make_question(3, "C")),
    )
