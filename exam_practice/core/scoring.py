"""Pure scoring helpers turning a finished attempt into a result record."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Sequence

from exam_practice.constants.quiz_constants import PASSING_SCORE
from exam_practice.core.models import Exam, Question, QuestionResult, QuestionType, QuizResult

_STRONG_AREA_ACCURACY = 85.0
_STRONG_OVERALL_PERCENTAGE = 80.0

_GRADE_BANDS: tuple[tuple[float, str, str], ...] = (
    (90.0, "A", "Excellent work! You have a strong understanding of the material."),
    (80.0, "B", "Great job! You have a good grasp of the material with room for minor improvements."),
    (70.0, "C", "Good work! You passed, but consider reviewing some topics to strengthen your knowledge."),
    (60.0, "D", "You're close! Review the incorrect answers and try again to improve your score."),
)
_FAILING_GRADE = ("F", "Don't give up! Focus on the areas where you struggled and retake the exam.")


@dataclass(slots=True, frozen=True)
class PassStatus:
    passed: bool
    grade: str
    message: str


@dataclass(slots=True, frozen=True)
class ResultAnalytics:
    time_per_question: float
    accuracy_by_type: dict[str, float]
    strong_areas: list[str] = field(default_factory=list)
    weak_areas: list[str] = field(default_factory=list)


def is_answer_correct(question: Question, selection: Sequence[str]) -> bool:
    """Exact set match against the correct answers; there is no partial credit."""
    if not selection:
        return False
    if len(selection) != len(question.correct_answers):
        return False
    return set(selection) == set(question.correct_answers)


def score(
    exam: Exam,
    answers: Mapping[str, Sequence[str]],
    start_time: datetime,
    end_time: datetime,
) -> QuizResult:
    question_results: list[QuestionResult] = []
    correct = incorrect = skipped = 0

    for question in exam.questions:
        selection = tuple(answers.get(question.id) or ())
        correct_answer = is_answer_correct(question, selection)
        question_results.append(
            QuestionResult(
                question_id=question.id,
                question_number=question.number,
                question_text=question.text,
                type=question.type,
                user_answers=selection,
                correct_answers=question.correct_answers,
                is_correct=correct_answer,
                options=question.options,
                explanation=question.explanation,
            )
        )
        if not selection:
            skipped += 1
        elif correct_answer:
            correct += 1
        else:
            incorrect += 1

    total = exam.question_count
    percentage = correct * 100 / total if total else 0.0
    return QuizResult(
        exam_id=exam.id,
        exam_title=exam.title,
        score=correct,
        percentage=percentage,
        total_questions=total,
        correct_answers=correct,
        incorrect_answers=incorrect,
        skipped_answers=skipped,
        time_elapsed=max(0.0, (end_time - start_time).total_seconds()),
        start_time=start_time,
        end_time=end_time,
        question_results=tuple(question_results),
    )


def calculate_pass_status(percentage: float, passing_score: float = PASSING_SCORE) -> PassStatus:
    passed = percentage >= passing_score
    for threshold, grade, message in _GRADE_BANDS:
        if percentage >= threshold:
            return PassStatus(passed=passed, grade=grade, message=message)
    grade, message = _FAILING_GRADE
    return PassStatus(passed=passed, grade=grade, message=message)


def calculate_analytics(result: QuizResult) -> ResultAnalytics:
    """Per-type accuracy and coarse strong/weak areas for a scored attempt."""
    time_per_question = result.time_elapsed / result.total_questions if result.total_questions else 0.0

    accuracy: dict[str, float] = {}
    for question_type in QuestionType:
        of_type = [item for item in result.question_results if item.type is question_type]
        hits = sum(1 for item in of_type if item.is_correct)
        accuracy[question_type.value] = hits * 100 / len(of_type) if of_type else 0.0

    strong: list[str] = []
    weak: list[str] = []
    if result.percentage >= _STRONG_OVERALL_PERCENTAGE:
        strong.append("Overall knowledge")
    labels = {QuestionType.SINGLE: "Single-choice questions", QuestionType.MULTI: "Multiple-choice questions"}
    for question_type, label in labels.items():
        attempted = any(item.type is question_type for item in result.question_results)
        if not attempted:
            continue
        if accuracy[question_type.value] >= _STRONG_AREA_ACCURACY:
            strong.append(label)
        elif accuracy[question_type.value] < PASSING_SCORE:
            weak.append(label)

    return ResultAnalytics(
        time_per_question=time_per_question,
        accuracy_by_type=accuracy,
        strong_areas=strong,
        weak_areas=weak,
    )


def format_duration(seconds: float) -> str:
    """Human readable duration such as ``1h 2m 3s``, ``4m 5s`` or ``6s``."""
    total = int(max(0.0, seconds))
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def estimate_completion_time(current_index: int, total_questions: int, time_elapsed: float) -> float:
    """Projected remaining seconds, from the average pace so far."""
    if current_index <= 0:
        return 0.0
    average = time_elapsed / current_index
    return round(max(0, total_questions - current_index) * average)
