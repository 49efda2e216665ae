from __future__ import annotations

import pytest

from exam_practice.core.exam_importer import ExamImportError, load_exam_from_file, parse_exam
from exam_practice.core.models import QuestionType
from exam_practice.core.services.exam_repository import ExamRepository

SAMPLE_EXAM = """\
# Cloud Fundamentals

Practice questions for the fundamentals certification.

1. Which service stores objects?    - A. Block storage
    - B. Object storage
    - C. File storage
    - D. Queue

    <details markdown=1><summary markdown='span'>Answer</summary>

    Correct answer: B
    Explanation: Object storage keeps blobs
    addressed by key.

    </details>

2. Which two are compute services?
    - A. Virtual machines
    - B. DNS
    - C. Containers
    - D. CDN

    <details markdown=1><summary markdown='span'>Answer</summary>

    Correct answer: A, C

    </details>

3. This question has no answer key
    - A. One
    - B. Two

    <details markdown=1><summary markdown='span'>Answer</summary>

    </details>

4. Pick the monitoring service<br>from the list
    - A. Metrics
    - B. Billing
    - C. Identity
    - D. Storage

    <details markdown=1><summary markdown='span'>Answer</summary>

    Correct answer: AC

    </details>
"""


def test_parse_exam_reads_title_and_description():
    exam = parse_exam(SAMPLE_EXAM, "cloud-1")

    assert exam.id == "cloud-1"
    assert exam.title == "Cloud Fundamentals"
    assert exam.description == "Practice questions for the fundamentals certification."


def test_parse_exam_single_answer_with_inline_option():
    question = parse_exam(SAMPLE_EXAM, "cloud-1").questions[0]

    assert question.text == "Which service stores objects?"
    assert [option.id for option in question.options] == ["1-A", "1-B", "1-C", "1-D"]
    assert question.options[0].text == "Block storage"
    assert question.correct_answers == ("1-B",)
    assert question.type is QuestionType.SINGLE
    assert question.explanation == "Object storage keeps blobs addressed by key."


def test_parse_exam_multi_answer_formats():
    exam = parse_exam(SAMPLE_EXAM, "cloud-1")
    second = exam.questions[1]
    fourth = exam.questions[2]

    assert second.type is QuestionType.MULTI
    assert second.correct_answers == ("2-A", "2-C")
    assert second.explanation is None
    assert fourth.text == "Pick the monitoring service from the list"
    assert fourth.correct_answers == ("4-A", "4-C")


def test_parse_exam_skips_question_without_answer():
    exam = parse_exam(SAMPLE_EXAM, "cloud-1")

    assert [question.number for question in exam.questions] == [1, 2, 4]


def test_parse_exam_skips_question_with_three_answers():
    content = """\
# Broken

1. Too many answers
    - A. One
    - B. Two
    - C. Three

    Correct answer: A, B, C

    </details>
"""

    assert parse_exam(content, "broken").questions == ()


def test_parse_exam_without_title_gets_default():
    exam = parse_exam("1. Question\n- A. Yes\n- B. No\nCorrect answer: A\n</details>\n", "7")

    assert exam.title == "Practice Exam 7"
    assert exam.questions[0].correct_answers == ("1-A",)


def test_load_exam_from_file_uses_file_stem(tmp_path):
    path = tmp_path / "cloud-2.md"
    path.write_text(SAMPLE_EXAM, encoding="utf-8")

    exam = load_exam_from_file(path)

    assert exam.id == "cloud-2"
    assert exam.question_count == 3


def test_load_exam_from_file_errors(tmp_path):
    with pytest.raises(ExamImportError):
        load_exam_from_file(tmp_path / "missing.md")

    empty = tmp_path / "empty.md"
    empty.write_text("# Nothing here\n", encoding="utf-8")
    with pytest.raises(ExamImportError):
        load_exam_from_file(empty)


def test_repository_lists_and_caches_exams(tmp_path):
    for exam_id in ("exam-10", "exam-2", "exam-1"):
        (tmp_path / f"{exam_id}.md").write_text(SAMPLE_EXAM, encoding="utf-8")
    (tmp_path / "broken.md").write_text("# Broken\n", encoding="utf-8")
    repository = ExamRepository(tmp_path, default_time_limit_minutes=45)

    assert repository.exam_ids() == ["broken", "exam-1", "exam-2", "exam-10"]
    assert repository.get_exam("broken") is None
    assert repository.get_exam("missing") is None

    exam = repository.get_exam("exam-2")
    assert exam.time_limit_minutes == 45
    assert repository.get_exam("exam-2") is exam

    metadata = repository.list_metadata()
    assert [row.id for row in metadata] == ["exam-1", "exam-2", "exam-10"]
    assert metadata[0].attempts == 0
    assert metadata[0].question_count == 3


def test_repository_registered_exams_survive_cache_clear(tmp_path, exam):
    (tmp_path / "exam-5.md").write_text(SAMPLE_EXAM, encoding="utf-8")
    repository = ExamRepository(tmp_path)
    repository.register(exam)
    repository.get_exam("exam-5")

    repository.clear_cache()

    assert repository.get_exam(exam.id) is exam
    assert "exam-5" in repository.exam_ids()
