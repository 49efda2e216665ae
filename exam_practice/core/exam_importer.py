"""Utilities for importing practice exams from markdown files.

File format:

    # Exam title

    Optional description paragraph.

    1. Question text    - A. An option may follow the text inline
        - B. Option text
        - C. Option text
        - D. Option text

        <details markdown=1><summary markdown='span'>Answer</summary>

        Correct answer: B
        Explanation: Optional explanation, may continue on following lines.

        </details>

Correct answers are written as ``A``, ``A, C`` or ``AC``. Questions with
more than one correct answer become multi-answer questions. A question
block ends at ``</details>``; blocks that cannot be parsed are skipped.
"""

from __future__ import annotations

import logging
from pathlib import Path
import re

from exam_practice.core.models import Exam, Option, Question, QuestionType

logger = logging.getLogger(__name__)


class ExamImportError(Exception):
    """Raised when an exam file cannot be turned into a usable exam."""


_QUESTION_START = re.compile(r"^(\d+)\.\s+(.+)$")
_OPTION = re.compile(r"^-\s+([A-E])\.\s+(.+)$")
_INLINE_OPTION = re.compile(r"^(.+?)\s{2,}-\s+([A-E])\.\s+(.+)$")
_CORRECT_ANSWER = re.compile(r"correct answers?:\s*(.+)$", re.IGNORECASE)
_EXPLANATION = re.compile(r"^explanation:\s*(.*)$", re.IGNORECASE)
_LINE_BREAK = re.compile(r"<br\s*/?>", re.IGNORECASE)
_DETAILS_END = "</details>"


def load_exam_from_file(file_path: Path, exam_id: str | None = None) -> Exam:
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ExamImportError(f"Cannot read exam file {file_path}: {exc}") from exc
    exam = parse_exam(text, exam_id or file_path.stem)
    if not exam.questions:
        raise ExamImportError(f"Exam file {file_path.name} did not contain any questions.")
    return exam


def parse_exam(content: str, exam_id: str) -> Exam:
    title = ""
    description_lines: list[str] = []
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if _QUESTION_START.match(line):
            break
        if line.startswith("# ") and not title:
            title = line[2:].strip()
        elif title and line and not line.startswith("#"):
            description_lines.append(line)

    questions: list[Question] = []
    for position, block in enumerate(_extract_blocks(content), start=1):
        question = _parse_block(block, position)
        if question is not None:
            questions.append(question)

    return Exam(
        id=exam_id,
        title=title or f"Practice Exam {exam_id}",
        questions=tuple(questions),
        description=" ".join(description_lines) or None,
    )


def _extract_blocks(content: str) -> list[list[str]]:
    blocks: list[list[str]] = []
    current: list[str] = []
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if _QUESTION_START.match(line):
            if current:
                blocks.append(current)
            current = [line]
        elif current:
            current.append(line)
            if _DETAILS_END in line:
                blocks.append(current)
                current = []
    if current:
        blocks.append(current)
    return blocks


def _parse_block(lines: list[str], number: int) -> Question | None:
    match = _QUESTION_START.match(lines[0])
    text = _LINE_BREAK.sub(" ", match.group(2)).strip()
    options: list[Option] = []
    correct_text = ""
    explanation_lines: list[str] = []
    in_explanation = False

    inline = _INLINE_OPTION.match(text)
    if inline:
        text = inline.group(1).strip()
        options.append(_make_option(number, inline.group(2), inline.group(3)))

    for line in lines[1:]:
        if _DETAILS_END in line:
            break
        option = _OPTION.match(line)
        if option and not in_explanation:
            options.append(_make_option(number, option.group(1), option.group(2)))
            continue
        answer = _CORRECT_ANSWER.search(line)
        if answer:
            correct_text = answer.group(1).strip()
            in_explanation = False
            continue
        explanation = _EXPLANATION.match(line)
        if explanation:
            in_explanation = True
            if explanation.group(1):
                explanation_lines.append(explanation.group(1).strip())
            continue
        if in_explanation and line:
            explanation_lines.append(line)

    if not options or not correct_text:
        logger.warning("Skipping question %d: missing options or correct answer", number)
        return None

    by_letter = {option.letter: option.id for option in options}
    correct = [by_letter[letter] for letter in _answer_letters(correct_text) if letter in by_letter]
    correct = list(dict.fromkeys(correct))
    if not correct:
        logger.warning("Skipping question %d: correct answer does not match any option", number)
        return None

    try:
        return Question(
            id=str(number),
            number=number,
            type=QuestionType.MULTI if len(correct) > 1 else QuestionType.SINGLE,
            text=text,
            options=tuple(options),
            correct_answers=tuple(correct),
            explanation=" ".join(explanation_lines) or None,
        )
    except ValueError as exc:
        logger.warning("Skipping question %d: %s", number, exc)
        return None


def _answer_letters(correct_text: str) -> list[str]:
    if "," in correct_text or " " in correct_text:
        tokens = [token.strip() for token in re.split(r"[,\s]+", correct_text)]
    else:
        tokens = list(correct_text)
    return [token for token in tokens if re.fullmatch(r"[A-E]", token)]


def _make_option(number: int, letter: str, text: str) -> Option:
    return Option(id=f"{number}-{letter}", letter=letter, text=text.strip())
