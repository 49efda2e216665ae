"""Utilities for exporting quiz results as CSV or JSON documents."""

from __future__ import annotations

import csv
import io
import json
from typing import Literal, Sequence

from exam_practice.core.models import QuizResult
from exam_practice.core.records import QuizResultRecord

ExportFormat = Literal["json", "csv"]

_CSV_HEADERS = (
    "Exam ID",
    "Exam Title",
    "Score (%)",
    "Correct Answers",
    "Total Questions",
    "Time Elapsed (s)",
    "Start Time",
    "End Time",
)


def results_to_json(results: Sequence[QuizResult]) -> str:
    payload = [QuizResultRecord.from_result(result).to_json_dict() for result in results]
    return json.dumps(payload, indent=2)


def results_to_csv(results: Sequence[QuizResult]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(_CSV_HEADERS)
    for result in results:
        writer.writerow(
            (
                result.exam_id,
                result.exam_title,
                f"{result.percentage:g}",
                result.correct_answers,
                result.total_questions,
                f"{result.time_elapsed:g}",
                result.start_time.isoformat(),
                result.end_time.isoformat(),
            )
        )
    return buffer.getvalue()


def export_results(results: Sequence[QuizResult], fmt: ExportFormat = "json") -> str:
    if fmt == "csv":
        return results_to_csv(results)
    if fmt == "json":
        return results_to_json(results)
    raise ValueError(f"Unsupported export format: {fmt}")

