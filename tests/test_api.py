from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient
import pytest

from exam_practice.core.quiz_manager import QuizManager
from exam_practice.core.services.exam_repository import ExamRepository
from exam_practice.core.sync_client import acknowledge_locally
from exam_practice.server.api_server import create_api_app


@pytest.fixture
def quiz_manager(store, scheduler, exam, mixed_exam) -> QuizManager:
    repository = ExamRepository()
    repository.register(exam)
    repository.register(mixed_exam)
    return QuizManager(store, scheduler, repository, acknowledge_locally)


@pytest.fixture
def client(quiz_manager):
    app = create_api_app(quiz_manager)
    with TestClient(app) as test_client:
        yield test_client


def test_list_exams(client):
    r = client.get("/exams")

    assert r.status_code == 200
    rows = r.json()
    assert [row["id"] for row in rows] == ["exam-1", "mixed"]
    assert rows[0]["questionCount"] == 10
    assert rows[0]["attempts"] == 0


def test_session_before_start(client):
    assert client.get("/session").json() == {"status": "uninitialized"}

    r = client.post("/session/answer", json={"questionId": "1", "selection": ["1-A"]})
    assert r.status_code == 409


def test_start_unknown_exam(client):
    assert client.post("/exams/missing/start").status_code == 404


def test_start_exam_renders_current_question(client):
    r = client.post("/exams/exam-1/start", json={"mode": "practice"})

    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "active"
    assert body["mode"] == "practice"
    assert body["currentQuestion"]["html"] == "<p>Question 1?</p>\n"
    assert [option["id"] for option in body["currentQuestion"]["options"]] == ["1-A", "1-B", "1-C", "1-D"]
    assert body["currentQuestion"]["correctAnswers"] is None
    assert body["progress"] == {"answered": 0, "total": 10, "percentage": 0.0}


def test_answer_flag_and_navigate(client):
    client.post("/exams/exam-1/start", json={"mode": "practice"})

    r = client.post("/session/answer", json={"questionId": "1", "selection": ["1-B"]})
    assert r.status_code == 200
    body = r.json()
    assert body["answers"] == {"1": ["1-B"]}
    assert body["currentQuestion"]["correctAnswers"] == ["1-B"]
    assert body["navigation"][0]["isCorrect"] is True

    body = client.post("/session/flag", json={"questionId": "1"}).json()
    assert body["flaggedQuestions"] == ["1"]

    body = client.post("/session/navigate", json={"direction": "next"}).json()
    assert body["currentQuestionIndex"] == 1

    body = client.post("/session/navigate", json={"index": 42}).json()
    assert body["currentQuestionIndex"] == 9


def test_invalid_requests_are_rejected(client):
    client.post("/exams/mixed/start")

    assert client.post("/session/answer", json={"questionId": "1", "selection": ["1-A", "1-B"]}).status_code == 422
    assert client.post("/session/answer", json={"questionId": "7", "selection": []}).status_code == 422
    assert client.post("/session/navigate", json={}).status_code == 422
    assert client.post("/session/navigate", json={"direction": "sideways"}).status_code == 422


def test_undo_and_redo(client):
    client.post("/exams/exam-1/start")
    client.post("/session/answer", json={"questionId": "1", "selection": ["1-A"]})
    client.post("/session/answer", json={"questionId": "1", "selection": ["1-C"]})

    undo = client.post("/session/undo").json()
    assert undo["applied"] is True
    assert undo["session"]["answers"] == {"1": ["1-A"]}
    assert undo["session"]["canRedo"] is True

    redo = client.post("/session/redo").json()
    assert redo["session"]["answers"] == {"1": ["1-C"]}
    assert client.post("/session/redo").json()["applied"] is False


def test_submit_and_results(client, scheduler):
    client.post("/exams/mixed/start")
    client.post("/session/answer", json={"questionId": "1", "selection": ["1-A"]})
    client.post("/session/answer", json={"questionId": "2", "selection": ["2-B", "2-D"]})
    client.post("/session/answer", json={"questionId": "3", "selection": ["3-C"]})
    asyncio.run(scheduler.advance_async(60))

    r = client.post("/session/submit")
    assert r.status_code == 200
    result = r.json()
    assert result["percentage"] == 100.0
    assert result["passStatus"]["grade"] == "A"
    assert result["analytics"]["accuracyByType"] == {"MCQ": 100.0, "MCMA": 100.0}

    assert client.post("/session/submit").json()["resultId"] == result["resultId"]
    assert client.post("/session/answer", json={"questionId": "1", "selection": ["1-B"]}).status_code == 409

    results = client.get("/results", params={"examId": "mixed", "sortBy": "score"}).json()
    assert [item["resultId"] for item in results] == [result["resultId"]]
    assert client.get("/results", params={"q": "nothing"}).json() == []

    stats = client.get("/results/stats").json()
    assert stats["totalAttempts"] == 1
    assert stats["passRate"] == 100.0


def test_preferences(client):
    assert client.get("/preferences").json()["theme"] == "system"

    r = client.put("/preferences", json={"theme": "dark", "showTimer": False})
    assert r.status_code == 200
    assert r.json()["theme"] == "dark"
    assert r.json()["showTimer"] is False

    assert client.put("/preferences", json={"theme": "neon"}).status_code == 422


def test_storage_endpoints(client):
    client.put("/preferences", json={"theme": "dark"})

    usage = client.get("/storage/usage").json()
    assert usage["used"] > 0
    assert usage["breakdown"]["preferences"] > 0

    assert client.post("/storage/repair").json()["isHealthy"] is True

    backup = client.get("/storage/backup")
    assert backup.status_code == 200
    client.put("/preferences", json={"theme": "light"})

    assert client.post("/storage/restore", content=backup.text).json() == {"restored": True}
    assert client.get("/preferences").json()["theme"] == "dark"
    assert client.post("/storage/restore", content="not a backup").status_code == 500


def test_connectivity(client):
    r = client.post("/connectivity", json={"online": False})
    assert r.json()["isOnline"] is False
    assert r.json()["connectionStatus"] == "offline"

    client.post("/exams/exam-1/start")
    client.post("/session/answer", json={"questionId": "1", "selection": ["1-A"]})
    sync = client.get("/sync").json()
    assert sync["pendingCount"] == 1
    assert sync["queue"]["pendingActions"][0]["type"] == "answer"

    r = client.post("/connectivity", json={"online": True})
    assert r.json()["delivered"] == 1
    assert r.json()["syncStatus"] == "synced"


def test_timer_pause_and_resume(client):
    assert client.post("/session/pause").status_code == 409

    client.post("/exams/exam-1/start")

    assert client.post("/session/pause").json()["timer"]["status"] == "paused"
    assert client.post("/session/resume").json()["timer"]["status"] == "running"


def test_results_export_and_delete(client, scheduler):
    client.post("/exams/mixed/start")
    client.post("/session/answer", json={"questionId": "3", "selection": ["3-C"]})
    asyncio.run(scheduler.advance_async(30))
    result_id = client.post("/session/submit").json()["resultId"]

    csv_export = client.get("/results/export", params={"format": "csv"})
    assert csv_export.headers["content-type"].startswith("text/csv")
    assert csv_export.text.splitlines()[1].startswith("mixed,Mixed Exam,")
    assert client.get("/results/export").json()[0]["examId"] == "mixed"
    assert client.get("/results/export", params={"format": "xml"}).status_code == 422

    assert client.delete(f"/results/mixed/{result_id}").json() == {"deleted": True}
    assert client.delete(f"/results/mixed/{result_id}").status_code == 404
    assert client.get("/results").json() == []


def test_clear_pending_actions(client):
    client.post("/connectivity", json={"online": False})
    client.post("/exams/exam-1/start")
    client.post("/session/flag", json={"questionId": "2"})

    r = client.delete("/sync/pending")

    assert r.json()["pendingCount"] == 0
    assert client.get("/sync").json()["queue"]["pendingActions"] == []


def test_abandoned_actions_can_be_retried_and_dismissed(store, scheduler, exam):
    attempts = []

    async def flaky(action) -> bool:
        attempts.append(action.id)
        return len(attempts) > 8

    repository = ExamRepository()
    repository.register(exam)
    manager = QuizManager(store, scheduler, repository, flaky)

    with TestClient(create_api_app(manager)) as client:
        client.post("/exams/exam-1/start")
        client.post("/session/answer", json={"questionId": "1", "selection": ["1-B"]})
        client.post("/session/flag", json={"questionId": "1"})
        asyncio.run(scheduler.advance_async(60))

        sync = client.get("/sync").json()
        assert sync["syncStatus"] == "network_error"
        assert sync["abandonedCount"] == 2
        flag_id = next(a["id"] for a in sync["queue"]["abandonedActions"] if a["type"] == "flag")

        dismissed = client.post("/sync/abandoned/dismiss", json={"actionId": flag_id}).json()
        assert dismissed["dismissed"] == 1
        assert dismissed["abandonedCount"] == 1

        retried = client.post("/sync/abandoned/retry").json()
        assert retried["revived"] == 1
        assert retried["abandonedCount"] == 0
        asyncio.run(scheduler.advance_async(0))

        assert client.get("/sync").json()["syncStatus"] == "synced"
