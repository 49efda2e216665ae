from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json

import httpx

from exam_practice.core.models import ActionType, PendingAction
from exam_practice.core.sync_client import HttpActionSender, acknowledge_locally

SYNC_URL = "https://sync.example.test/actions"


def make_action() -> PendingAction:
    return PendingAction(
        id="1704067200000-abc",
        type=ActionType.ANSWER,
        data={"examId": "exam-1", "questionId": "1", "selection": ["1-B"]},
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def make_sender(handler) -> HttpActionSender:
    return HttpActionSender(SYNC_URL, timeout=1.0, transport=httpx.MockTransport(handler))


def test_success_response_counts_as_delivered():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(204)

    assert asyncio.run(make_sender(handler)(make_action())) is True

    assert len(requests) == 1
    assert requests[0].method == "POST"
    assert str(requests[0].url) == SYNC_URL
    body = json.loads(requests[0].content)
    assert body["id"] == "1704067200000-abc"
    assert body["type"] == "answer"
    assert body["retryCount"] == 0
    assert body["data"]["selection"] == ["1-B"]


def test_error_status_is_not_delivered():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "maintenance"})

    assert asyncio.run(make_sender(handler)(make_action())) is False


def test_transport_failure_is_not_delivered():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert asyncio.run(make_sender(handler)(make_action())) is False


def test_local_acknowledgement_accepts_everything():
    assert asyncio.run(acknowledge_locally(make_action())) is True
