"""Delivery of queued actions to the optional remote sync endpoint."""

from __future__ import annotations

import logging

import httpx

from exam_practice.constants.network_constants import SYNC_REQUEST_TIMEOUT_SECONDS
from exam_practice.core.models import PendingAction
from exam_practice.core.records import PendingActionRecord

logger = logging.getLogger(__name__)


class HttpActionSender:
    """Posts each action as JSON; any 2xx response counts as delivered."""

    def __init__(
        self,
        sync_url: str,
        timeout: float = SYNC_REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._sync_url = sync_url
        self._timeout = timeout
        self._transport = transport

    async def __call__(self, action: PendingAction) -> bool:
        payload = PendingActionRecord.from_action(action).to_json_dict()
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._sync_url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Sync request for action %s failed: %s", action.id, exc)
            return False
        if response.is_success:
            return True
        logger.warning("Sync target rejected action %s with status %d", action.id, response.status_code)
        return False


async def acknowledge_locally(action: PendingAction) -> bool:
    """Used when no sync endpoint is configured: log the action and accept it."""
    logger.info("Processed %s action %s locally", action.type.value, action.id)
    return True
