"""Queue of user actions awaiting delivery to the sync target.

Actions are retried with exponential backoff. Once the retry budget is
spent an action is moved to the abandoned list, which is persisted and
reported so it can be retried or dismissed explicitly.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from functools import partial
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from pydantic import ValidationError

from exam_practice.constants.network_constants import (
    MAX_RETRY_ATTEMPTS,
    PERIODIC_SYNC_INTERVAL_SECONDS,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
    STARTUP_SYNC_DELAY_SECONDS,
)
from exam_practice.constants.storage_constants import OFFLINE_STATE_KEY
from exam_practice.core.models import ActionStatus, ActionType, PendingAction, StorageErrorType
from exam_practice.core.records import OfflineStateRecord, PendingActionRecord
from exam_practice.core.scheduling import ScheduledTask, Scheduler
from exam_practice.core.services.durable_store import DurableStore
from exam_practice.utils.observable import Observable

logger = logging.getLogger(__name__)

ProcessAction = Callable[[PendingAction], Awaitable[bool]]


@dataclass(slots=True, frozen=True)
class QueueStatus:
    is_online: bool
    pending_count: int
    abandoned_count: int
    last_sync_time: datetime | None
    sync_status: str


class OfflineActionQueue:
    def __init__(
        self,
        store: DurableStore,
        scheduler: Scheduler,
        process_action: ProcessAction,
        *,
        max_retries: int = MAX_RETRY_ATTEMPTS,
        retry_base_delay: float = RETRY_BASE_DELAY_SECONDS,
        retry_max_delay: float = RETRY_MAX_DELAY_SECONDS,
        sync_interval: float = PERIODIC_SYNC_INTERVAL_SECONDS,
        online: bool = True,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._process_action = process_action
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._sync_interval = sync_interval
        self._online = online
        self._pending: dict[str, PendingAction] = {}
        self._abandoned: list[PendingAction] = []
        self._retry_timers: dict[str, ScheduledTask] = {}
        self._periodic_sync: ScheduledTask | None = None
        self._startup_sync: ScheduledTask | None = None
        self._last_sync_time: datetime | None = None
        self._changes: Observable[QueueStatus] = Observable("offline queue")

    # --- Lifecycle ---

    def start(self) -> None:
        """Load the persisted queue and arm the periodic sync."""
        self.stop()
        self._load()
        self._periodic_sync = self._scheduler.call_every(self._sync_interval, self._periodic_tick)
        if self._online and self._pending:
            self._startup_sync = self._scheduler.call_later(STARTUP_SYNC_DELAY_SECONDS, self.sync)
        logger.info(
            "Offline queue started with %d pending and %d abandoned action(s)",
            len(self._pending),
            len(self._abandoned),
        )

    def stop(self) -> None:
        for task in (self._periodic_sync, self._startup_sync, *self._retry_timers.values()):
            if task is not None:
                task.cancel()
        self._periodic_sync = None
        self._startup_sync = None
        self._retry_timers.clear()
        for action in self._pending.values():
            if action.status is ActionStatus.RETRY_SCHEDULED:
                action.status = ActionStatus.PENDING

    # --- Enqueueing ---

    async def add_pending_action(self, action_type: ActionType, data: Any) -> PendingAction:
        """Enqueue an action and, when online, try to deliver it right away."""
        action = self._enqueue(action_type, data)
        if self._online:
            await self._attempt(action.id)
        return action

    def queue_action(self, action_type: ActionType, data: Any) -> PendingAction:
        """Enqueue without waiting; the first delivery attempt runs on the scheduler."""
        action = self._enqueue(action_type, data)
        if self._online:
            self._arm(action.id, 0.0)
        return action

    def _enqueue(self, action_type: ActionType, data: Any) -> PendingAction:
        now = self._scheduler.now()
        action = PendingAction(
            id=f"{int(now.timestamp() * 1000)}-{uuid4().hex[:9]}",
            type=action_type,
            data=data,
            timestamp=now,
        )
        self._pending[action.id] = action
        self._save()
        self._notify()
        return action

    # --- Delivery ---

    async def sync(self) -> int:
        """Attempt every pending action concurrently; returns how many were delivered."""
        if not self._online or not self._pending:
            return 0
        candidates = [
            action_id
            for action_id, action in self._pending.items()
            if action.status is not ActionStatus.PROCESSING
        ]
        logger.info("Syncing %d pending action(s)", len(candidates))
        results = await asyncio.gather(
            *(self._attempt(action_id) for action_id in candidates),
            return_exceptions=True,
        )
        delivered = 0
        for action_id, outcome in zip(candidates, results):
            if isinstance(outcome, BaseException):
                logger.error("Sync of action %s failed unexpectedly", action_id, exc_info=outcome)
            elif outcome:
                delivered += 1
        self._last_sync_time = self._scheduler.now()
        self._save()
        self._notify()
        return delivered

    async def _attempt(self, action_id: str) -> bool:
        action = self._pending.get(action_id)
        if action is None or action.status is ActionStatus.PROCESSING:
            return False

        action.status = ActionStatus.PROCESSING
        error: str | None = None
        try:
            delivered = await self._process_action(action)
        except Exception as exc:
            logger.warning("Processing action %s raised: %s", action_id, exc)
            delivered = False
            error = str(exc) or exc.__class__.__name__

        if self._pending.get(action_id) is not action:
            # Removed or cleared while in flight.
            return delivered

        if delivered:
            del self._pending[action_id]
            self._cancel_timer(action_id)
            logger.debug("Delivered action %s (%s)", action_id, action.type.value)
        else:
            action.last_error = error or "Action was not acknowledged"
            self._schedule_retry(action)
        self._save()
        self._notify()
        return delivered

    def _schedule_retry(self, action: PendingAction) -> None:
        if action.retry_count >= self._max_retries:
            self._abandon(action)
            return
        delay = min(self._retry_base_delay * 2 ** action.retry_count, self._retry_max_delay)
        action.status = ActionStatus.RETRY_SCHEDULED
        self._arm(action.id, delay)
        logger.debug("Retrying action %s in %.1fs", action.id, delay)

    def _arm(self, action_id: str, delay: float) -> None:
        self._cancel_timer(action_id)
        self._retry_timers[action_id] = self._scheduler.call_later(
            delay, partial(self._run_retry, action_id, delay > 0)
        )

    async def _run_retry(self, action_id: str, counts_as_retry: bool) -> None:
        self._retry_timers.pop(action_id, None)
        action = self._pending.get(action_id)
        if action is None or action.status is ActionStatus.PROCESSING:
            return
        if not self._online:
            action.status = ActionStatus.PENDING
            self._save()
            self._notify()
            return
        if counts_as_retry:
            action.retry_count += 1
        await self._attempt(action_id)

    def _abandon(self, action: PendingAction) -> None:
        self._cancel_timer(action.id)
        self._pending.pop(action.id, None)
        action.status = ActionStatus.ABANDONED
        self._abandoned.append(action)
        attempts = action.retry_count + 1
        logger.warning(
            "Abandoning action %s (%s) after %d attempt(s): %s",
            action.id,
            action.type.value,
            attempts,
            action.last_error,
        )
        self._store.report_error(
            StorageErrorType.NETWORK_ERROR,
            f"Action {action.id} ({action.type.value}) could not be delivered after {attempts} attempts",
            recoverable=True,
        )

    def _periodic_tick(self) -> Awaitable[int] | None:
        if self._online and self._pending:
            return self.sync()
        return None

    # --- Connectivity ---

    async def handle_online(self) -> int:
        logger.info("Connection restored, syncing pending actions")
        self._online = True
        self._notify()
        return await self.sync()

    def handle_offline(self) -> None:
        logger.info("Connection lost, entering offline mode")
        self._online = False
        self._notify()

    # --- Maintenance ---

    def clear_pending(self) -> None:
        """Drop every pending action and its retry timer."""
        for action_id in list(self._retry_timers):
            self._cancel_timer(action_id)
        dropped = len(self._pending)
        self._pending.clear()
        logger.info("Cleared %d pending action(s)", dropped)
        self._save()
        self._notify()

    def remove_pending_action(self, action_id: str) -> bool:
        self._cancel_timer(action_id)
        if self._pending.pop(action_id, None) is None:
            return False
        self._save()
        self._notify()
        return True

    def retry_abandoned(self, action_id: str | None = None) -> int:
        """Put abandoned actions back in the queue with a fresh retry budget."""
        revived = [a for a in self._abandoned if action_id is None or a.id == action_id]
        if not revived:
            return 0
        self._abandoned = [a for a in self._abandoned if a not in revived]
        for action in revived:
            action.retry_count = 0
            action.status = ActionStatus.PENDING
            action.last_error = None
            self._pending[action.id] = action
            if self._online:
                self._arm(action.id, 0.0)
        self._save()
        self._notify()
        return len(revived)

    def dismiss_abandoned(self, action_id: str | None = None) -> int:
        before = len(self._abandoned)
        self._abandoned = [a for a in self._abandoned if action_id is not None and a.id != action_id]
        dismissed = before - len(self._abandoned)
        if dismissed:
            self._save()
            self._notify()
        return dismissed

    # --- Views ---

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def last_sync_time(self) -> datetime | None:
        return self._last_sync_time

    def pending_actions(self) -> list[PendingAction]:
        return list(self._pending.values())

    def abandoned_actions(self) -> list[PendingAction]:
        return list(self._abandoned)

    def sync_status(self) -> str:
        if not self._online:
            return "offline"
        if self._abandoned:
            return "network_error"
        return "pending" if self._pending else "synced"

    def connection_status(self) -> str:
        return "online" if self._online else "offline"

    def status(self) -> QueueStatus:
        return QueueStatus(
            is_online=self._online,
            pending_count=len(self._pending),
            abandoned_count=len(self._abandoned),
            last_sync_time=self._last_sync_time,
            sync_status=self.sync_status(),
        )

    def export_pending(self) -> dict[str, Any]:
        data = self._record().to_json_dict()
        data["isOnline"] = self._online
        data["exportedAt"] = self._scheduler.now().isoformat()
        return data

    def subscribe(self, listener: Callable[[QueueStatus], None]) -> Callable[[], None]:
        return self._changes.subscribe(listener)

    # --- Persistence ---

    def _record(self) -> OfflineStateRecord:
        return OfflineStateRecord(
            pending_actions=[PendingActionRecord.from_action(a) for a in self._pending.values()],
            abandoned_actions=[PendingActionRecord.from_action(a) for a in self._abandoned],
            last_sync_time=self._last_sync_time,
        )

    def _save(self) -> None:
        self._store.write(OFFLINE_STATE_KEY, self._record().to_json_dict())

    def _load(self) -> None:
        self._pending = {}
        self._abandoned = []
        self._last_sync_time = None
        data = self._store.read(OFFLINE_STATE_KEY)
        if data is None:
            return
        try:
            record = OfflineStateRecord.model_validate(data)
        except ValidationError as exc:
            logger.warning("Ignoring unreadable offline queue state: %s", exc)
            return
        for item in record.pending_actions:
            action = item.to_action()
            action.status = ActionStatus.PENDING
            self._pending[action.id] = action
        self._abandoned = [item.to_action() for item in record.abandoned_actions]
        self._last_sync_time = record.last_sync_time

    def _cancel_timer(self, action_id: str) -> None:
        task = self._retry_timers.pop(action_id, None)
        if task is not None:
            task.cancel()

    def _notify(self) -> None:
        self._changes.emit(self.status())
