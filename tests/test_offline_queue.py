from __future__ import annotations

import asyncio

import pytest

from exam_practice.core.models import ActionStatus, ActionType, StorageErrorType
from exam_practice.core.services.offline_queue import OfflineActionQueue


class FakeTarget:
    """Records delivery attempts and fails the first ``failures`` of them."""

    def __init__(self, failures: int = 0, raise_errors: bool = False) -> None:
        self.failures = failures
        self.raise_errors = raise_errors
        self.attempts: list[str] = []

    async def __call__(self, action) -> bool:
        self.attempts.append(action.id)
        if len(self.attempts) <= self.failures:
            if self.raise_errors:
                raise ConnectionError("sync target unreachable")
            return False
        return True


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()


def make_queue(store, scheduler, target, **kwargs) -> OfflineActionQueue:
    return OfflineActionQueue(store, scheduler, target, **kwargs)


def test_online_action_is_delivered_immediately(store, scheduler, target):
    queue = make_queue(store, scheduler, target)

    async def scenario():
        await queue.add_pending_action(ActionType.ANSWER, {"questionId": "1"})

    asyncio.run(scenario())

    assert len(target.attempts) == 1
    assert queue.pending_count == 0
    assert queue.sync_status() == "synced"


def test_failed_action_is_abandoned_after_backoff(store, scheduler):
    target = FakeTarget(failures=10)
    queue = make_queue(store, scheduler, target)
    errors = []
    store.on_error(errors.append)

    async def scenario():
        action = await queue.add_pending_action(ActionType.SUBMIT, {"examId": "exam-1"})
        assert len(target.attempts) == 1
        assert queue.pending_actions()[0].status is ActionStatus.RETRY_SCHEDULED

        await scheduler.advance_async(0.5)
        assert len(target.attempts) == 1
        await scheduler.advance_async(0.5)
        assert len(target.attempts) == 2

        await scheduler.advance_async(1.5)
        assert len(target.attempts) == 2
        await scheduler.advance_async(0.5)
        assert len(target.attempts) == 3

        await scheduler.advance_async(3.5)
        assert len(target.attempts) == 3
        await scheduler.advance_async(0.5)
        assert len(target.attempts) == 4
        return action

    action = asyncio.run(scenario())

    assert queue.pending_count == 0
    abandoned = queue.abandoned_actions()
    assert [a.id for a in abandoned] == [action.id]
    assert abandoned[0].status is ActionStatus.ABANDONED
    assert abandoned[0].retry_count == 3
    assert errors[-1].type is StorageErrorType.NETWORK_ERROR

    asyncio.run(scheduler.advance_async(60))
    assert len(target.attempts) == 4


def test_retry_delay_is_capped(store, scheduler):
    target = FakeTarget(failures=10)
    queue = make_queue(store, scheduler, target, max_retries=10, retry_max_delay=3.0)

    async def scenario():
        await queue.add_pending_action(ActionType.FLAG, {})
        await scheduler.advance_async(1)
        assert len(target.attempts) == 2
        await scheduler.advance_async(2)
        assert len(target.attempts) == 3
        for expected in range(4, 7):
            await scheduler.advance_async(3)
            assert len(target.attempts) == expected

    asyncio.run(scenario())


def test_exceptions_from_target_count_as_failures(store, scheduler):
    target = FakeTarget(failures=1, raise_errors=True)
    queue = make_queue(store, scheduler, target)

    async def scenario():
        await queue.add_pending_action(ActionType.ANSWER, {})
        assert queue.pending_actions()[0].last_error == "sync target unreachable"
        await scheduler.advance_async(1)

    asyncio.run(scenario())

    assert len(target.attempts) == 2
    assert queue.pending_count == 0


def test_offline_action_stays_pending(store, scheduler, target):
    queue = make_queue(store, scheduler, target, online=False)
    queue.start()

    async def scenario():
        await queue.add_pending_action(ActionType.ANSWER, {"questionId": "1"})
        await scheduler.advance_async(3600)

    asyncio.run(scenario())

    assert target.attempts == []
    assert queue.pending_count == 1
    assert queue.pending_actions()[0].status is ActionStatus.PENDING
    assert queue.abandoned_actions() == []
    assert queue.sync_status() == "offline"


def test_going_online_syncs_everything(store, scheduler, target):
    queue = make_queue(store, scheduler, target, online=False)

    async def scenario():
        for index in range(3):
            await queue.add_pending_action(ActionType.NAVIGATION, {"index": index})
        return await queue.handle_online()

    delivered = asyncio.run(scenario())

    assert delivered == 3
    assert queue.pending_count == 0
    assert queue.last_sync_time == scheduler.now()
    assert queue.connection_status() == "online"


def test_sync_reschedules_each_failure(store, scheduler):
    target = FakeTarget(failures=2)
    queue = make_queue(store, scheduler, target, online=False)

    async def scenario():
        for index in range(3):
            await queue.add_pending_action(ActionType.ANSWER, {"index": index})
        delivered = await queue.handle_online()
        assert delivered == 1
        assert queue.pending_count == 2
        await scheduler.advance_async(1)

    asyncio.run(scenario())

    assert queue.pending_count == 0
    assert len(target.attempts) == 5


def test_going_offline_only_flips_the_flag(store, scheduler, target):
    queue = make_queue(store, scheduler, target)

    queue.handle_offline()

    assert queue.is_online is False
    assert queue.pending_count == 0
    assert target.attempts == []


def test_retry_while_offline_waits_for_connection(store, scheduler):
    target = FakeTarget(failures=1)
    queue = make_queue(store, scheduler, target)

    async def scenario():
        await queue.add_pending_action(ActionType.ANSWER, {})
        queue.handle_offline()
        await scheduler.advance_async(10)
        assert queue.pending_actions()[0].status is ActionStatus.PENDING
        assert queue.pending_actions()[0].retry_count == 0
        await queue.handle_online()

    asyncio.run(scenario())

    assert queue.pending_count == 0
    assert len(target.attempts) == 2


def test_periodic_sync_delivers_pending_actions(store, scheduler):
    target = FakeTarget(failures=1)
    queue = make_queue(store, scheduler, target, retry_base_delay=100)
    queue.start()

    async def scenario():
        await queue.add_pending_action(ActionType.ANSWER, {})
        await scheduler.advance_async(30)

    asyncio.run(scenario())

    assert queue.pending_count == 0
    assert len(target.attempts) == 2
    assert queue.last_sync_time == scheduler.now()


def test_queue_action_attempts_on_scheduler(store, scheduler, target):
    queue = make_queue(store, scheduler, target)

    queue.queue_action(ActionType.FLAG, {"questionId": "2"})
    assert queue.pending_count == 1

    asyncio.run(scheduler.advance_async(0))

    assert queue.pending_count == 0
    assert len(target.attempts) == 1


def test_clear_pending_cancels_retries(store, scheduler):
    target = FakeTarget(failures=10)
    queue = make_queue(store, scheduler, target)

    async def scenario():
        await queue.add_pending_action(ActionType.ANSWER, {})
        await queue.add_pending_action(ActionType.FLAG, {})
        queue.clear_pending()
        await scheduler.advance_async(60)

    asyncio.run(scenario())

    assert queue.pending_count == 0
    assert len(target.attempts) == 2
    assert scheduler.pending_count == 0


def test_abandoned_action_can_be_retried(store, scheduler):
    target = FakeTarget(failures=4)
    queue = make_queue(store, scheduler, target)

    async def scenario():
        await queue.add_pending_action(ActionType.SUBMIT, {})
        await scheduler.advance_async(1 + 2 + 4)
        assert len(queue.abandoned_actions()) == 1
        assert queue.pending_count == 0
        assert queue.retry_abandoned() == 1
        await scheduler.advance_async(0)

    asyncio.run(scenario())

    assert queue.abandoned_actions() == []
    assert queue.pending_count == 0
    assert queue.dismiss_abandoned() == 0


def test_dismiss_abandoned(store, scheduler):
    target = FakeTarget(failures=10)
    queue = make_queue(store, scheduler, target, max_retries=0)

    async def scenario():
        first = await queue.add_pending_action(ActionType.ANSWER, {})
        await queue.add_pending_action(ActionType.FLAG, {})
        return first

    first = asyncio.run(scenario())

    assert queue.dismiss_abandoned(first.id) == 1
    assert len(queue.abandoned_actions()) == 1
    assert queue.dismiss_abandoned() == 1
    assert queue.abandoned_actions() == []


def test_queue_state_survives_restart(store, scheduler, target):
    queue = make_queue(store, scheduler, target, online=False)
    asyncio.run(queue.add_pending_action(ActionType.ANSWER, {"questionId": "7"}))

    restarted = make_queue(store, scheduler, target, online=False)
    restarted.start()

    pending = restarted.pending_actions()
    assert [action.data for action in pending] == [{"questionId": "7"}]
    assert pending[0].status is ActionStatus.PENDING


def test_startup_sync_runs_shortly_after_start(store, scheduler, target):
    offline = make_queue(store, scheduler, target, online=False)
    asyncio.run(offline.add_pending_action(ActionType.ANSWER, {}))

    queue = make_queue(store, scheduler, target)
    queue.start()
    asyncio.run(scheduler.advance_async(1))

    assert queue.pending_count == 0
    assert len(target.attempts) == 1


def test_remove_pending_action(store, scheduler, target):
    queue = make_queue(store, scheduler, target, online=False)
    action = asyncio.run(queue.add_pending_action(ActionType.ANSWER, {}))

    assert queue.remove_pending_action(action.id) is True
    assert queue.remove_pending_action(action.id) is False
    assert queue.pending_count == 0


def test_export_pending(store, scheduler, target):
    queue = make_queue(store, scheduler, target, online=False)
    asyncio.run(queue.add_pending_action(ActionType.FLAG, {"questionId": "3"}))

    exported = queue.export_pending()

    assert exported["isOnline"] is False
    assert exported["pendingActions"][0]["type"] == "flag"
    assert exported["pendingActions"][0]["retryCount"] == 0


def test_abandoned_actions_are_reported_in_sync_status(store, scheduler):
    target = FakeTarget(failures=10)
    queue = make_queue(store, scheduler, target, max_retries=0)

    asyncio.run(queue.add_pending_action(ActionType.SUBMIT, {}))

    assert queue.pending_count == 0
    assert queue.sync_status() == "network_error"
    assert queue.status().abandoned_count == 1

    queue.dismiss_abandoned()
    assert queue.sync_status() == "synced"


def test_start_discards_actions_missing_from_store(store, scheduler):
    target = FakeTarget(failures=10)
    queue = make_queue(store, scheduler, target, max_retries=0)
    asyncio.run(queue.add_pending_action(ActionType.FLAG, {}))
    queue.handle_offline()
    asyncio.run(queue.add_pending_action(ActionType.ANSWER, {}))
    assert queue.pending_count == 1
    assert len(queue.abandoned_actions()) == 1

    store.remove("offline_state")
    queue.start()

    assert queue.pending_count == 0
    assert queue.abandoned_actions() == []
    assert queue.last_sync_time is None
