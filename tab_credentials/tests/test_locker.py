"""Tests for the storage-backed DistributedLock."""
import asyncio
import json
import time

import pytest

from tab_credentials.locker import DistributedLock, LockResult, lock_key, sweep_stale_locks


def _record(timeout_ms: int, age_ms: int) -> str:
    return json.dumps({"timeout": timeout_ms, "timestamp": int(time.time() * 1000) - age_ms})


@pytest.mark.asyncio
async def test_acquire_free_lock_writes_record(tab, other_tab):
    seen = []
    other_tab.subscribe(seen.append)
    lock = DistributedLock("refresh-token", tab)

    assert await lock.acquire_or_wait(5000) is LockResult.ACQUIRED

    record = json.loads(tab.get("__locker__.refresh-token"))
    assert record["timeout"] == 5000
    assert abs(record["timestamp"] - time.time() * 1000) < 5000
    assert [e.key for e in seen] == ["__locker__.refresh-token"]
    assert lock.is_held()


@pytest.mark.asyncio
async def test_release_is_idempotent(tab):
    lock = DistributedLock("x", tab)
    lock.release()
    await lock.acquire_or_wait(1000)
    lock.release()
    lock.release()
    assert tab.get(lock_key("x")) is None


@pytest.mark.asyncio
async def test_waiter_acquires_after_other_context_releases(tab, other_tab):
    holder = DistributedLock("refresh-token", tab)
    waiter = DistributedLock("refresh-token", other_tab)
    assert await holder.acquire_or_wait(5000) is LockResult.ACQUIRED

    waiting = asyncio.create_task(waiter.acquire_or_wait(5000))
    await asyncio.sleep(0.02)
    assert not waiting.done()

    started = time.monotonic()
    holder.release()
    assert await waiting is LockResult.ACQUIRED_AFTER_WAIT
    assert time.monotonic() - started < 0.5
    # The waiter now holds the record itself
    assert tab.get("__locker__.refresh-token") is not None


@pytest.mark.asyncio
async def test_waiter_times_out_when_never_released(tab, other_tab):
    await DistributedLock("refresh-token", tab).acquire_or_wait(5000)
    waiter = DistributedLock("refresh-token", other_tab)

    started = time.monotonic()
    assert await waiter.acquire_or_wait(50) is LockResult.TIMED_OUT
    assert time.monotonic() - started >= 0.045
    # listener removed after the wait
    assert other_tab._listeners == []


@pytest.mark.asyncio
async def test_same_context_second_acquire_waits_for_release(tab):
    first = DistributedLock("job", tab)
    second = DistributedLock("job", tab)
    assert await first.acquire_or_wait(5000) is LockResult.ACQUIRED

    waiting = asyncio.create_task(second.acquire_or_wait(5000))
    await asyncio.sleep(0.02)
    assert not waiting.done()
    first.release()
    assert await waiting is LockResult.ACQUIRED_AFTER_WAIT


@pytest.mark.asyncio
async def test_only_one_waiter_wins_a_release(shared, tab):
    await DistributedLock("job", tab).acquire_or_wait(5000)
    b = DistributedLock("job", shared.open_context())
    c = DistributedLock("job", shared.open_context())

    results = asyncio.gather(b.acquire_or_wait(200), c.acquire_or_wait(200))
    await asyncio.sleep(0.02)
    DistributedLock("job", tab).release()

    assert sorted(await results) == [LockResult.ACQUIRED_AFTER_WAIT, LockResult.TIMED_OUT]


@pytest.mark.asyncio
async def test_release_of_other_lock_name_does_not_wake_waiter(tab, other_tab):
    await DistributedLock("a", tab).acquire_or_wait(5000)
    await DistributedLock("b", tab).acquire_or_wait(5000)

    waiting = asyncio.create_task(DistributedLock("a", other_tab).acquire_or_wait(100))
    await asyncio.sleep(0.02)
    DistributedLock("b", tab).release()
    assert await waiting is LockResult.TIMED_OUT


@pytest.mark.asyncio
async def test_stale_record_is_treated_as_absent(tab):
    """Abandoned lock: holder never released and its timeout has passed."""
    tab.set(lock_key("refresh-token"), _record(timeout_ms=1000, age_ms=5000))
    lock = DistributedLock("refresh-token", tab)
    assert await lock.acquire_or_wait(1000) is LockResult.ACQUIRED
    assert json.loads(tab.get(lock_key("refresh-token")))["timeout"] == 1000


@pytest.mark.asyncio
async def test_unreadable_record_is_treated_as_absent(tab):
    tab.set(lock_key("job"), "not json")
    assert await DistributedLock("job", tab).acquire_or_wait(1000) is LockResult.ACQUIRED


@pytest.mark.parametrize(
    "record",
    [
        '{"timeout": Infinity, "timestamp": 1}',
        '{"timeout": 1000, "timestamp": 1e400}',
        '{"timeout": NaN, "timestamp": 1}',
        "[1, 2]",
    ],
)
@pytest.mark.asyncio
async def test_non_finite_or_oddly_shaped_record_is_treated_as_absent(tab, record):
    tab.set(lock_key("job"), record)
    assert await DistributedLock("job", tab).acquire_or_wait(1000) is LockResult.ACQUIRED
    assert json.loads(tab.get(lock_key("job")))["timeout"] == 1000


@pytest.mark.parametrize(
    "record",
    ['{"timeout": Infinity, "timestamp": 1}', '{"timeout": 1000, "timestamp": 1e400}'],
)
def test_sweep_removes_non_finite_records(tab, record):
    tab.set(lock_key("job"), record)
    assert sweep_stale_locks(tab) == 1
    assert tab.get(lock_key("job")) is None


def test_sweep_removes_only_stale_lock_records(tab):
    tab.set(lock_key("old"), _record(timeout_ms=100, age_ms=10_000))
    tab.set(lock_key("broken"), "{")
    tab.set(lock_key("live"), _record(timeout_ms=60_000, age_ms=10))
    tab.set("accessToken", "unrelated")

    assert sweep_stale_locks(tab) == 2
    assert sorted(tab.keys()) == ["__locker__.live", "accessToken"]


@pytest.mark.asyncio
async def test_async_context_manager_releases(tab):
    lock = DistributedLock("job", tab, default_timeout_ms=1000)
    async with lock as result:
        assert result is LockResult.ACQUIRED
        assert lock.is_held()
    assert not lock.is_held()
