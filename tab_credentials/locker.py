"""
Named mutex shared by every context of a SharedStorage.

The only cross-context signal is a store mutation, which is broadcast to the other contexts.
Acquiring is "no live record, so write one"; waiting listens for the record's removal with a
timeout fallback. A holder that disappears without releasing leaves a record that becomes
stale after its own timeout: stale records are swept on import, when a manager binds to a
store, and whenever acquire_or_wait finds one.

    lock = DistributedLock("refresh-token", store)
    result = await lock.acquire_or_wait(5000)
    try:
        ...  # one context at a time, unless result is LockResult.TIMED_OUT
    finally:
        lock.release()
"""
import asyncio
import json
import logging
import time
from enum import IntEnum

from tab_credentials.config import CREDENTIAL_RENEW_LOCK_WAIT_MS, LOCK_NAMESPACE
from tab_credentials.storage import StorageContext, StorageEvent, local_storage

logger = logging.getLogger(__name__)

_KEY_PREFIX = f"{LOCK_NAMESPACE}."


class LockResult(IntEnum):
    ACQUIRED = 0
    ACQUIRED_AFTER_WAIT = 1
    # Caller proceeds without the lock
    TIMED_OUT = 2


def lock_key(name: str) -> str:
    return f"{_KEY_PREFIX}{name}"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _parse_record(value: str) -> tuple[int, int] | None:
    """Return (timeout_ms, timestamp_ms) or None if the record is unreadable."""
    try:
        record = json.loads(value)
        return int(record["timeout"]), int(float(record["timestamp"]))
    except (ValueError, TypeError, KeyError, OverflowError):
        # Infinity / 1e400 parse to float inf
        return None


def _is_stale(value: str, now_ms: int) -> bool:
    parsed = _parse_record(value)
    if parsed is None:
        return True
    timeout_ms, timestamp_ms = parsed
    return now_ms > timestamp_ms + timeout_ms


def sweep_stale_locks(store: StorageContext) -> int:
    """Remove every expired or unreadable lock record. Returns how many were removed."""
    now_ms = _now_ms()
    removed = 0
    for key in store.keys():
        if not key.startswith(_KEY_PREFIX):
            continue
        value = store.get(key)
        if value is not None and _is_stale(value, now_ms):
            store.remove(key)
            removed += 1
    if removed:
        logger.info("Swept %s stale lock record(s)", removed)
    return removed


class DistributedLock:
    """
    Cooperative mutex: release() does not check ownership and callers are trusted to pair
    acquire_or_wait() with release().
    """

    def __init__(
        self,
        name: str,
        store: StorageContext | None = None,
        *,
        default_timeout_ms: int = CREDENTIAL_RENEW_LOCK_WAIT_MS,
    ):
        self.name = name
        self.key = lock_key(name)
        self.default_timeout_ms = default_timeout_ms
        self._store = store if store is not None else local_storage()

    def is_held(self) -> bool:
        """True if a live record exists. A stale record is removed on the way."""
        value = self._store.get(self.key)
        if value is None:
            return False
        if _is_stale(value, _now_ms()):
            logger.info("Lock %s: removing stale record", self.name)
            self._store.remove(self.key)
            return False
        return True

    def _take(self, timeout_ms: int) -> None:
        self._store.set(self.key, json.dumps({"timeout": timeout_ms, "timestamp": _now_ms()}))

    async def acquire_or_wait(self, timeout_ms: int | None = None) -> LockResult:
        if timeout_ms is None:
            timeout_ms = self.default_timeout_ms
        if not self.is_held():
            self._take(timeout_ms)
            return LockResult.ACQUIRED

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        logger.debug("Lock %s is held; waiting up to %sms", self.name, timeout_ms)
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0 or not await self._wait_for_removal(remaining):
                logger.warning("Lock %s: gave up waiting after %sms", self.name, timeout_ms)
                return LockResult.TIMED_OUT
            # Another waiter may have taken it between the removal and now
            if not self.is_held():
                self._take(timeout_ms)
                return LockResult.ACQUIRED_AFTER_WAIT

    async def _wait_for_removal(self, timeout_s: float) -> bool:
        """True if the record was removed within timeout_s, False on timeout."""
        removed = asyncio.get_running_loop().create_future()

        def on_change(event: StorageEvent) -> None:
            if event.new_value is None and event.key in (self.key, None) and not removed.done():
                removed.set_result(None)

        unsubscribe = self._store.subscribe(on_change, own_changes=True)
        try:
            await asyncio.wait_for(removed, timeout_s)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            unsubscribe()

    def release(self) -> None:
        self._store.remove(self.key)

    async def __aenter__(self) -> LockResult:
        return await self.acquire_or_wait()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


sweep_stale_locks(local_storage())
