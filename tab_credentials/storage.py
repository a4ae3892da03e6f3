"""
Shared key/value store with change notifications, modelled on browser localStorage.
One SharedStorage is the origin-wide data; each execution context (tab) opens a
StorageContext on it. Mutations are broadcast to the listeners of every other context.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageEvent:
    """key is None when the whole store was cleared."""

    key: str | None
    old_value: str | None
    new_value: str | None


Listener = Callable[[StorageEvent], None]


class SharedStorage:
    """Origin-wide backing data. Contexts never touch _items directly."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}
        self._contexts: list["StorageContext"] = []

    def open_context(self) -> "StorageContext":
        ctx = StorageContext(self)
        self._contexts.append(ctx)
        return ctx

    def _detach(self, ctx: "StorageContext") -> None:
        if ctx in self._contexts:
            self._contexts.remove(ctx)

    def _broadcast(self, source: "StorageContext", event: StorageEvent) -> None:
        for ctx in list(self._contexts):
            ctx._deliver(event, own=ctx is source)


class StorageContext:
    """
    One execution context's view of a SharedStorage.
    get/set/remove are synchronous. subscribe() registers a listener for changes made by
    other contexts; pass own_changes=True to also receive this context's own changes.
    """

    def __init__(self, shared: SharedStorage):
        self._shared = shared
        self._listeners: list[tuple[Listener, bool]] = []
        self._closed = False

    def get(self, key: str) -> str | None:
        return self._shared._items.get(key)

    def set(self, key: str, value: str) -> None:
        old = self._shared._items.get(key)
        self._shared._items[key] = value
        if old != value:
            self._shared._broadcast(self, StorageEvent(key, old, value))

    def remove(self, key: str) -> None:
        old = self._shared._items.pop(key, None)
        if old is not None:
            self._shared._broadcast(self, StorageEvent(key, old, None))

    def clear(self) -> None:
        if not self._shared._items:
            return
        self._shared._items.clear()
        self._shared._broadcast(self, StorageEvent(None, None, None))

    def keys(self) -> list[str]:
        return list(self._shared._items)

    def __len__(self) -> int:
        return len(self._shared._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def subscribe(self, listener: Listener, *, own_changes: bool = False) -> Callable[[], None]:
        """Register listener; returns a callable that unsubscribes it (safe to call twice)."""
        entry = (listener, own_changes)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def close(self) -> None:
        """Detach from the shared store; this context stops receiving notifications."""
        self._listeners.clear()
        self._shared._detach(self)
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: StorageEvent, *, own: bool) -> None:
        for listener, own_changes in list(self._listeners):
            if own and not own_changes:
                continue
            try:
                listener(event)
            except Exception:
                logger.exception("Storage listener failed for key %s", event.key)


_default_shared = SharedStorage()
_default_context: StorageContext | None = None


def local_storage() -> StorageContext:
    """Process default context on the process default SharedStorage."""
    global _default_context
    if _default_context is None or _default_context.closed:
        _default_context = _default_shared.open_context()
    return _default_context
