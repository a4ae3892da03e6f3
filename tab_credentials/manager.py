"""
Credential lifecycle for one execution context: keeps the access/renewal pair in the shared
store, renews the access credential when it expires, and serializes renewal across contexts
with the "refresh-token" DistributedLock.

    manager = get_manager()
    manager.initialize(ManagerConfig(refresh=token_endpoint_refresh()))
    if manager.is_logged_in():
        access = await manager.read()

States: unconfigured (only initialize/clear/is_* allowed), logged out (no pair stored),
logged in (pair stored; the access credential may be expired).
"""
import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

from tab_credentials import claims
from tab_credentials.claims import ClaimSet
from tab_credentials.config import (
    ACCESS_KEY,
    CREDENTIAL_RENEW_LOCK_WAIT_MS,
    CREDENTIAL_TIME_SKEW,
    RENEW_LOCK_NAME,
    RENEWAL_KEY,
)
from tab_credentials.errors import InvalidExpiryClaim, MissingRefreshFunction, NotConfigured
from tab_credentials.locker import DistributedLock, LockResult, sweep_stale_locks
from tab_credentials.single_flight import SingleFlight
from tab_credentials.storage import StorageContext, StorageEvent, local_storage

logger = logging.getLogger(__name__)

_RENEW = "renew"

# Mapping keys accepted from refresh(), in lookup order
_ACCESS_FIELDS = ("access_token", "accessToken", "accessCredential", "access")
_RENEWAL_FIELDS = ("refresh_token", "refreshToken", "renewalCredential", "renewal")


def _first_field(value: Mapping, fields: tuple[str, ...]) -> str | None:
    for name in fields:
        if value.get(name):
            return value[name]
    return None


@dataclass
class CredentialPair:
    access: str | None = None
    renewal: str | None = None

    @classmethod
    def coerce(cls, value: Any) -> "CredentialPair":
        """
        Accept a CredentialPair, None, or a mapping using token endpoint (access_token),
        camelCase (accessToken, accessCredential) or short (access) keys.
        A mapping without any access key is rejected rather than read as a logout.
        """
        if value is None:
            return cls()
        if isinstance(value, CredentialPair):
            return value
        if isinstance(value, Mapping):
            if not any(name in value for name in _ACCESS_FIELDS):
                raise TypeError(
                    f"refresh() returned a mapping without an access credential key "
                    f"(expected one of {', '.join(_ACCESS_FIELDS)}): {sorted(value)}"
                )
            return cls(
                access=_first_field(value, _ACCESS_FIELDS),
                renewal=_first_field(value, _RENEWAL_FIELDS),
            )
        raise TypeError(f"refresh() returned {type(value).__name__}, expected CredentialPair or mapping")


RefreshFn = Callable[[str], Awaitable[Any]]
ChangeCallback = Callable[[ClaimSet | None], None]


@dataclass
class ManagerConfig:
    refresh: RefreshFn | None = None
    on_change: ChangeCallback | None = None
    # Seconds; None means CREDENTIAL_TIME_SKEW
    time_skew: int | float | None = None
    # Fire on_change when another context replaces or removes the access credential
    follow_other_contexts: bool = True


def _log_background_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Background renewal failed: %s", exc)


class CredentialManager:
    def __init__(
        self,
        store: StorageContext | None = None,
        *,
        lock_wait_ms: int = CREDENTIAL_RENEW_LOCK_WAIT_MS,
    ):
        self._store = store if store is not None else local_storage()
        self._config: ManagerConfig | None = None
        self._lock = DistributedLock(RENEW_LOCK_NAME, self._store)
        self._lock_wait_ms = lock_wait_ms
        self._flight = SingleFlight()
        self._unsubscribe: Callable[[], None] | None = None
        # Last raw access credential seen and its decoded claims
        self._last_raw = ""
        self._last_decoded: ClaimSet | None = None
        sweep_stale_locks(self._store)

    # --- configuration ---

    def initialize(self, config: ManagerConfig) -> None:
        """
        Set the configuration, then renew in the background if the stored access credential
        has expired, or re-persist the pair and notify with its claims otherwise.
        """
        if config is None or not config.refresh:
            raise MissingRefreshFunction()
        if config.time_skew is None:
            config = replace(config, time_skew=CREDENTIAL_TIME_SKEW)
        self._config = config
        self._follow_other_contexts(config.follow_other_contexts)

        access, renewal, decoded = self._load()
        if decoded is not None and claims.is_expired(decoded.exp, config.time_skew):
            self._renew_in_background()
        else:
            self.write(access, renewal)

    def is_configured(self) -> bool:
        return self._config is not None

    def close(self) -> None:
        """Stop following other contexts. The stored pair is left untouched."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _require_config(self) -> ManagerConfig:
        if self._config is None:
            raise NotConfigured()
        return self._config

    # --- reading ---

    def pair(self) -> CredentialPair:
        access, renewal, _ = self._load()
        return CredentialPair(access=access or None, renewal=renewal or None)

    def is_logged_in(self) -> bool:
        if self._config is None:
            return False
        _, _, decoded = self._load()
        if decoded is None:
            return False
        try:
            return not claims.is_expired(decoded.exp, self._config.time_skew)
        except InvalidExpiryClaim as e:
            logger.warning("Access credential has an unusable exp claim: %s", e)
            return False

    async def read(self) -> str | None:
        """A valid access credential, renewing first if it has expired. None when logged out."""
        config = self._require_config()
        access, _, decoded = self._load()
        if decoded is None:
            return None
        if not claims.is_expired(decoded.exp, config.time_skew):
            return access
        await self.renew()
        access, _, _ = self._load()
        return access or None

    # --- renewal ---

    @property
    def pending_renewal(self) -> asyncio.Task | None:
        return self._flight.pending(_RENEW)

    async def renew(self) -> CredentialPair | None:
        """
        Renew the pair. Concurrent calls share one renewal. Returns the new pair, or None when
        the result is a logout. A failing refresh() logs out and its exception is re-raised.
        """
        self._require_config()
        return await self._flight.run(_RENEW, self._renew_once)

    def _renew_in_background(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; renewal deferred to the next read()")
            return
        task = self._flight.start(_RENEW, self._renew_once)
        task.add_done_callback(_log_background_failure)

    async def _renew_once(self) -> CredentialPair | None:
        config = self._require_config()
        _, renewal, _ = self._load()
        if not renewal:
            logger.info("No renewal credential stored; logging out")
            self.clear()
            return None

        result = await self._lock.acquire_or_wait(self._lock_wait_ms)
        try:
            if result is not LockResult.ACQUIRED:
                # Another context may have renewed (or logged out) while we waited
                access, renewal, decoded = self._load()
                if not renewal:
                    self.clear()
                    return None
                if decoded is not None and not claims.is_expired(decoded.exp, config.time_skew):
                    logger.info("Access credential was renewed by another context")
                    return CredentialPair(access=access, renewal=renewal)

            logger.debug("Renewing access credential (lock: %s)", result.name)
            try:
                response = await config.refresh(renewal)
            except Exception as e:
                logger.warning("Renewal failed, logging out: %s", e)
                self.clear()
                raise
            new_pair = CredentialPair.coerce(response)
            self.write(new_pair.access, new_pair.renewal)
            return new_pair if new_pair.access else None
        finally:
            self._lock.release()

    # --- writing ---

    def write(self, access: str | None, renewal: str | None) -> None:
        """Persist a new pair and notify. An empty access credential is a logout."""
        self._require_config()
        if not access:
            self.clear()
            return
        self._store.set(ACCESS_KEY, access)
        self._store.set(RENEWAL_KEY, renewal or "")
        _, _, decoded = self._load()
        self._notify(decoded)

    def clear(self) -> None:
        self._last_raw = ""
        self._last_decoded = None
        self._store.remove(ACCESS_KEY)
        self._store.remove(RENEWAL_KEY)
        self._notify(None)

    # --- internals ---

    def _load(self) -> tuple[str, str, ClaimSet | None]:
        access = self._store.get(ACCESS_KEY) or ""
        renewal = self._store.get(RENEWAL_KEY) or ""
        return access, renewal, self._decode_cached(access)

    def _decode_cached(self, raw: str) -> ClaimSet | None:
        if raw != self._last_raw:
            self._last_decoded = claims.decode_only(raw) if raw else None
            self._last_raw = raw
        return self._last_decoded

    def _notify(self, decoded: ClaimSet | None) -> None:
        if self._config is None or self._config.on_change is None:
            return
        try:
            self._config.on_change(decoded)
        except Exception:
            logger.exception("on_change callback failed")

    def _follow_other_contexts(self, enabled: bool) -> None:
        self.close()
        if enabled:
            self._unsubscribe = self._store.subscribe(self._on_store_event)

    def _on_store_event(self, event: StorageEvent) -> None:
        if event.key not in (ACCESS_KEY, None):
            return
        raw = event.new_value or ""
        self._notify(self._decode_cached(raw) if raw else None)


_default_manager: CredentialManager | None = None


def get_manager() -> CredentialManager:
    """Process default manager, bound to storage.local_storage()."""
    global _default_manager
    if _default_manager is None:
        _default_manager = CredentialManager()
    return _default_manager
