"""
Access credential decoding and expiry checks.
Claims are read without signature verification: the client only needs exp to decide when
to renew, and the resource server verifies the signature on every request.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import jwt

from tab_credentials.config import CREDENTIAL_TIME_SKEW
from tab_credentials.errors import CredentialExpired, InvalidExpiryClaim, MalformedCredential

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "bearer "


@dataclass
class ClaimSet:
    header: dict[str, Any]
    payload: dict[str, Any]
    additional: str | None = None
    raw: str = field(default="", repr=False)

    @property
    def exp(self) -> Any:
        return self.payload.get("exp")


def _strip_scheme(raw: str) -> str:
    """Accept "Bearer <token>" as well as the bare token."""
    raw = raw.strip()
    if raw[: len(_BEARER_PREFIX)].lower() == _BEARER_PREFIX:
        return raw[len(_BEARER_PREFIX):].strip()
    return raw


def decode(raw: str | None) -> ClaimSet:
    """
    Decode header and payload of a compact JWT. Raises MalformedCredential if the value is
    empty, has the wrong number of segments, or its header/payload are not JSON objects.
    """
    if not raw:
        raise MalformedCredential("empty credential")
    token = _strip_scheme(raw)
    try:
        decoded = jwt.decode_complete(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise MalformedCredential(str(e)) from e
    segments = token.split(".")
    return ClaimSet(
        header=dict(decoded["header"]),
        payload=dict(decoded["payload"]),
        additional=segments[2] or None,
        raw=token,
    )


def decode_only(raw: str | None) -> ClaimSet | None:
    """Like decode(), but returns None instead of raising for a malformed credential."""
    try:
        return decode(raw)
    except MalformedCredential as e:
        if raw:
            logger.debug("Ignoring malformed access credential: %s", e)
        return None


def is_expired(exp: Any, skew: int | float | None = CREDENTIAL_TIME_SKEW) -> bool:
    """
    True if exp (seconds since epoch) is at or before now + skew.
    Raises InvalidExpiryClaim when exp is missing, not numeric, or not positive.
    """
    if isinstance(exp, bool) or not isinstance(exp, (int, float)) or exp <= 0:
        raise InvalidExpiryClaim(f"Invalid exp claim: {exp!r}")
    return time.time() + (skew or 0) >= exp


def verify(claim_set: ClaimSet, skew: int | float | None = CREDENTIAL_TIME_SKEW) -> ClaimSet:
    """Return claim_set if it is still valid; raise CredentialExpired otherwise."""
    if is_expired(claim_set.exp, skew):
        raise CredentialExpired("Access credential expired")
    return claim_set
