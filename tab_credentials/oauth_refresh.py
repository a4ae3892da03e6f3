"""
refresh_token grant against an OAuth2 Authorization Server, usable as ManagerConfig.refresh.
"""
import logging

import httpx

from tab_credentials.config import CLIENT_ID, ISSUER
from tab_credentials.errors import RenewalFailed
from tab_credentials.manager import CredentialPair, RefreshFn

logger = logging.getLogger(__name__)


def _error_fields(r: httpx.Response) -> tuple[str, str | None]:
    """(error, error_description) from an RFC 6749 error body, falling back to the status."""
    err = {}
    if r.headers.get("content-type", "").startswith("application/json"):
        try:
            err = r.json()
        except ValueError:
            err = {}
    if not isinstance(err, dict):
        err = {}
    error = err.get("error") or f"http_{r.status_code}"
    return error, err.get("error_description")


def token_endpoint_refresh(
    issuer: str = ISSUER,
    client_id: str = CLIENT_ID,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 10.0,
) -> RefreshFn:
    """
    Build a refresh function that exchanges a refresh_token at {issuer}/token.
    Pass http_client to reuse a connection pool (or a mock transport in tests); otherwise a
    client is opened per call.
    """
    token_url = f"{issuer.rstrip('/')}/token"

    async def refresh(refresh_token: str) -> CredentialPair:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        }
        headers = {"Accept": "application/json"}
        try:
            if http_client is not None:
                r = await http_client.post(token_url, data=data, headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    r = await client.post(token_url, data=data, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("Token endpoint %s unreachable: %s", token_url, e)
            raise RenewalFailed("request_failed", str(e)) from e

        if r.status_code != 200:
            error, description = _error_fields(r)
            logger.info("refresh_token grant rejected: %s %s", r.status_code, error)
            raise RenewalFailed(error, description, status_code=r.status_code)

        try:
            body = r.json()
        except ValueError as e:
            raise RenewalFailed("invalid_response", "Token response is not JSON", status_code=r.status_code) from e
        if not isinstance(body, dict):
            raise RenewalFailed("invalid_response", "Token response is not an object", status_code=r.status_code)
        # Servers that do not rotate refresh tokens omit refresh_token; keep the one we sent
        return CredentialPair(
            access=body.get("access_token"),
            renewal=body.get("refresh_token") or refresh_token,
        )

    return refresh
