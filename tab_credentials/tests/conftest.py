"""
Pytest configuration for tab_credentials. Every test gets its own SharedStorage so no state
leaks between tests; tokens are RS256 JWTs signed with a throwaway key.
"""
import time

import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key

from tab_credentials.storage import SharedStorage


@pytest.fixture(scope="session")
def signing_key():
    return generate_private_key(65537, 2048, default_backend())


@pytest.fixture
def make_token(signing_key):
    """Build an access token expiring exp_in seconds from now; extra claims override defaults."""

    def _make(exp_in: int = 600, **claims) -> str:
        now = int(time.time())
        payload = {"sub": "42", "scope": "api.read", "iat": now, "exp": now + exp_in}
        payload.update(claims)
        token = jwt.encode(payload, signing_key, algorithm="RS256", headers={"kid": "test-key"})
        return token.decode("utf-8") if isinstance(token, bytes) else token

    return _make


@pytest.fixture
def shared():
    return SharedStorage()


@pytest.fixture
def tab(shared):
    return shared.open_context()


@pytest.fixture
def other_tab(shared):
    return shared.open_context()
