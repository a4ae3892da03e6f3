"""
Credential manager configuration. Defaults can be overridden from the environment.
Nothing here is secret; credential values live only in the shared store.
"""
import os

# Seconds added to "now" when checking the access credential's exp claim
CREDENTIAL_TIME_SKEW = int(os.environ.get("CREDENTIAL_TIME_SKEW", "15"))

# How long renew() waits for another context's renewal lock (milliseconds)
CREDENTIAL_RENEW_LOCK_WAIT_MS = int(os.environ.get("CREDENTIAL_RENEW_LOCK_WAIT_MS", "10000"))

# Shared store keys for the credential pair
ACCESS_KEY = os.environ.get("CREDENTIAL_ACCESS_KEY", "accessToken")
RENEWAL_KEY = os.environ.get("CREDENTIAL_RENEWAL_KEY", "refreshToken")

# Lock records are stored under "<namespace>.<name>"
LOCK_NAMESPACE = "__locker__"
RENEW_LOCK_NAME = "refresh-token"

# Authorization Server used by the bundled refresh_token grant (oauth_refresh.py)
ISSUER = os.environ.get("OAUTH_ISSUER", "http://127.0.0.1:9000").rstrip("/")
CLIENT_ID = os.environ.get("OAUTH_CLIENT_ID", "test-client")
