"""
Exceptions raised by the credential manager and its collaborators.
"""


class CredentialError(Exception):
    """Base class for every error raised by tab_credentials."""


class NotConfigured(CredentialError):
    """An operation was called before CredentialManager.initialize()."""

    def __init__(self, message: str = "CredentialManager.initialize() has not been called"):
        super().__init__(message)


class MissingRefreshFunction(CredentialError):
    """initialize() was given a configuration without a refresh function."""

    def __init__(self, message: str = "initialize: a refresh function is required"):
        super().__init__(message)


class MalformedCredential(CredentialError):
    """The access credential could not be decoded into a claim set."""


class InvalidExpiryClaim(CredentialError):
    """The exp claim is missing, not a number, or not positive."""


class CredentialExpired(CredentialError):
    """The access credential's exp claim has passed (with skew)."""


class RenewalFailed(CredentialError):
    """
    The token endpoint rejected a refresh_token grant or could not be reached.
    status_code is None for transport errors.
    """

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        *,
        status_code: int | None = None,
    ):
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        super().__init__(error_description or error)
