"""Error taxonomy for the sync engine.

Messages on these exceptions are written to be shown to operators as-is:
they never carry tokens, secrets or credential-file paths.
"""


class SyncError(Exception):
    """Base class for every failure the sync engine reports."""


class AuthError(SyncError):
    """Credentials are missing, expired or rejected by the provider."""


class NoTokenFile(AuthError):
    pass


class DecryptionError(AuthError):
    pass


class InvalidFormat(AuthError):
    pass


class CredentialsRevoked(AuthError):
    """Refresh token was refused (invalid_grant); re-authentication is required."""


class RateLimitExceeded(SyncError):
    def __init__(self, service: str, zone: str, reset_after: int | None = None):
        self.service = service
        self.zone = zone
        self.reset_after = reset_after
        super().__init__(f"Rate limit exceeded for {service} {zone}")


class NetworkError(SyncError):
    """Transient transport failure or provider 5xx."""


class ProviderError(SyncError):
    """Provider answered with a non-retryable error status."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class DataConflict(SyncError):
    """Incoming item matches a local deletion record."""


class ParseFailure(SyncError):
    pass


class PersistenceError(SyncError):
    pass


class SyncAlreadyRunning(SyncError):
    pass


class SyncTimeout(SyncError):
    pass


def public_message(exc: BaseException) -> str:
    """Operator-facing text for an exception."""
    if isinstance(exc, SyncError):
        return str(exc) or type(exc).__name__
    return f"Unexpected error ({type(exc).__name__})"
