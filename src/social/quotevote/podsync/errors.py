"""Exception hierarchy for the Pod connection subsystem.

Every failure surfaced by this package is a ``PodSyncError`` so the calling layer can
decide between retrying and showing the error to the user.
"""

from typing import Optional


class PodSyncError(Exception):
    """Base class for all Pod connection errors."""


class ConfigurationError(PodSyncError):
    """Deployment configuration is missing or malformed. Not retryable."""


class EncryptionKeyError(ConfigurationError):
    """The token encryption key is absent or not 64 hexadecimal characters."""

    @staticmethod
    def missing() -> "EncryptionKeyError":
        return EncryptionKeyError(
            "SOLID_TOKEN_ENCRYPTION_KEY environment variable is not set. "
            "Generate a secure key using: podsync-util gen-crypto"
        )

    @staticmethod
    def malformed() -> "EncryptionKeyError":
        return EncryptionKeyError(
            "SOLID_TOKEN_ENCRYPTION_KEY must be 64 hexadecimal characters (32 bytes). "
            "Generate using: podsync-util gen-crypto"
        )


class DiscoveryError(PodSyncError):
    """Issuer metadata could not be discovered or is invalid."""

    def __init__(
        self, message: str, issuer: Optional[str] = None, status: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.issuer = issuer
        self.status = status


class TokenError(PodSyncError):
    """Token exchange or refresh failed."""

    def __init__(
        self, message: str, status: Optional[int] = None, body: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class IdTokenError(TokenError):
    """The ID token could not be parsed."""


class NoRefreshToken(TokenError):
    def __init__(self) -> None:
        super().__init__("No refresh token available")


class TokenDecryptionError(PodSyncError):
    """An encrypted envelope is malformed or failed authentication."""


class ConnectionNotFound(PodSyncError):
    def __init__(self, user_id: str) -> None:
        super().__init__("No Solid connection found for user")
        self.user_id = user_id


class PodResourceError(PodSyncError):
    """A Pod resource request returned a non-2xx response."""

    def __init__(self, message: str, status: int, url: str) -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class PodRequestError(PodSyncError):
    """A Pod request failed before a response arrived (connection, DNS, timeout)."""

    def __init__(self, message: str, url: str) -> None:
        super().__init__(message)
        self.url = url


class SyncError(PodSyncError):
    """Pull, push, or append of portable state failed."""


class ActivityLedgerDisabled(SyncError):
    def __init__(self) -> None:
        super().__init__("Activity ledger is not enabled")


class ActivityLedgerConflict(SyncError):
    """Concurrent writers kept changing the ledger between read and write."""


class AuthorizationStateError(PodSyncError):
    """The authorization ``state`` is unknown, expired, or belongs to someone else."""

    @staticmethod
    def unknown() -> "AuthorizationStateError":
        return AuthorizationStateError("Invalid request: no matching state")

    @staticmethod
    def user_mismatch() -> "AuthorizationStateError":
        return AuthorizationStateError("Invalid request: state belongs to another user")

    @staticmethod
    def duplicate() -> "AuthorizationStateError":
        return AuthorizationStateError("Invalid request: state already in use")


class InvalidIssuer(PodSyncError):
    def __init__(self, issuer: str) -> None:
        super().__init__(
            "Invalid issuer URL: must use https, or http on localhost"
        )
        self.issuer = issuer
