"""
Error taxonomy for webhook ingestion and sync processing.

Boundary errors (auth, unsupported source, invalid payload) are raised while a
webhook is being received. Processing errors are raised inside the sync
processor and are captured on the queue item; they never reach the webhook
sender.
"""


class SyncGateError(Exception):
    """Base class for all SyncGate errors."""


# --- Boundary errors ---

class AuthError(SyncGateError):
    """Webhook authenticity could not be established. Logged, never enqueued."""
    reason = "auth_failed"


class InvalidSignatureError(AuthError):
    reason = "invalid_signature"


class MissingSignatureError(AuthError):
    reason = "missing_signature"


class SecretNotConfiguredError(AuthError):
    reason = "secret_not_configured"


class IpNotAllowedError(AuthError):
    reason = "ip_not_allowed"


class UnsupportedSourceError(SyncGateError):
    """Source is not in the registry or is disabled."""

    def __init__(self, source: str, reason: str = "unknown source"):
        super().__init__(f"Unsupported webhook source '{source}': {reason}")
        self.source = source


class PayloadValidationError(SyncGateError):
    """Payload does not match the typed record schema for its route."""


# --- Processing errors ---

class RetryableProcessingError(SyncGateError):
    """Transient failure (downstream unavailable, timeout). Feeds the backoff cycle."""


class PermanentProcessingError(SyncGateError):
    """Malformed data or constraint violation. Dead-letters immediately."""


class ConflictError(SyncGateError):
    """Optimistic-concurrency version mismatch on an entity."""

    def __init__(self, message: str, expected_version: int | None = None):
        super().__init__(message)
        self.expected_version = expected_version


class ClaimLostError(SyncGateError):
    """The caller no longer holds the claim on a queue item."""
