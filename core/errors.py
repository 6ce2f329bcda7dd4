"""
Shared error types for core services.
"""


class ValidationIssue(ValueError):
    """Raised when a request is missing fields or carries invalid values."""

    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class Unauthorized(Exception):
    """Raised when a bearer credential is missing, invalid, expired or revoked."""

    def __init__(self, reason: str = "unauthorized"):
        super().__init__(reason)
        self.reason = reason


class UpstreamError(RuntimeError):
    """Raised when the embedding or reply-generation service is unavailable."""

    def __init__(self, message: str, service: str = "unknown"):
        super().__init__(message)
        self.service = service


class PersistenceError(RuntimeError):
    """Raised when a store write fails."""

    def __init__(self, message: str, stage: str = "unknown"):
        super().__init__(message)
        self.stage = stage


class InternalError(RuntimeError):
    """Request-level failure surfaced to the caller."""

    def __init__(self, message: str = "Internal server error", stage: str = "unknown"):
        super().__init__(message)
        self.stage = stage
