from __future__ import annotations

from fastapi import status


class GatewayServiceError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "internal_error"
    public_message: str | None = None

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    @property
    def safe_message(self) -> str:
        if self.status_code >= 500:
            return self.public_message or "Internal Server Error"
        return self.message or self.error_type


class InvalidInputError(GatewayServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_input"


class ConflictError(GatewayServiceError):
    status_code = status.HTTP_409_CONFLICT
    error_type = "conflict"


class NotFoundError(GatewayServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "not_found"


class LockTimeoutError(GatewayServiceError):
    error_type = "lock_timeout"
    public_message = "Storage is busy, try again later."


class StorageError(GatewayServiceError):
    error_type = "storage_error"
    public_message = "Failed to access storage."
