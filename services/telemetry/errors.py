"""Error kinds raised by the telemetry service."""
from typing import Optional


class TelemetryError(Exception):
    """Base error. Carries the HTTP status it surfaces as."""
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)


class MalformedRequest(TelemetryError):
    status_code = 400
    message = "Invalid telemetry data: expected JSON object"


class PayloadTooLarge(TelemetryError):
    status_code = 413
    message = "Payload too large"


class ValidationFailed(TelemetryError):
    """Schema mismatch with per-field details."""
    status_code = 400
    message = "Validation failed"

    def __init__(self, errors: list[dict]):
        super().__init__()
        self.errors = errors


class Unauthorized(TelemetryError):
    status_code = 401
    message = "Authentication required"


class NotFound(TelemetryError):
    status_code = 404
    message = "Event not found"


class StorageUnavailable(TelemetryError):
    status_code = 503
    message = "Storage unavailable"


class IngestSaturated(StorageUnavailable):
    message = "Ingestion queue is full, retry later"


class StorageFailure(TelemetryError):
    status_code = 500
    message = "Storage operation failed"


class ClientDisconnected(TelemetryError):
    status_code = 499
    message = "Client closed request"
