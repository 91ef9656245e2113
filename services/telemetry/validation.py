"""Schema validation for inbound telemetry payloads."""
from typing import Any

import structlog
from pydantic import ValidationError

from .errors import MalformedRequest, ValidationFailed
from .models import TelemetryPayload

logger = structlog.get_logger()

# Error reports are accepted without a data object; it defaults to {}.
PERMISSIVE_KINDS = frozenset({"tool_error", "error"})


def _field_errors(exc: ValidationError) -> list[dict]:
    errors = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"]) or "root"
        errors.append({"field": field, "message": err["msg"]})
    return errors


def validate_payload(body: Any) -> TelemetryPayload:
    """Validate a decoded request body.

    Raises MalformedRequest when the body is not a JSON object and
    ValidationFailed with every field error otherwise.
    """
    if not isinstance(body, dict):
        raise MalformedRequest()

    errors = []
    payload = None
    try:
        payload = TelemetryPayload.model_validate(body)
    except ValidationError as e:
        errors.extend(_field_errors(e))

    kind = body.get("event")
    permissive = isinstance(kind, str) and kind in PERMISSIVE_KINDS
    if body.get("data") is None and not permissive:
        if not any(err["field"] == "data" for err in errors):
            errors.append({"field": "data", "message": "Field required"})

    if errors:
        logger.info("payload_rejected", kind=kind if isinstance(kind, str) else None, error_count=len(errors))
        raise ValidationFailed(errors)

    return payload
