"""Error taxonomy shared by every pipeline command."""

from __future__ import annotations

from typing import Any, Optional


class PipelineError(Exception):
    status_code = 500
    code = "pipeline_error"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
        notifications: Optional[list] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        # Intents for side effects that committed before the error was raised
        self.notifications = list(notifications or [])

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PipelineError):
    """Malformed or missing input. Never retried automatically."""

    status_code = 400
    code = "validation_error"


class ForbiddenError(PipelineError):
    status_code = 403
    code = "forbidden"


class NotFoundError(PipelineError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(f"{resource} not found", details=details)


class ConflictError(PipelineError):
    """State already moved on. Callers must re-fetch before trying again."""

    status_code = 409
    code = "conflict"


class InvalidStateError(ConflictError):
    code = "invalid_state"


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"


class ExpiredError(PipelineError):
    """Raised after the corrective transition (e.g. offer -> expired) committed."""

    status_code = 410
    code = "expired"


class GatewayError(PipelineError):
    status_code = 502
    code = "gateway_error"
    retryable = True
