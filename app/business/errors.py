# ==== DOMAIN ERROR TAXONOMY ==== #

"""
Domain error taxonomy for OrderDesk.

Every error raised by the business core derives from OrderDeskError and
carries a stable machine-readable code, the HTTP status the API layer
renders it with, a human message and optional structured details. The
FastAPI exception handlers in app.main turn these into JSON responses.
"""

from typing import Any, Dict, Optional


class OrderDeskError(Exception):
    """Base class for all domain errors."""

    kind = "internal_error"
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(OrderDeskError):
    """Malformed input or a rule violation detected before any write."""

    kind = "validation_error"
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidTransitionError(ValidationError):
    """Requested order status is not reachable from the current one."""

    code = "INVALID_TRANSITION"

    def __init__(self, current_status: str, target_status: str, **details: Any):
        super().__init__(
            f"Cannot transition order from '{current_status}' to '{target_status}'",
            current_status=current_status,
            target_status=target_status,
            **details,
        )
        self.current_status = current_status
        self.target_status = target_status


class ConflictError(OrderDeskError):
    """Operation collides with existing state (duplicate submission, re-invoicing)."""

    kind = "conflict"
    code = "CONFLICT"
    status_code = 409


class NotFoundError(OrderDeskError):
    """Referenced order, invoice or payment does not exist."""

    kind = "not_found"
    code = "NOT_FOUND"
    status_code = 404


class AuthorizationError(OrderDeskError):
    """Actor lacks the role required for the operation."""

    kind = "authorization_error"
    code = "FORBIDDEN"
    status_code = 403


class InfrastructureError(OrderDeskError):
    """Transient store failure: timeout, lost connection, schema mismatch."""

    kind = "infrastructure_error"
    code = "INFRASTRUCTURE_ERROR"
    status_code = 503


class WebhookRejectedError(OrderDeskError):
    """Inbound webhook failed signature or replay-window verification."""

    kind = "webhook_rejected"
    code = "WEBHOOK_REJECTED"
    status_code = 401

    def __init__(self, reason: str):
        super().__init__(f"Webhook rejected: {reason}", reason=reason)
        self.reason = reason
