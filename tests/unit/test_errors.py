"""Unit tests for the domain error taxonomy."""

import pytest

from app.business.errors import (
    AuthorizationError,
    ConflictError,
    InfrastructureError,
    InvalidTransitionError,
    NotFoundError,
    OrderDeskError,
    ValidationError,
    WebhookRejectedError,
)
from app.security.auth import Actor, ensure_role


@pytest.mark.unit
class TestErrorTaxonomy:

    @pytest.mark.parametrize("error_class,status_code,kind", [
        (ValidationError, 400, "validation_error"),
        (AuthorizationError, 403, "authorization_error"),
        (NotFoundError, 404, "not_found"),
        (ConflictError, 409, "conflict"),
        (InfrastructureError, 503, "infrastructure_error"),
    ])
    def test_status_and_kind(self, error_class, status_code, kind):
        error = error_class("boom")

        assert isinstance(error, OrderDeskError)
        assert error.status_code == status_code
        assert error.to_dict()["error"] == kind

    def test_details_and_code_override(self):
        error = ConflictError("Already done", code="ALREADY_COMPLETED", order_id=7)

        assert error.to_dict() == {
            "error": "conflict",
            "code": "ALREADY_COMPLETED",
            "message": "Already done",
            "details": {"order_id": 7},
        }

    def test_code_override_does_not_leak_to_class(self):
        ConflictError("x", code="ALREADY_COMPLETED")

        assert ConflictError("y").code == "CONFLICT"

    def test_invalid_transition_is_a_validation_error(self):
        error = InvalidTransitionError("paid", "cancelled", order_id=3)

        assert isinstance(error, ValidationError)
        assert error.code == "INVALID_TRANSITION"
        assert error.details == {"current_status": "paid", "target_status": "cancelled", "order_id": 3}

    def test_webhook_rejection_carries_reason(self):
        error = WebhookRejectedError("invalid_signature")

        assert error.status_code == 401
        assert error.reason == "invalid_signature"
        assert error.details == {"reason": "invalid_signature"}


@pytest.mark.unit
class TestRoleChecks:

    def test_admin_passes(self):
        actor = Actor(actor_id="a", role="admin")

        assert ensure_role(actor) is actor

    def test_non_admin_rejected(self):
        with pytest.raises(AuthorizationError):
            ensure_role(Actor(actor_id="v", role="viewer"))
