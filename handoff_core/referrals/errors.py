"""
Referral Errors

Typed failures returned by the lifecycle engine. Each carries a stable code and
the HTTP status the API layer answers with.
"""

from typing import Any, Optional

from fastapi import status

from .models import Referral


class ReferralError(Exception):
    """Base class for every referral handoff failure."""

    code: str = "referral_error"
    http_status: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        return {"error": self.code, "detail": self.message}


class ReferralValidationError(ReferralError):
    """Malformed input: empty reason, self-referral, unknown urgency, bad TTL."""

    code = "validation_error"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.field:
            body["field"] = self.field
        return body


class Forbidden(ReferralError):
    """Actor lacks authority over this referral or action."""

    code = "forbidden"
    http_status = status.HTTP_403_FORBIDDEN


class ReferralNotFound(ReferralError):
    """No referral exists with the given identifier."""

    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, referral_id: str):
        super().__init__(f"Referral '{referral_id}' not found")
        self.referral_id = referral_id


class Conflict(ReferralError):
    """
    The referral changed underneath the caller.

    Carries the current record so the caller can re-decide. When
    ``appointment_id`` is set, an appointment was booked but could not be
    linked; it must be reconciled rather than blindly retried.
    """

    code = "conflict"
    http_status = status.HTTP_409_CONFLICT

    def __init__(
        self,
        message: str,
        current: Optional[Referral] = None,
        appointment_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.current = current
        self.appointment_id = appointment_id

    @property
    def needs_reconciliation(self) -> bool:
        """Check if an orphaned appointment accompanies this conflict."""
        return self.appointment_id is not None

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["current"] = self.current.model_dump(mode="json") if self.current else None
        if self.appointment_id is not None:
            body["appointment_id"] = self.appointment_id
            body["needs_reconciliation"] = True
        return body


class InvalidTransition(Conflict):
    """The version matches but the current status has no edge to the target."""

    code = "invalid_transition"


class AlreadyFinalized(Conflict):
    """The referral is terminal; no re-decision is possible."""

    code = "already_finalized"


class SchedulingConflict(ReferralError):
    """The appointment scheduler rejected the requested time."""

    code = "scheduling_conflict"
    http_status = status.HTTP_409_CONFLICT


class AppointmentSchedulerUnavailable(ReferralError):
    """The scheduler could not be reached; the outcome is unknown and safe to retry."""

    code = "scheduler_unavailable"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
