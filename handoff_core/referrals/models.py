"""
Referral Data Models

Defines the referral record, its lifecycle states and the transition table.
Stored in the referral database; every persisted record satisfies the
invariants checked in ``Referral.check_invariants``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_stored_time(value: datetime) -> datetime:
    """
    Normalize a datetime to what the store keeps.

    Naive values are taken as UTC; BSON datetimes hold milliseconds.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def new_referral_id() -> str:
    """Generate an opaque referral identifier."""
    return f"ref_{uuid4().hex}"


class ReferralUrgency(str, Enum):
    """Clinical urgency of a referral."""

    ROUTINE = "ROUTINE"
    URGENT = "URGENT"
    EMERGENCY = "EMERGENCY"

    @property
    def rank(self) -> int:
        """Triage rank; higher is attended first."""
        return URGENCY_RANK[self]


URGENCY_RANK: dict[ReferralUrgency, int] = {
    ReferralUrgency.EMERGENCY: 3,
    ReferralUrgency.URGENT: 2,
    ReferralUrgency.ROUTINE: 1,
}


class ReferralStatus(str, Enum):
    """
    Referral lifecycle status.

    State Transition Matrix:
    - PENDING -> ACCEPTED, REJECTED, CONVERTED, EXPIRED
    - ACCEPTED -> CONVERTED, EXPIRED
    - REJECTED, CONVERTED, EXPIRED -> (terminal)
    """

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CONVERTED = "CONVERTED"
    EXPIRED = "EXPIRED"

    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return not ALLOWED_TRANSITIONS[self]

    def is_open(self) -> bool:
        """Check if the referral still awaits resolution."""
        return self in OPEN_STATUSES

    def can_transition_to(self, target: "ReferralStatus") -> bool:
        """Check if the edge self -> target exists in the state machine."""
        return target in ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[ReferralStatus, frozenset[ReferralStatus]] = {
    ReferralStatus.PENDING: frozenset(
        {
            ReferralStatus.ACCEPTED,
            ReferralStatus.REJECTED,
            ReferralStatus.CONVERTED,
            ReferralStatus.EXPIRED,
        }
    ),
    ReferralStatus.ACCEPTED: frozenset({ReferralStatus.CONVERTED, ReferralStatus.EXPIRED}),
    ReferralStatus.REJECTED: frozenset(),
    ReferralStatus.CONVERTED: frozenset(),
    ReferralStatus.EXPIRED: frozenset(),
}

OPEN_STATUSES: frozenset[ReferralStatus] = frozenset(
    {ReferralStatus.PENDING, ReferralStatus.ACCEPTED}
)

RESOLVED_STATUSES: frozenset[ReferralStatus] = frozenset(
    {ReferralStatus.REJECTED, ReferralStatus.CONVERTED, ReferralStatus.EXPIRED}
)


class ReferralTransition(BaseModel):
    """One applied state change, kept for audit and retry detection."""

    from_status: ReferralStatus
    to_status: ReferralStatus
    actor_id: str
    occurred_at: datetime
    version: int = Field(..., description="Version the referral reached with this transition")


class Referral(BaseModel):
    """
    Referral record.

    Created by the sending provider, mutated only by the lifecycle engine or
    the expiry sweeper, and never deleted.
    """

    referral_id: str = Field(default_factory=new_referral_id)

    from_provider_id: str = Field(..., min_length=1)
    to_provider_id: str = Field(..., min_length=1)
    patient_id: str = Field(..., min_length=1)

    # Immutable clinical payload
    reason: str = Field(..., min_length=1)
    urgency: ReferralUrgency = Field(default=ReferralUrgency.ROUTINE)
    clinical_notes: Optional[str] = Field(default=None)
    requested_tests: list[str] = Field(default_factory=list)

    # Lifecycle
    status: ReferralStatus = Field(default=ReferralStatus.PENDING)
    appointment_id: Optional[str] = Field(default=None)
    appointment_date_time: Optional[datetime] = Field(default=None)
    appointment_reason: Optional[str] = Field(default=None)
    appointment_notes: Optional[str] = Field(default=None)
    rejected_reason: Optional[str] = Field(default=None)
    acceptance_note: Optional[str] = Field(default=None)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    accepted_at: Optional[datetime] = Field(default=None)
    resolved_at: Optional[datetime] = Field(default=None)
    expires_at: datetime

    # Attribution
    created_by: Optional[str] = Field(default=None)
    accepted_by: Optional[str] = Field(default=None)
    resolved_by: Optional[str] = Field(default=None)

    # Optimistic concurrency, assigned by the store
    version: int = Field(default=0, ge=0)
    history: list[ReferralTransition] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_invariants(self) -> "Referral":
        """Enforce the at-rest invariants for every constructed referral."""
        if self.from_provider_id == self.to_provider_id:
            raise ValueError("from_provider_id and to_provider_id must differ")

        if (self.appointment_id is not None) != (self.status == ReferralStatus.CONVERTED):
            raise ValueError("appointment_id is set if and only if status is CONVERTED")
        if (self.appointment_date_time is not None) != (self.appointment_id is not None):
            raise ValueError("appointment_date_time is set if and only if appointment_id is set")
        if self.appointment_id is None and (
            self.appointment_reason is not None or self.appointment_notes is not None
        ):
            raise ValueError("appointment details require an appointment")

        if (self.rejected_reason is not None) != (self.status == ReferralStatus.REJECTED):
            raise ValueError("rejected_reason is set if and only if status is REJECTED")
        if self.rejected_reason is not None and not self.rejected_reason.strip():
            raise ValueError("rejected_reason must not be blank")

        if self.accepted_at is not None and self.status not in (
            ReferralStatus.ACCEPTED,
            ReferralStatus.CONVERTED,
            ReferralStatus.EXPIRED,
        ):
            raise ValueError("accepted_at is only set on referrals that were accepted")
        if self.status == ReferralStatus.ACCEPTED and self.accepted_at is None:
            raise ValueError("ACCEPTED referrals require accepted_at")

        if (self.resolved_at is not None) != (self.status in RESOLVED_STATUSES):
            raise ValueError("resolved_at is set if and only if the referral is resolved")

        if self.accepted_at is not None and self.accepted_at < self.created_at:
            raise ValueError("accepted_at precedes created_at")
        if self.resolved_at is not None:
            if self.resolved_at < self.created_at:
                raise ValueError("resolved_at precedes created_at")
            if self.accepted_at is not None and self.resolved_at < self.accepted_at:
                raise ValueError("resolved_at precedes accepted_at")

        return self

    @property
    def is_terminal(self) -> bool:
        """Check if the referral reached a final state."""
        return self.status.is_terminal()

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """Check if an open referral has passed its deadline."""
        now = now or utcnow()
        return self.status.is_open() and self.expires_at <= now

    def find_transition(self, version: int) -> Optional[ReferralTransition]:
        """Return the transition that produced a given version, if any."""
        for transition in self.history:
            if transition.version == version:
                return transition
        return None

    def transitioned(
        self,
        to_status: ReferralStatus,
        actor_id: str,
        at: datetime,
        **changes: Any,
    ) -> "Referral":
        """
        Build the next state of this referral.

        The returned copy is validated against every invariant and carries a
        history entry for the version the store will assign on write.

        Args:
            to_status: Target status
            actor_id: Who performed the transition
            at: Transition timestamp
            **changes: Additional field updates

        Returns:
            New referral instance (not yet persisted)

        Raises:
            ValueError: If the edge is not in the state machine or the result
                breaks an invariant
        """
        if not self.status.can_transition_to(to_status):
            raise ValueError(f"Transition {self.status.value} -> {to_status.value} is not allowed")

        transition = ReferralTransition(
            from_status=self.status,
            to_status=to_status,
            actor_id=actor_id,
            occurred_at=at,
            version=self.version + 1,
        )

        data = self.model_dump()
        data.update(changes)
        data["status"] = to_status
        data["history"] = [*data["history"], transition.model_dump()]

        return Referral.model_validate(data)

    class Config:
        json_schema_extra = {
            "example": {
                "referral_id": "ref_5f1c2a9e0b7d4c3a8e6f1d2c3b4a5968",
                "from_provider_id": "doc_family_med_02",
                "to_provider_id": "doc_cardiology_01",
                "patient_id": "pat_7781",
                "reason": "Chest pain on exertion",
                "urgency": "EMERGENCY",
                "status": "PENDING",
                "version": 1,
            }
        }


class AutoConvertRequest(BaseModel):
    """Appointment details used to convert a referral while accepting it."""

    date_time: datetime
    appointment_reason: Optional[str] = Field(default=None)
    appointment_notes: Optional[str] = Field(default=None)
