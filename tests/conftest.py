"""
Shared fixtures for the referral handoff test suite.

Everything runs against the in-memory store and a fake appointment scheduler,
so no MongoDB or calendar service is needed.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from handoff_core.auth.models import Actor, UserRole
from handoff_core.config import HandoffConfig
from handoff_core.referrals.audit import InMemoryAuditService
from handoff_core.referrals.db_service import InMemoryReferralStore
from handoff_core.referrals.lifecycle import ReferralLifecycleEngine
from handoff_core.referrals.models import Referral
from handoff_core.scheduling.client import (
    AppointmentConflictError,
    AppointmentScheduler,
    AppointmentSchedulerError,
    ScheduledAppointment,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

SENDER = "doc_family_med_02"
RECEIVER = "doc_cardiology_01"
OTHER_PROVIDER = "doc_neurology_07"
PATIENT = "pat_7781"


# ── Clock ──


class FrozenClock:
    """Settable clock; call it to read the current time."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ── Fake Scheduler ──


class FakeScheduler(AppointmentScheduler):
    """
    In-memory appointment calendar.

    Bookings with a known idempotency key return the original appointment.
    Set ``conflict`` or ``unavailable`` to make the next calls fail.
    """

    def __init__(self):
        self.calls: list[dict] = []
        self.by_key: dict[str, ScheduledAppointment] = {}
        self.conflict = False
        self.unavailable = False
        self.yield_before_return = False
        self._counter = 0

    async def schedule(
        self,
        patient_id: str,
        provider_id: str,
        date_time: datetime,
        reason: str,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ScheduledAppointment:
        self.calls.append(
            {
                "patient_id": patient_id,
                "provider_id": provider_id,
                "date_time": date_time,
                "reason": reason,
                "notes": notes,
                "idempotency_key": idempotency_key,
            }
        )

        if self.yield_before_return:
            await asyncio.sleep(0)

        if self.unavailable:
            raise AppointmentSchedulerError("calendar down")
        if self.conflict:
            raise AppointmentConflictError("Slot taken", date_time=date_time)

        if idempotency_key and idempotency_key in self.by_key:
            return self.by_key[idempotency_key]

        self._counter += 1
        appointment = ScheduledAppointment(
            appointment_id=f"appt_{self._counter:03d}",
            patient_id=patient_id,
            provider_id=provider_id,
            date_time=date_time,
            reason=reason,
            notes=notes,
        )
        if idempotency_key:
            self.by_key[idempotency_key] = appointment
        return appointment


class YieldingStore(InMemoryReferralStore):
    """In-memory store that yields to the event loop after every read."""

    async def load(self, referral_id: str) -> Optional[Referral]:
        referral = await super().load(referral_id)
        await asyncio.sleep(0)
        return referral


def seed_version(store: InMemoryReferralStore, referral_id: str, version: int) -> Referral:
    """Force a stored referral to a given version."""
    bumped = store._records[referral_id].model_copy(update={"version": version})
    store._records[referral_id] = bumped
    return bumped


# ── Fixtures ──


@pytest.fixture
def config() -> HandoffConfig:
    return HandoffConfig(
        _env_file=None,
        use_in_memory_store=True,
        enable_expiry_sweeper=False,
        default_referral_ttl_hours=72,
        max_referral_ttl_days=90,
        expiry_sweep_batch_size=200,
        expiry_sweep_interval_seconds=300,
        triage_queue_limit=100,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> InMemoryReferralStore:
    return InMemoryReferralStore()


@pytest.fixture
def audit() -> InMemoryAuditService:
    return InMemoryAuditService()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def engine(store, scheduler, audit, clock, config) -> ReferralLifecycleEngine:
    return ReferralLifecycleEngine(
        store=store,
        scheduler=scheduler,
        audit_sink=audit,
        clock=clock,
        config=config,
    )


@pytest.fixture
def sender() -> Actor:
    return Actor(user_id="user_sender", role=UserRole.CLINICIAN, provider_id=SENDER)


@pytest.fixture
def receiver() -> Actor:
    return Actor(user_id="user_receiver", role=UserRole.CLINICIAN, provider_id=RECEIVER)


@pytest.fixture
def outsider() -> Actor:
    return Actor(user_id="user_outsider", role=UserRole.CLINICIAN, provider_id=OTHER_PROVIDER)


@pytest.fixture
def operator() -> Actor:
    return Actor(
        user_id="user_front_desk",
        role=UserRole.OPERATOR,
        represented_provider_ids=[RECEIVER],
    )


@pytest.fixture
def second_operator() -> Actor:
    return Actor(
        user_id="user_front_desk_2",
        role=UserRole.OPERATOR,
        represented_provider_ids=[RECEIVER],
    )


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id="user_admin", role=UserRole.ADMIN)


@pytest.fixture
def make_referral(engine, sender):
    """Create a PENDING referral through the engine."""

    async def _make(
        urgency: str = "ROUTINE",
        reason: str = "Chest pain on exertion",
        to_provider_id: str = RECEIVER,
        ttl: Optional[timedelta] = None,
        **kwargs,
    ) -> Referral:
        return await engine.create(
            from_provider_id=SENDER,
            to_provider_id=to_provider_id,
            patient_id=PATIENT,
            reason=reason,
            urgency=urgency,
            ttl=ttl,
            actor=sender,
            **kwargs,
        )

    return _make
