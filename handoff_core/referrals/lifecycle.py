"""
Referral Lifecycle Engine

Validates and applies referral state transitions:
- Actor-gated accept, reject and convert
- Optimistic concurrency via compare-and-swap on the referral version
- Appointment booking tied to the CONVERTED transition
- Idempotent handling of client retries
- Lazy expiry of overdue referrals touched by a human action

No lock is held across authorization, the scheduler call and the write; the
store's compare-and-swap is the only serialization point.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError
from structlog import get_logger

from ..auth.access import AccessAction, AccessPolicy, RoleBasedAccessPolicy
from ..auth.models import SWEEPER_ACTOR, Actor, UserRole
from ..config import HandoffConfig, get_config
from ..scheduling.client import (
    AppointmentConflictError,
    AppointmentScheduler,
    AppointmentSchedulerError,
    ScheduledAppointment,
)
from .audit import AuditSink, ReferralAuditAction, ReferralAuditLog
from .db_service import ReferralStore
from .errors import (
    AlreadyFinalized,
    AppointmentSchedulerUnavailable,
    Conflict,
    Forbidden,
    InvalidTransition,
    ReferralNotFound,
    ReferralValidationError,
    SchedulingConflict,
)
from .models import (
    AutoConvertRequest,
    Referral,
    ReferralStatus,
    ReferralUrgency,
    as_stored_time,
    utcnow,
)

logger = get_logger()

ACTION_FOR_STATUS = {
    ReferralStatus.ACCEPTED: ReferralAuditAction.ACCEPT,
    ReferralStatus.REJECTED: ReferralAuditAction.REJECT,
    ReferralStatus.CONVERTED: ReferralAuditAction.CONVERT,
    ReferralStatus.EXPIRED: ReferralAuditAction.EXPIRE,
}


class ReferralLifecycleEngine:
    """
    Applies referral transitions on behalf of human actors and the sweeper.

    Every mutation re-reads the referral, checks it against the caller's
    expected version and commits through ``ReferralStore.compare_and_swap``.
    """

    def __init__(
        self,
        store: ReferralStore,
        scheduler: AppointmentScheduler,
        access_policy: Optional[AccessPolicy] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
        config: Optional[HandoffConfig] = None,
    ):
        """
        Initialize lifecycle engine.

        Args:
            store: Referral store
            scheduler: Appointment scheduler used for conversions
            access_policy: Authorization policy (role table by default)
            audit_sink: Optional audit destination
            clock: Source of the current time
            config: Service configuration (uses cached config if not provided)
        """
        self.store = store
        self.scheduler = scheduler
        self.access_policy = access_policy or RoleBasedAccessPolicy()
        self.audit_sink = audit_sink
        self.clock = clock
        self.config = config or get_config()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        from_provider_id: str,
        to_provider_id: str,
        patient_id: str,
        reason: str,
        urgency: Union[ReferralUrgency, str],
        clinical_notes: Optional[str] = None,
        requested_tests: Optional[list[str]] = None,
        ttl: Optional[timedelta] = None,
        actor: Optional[Actor] = None,
    ) -> Referral:
        """
        Create a new PENDING referral.

        Args:
            from_provider_id: Sending provider
            to_provider_id: Receiving provider
            patient_id: Referred patient
            reason: Why the referral is made
            urgency: ROUTINE, URGENT or EMERGENCY
            clinical_notes: Optional supplementary notes
            requested_tests: Optional requested tests
            ttl: Time until the referral expires (config default if not provided)
            actor: Creating actor; when given, must be allowed to send as from_provider_id

        Returns:
            The persisted referral

        Raises:
            ReferralValidationError: If the input is malformed
            Forbidden: If actor may not send this referral
        """
        if actor is not None:
            decision = self.access_policy.permits(actor, AccessAction.CREATE)
            if not decision.allowed:
                logger.warning(
                    "referral_access_denied",
                    actor_id=actor.user_id,
                    role=actor.role.value,
                    action=AccessAction.CREATE.value,
                    reason=decision.reason,
                )
                raise Forbidden(decision.reason or "Not permitted")

        if not reason or not reason.strip():
            raise ReferralValidationError("Referral reason is required", field="reason")

        for field_name, value in (
            ("from_provider_id", from_provider_id),
            ("to_provider_id", to_provider_id),
            ("patient_id", patient_id),
        ):
            if not value or not value.strip():
                raise ReferralValidationError(f"{field_name} is required", field=field_name)

        if from_provider_id == to_provider_id:
            raise ReferralValidationError(
                "Cannot refer patient to the sending provider", field="to_provider_id"
            )

        parsed_urgency = self._parse_urgency(urgency)

        ttl = ttl if ttl is not None else timedelta(hours=self.config.default_referral_ttl_hours)
        if ttl <= timedelta(0):
            raise ReferralValidationError("ttl must be positive", field="ttl")
        if ttl > timedelta(days=self.config.max_referral_ttl_days):
            raise ReferralValidationError(
                f"ttl cannot exceed {self.config.max_referral_ttl_days} days", field="ttl"
            )

        now = self.clock()

        try:
            referral = Referral(
                from_provider_id=from_provider_id,
                to_provider_id=to_provider_id,
                patient_id=patient_id,
                reason=reason.strip(),
                urgency=parsed_urgency,
                clinical_notes=clinical_notes,
                requested_tests=[t.strip() for t in requested_tests or [] if t and t.strip()],
                created_at=now,
                expires_at=now + ttl,
                created_by=actor.user_id if actor else None,
            )
        except ValidationError as e:
            raise ReferralValidationError(f"Invalid referral: {e.errors(include_url=False)}")

        if actor is not None:
            self._authorize(actor, AccessAction.CREATE, referral)

        stored = await self.store.insert(referral)

        logger.info(
            "referral_created",
            referral_id=stored.referral_id,
            from_provider_id=from_provider_id,
            to_provider_id=to_provider_id,
            urgency=parsed_urgency.value,
            expires_at=stored.expires_at.isoformat(),
        )

        await self._record_audit(
            ReferralAuditLog(
                referral_id=stored.referral_id,
                action=ReferralAuditAction.CREATE,
                actor_id=actor.user_id if actor else stored.from_provider_id,
                actor_role=actor.role.value if actor else None,
                to_status=stored.status,
                version=stored.version,
                occurred_at=now,
                meta={
                    "to_provider_id": stored.to_provider_id,
                    "patient_id": stored.patient_id,
                    "urgency": stored.urgency.value,
                },
            )
        )

        return stored

    # ------------------------------------------------------------------
    # Human transitions
    # ------------------------------------------------------------------

    async def accept(
        self,
        referral_id: str,
        actor: Actor,
        expected_version: int,
        note: Optional[str] = None,
        auto_convert: Optional[AutoConvertRequest] = None,
    ) -> Referral:
        """
        Accept a PENDING referral, optionally converting it straight to an appointment.

        Args:
            referral_id: Referral identifier
            actor: Receiving provider or an operator acting for them
            expected_version: Version the caller last saw
            note: Optional acceptance note
            auto_convert: Appointment details to convert in the same operation

        Returns:
            The referral after the transition (ACCEPTED, or CONVERTED with auto_convert)

        Raises:
            Forbidden, ReferralNotFound, Conflict, InvalidTransition,
            AlreadyFinalized, SchedulingConflict, AppointmentSchedulerUnavailable
        """
        note = note.strip() if note and note.strip() else None
        referral = await self._load(referral_id)
        self._authorize(actor, AccessAction.ACCEPT, referral)

        if auto_convert is not None:
            return await self._convert(
                referral,
                actor,
                expected_version,
                date_time=auto_convert.date_time,
                appointment_reason=auto_convert.appointment_reason,
                appointment_notes=auto_convert.appointment_notes,
                sources=frozenset({ReferralStatus.PENDING}),
                acceptance_note=note,
                via_accept=True,
            )

        replayed = self._replayed(
            referral, expected_version, ReferralStatus.ACCEPTED, actor, acceptance_note=note
        )
        if replayed:
            return replayed

        await self._check_transition(
            referral, expected_version, ReferralStatus.ACCEPTED, frozenset({ReferralStatus.PENDING})
        )

        now = self.clock()
        new_state = referral.transitioned(
            ReferralStatus.ACCEPTED,
            actor.user_id,
            now,
            accepted_at=now,
            accepted_by=actor.user_id,
            acceptance_note=note,
        )

        return await self._commit(
            referral,
            new_state,
            actor,
            expected_version,
            replay_fields={"acceptance_note": note},
        )

    async def reject(
        self,
        referral_id: str,
        actor: Actor,
        expected_version: int,
        reason: str,
    ) -> Referral:
        """
        Reject a PENDING referral.

        Args:
            referral_id: Referral identifier
            actor: Receiving provider or an operator acting for them
            expected_version: Version the caller last saw
            reason: Why the referral is declined

        Returns:
            The REJECTED referral

        Raises:
            ReferralValidationError, Forbidden, ReferralNotFound, Conflict,
            InvalidTransition, AlreadyFinalized
        """
        if not reason or not reason.strip():
            raise ReferralValidationError("Rejection reason is required", field="reason")
        reason = reason.strip()

        referral = await self._load(referral_id)
        self._authorize(actor, AccessAction.REJECT, referral)

        replayed = self._replayed(
            referral, expected_version, ReferralStatus.REJECTED, actor, rejected_reason=reason
        )
        if replayed:
            return replayed

        await self._check_transition(
            referral, expected_version, ReferralStatus.REJECTED, frozenset({ReferralStatus.PENDING})
        )

        now = self.clock()
        new_state = referral.transitioned(
            ReferralStatus.REJECTED,
            actor.user_id,
            now,
            rejected_reason=reason,
            resolved_at=now,
            resolved_by=actor.user_id,
        )

        return await self._commit(
            referral,
            new_state,
            actor,
            expected_version,
            replay_fields={"rejected_reason": reason},
            audit_meta={"reason": reason},
        )

    async def convert(
        self,
        referral_id: str,
        actor: Actor,
        expected_version: int,
        date_time: datetime,
        appointment_reason: Optional[str] = None,
        appointment_notes: Optional[str] = None,
    ) -> Referral:
        """
        Resolve a PENDING or ACCEPTED referral into a booked appointment.

        Args:
            referral_id: Referral identifier
            actor: Receiving provider or an operator acting for them
            expected_version: Version the caller last saw
            date_time: Requested appointment time
            appointment_reason: Appointment reason (defaults to the referral reason)
            appointment_notes: Appointment notes (defaults to the clinical notes)

        Returns:
            The CONVERTED referral

        Raises:
            Forbidden, ReferralNotFound, Conflict (possibly carrying an orphaned
            appointment_id), InvalidTransition, AlreadyFinalized,
            SchedulingConflict, AppointmentSchedulerUnavailable
        """
        referral = await self._load(referral_id)
        self._authorize(actor, AccessAction.CONVERT, referral)

        return await self._convert(
            referral,
            actor,
            expected_version,
            date_time=date_time,
            appointment_reason=appointment_reason,
            appointment_notes=appointment_notes,
            sources=frozenset({ReferralStatus.PENDING, ReferralStatus.ACCEPTED}),
        )

    async def get(self, referral_id: str, actor: Actor) -> Referral:
        """Load a single referral the actor may read."""
        referral = await self._load(referral_id)
        self._authorize(actor, AccessAction.READ, referral)
        return referral

    async def list_for_actor(
        self,
        actor: Actor,
        direction: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[ReferralStatus] = None,
        patient_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[Referral]:
        """
        List referrals visible to an actor.

        Clinicians see referrals they sent ("sent"), received ("received") or
        both. Operators and admins list referrals addressed to provider_id, or
        every referral in their scope when it is omitted. Operator scope is
        applied in the store query so that skip and limit page over visible
        referrals only.
        """
        if actor.role == UserRole.CLINICIAN:
            own = actor.provider_id
            referrals = await self.store.list_referrals(
                from_provider_id=own if direction == "sent" else None,
                to_provider_id=own if direction == "received" else None,
                involving_provider_id=own if direction not in ("sent", "received") else None,
                status=status,
                patient_id=patient_id,
                skip=skip,
                limit=limit,
            )
        else:
            scope = None
            if actor.role == UserRole.OPERATOR and actor.represented_provider_ids is not None:
                scope = list(actor.represented_provider_ids)
            referrals = await self.store.list_referrals(
                to_provider_id=provider_id,
                to_provider_ids=scope,
                status=status,
                patient_id=patient_id,
                skip=skip,
                limit=limit,
            )

        return [
            r
            for r in referrals
            if self.access_policy.authorize(actor, AccessAction.READ, r).allowed
        ]

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def expire(self, referral: Referral, now: Optional[datetime] = None) -> Optional[Referral]:
        """
        Move an overdue open referral to EXPIRED using the version it was read at.

        Args:
            referral: Referral as last read
            now: Current time (engine clock if not provided)

        Returns:
            The EXPIRED referral, or None if the referral was not overdue or a
            concurrent write got there first
        """
        now = now or self.clock()
        if not referral.is_overdue(now):
            return None

        new_state = referral.transitioned(
            ReferralStatus.EXPIRED,
            SWEEPER_ACTOR.user_id,
            now,
            resolved_at=now,
            resolved_by=SWEEPER_ACTOR.user_id,
        )

        result = await self.store.compare_and_swap(referral.referral_id, referral.version, new_state)
        if not result.ok:
            logger.info(
                "referral_expiry_lost_race",
                referral_id=referral.referral_id,
                read_version=referral.version,
                current_status=result.referral.status.value if result.referral else None,
            )
            return None

        expired = result.referral
        logger.info(
            "referral_expired",
            referral_id=expired.referral_id,
            previous_status=referral.status.value,
            expires_at=referral.expires_at.isoformat(),
        )
        await self._audit_transition(referral, expired, SWEEPER_ACTOR)
        return expired

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _convert(
        self,
        referral: Referral,
        actor: Actor,
        expected_version: int,
        date_time: datetime,
        appointment_reason: Optional[str],
        appointment_notes: Optional[str],
        sources: frozenset[ReferralStatus],
        acceptance_note: Optional[str] = None,
        via_accept: bool = False,
    ) -> Referral:
        """Book the appointment, then commit CONVERTED against expected_version."""
        booking = {
            "appointment_date_time": as_stored_time(date_time),
            "appointment_reason": appointment_reason or referral.reason,
            "appointment_notes": appointment_notes or referral.clinical_notes,
        }

        replayed = self._replayed(
            referral, expected_version, ReferralStatus.CONVERTED, actor, **booking
        )
        if replayed:
            return replayed

        await self._check_transition(referral, expected_version, ReferralStatus.CONVERTED, sources)

        appointment = await self._schedule(
            referral,
            date_time=booking["appointment_date_time"],
            reason=booking["appointment_reason"],
            notes=booking["appointment_notes"],
            idempotency_key=f"{referral.referral_id}:{expected_version}",
        )

        now = self.clock()
        changes: dict[str, Any] = {
            "appointment_id": appointment.appointment_id,
            **booking,
            "resolved_at": now,
            "resolved_by": actor.user_id,
            "accepted_at": referral.accepted_at or now,
            "accepted_by": referral.accepted_by or actor.user_id,
        }
        if acceptance_note is not None:
            changes["acceptance_note"] = acceptance_note

        new_state = referral.transitioned(ReferralStatus.CONVERTED, actor.user_id, now, **changes)

        result = await self.store.compare_and_swap(referral.referral_id, expected_version, new_state)

        if result.ok:
            converted = result.referral
            logger.info(
                "referral_converted",
                referral_id=converted.referral_id,
                actor_id=actor.user_id,
                appointment_id=appointment.appointment_id,
                from_status=referral.status.value,
                version=converted.version,
            )
            await self._audit_transition(
                referral,
                converted,
                actor,
                meta={
                    "appointment_id": appointment.appointment_id,
                    "date_time": booking["appointment_date_time"].isoformat(),
                    "via_accept": via_accept,
                },
            )
            return converted

        current = result.referral
        if current is None:
            raise ReferralNotFound(referral.referral_id)

        # A concurrent identical retry already linked this same appointment
        replayed = self._replayed(
            current, expected_version, ReferralStatus.CONVERTED, actor, **booking
        )
        if replayed and replayed.appointment_id == appointment.appointment_id:
            return replayed

        logger.warning(
            "orphaned_appointment",
            referral_id=referral.referral_id,
            actor_id=actor.user_id,
            appointment_id=appointment.appointment_id,
            expected_version=expected_version,
            current_version=current.version,
            current_status=current.status.value,
        )
        await self._record_audit(
            ReferralAuditLog(
                referral_id=referral.referral_id,
                action=ReferralAuditAction.ORPHANED_APPOINTMENT,
                actor_id=actor.user_id,
                actor_role=actor.role.value,
                from_status=referral.status,
                to_status=current.status,
                version=current.version,
                occurred_at=now,
                meta={"appointment_id": appointment.appointment_id},
            )
        )
        raise Conflict(
            "Referral changed before the appointment could be linked; "
            "the appointment exists and needs reconciliation",
            current=current,
            appointment_id=appointment.appointment_id,
        )

    async def _schedule(
        self,
        referral: Referral,
        date_time: datetime,
        reason: str,
        notes: Optional[str],
        idempotency_key: str,
    ) -> ScheduledAppointment:
        try:
            return await self.scheduler.schedule(
                patient_id=referral.patient_id,
                provider_id=referral.to_provider_id,
                date_time=date_time,
                reason=reason,
                notes=notes,
                idempotency_key=idempotency_key,
            )
        except AppointmentConflictError as e:
            logger.info(
                "referral_scheduling_conflict",
                referral_id=referral.referral_id,
                date_time=date_time.isoformat(),
            )
            raise SchedulingConflict(str(e)) from e
        except AppointmentSchedulerError as e:
            logger.error(
                "referral_scheduler_unavailable",
                referral_id=referral.referral_id,
                error=str(e),
            )
            raise AppointmentSchedulerUnavailable(
                "Appointment scheduler unavailable; retry with the same version"
            ) from e

    async def _load(self, referral_id: str) -> Referral:
        referral = await self.store.load(referral_id)
        if referral is None:
            raise ReferralNotFound(referral_id)
        return referral

    def _authorize(self, actor: Actor, action: AccessAction, referral: Referral) -> None:
        decision = self.access_policy.authorize(actor, action, referral)
        if not decision.allowed:
            logger.warning(
                "referral_access_denied",
                referral_id=referral.referral_id,
                actor_id=actor.user_id,
                role=actor.role.value,
                action=action.value,
                reason=decision.reason,
            )
            raise Forbidden(decision.reason or "Not permitted")

    def _replayed(
        self,
        referral: Referral,
        expected_version: int,
        target: ReferralStatus,
        actor: Actor,
        **expected_fields: Any,
    ) -> Optional[Referral]:
        """
        Detect a retry of an operation that already committed.

        The retry counts as success only while the referral still sits in
        target, and the transition that produced expected_version + 1 went to
        target, was made by the same actor and left the same payload fields.
        """
        if referral.status != target or referral.version <= expected_version:
            return None

        transition = referral.find_transition(expected_version + 1)
        if transition is None:
            return None
        if transition.to_status != target or transition.actor_id != actor.user_id:
            return None

        for field_name, value in expected_fields.items():
            if getattr(referral, field_name) != value:
                return None

        logger.info(
            "referral_retry_recognized",
            referral_id=referral.referral_id,
            actor_id=actor.user_id,
            target=target.value,
            expected_version=expected_version,
            current_version=referral.version,
        )
        return referral

    async def _check_transition(
        self,
        referral: Referral,
        expected_version: int,
        target: ReferralStatus,
        sources: frozenset[ReferralStatus],
    ) -> None:
        """
        Check preconditions in order: terminal, version, source status, deadline.

        An overdue referral is expired on the spot and reported as finalized.
        """
        if referral.is_terminal:
            raise AlreadyFinalized(
                f"Referral is already {referral.status.value}", current=referral
            )

        if referral.version != expected_version:
            logger.info(
                "referral_conflict",
                referral_id=referral.referral_id,
                expected_version=expected_version,
                current_version=referral.version,
                target=target.value,
            )
            raise Conflict(
                f"Referral is at version {referral.version}, not {expected_version}",
                current=referral,
            )

        if referral.status not in sources or not referral.status.can_transition_to(target):
            raise InvalidTransition(
                f"Cannot move referral from {referral.status.value} to {target.value}",
                current=referral,
            )

        now = self.clock()
        if referral.is_overdue(now):
            expired = await self.expire(referral, now)
            if expired is None:
                current = await self._load(referral.referral_id)
                raise Conflict("Referral changed while expiring", current=current)
            raise AlreadyFinalized("Referral has expired", current=expired)

    async def _commit(
        self,
        referral: Referral,
        new_state: Referral,
        actor: Actor,
        expected_version: int,
        replay_fields: Optional[dict[str, Any]] = None,
        audit_meta: Optional[dict[str, Any]] = None,
    ) -> Referral:
        """Write new_state with compare-and-swap and translate a lost race."""
        result = await self.store.compare_and_swap(referral.referral_id, expected_version, new_state)

        if result.ok:
            committed = result.referral
            logger.info(
                f"referral_{committed.status.value.lower()}",
                referral_id=committed.referral_id,
                actor_id=actor.user_id,
                version=committed.version,
            )
            await self._audit_transition(referral, committed, actor, meta=audit_meta)
            return committed

        current = result.referral
        if current is None:
            raise ReferralNotFound(referral.referral_id)

        replayed = self._replayed(
            current, expected_version, new_state.status, actor, **(replay_fields or {})
        )
        if replayed:
            return replayed

        logger.info(
            "referral_conflict",
            referral_id=referral.referral_id,
            actor_id=actor.user_id,
            expected_version=expected_version,
            current_version=current.version,
            current_status=current.status.value,
            target=new_state.status.value,
        )
        raise Conflict(
            f"Referral was modified concurrently and is now {current.status.value}",
            current=current,
        )

    async def _audit_transition(
        self,
        before: Referral,
        after: Referral,
        actor: Actor,
        meta: Optional[dict[str, Any]] = None,
    ) -> None:
        transition = after.find_transition(after.version)
        await self._record_audit(
            ReferralAuditLog(
                referral_id=after.referral_id,
                action=ACTION_FOR_STATUS[after.status],
                actor_id=actor.user_id,
                actor_role=actor.role.value,
                from_status=before.status,
                to_status=after.status,
                version=after.version,
                occurred_at=transition.occurred_at if transition else self.clock(),
                meta=meta or {},
            )
        )

    async def _record_audit(self, entry: ReferralAuditLog) -> None:
        """Write an audit entry; failures are logged and never fail the operation."""
        if self.audit_sink is None or not self.config.enable_audit_logging:
            return
        try:
            await self.audit_sink.create_log(entry)
        except Exception as e:
            logger.error(
                "audit_logging_failed",
                referral_id=entry.referral_id,
                action=entry.action,
                error=str(e),
            )

    @staticmethod
    def _parse_urgency(urgency: Union[ReferralUrgency, str]) -> ReferralUrgency:
        if isinstance(urgency, ReferralUrgency):
            return urgency
        try:
            return ReferralUrgency(str(urgency).strip().upper())
        except ValueError:
            allowed = ", ".join(u.value for u in ReferralUrgency)
            raise ReferralValidationError(
                f"Unrecognized urgency '{urgency}'. Expected one of: {allowed}", field="urgency"
            )
