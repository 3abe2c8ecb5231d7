"""
Triage Queue Builder

Builds the ordered list of PENDING referrals a provider (or the front desk
acting for them) should attend to next.
"""

from datetime import datetime
from typing import Callable, Iterable, Optional

from pydantic import BaseModel, Field
from structlog import get_logger

from ..auth.access import RoleBasedAccessPolicy
from ..auth.models import Actor, UserRole
from ..config import HandoffConfig, get_config
from .db_service import ReferralStore
from .errors import Forbidden
from .models import Referral, ReferralStatus, utcnow

logger = get_logger()


def order_for_triage(referrals: Iterable[Referral]) -> list[Referral]:
    """
    Sort referrals for triage.

    Highest urgency first, then oldest first; the referral ID breaks ties so
    the order is total.
    """
    return sorted(
        referrals,
        key=lambda r: (-r.urgency.rank, r.created_at, r.referral_id),
    )


class TriageQueueEntry(BaseModel):
    position: int = Field(..., ge=1)
    referral: Referral
    overdue: bool = Field(
        default=False, description="Deadline passed but the sweeper has not expired it yet"
    )


class TriageQueue(BaseModel):
    """Ordered triage queue for one actor."""

    provider_id: Optional[str] = Field(default=None, description="None when spanning providers")
    generated_at: datetime
    total_pending: int
    entries: list[TriageQueueEntry] = Field(default_factory=list)


class TriageQueueBuilder:
    """Scopes open referrals to an actor and orders them for triage."""

    def __init__(
        self,
        store: ReferralStore,
        access_policy: Optional[RoleBasedAccessPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        config: Optional[HandoffConfig] = None,
    ):
        self.store = store
        self.access_policy = access_policy or RoleBasedAccessPolicy()
        self.clock = clock
        self.config = config or get_config()

    async def build(self, actor: Actor, provider_id: Optional[str] = None) -> TriageQueue:
        """
        Build the triage queue visible to actor.

        Args:
            actor: Requesting actor
            provider_id: Restrict to one receiving provider. Clinicians always
                get their own queue.

        Returns:
            Ordered queue, capped at the configured limit

        Raises:
            Forbidden: If actor may not see the requested queue
        """
        if actor.role == UserRole.CLINICIAN:
            if provider_id and provider_id != actor.provider_id:
                raise Forbidden("Clinicians can only view their own triage queue")
            provider_id = actor.provider_id

        if not self.access_policy.can_see_provider_queue(actor, provider_id):
            if provider_id is None and actor.represented_provider_ids:
                candidates = await self._load_represented(actor.represented_provider_ids)
            else:
                logger.warning(
                    "triage_queue_access_denied",
                    actor_id=actor.user_id,
                    role=actor.role.value,
                    provider_id=provider_id,
                )
                raise Forbidden("Not permitted to view this triage queue")
        else:
            candidates = await self.store.list_open_for(provider_id)

        pending = [r for r in candidates if r.status == ReferralStatus.PENDING]
        ordered = order_for_triage(pending)

        now = self.clock()
        limit = self.config.triage_queue_limit
        entries = [
            TriageQueueEntry(position=i, referral=r, overdue=r.expires_at <= now)
            for i, r in enumerate(ordered[:limit], start=1)
        ]

        logger.info(
            "triage_queue_built",
            actor_id=actor.user_id,
            provider_id=provider_id,
            total_pending=len(ordered),
            returned=len(entries),
        )

        return TriageQueue(
            provider_id=provider_id,
            generated_at=now,
            total_pending=len(ordered),
            entries=entries,
        )

    async def _load_represented(self, provider_ids: list[str]) -> list[Referral]:
        referrals: list[Referral] = []
        for provider_id in dict.fromkeys(provider_ids):
            referrals.extend(await self.store.list_open_for(provider_id))
        return referrals
