"""
Referral Access Policy

Decides whether an actor may perform an action on a referral. The rules form a
table keyed by role; each row lists the permitted actions and how the actor's
scope is matched against the referral's providers.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..referrals.models import Referral
from .models import Actor, UserRole


class AccessAction(str, Enum):
    """Actions that can be authorized on a referral."""

    CREATE = "create"
    READ = "read"
    ACCEPT = "accept"
    REJECT = "reject"
    CONVERT = "convert"


TRIAGE_ACTIONS = frozenset({AccessAction.ACCEPT, AccessAction.REJECT, AccessAction.CONVERT})


class AccessScope(str, Enum):
    """How a role's reach over referrals is determined."""

    OWN = "own"  # Only referrals naming the actor's own provider record
    REPRESENTED = "represented"  # Referrals addressed to providers the actor represents
    ANY = "any"  # Every referral
    NONE = "none"


class RolePolicy(BaseModel):
    """One row of the access table."""

    actions: frozenset[AccessAction] = Field(default_factory=frozenset)
    scope: AccessScope = AccessScope.NONE


ROLE_POLICIES: dict[UserRole, RolePolicy] = {
    UserRole.CLINICIAN: RolePolicy(
        actions=frozenset(AccessAction),
        scope=AccessScope.OWN,
    ),
    UserRole.OPERATOR: RolePolicy(
        actions=frozenset({AccessAction.READ, *TRIAGE_ACTIONS}),
        scope=AccessScope.REPRESENTED,
    ),
    UserRole.ADMIN: RolePolicy(
        actions=frozenset({AccessAction.READ, *TRIAGE_ACTIONS}),
        scope=AccessScope.ANY,
    ),
    UserRole.SYSTEM: RolePolicy(),
}


class AccessDecision(BaseModel):
    """Outcome of an authorization check."""

    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "AccessDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "AccessDecision":
        return cls(allowed=False, reason=reason)


class AccessPolicy(ABC):
    """Boundary to the identity & access context."""

    @abstractmethod
    def authorize(self, actor: Actor, action: AccessAction, referral: Referral) -> AccessDecision:
        """
        Decide whether actor may perform action on referral.

        Args:
            actor: Acting user
            action: Requested action
            referral: Target referral (for CREATE, the referral about to be created)

        Returns:
            Access decision
        """

    def permits(self, actor: Actor, action: AccessAction) -> AccessDecision:
        """
        Decide whether actor's role may perform action on any referral at all.

        Checked before the request is inspected; authorize still decides on the
        concrete referral.
        """
        return AccessDecision.allow()


class RoleBasedAccessPolicy(AccessPolicy):
    """
    Default policy backed by ``ROLE_POLICIES``.

    Clinicians create referrals only from their own provider record and triage
    only those addressed to them. Operators triage for the providers they
    represent. Admins may triage anything.
    """

    def __init__(self, policies: Optional[dict[UserRole, RolePolicy]] = None):
        self.policies = policies or ROLE_POLICIES

    def permits(self, actor: Actor, action: AccessAction) -> AccessDecision:
        policy = self.policies.get(actor.role)
        if policy is None or action not in policy.actions:
            return AccessDecision.deny(f"Role '{actor.role.value}' may not {action.value} referrals")
        return AccessDecision.allow()

    def authorize(self, actor: Actor, action: AccessAction, referral: Referral) -> AccessDecision:
        decision = self.permits(actor, action)
        if not decision.allowed:
            return decision

        policy = self.policies[actor.role]

        if policy.scope == AccessScope.ANY:
            return AccessDecision.allow()

        if policy.scope == AccessScope.OWN:
            if action == AccessAction.CREATE:
                if actor.provider_id != referral.from_provider_id:
                    return AccessDecision.deny("Clinicians can only send referrals as themselves")
                return AccessDecision.allow()
            if action == AccessAction.READ:
                if actor.provider_id in (referral.from_provider_id, referral.to_provider_id):
                    return AccessDecision.allow()
                return AccessDecision.deny("Referral does not involve this clinician")
            if actor.provider_id != referral.to_provider_id:
                return AccessDecision.deny("Only the receiving provider can triage this referral")
            return AccessDecision.allow()

        if policy.scope == AccessScope.REPRESENTED:
            if actor.represents(referral.to_provider_id):
                return AccessDecision.allow()
            return AccessDecision.deny("Receiving provider is outside this operator's scope")

        return AccessDecision.deny("No access scope configured")

    def can_see_provider_queue(self, actor: Actor, provider_id: Optional[str]) -> bool:
        """
        Check if actor may view the triage queue of provider_id.

        A provider_id of None asks for every provider's queue.
        """
        policy = self.policies.get(actor.role)
        if policy is None or AccessAction.READ not in policy.actions:
            return False
        if policy.scope == AccessScope.ANY:
            return True
        if provider_id is None:
            return actor.role == UserRole.OPERATOR and actor.represented_provider_ids is None
        return actor.represents(provider_id)
