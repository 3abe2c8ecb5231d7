"""
Actor and Role Models

Defines staff roles and the acting-user model the referral engine authorizes against.
Identity itself is resolved upstream; these models only describe what a decoded
token tells us about who is acting.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class UserRole(str, Enum):
    """
    Roles that can appear on a referral handoff.

    CLINICIAN sends and receives referrals for their own provider record.
    OPERATOR is front-desk staff acting on behalf of one or more providers.
    ADMIN is break-glass access across every provider.
    SYSTEM is reserved for background processes such as the expiry sweeper.
    """

    CLINICIAN = "clinician"
    OPERATOR = "operator"
    ADMIN = "admin"
    SYSTEM = "system"


# Identity fields each role must carry before it can act at all
REQUIRED_ACTOR_FIELDS: dict[UserRole, tuple[str, ...]] = {
    UserRole.CLINICIAN: ("provider_id",),
    UserRole.OPERATOR: (),
    UserRole.ADMIN: (),
    UserRole.SYSTEM: (),
}


class Actor(BaseModel):
    """
    The user performing a referral action.

    Built from verified token claims for every request.
    """

    user_id: str = Field(..., min_length=1, description="Unique user identifier")
    role: UserRole

    # Clinician's own provider record
    provider_id: Optional[str] = Field(default=None)

    # Operator scope; None means every provider in the facility
    represented_provider_ids: Optional[list[str]] = Field(default=None)

    display_name: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def check_required_fields(self) -> "Actor":
        """Reject actors missing the identity fields their role requires."""
        for field_name in REQUIRED_ACTOR_FIELDS.get(self.role, ()):
            if not getattr(self, field_name):
                raise ValueError(f"{self.role.value} actors require '{field_name}'")
        return self

    def is_system(self) -> bool:
        """Check if this actor is a background process."""
        return self.role == UserRole.SYSTEM

    def represents(self, provider_id: str) -> bool:
        """
        Check if this actor may act for a given provider.

        Clinicians represent only themselves. Operators represent their
        configured providers, or all providers when unscoped. Admins represent
        everyone.
        """
        if self.role == UserRole.ADMIN:
            return True
        if self.role == UserRole.CLINICIAN:
            return self.provider_id == provider_id
        if self.role == UserRole.OPERATOR:
            if self.represented_provider_ids is None:
                return True
            return provider_id in self.represented_provider_ids
        return False

    class Config:
        """Pydantic configuration."""

        json_schema_extra = {
            "example": {
                "user_id": "user_1a2b3c4d",
                "role": "clinician",
                "provider_id": "doc_cardiology_01",
            }
        }


SWEEPER_ACTOR = Actor(user_id="system:expiry-sweeper", role=UserRole.SYSTEM)


class TokenPayload(BaseModel):
    """JWT token payload issued by the identity service."""

    user_id: str
    role: UserRole
    provider_id: Optional[str] = None
    represented_provider_ids: Optional[list[str]] = None
    name: Optional[str] = None
    exp: datetime  # Expiration time

    def to_actor(self) -> Actor:
        """Convert verified claims into an actor."""
        return Actor(
            user_id=self.user_id,
            role=self.role,
            provider_id=self.provider_id,
            represented_provider_ids=self.represented_provider_ids,
            display_name=self.name,
        )
