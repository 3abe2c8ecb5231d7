"""
Authentication Module

Actor resolution from JWT tokens and the role-keyed referral access policy.
"""

from .access import AccessAction, AccessDecision, AccessPolicy, RoleBasedAccessPolicy
from .models import Actor, UserRole
from .security import create_access_token, decode_access_token
from .dependencies import get_current_actor, require_role

__all__ = [
    "AccessAction",
    "AccessDecision",
    "AccessPolicy",
    "RoleBasedAccessPolicy",
    "Actor",
    "UserRole",
    "create_access_token",
    "decode_access_token",
    "get_current_actor",
    "require_role",
]
