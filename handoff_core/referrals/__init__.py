"""
Referrals Module

Referral records, lifecycle errors and the state machine.
"""

from .errors import (
    AlreadyFinalized,
    AppointmentSchedulerUnavailable,
    Conflict,
    Forbidden,
    InvalidTransition,
    ReferralError,
    ReferralNotFound,
    ReferralValidationError,
    SchedulingConflict,
)
from .models import (
    AutoConvertRequest,
    Referral,
    ReferralStatus,
    ReferralTransition,
    ReferralUrgency,
)

__all__ = [
    "AlreadyFinalized",
    "AppointmentSchedulerUnavailable",
    "Conflict",
    "Forbidden",
    "InvalidTransition",
    "ReferralError",
    "ReferralNotFound",
    "ReferralValidationError",
    "SchedulingConflict",
    "AutoConvertRequest",
    "Referral",
    "ReferralStatus",
    "ReferralTransition",
    "ReferralUrgency",
]
