"""
Scheduling Module

Client boundary to the external appointment calendar.
"""

from .client import (
    AppointmentConflictError,
    AppointmentScheduler,
    AppointmentSchedulerError,
    HttpAppointmentScheduler,
    ScheduledAppointment,
)

__all__ = [
    "AppointmentConflictError",
    "AppointmentScheduler",
    "AppointmentSchedulerError",
    "HttpAppointmentScheduler",
    "ScheduledAppointment",
]
