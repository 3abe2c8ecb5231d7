"""
Appointment Scheduler Client

Boundary to the external appointment calendar. The calendar owns slot and
conflict logic; this client only books and reports the outcome.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import httpx
from pydantic import BaseModel, Field
from structlog import get_logger
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import get_config

logger = get_logger()


class ScheduledAppointment(BaseModel):
    """Appointment created by the scheduler."""

    appointment_id: str
    patient_id: str
    provider_id: str
    date_time: datetime
    reason: str
    notes: Optional[str] = None
    status: str = Field(default="SCHEDULED")


class AppointmentConflictError(Exception):
    """The requested slot is not available."""

    def __init__(self, message: str, date_time: Optional[datetime] = None):
        super().__init__(message)
        self.date_time = date_time


class AppointmentSchedulerError(Exception):
    """The scheduler failed or could not be reached; the booking outcome is unknown."""


class AppointmentScheduler(ABC):
    """Boundary to the appointment calendar."""

    @abstractmethod
    async def schedule(
        self,
        patient_id: str,
        provider_id: str,
        date_time: datetime,
        reason: str,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ScheduledAppointment:
        """
        Book an appointment.

        Args:
            patient_id: Patient to book
            provider_id: Provider the appointment is with
            date_time: Requested start time
            reason: Appointment reason
            notes: Optional notes for the provider
            idempotency_key: Key making retries of the same booking safe

        Returns:
            The scheduled appointment

        Raises:
            AppointmentConflictError: If the slot is taken
            AppointmentSchedulerError: If the outcome is unknown
        """


class HttpAppointmentScheduler(AppointmentScheduler):
    """
    Scheduler client speaking HTTP to the calendar service.

    Transport failures are retried with the same idempotency key, so a retried
    request never books twice. A 409 response is a slot conflict.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize scheduler client.

        Args:
            base_url: Calendar service URL (uses config default if not provided)
            timeout_seconds: Per-request timeout (uses config default if not provided)
            max_retries: Retry attempts on transport errors (uses config default if not provided)
            transport: Optional httpx transport override
        """
        config = get_config()
        self.base_url = base_url or config.appointment_scheduler_url
        self.timeout_seconds = timeout_seconds or config.appointment_scheduler_timeout_seconds
        self.max_retries = (
            max_retries if max_retries is not None else config.appointment_scheduler_max_retries
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def schedule(
        self,
        patient_id: str,
        provider_id: str,
        date_time: datetime,
        reason: str,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ScheduledAppointment:
        payload = {
            "patient_id": patient_id,
            "provider_id": provider_id,
            "date_time": date_time.isoformat(),
            "reason": reason,
            "notes": notes,
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}

        try:
            response = await self._post_with_retry(payload, headers)
        except RetryError as e:
            logger.error(
                "appointment_scheduler_unreachable",
                provider_id=provider_id,
                attempts=self.max_retries + 1,
                error=str(e.last_attempt.exception()),
            )
            raise AppointmentSchedulerError("Appointment scheduler unreachable") from e

        if response.status_code == httpx.codes.CONFLICT:
            try:
                detail = response.json().get("detail", "Requested time is not available")
            except ValueError:
                detail = "Requested time is not available"
            logger.info(
                "appointment_slot_conflict",
                provider_id=provider_id,
                date_time=date_time.isoformat(),
            )
            raise AppointmentConflictError(detail, date_time=date_time)

        if response.is_error:
            logger.error(
                "appointment_scheduler_error",
                status_code=response.status_code,
                provider_id=provider_id,
            )
            raise AppointmentSchedulerError(
                f"Appointment scheduler returned HTTP {response.status_code}"
            )

        # The booking may exist even when its body is unreadable, so this
        # surfaces as an unknown outcome rather than a failure.
        try:
            data = response.json()
            appointment = ScheduledAppointment(
                appointment_id=data["id"],
                patient_id=data.get("patient_id", patient_id),
                provider_id=data.get("provider_id", provider_id),
                date_time=data.get("date_time", date_time),
                reason=data.get("reason", reason),
                notes=data.get("notes", notes),
                status=data.get("status", "SCHEDULED"),
            )
        except (KeyError, TypeError, ValueError) as e:
            # ValueError covers both JSON decoding and pydantic validation
            logger.error(
                "appointment_scheduler_bad_response",
                status_code=response.status_code,
                provider_id=provider_id,
                error=str(e),
            )
            raise AppointmentSchedulerError(
                "Appointment scheduler returned an unreadable booking response"
            ) from e

        logger.info(
            "appointment_scheduled",
            appointment_id=appointment.appointment_id,
            provider_id=provider_id,
        )

        return appointment

    async def _post_with_retry(self, payload: dict, headers: dict[str, str]) -> httpx.Response:
        """POST the booking, retrying transport errors only."""

        @retry(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(httpx.TransportError),
        )
        async def _post() -> httpx.Response:
            return await self._client.post("/appointments", json=payload, headers=headers)

        return await _post()
