"""
Referral API Schemas

Request and response models for referral endpoints.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from .audit import ReferralAuditLog
from .models import AutoConvertRequest, Referral


class ReferralCreateRequest(BaseModel):
    """Request model for sending a referral."""

    from_provider_id: Optional[str] = Field(
        default=None, description="Sending provider; defaults to the caller's provider record"
    )
    to_provider_id: str = Field(..., description="Receiving provider")
    patient_id: str = Field(..., description="Referred patient")
    reason: str = Field(..., description="Why the patient is referred")
    urgency: str = Field(default="ROUTINE", description="ROUTINE, URGENT or EMERGENCY")
    clinical_notes: Optional[str] = Field(default=None, max_length=10000)
    requested_tests: list[str] = Field(default_factory=list)
    ttl_hours: Optional[int] = Field(
        default=None, ge=1, description="Hours until the referral expires"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "to_provider_id": "doc_cardiology_01",
                "patient_id": "pat_7781",
                "reason": "Chest pain on exertion",
                "urgency": "EMERGENCY",
                "clinical_notes": "ECG attached; troponin pending",
                "requested_tests": ["stress_echo"],
            }
        }


class AcceptReferralRequest(BaseModel):
    """Request model for accepting a referral."""

    expected_version: int = Field(..., ge=1, description="Version the caller last saw")
    note: Optional[str] = Field(default=None, max_length=2000)
    auto_convert: Optional[AutoConvertRequest] = Field(
        default=None, description="Book an appointment in the same operation"
    )


class RejectReferralRequest(BaseModel):
    """Request model for rejecting a referral."""

    expected_version: int = Field(..., ge=1)
    reason: str = Field(..., max_length=2000, description="Why the referral is declined")


class ConvertReferralRequest(BaseModel):
    """Request model for converting a referral into an appointment."""

    expected_version: int = Field(..., ge=1)
    date_time: datetime = Field(..., description="Requested appointment time")
    appointment_reason: Optional[str] = Field(default=None)
    appointment_notes: Optional[str] = Field(default=None)

    class Config:
        json_schema_extra = {
            "example": {
                "expected_version": 2,
                "date_time": "2026-11-03T09:30:00Z",
                "appointment_reason": "Cardiology consult",
            }
        }


class ReferralListResponse(BaseModel):
    """Response model for referral list."""

    referrals: list[Referral]
    direction: Optional[Literal["sent", "received"]] = None
    skip: int
    limit: int


class ReferralAuditResponse(BaseModel):
    """Response model for a referral's audit trail."""

    referral_id: str
    logs: list[ReferralAuditLog]
