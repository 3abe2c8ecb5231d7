"""
Referral Audit Logging

Audit trail for every referral transition. Entries are written by the lifecycle
engine and the expiry sweeper and retained alongside the referral records.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from .models import ReferralStatus, utcnow


class ReferralAuditAction:
    """Audit action names."""

    CREATE = "referral.create"
    ACCEPT = "referral.accept"
    REJECT = "referral.reject"
    CONVERT = "referral.convert"
    EXPIRE = "referral.expire"
    ORPHANED_APPOINTMENT = "referral.orphaned_appointment"


class ReferralAuditLog(BaseModel):
    """
    Referral audit log entry.

    One entry per applied transition, plus one per orphaned appointment.
    """

    log_id: str = Field(default_factory=lambda: str(uuid4()))
    referral_id: str
    action: str

    actor_id: str
    actor_role: Optional[str] = Field(default=None)

    from_status: Optional[ReferralStatus] = Field(default=None)
    to_status: Optional[ReferralStatus] = Field(default=None)
    version: Optional[int] = Field(default=None)

    occurred_at: datetime = Field(default_factory=utcnow)
    meta: dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "log_id": "550e8400-e29b-41d4-a716-446655440000",
                "referral_id": "ref_5f1c2a9e0b7d4c3a8e6f1d2c3b4a5968",
                "action": "referral.accept",
                "actor_id": "user_1a2b3c4d",
                "actor_role": "clinician",
                "from_status": "PENDING",
                "to_status": "ACCEPTED",
                "version": 2,
            }
        }


class AuditSink(ABC):
    """Destination for referral audit entries."""

    @abstractmethod
    async def create_log(self, audit_log: ReferralAuditLog) -> str:
        """Persist an entry and return its log ID."""

    @abstractmethod
    async def list_logs(
        self,
        referral_id: Optional[str] = None,
        action: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[ReferralAuditLog]:
        """List entries, newest first."""


class ReferralAuditService(AuditSink):
    """Service for managing referral audit logs in MongoDB."""

    collection_name = "referral_audit_logs"

    def __init__(self, db: AsyncIOMotorDatabase):
        """
        Initialize audit service.

        Args:
            db: Referral database
        """
        self.db = db
        self.collection = db[self.collection_name]

    async def ensure_indexes(self) -> None:
        """Create indexes for audit log collection."""
        indexes = [
            IndexModel([("log_id", ASCENDING)], unique=True),
            IndexModel([("referral_id", ASCENDING), ("occurred_at", DESCENDING)]),
            IndexModel([("actor_id", ASCENDING)]),
            IndexModel([("action", ASCENDING), ("occurred_at", DESCENDING)]),
        ]
        await self.collection.create_indexes(indexes)

    async def create_log(self, audit_log: ReferralAuditLog) -> str:
        """
        Create audit log entry.

        Args:
            audit_log: Audit log data

        Returns:
            Log ID
        """
        await self.collection.insert_one(audit_log.model_dump())
        return audit_log.log_id

    async def list_logs(
        self,
        referral_id: Optional[str] = None,
        action: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[ReferralAuditLog]:
        """
        List audit logs with filtering.

        Args:
            referral_id: Filter by referral
            action: Filter by action name
            skip: Number of records to skip
            limit: Maximum records to return

        Returns:
            List of audit logs
        """
        query: dict[str, Any] = {}
        if referral_id:
            query["referral_id"] = referral_id
        if action:
            query["action"] = action

        cursor = self.collection.find(query).sort("occurred_at", DESCENDING).skip(skip).limit(limit)

        logs = []
        async for log_dict in cursor:
            log_dict.pop("_id", None)
            logs.append(ReferralAuditLog(**log_dict))

        return logs


class InMemoryAuditService(AuditSink):
    """Audit sink kept in process memory, for local runs and tests."""

    def __init__(self):
        self.entries: list[ReferralAuditLog] = []

    async def create_log(self, audit_log: ReferralAuditLog) -> str:
        self.entries.append(audit_log)
        return audit_log.log_id

    async def list_logs(
        self,
        referral_id: Optional[str] = None,
        action: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[ReferralAuditLog]:
        matches = [
            entry
            for entry in self.entries
            if (referral_id is None or entry.referral_id == referral_id)
            and (action is None or entry.action == action)
        ]
        matches.sort(key=lambda entry: entry.occurred_at, reverse=True)
        return matches[skip : skip + limit]
