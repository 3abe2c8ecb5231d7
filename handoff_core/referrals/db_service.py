"""
Referral Database Service

Versioned storage for referral records. Every write after creation is a
compare-and-swap on ``version``; the store assigns the next version itself, so
no two writes can commit from the same starting version.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, NamedTuple, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, IndexModel, ReturnDocument
from pymongo.errors import DuplicateKeyError
from structlog import get_logger

from .models import OPEN_STATUSES, Referral, ReferralStatus

logger = get_logger()


class CompareAndSwapResult(NamedTuple):
    """
    Outcome of a compare-and-swap write.

    On success ``referral`` is the stored record with its new version. On
    failure it is the current record (None if the referral vanished).
    """

    ok: bool
    referral: Optional[Referral]


class ReferralStore(ABC):
    """Boundary to durable, key-addressed referral storage."""

    @abstractmethod
    async def insert(self, referral: Referral) -> Referral:
        """
        Persist a new referral at version 1.

        Raises:
            ValueError: If the referral ID already exists
        """

    @abstractmethod
    async def load(self, referral_id: str) -> Optional[Referral]:
        """Load a referral with its current version."""

    @abstractmethod
    async def compare_and_swap(
        self, referral_id: str, expected_version: int, new_state: Referral
    ) -> CompareAndSwapResult:
        """
        Replace a referral only if its stored version equals expected_version.

        The written record gets version expected_version + 1.
        """

    @abstractmethod
    async def list_open_for(self, provider_id: Optional[str] = None) -> list[Referral]:
        """
        List PENDING and ACCEPTED referrals addressed to a provider.

        A provider_id of None lists open referrals for every provider.
        """

    @abstractmethod
    async def list_due_for_expiry(self, now: datetime, limit: int = 200) -> list[Referral]:
        """List open referrals whose expires_at <= now, oldest deadline first."""

    @abstractmethod
    async def list_referrals(
        self,
        from_provider_id: Optional[str] = None,
        to_provider_id: Optional[str] = None,
        to_provider_ids: Optional[list[str]] = None,
        involving_provider_id: Optional[str] = None,
        status: Optional[ReferralStatus] = None,
        patient_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[Referral]:
        """
        List referrals with filtering, newest first.

        to_provider_ids restricts the receiving provider to a set; an empty
        list matches nothing.
        """

    async def ensure_indexes(self) -> None:
        """Create any indexes the backend needs."""


class MongoReferralStore(ReferralStore):
    """
    Referral store backed by MongoDB.

    Compare-and-swap is a single ``find_one_and_update`` filtered on both the
    referral ID and the expected version.
    """

    collection_name = "referrals"

    def __init__(self, db: AsyncIOMotorDatabase):
        """
        Initialize referral store.

        Args:
            db: Referral database instance
        """
        self.db = db
        self.collection = db[self.collection_name]

    async def ensure_indexes(self) -> None:
        """Create necessary indexes for referral collection."""
        indexes = [
            IndexModel([("referral_id", ASCENDING)], unique=True),
            # Triage and sweep queries
            IndexModel([("to_provider_id", ASCENDING), ("status", ASCENDING)]),
            IndexModel([("status", ASCENDING), ("expires_at", ASCENDING)]),
            # Listings
            IndexModel([("from_provider_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("patient_id", ASCENDING), ("created_at", DESCENDING)]),
        ]
        await self.collection.create_indexes(indexes)

    @staticmethod
    def _to_referral(document: dict[str, Any]) -> Referral:
        document.pop("_id", None)
        return Referral(**document)

    async def insert(self, referral: Referral) -> Referral:
        stored = referral.model_copy(update={"version": 1})

        try:
            await self.collection.insert_one(stored.model_dump())
        except DuplicateKeyError:
            raise ValueError(f"Referral '{referral.referral_id}' already exists")

        return stored

    async def load(self, referral_id: str) -> Optional[Referral]:
        document = await self.collection.find_one({"referral_id": referral_id})
        if document:
            return self._to_referral(document)
        return None

    async def compare_and_swap(
        self, referral_id: str, expected_version: int, new_state: Referral
    ) -> CompareAndSwapResult:
        update_data = new_state.model_dump(exclude={"referral_id", "version"})

        result = await self.collection.find_one_and_update(
            {"referral_id": referral_id, "version": expected_version},
            {"$set": update_data, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )

        if result:
            return CompareAndSwapResult(ok=True, referral=self._to_referral(result))

        current = await self.load(referral_id)
        logger.info(
            "referral_cas_rejected",
            referral_id=referral_id,
            expected_version=expected_version,
            current_version=current.version if current else None,
        )
        return CompareAndSwapResult(ok=False, referral=current)

    async def list_open_for(self, provider_id: Optional[str] = None) -> list[Referral]:
        query: dict[str, Any] = {"status": {"$in": [s.value for s in OPEN_STATUSES]}}
        if provider_id:
            query["to_provider_id"] = provider_id

        cursor = self.collection.find(query).sort("created_at", ASCENDING)

        referrals = []
        async for document in cursor:
            referrals.append(self._to_referral(document))

        return referrals

    async def list_due_for_expiry(self, now: datetime, limit: int = 200) -> list[Referral]:
        query = {
            "status": {"$in": [s.value for s in OPEN_STATUSES]},
            "expires_at": {"$lte": now},
        }
        cursor = self.collection.find(query).sort("expires_at", ASCENDING).limit(limit)

        referrals = []
        async for document in cursor:
            referrals.append(self._to_referral(document))

        return referrals

    async def list_referrals(
        self,
        from_provider_id: Optional[str] = None,
        to_provider_id: Optional[str] = None,
        to_provider_ids: Optional[list[str]] = None,
        involving_provider_id: Optional[str] = None,
        status: Optional[ReferralStatus] = None,
        patient_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[Referral]:
        query: dict[str, Any] = {}

        if from_provider_id:
            query["from_provider_id"] = from_provider_id
        if to_provider_id:
            query["to_provider_id"] = to_provider_id
        if to_provider_ids is not None:
            allowed = [p for p in to_provider_ids if not to_provider_id or p == to_provider_id]
            query["to_provider_id"] = {"$in": allowed}
        if involving_provider_id:
            query["$or"] = [
                {"from_provider_id": involving_provider_id},
                {"to_provider_id": involving_provider_id},
            ]
        if status:
            query["status"] = status.value
        if patient_id:
            query["patient_id"] = patient_id

        cursor = self.collection.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)

        referrals = []
        async for document in cursor:
            referrals.append(self._to_referral(document))

        return referrals


class InMemoryReferralStore(ReferralStore):
    """
    Referral store kept in process memory.

    Used for local development and tests. A single asyncio lock makes each
    compare-and-write atomic; reads never take it.
    """

    def __init__(self):
        self._records: dict[str, Referral] = {}
        self._lock = asyncio.Lock()

    async def insert(self, referral: Referral) -> Referral:
        async with self._lock:
            if referral.referral_id in self._records:
                raise ValueError(f"Referral '{referral.referral_id}' already exists")
            stored = referral.model_copy(update={"version": 1}, deep=True)
            self._records[referral.referral_id] = stored
        return stored.model_copy(deep=True)

    async def load(self, referral_id: str) -> Optional[Referral]:
        referral = self._records.get(referral_id)
        return referral.model_copy(deep=True) if referral else None

    async def compare_and_swap(
        self, referral_id: str, expected_version: int, new_state: Referral
    ) -> CompareAndSwapResult:
        async with self._lock:
            current = self._records.get(referral_id)
            if current is None or current.version != expected_version:
                logger.info(
                    "referral_cas_rejected",
                    referral_id=referral_id,
                    expected_version=expected_version,
                    current_version=current.version if current else None,
                )
                return CompareAndSwapResult(
                    ok=False, referral=current.model_copy(deep=True) if current else None
                )

            stored = new_state.model_copy(
                update={"referral_id": referral_id, "version": expected_version + 1}, deep=True
            )
            self._records[referral_id] = stored

        return CompareAndSwapResult(ok=True, referral=stored.model_copy(deep=True))

    async def list_open_for(self, provider_id: Optional[str] = None) -> list[Referral]:
        referrals = [
            r.model_copy(deep=True)
            for r in self._records.values()
            if r.status in OPEN_STATUSES and (provider_id is None or r.to_provider_id == provider_id)
        ]
        referrals.sort(key=lambda r: r.created_at)
        return referrals

    async def list_due_for_expiry(self, now: datetime, limit: int = 200) -> list[Referral]:
        due = [
            r.model_copy(deep=True)
            for r in self._records.values()
            if r.status in OPEN_STATUSES and r.expires_at <= now
        ]
        due.sort(key=lambda r: r.expires_at)
        return due[:limit]

    async def list_referrals(
        self,
        from_provider_id: Optional[str] = None,
        to_provider_id: Optional[str] = None,
        to_provider_ids: Optional[list[str]] = None,
        involving_provider_id: Optional[str] = None,
        status: Optional[ReferralStatus] = None,
        patient_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[Referral]:
        def matches(r: Referral) -> bool:
            if from_provider_id and r.from_provider_id != from_provider_id:
                return False
            if to_provider_id and r.to_provider_id != to_provider_id:
                return False
            if to_provider_ids is not None and r.to_provider_id not in to_provider_ids:
                return False
            if involving_provider_id and involving_provider_id not in (
                r.from_provider_id,
                r.to_provider_id,
            ):
                return False
            if status and r.status != status:
                return False
            if patient_id and r.patient_id != patient_id:
                return False
            return True

        referrals = [r.model_copy(deep=True) for r in self._records.values() if matches(r)]
        referrals.sort(key=lambda r: r.created_at, reverse=True)
        return referrals[skip : skip + limit]
