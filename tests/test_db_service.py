"""
Tests for the referral stores — in-memory semantics and the MongoDB queries.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError

from handoff_core.referrals.db_service import InMemoryReferralStore, MongoReferralStore
from handoff_core.referrals.models import Referral, ReferralStatus

from .conftest import RECEIVER, SENDER, T0


def new_referral(**overrides) -> Referral:
    data = {
        "from_provider_id": SENDER,
        "to_provider_id": RECEIVER,
        "patient_id": "pat_1",
        "reason": "Palpitations",
        "created_at": T0,
        "expires_at": T0 + timedelta(days=1),
    }
    data.update(overrides)
    return Referral(**data)


def accepted_from(referral: Referral) -> Referral:
    return referral.transitioned(
        ReferralStatus.ACCEPTED, "user_1", T0, accepted_at=T0, accepted_by="user_1"
    )


class FakeCursor:
    """Chainable stand-in for a motor cursor."""

    def __init__(self, documents):
        self.documents = documents
        self.sort_args = None
        self.limit_value = None

    def sort(self, *args):
        self.sort_args = args
        return self

    def skip(self, value):
        return self

    def limit(self, value):
        self.limit_value = value
        return self

    def __aiter__(self):
        async def _iter():
            for document in self.documents:
                yield dict(document)

        return _iter()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  In-memory store
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_insert_assigns_version_one(self):
        store = InMemoryReferralStore()
        stored = await store.insert(new_referral())
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_duplicate_insert_rejected(self):
        store = InMemoryReferralStore()
        referral = new_referral()
        await store.insert(referral)
        with pytest.raises(ValueError):
            await store.insert(referral)

    @pytest.mark.asyncio
    async def test_cas_bumps_version(self):
        store = InMemoryReferralStore()
        stored = await store.insert(new_referral())

        result = await store.compare_and_swap(stored.referral_id, 1, accepted_from(stored))

        assert result.ok
        assert result.referral.version == 2
        assert result.referral.status == ReferralStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_stale_cas_returns_current(self):
        store = InMemoryReferralStore()
        stored = await store.insert(new_referral())
        await store.compare_and_swap(stored.referral_id, 1, accepted_from(stored))

        result = await store.compare_and_swap(stored.referral_id, 1, accepted_from(stored))

        assert not result.ok
        assert result.referral.version == 2

    @pytest.mark.asyncio
    async def test_cas_unknown_referral(self):
        store = InMemoryReferralStore()
        result = await store.compare_and_swap("ref_missing", 1, new_referral())
        assert result == (False, None)

    @pytest.mark.asyncio
    async def test_loaded_copies_are_isolated(self):
        store = InMemoryReferralStore()
        stored = await store.insert(new_referral(requested_tests=["ecg"]))

        loaded = await store.load(stored.referral_id)
        loaded.requested_tests.append("mri")

        assert (await store.load(stored.referral_id)).requested_tests == ["ecg"]

    @pytest.mark.asyncio
    async def test_due_for_expiry_ordering_and_limit(self):
        store = InMemoryReferralStore()
        late = await store.insert(new_referral(expires_at=T0 + timedelta(hours=3)))
        early = await store.insert(new_referral(expires_at=T0 + timedelta(hours=1)))
        await store.insert(new_referral(expires_at=T0 + timedelta(days=9)))

        due = await store.list_due_for_expiry(T0 + timedelta(hours=5))
        assert [r.referral_id for r in due] == [early.referral_id, late.referral_id]

        limited = await store.list_due_for_expiry(T0 + timedelta(hours=5), limit=1)
        assert [r.referral_id for r in limited] == [early.referral_id]

    @pytest.mark.asyncio
    async def test_list_referrals_filters(self):
        store = InMemoryReferralStore()
        mine = await store.insert(new_referral())
        await store.insert(new_referral(from_provider_id="doc_x", to_provider_id="doc_y"))

        involving = await store.list_referrals(involving_provider_id=SENDER)
        assert [r.referral_id for r in involving] == [mine.referral_id]
        assert await store.list_referrals(status=ReferralStatus.REJECTED) == []

    @pytest.mark.asyncio
    async def test_list_referrals_receiver_set(self):
        store = InMemoryReferralStore()
        mine = await store.insert(new_referral())
        await store.insert(new_referral(to_provider_id="doc_y"))

        scoped = await store.list_referrals(to_provider_ids=[RECEIVER])
        assert [r.referral_id for r in scoped] == [mine.referral_id]
        assert await store.list_referrals(to_provider_ids=[]) == []
        assert await store.list_referrals(to_provider_id="doc_y", to_provider_ids=[RECEIVER]) == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  MongoDB store
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest.fixture
def collection():
    return MagicMock()


@pytest.fixture
def mongo_store(collection):
    db = MagicMock()
    db.__getitem__.return_value = collection
    return MongoReferralStore(db)


class TestMongoStore:

    @pytest.mark.asyncio
    async def test_insert_writes_version_one(self, mongo_store, collection):
        collection.insert_one = AsyncMock()
        stored = await mongo_store.insert(new_referral())

        document = collection.insert_one.call_args.args[0]
        assert document["version"] == 1
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_insert_duplicate(self, mongo_store, collection):
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))
        with pytest.raises(ValueError):
            await mongo_store.insert(new_referral())

    @pytest.mark.asyncio
    async def test_cas_filters_on_version(self, mongo_store, collection):
        referral = new_referral(version=1)
        new_state = accepted_from(referral)
        stored_doc = {**new_state.model_dump(), "version": 2, "_id": "oid"}
        collection.find_one_and_update = AsyncMock(return_value=stored_doc)

        result = await mongo_store.compare_and_swap(referral.referral_id, 1, new_state)

        assert result.ok
        assert result.referral.version == 2
        query, update = collection.find_one_and_update.call_args.args
        assert query == {"referral_id": referral.referral_id, "version": 1}
        assert update["$inc"] == {"version": 1}
        assert "version" not in update["$set"]
        assert update["$set"]["status"] == ReferralStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_cas_conflict_returns_current(self, mongo_store, collection):
        referral = new_referral(version=1)
        current_doc = {**accepted_from(referral).model_dump(), "version": 2}
        collection.find_one_and_update = AsyncMock(return_value=None)
        collection.find_one = AsyncMock(return_value=current_doc)

        result = await mongo_store.compare_and_swap(referral.referral_id, 1, accepted_from(referral))

        assert not result.ok
        assert result.referral.version == 2

    @pytest.mark.asyncio
    async def test_due_for_expiry_query(self, mongo_store, collection):
        overdue = new_referral(version=1)
        cursor = FakeCursor([overdue.model_dump()])
        collection.find = MagicMock(return_value=cursor)
        now = T0 + timedelta(days=2)

        due = await mongo_store.list_due_for_expiry(now, limit=50)

        query = collection.find.call_args.args[0]
        assert set(query["status"]["$in"]) == {"PENDING", "ACCEPTED"}
        assert query["expires_at"] == {"$lte": now}
        assert cursor.limit_value == 50
        assert [r.referral_id for r in due] == [overdue.referral_id]

    @pytest.mark.asyncio
    async def test_list_referrals_receiver_set_query(self, mongo_store, collection):
        cursor = FakeCursor([])
        collection.find = MagicMock(return_value=cursor)

        await mongo_store.list_referrals(to_provider_ids=[RECEIVER, "doc_y"], limit=2)

        query = collection.find.call_args.args[0]
        assert query == {"to_provider_id": {"$in": [RECEIVER, "doc_y"]}}
        assert cursor.limit_value == 2

        await mongo_store.list_referrals(to_provider_id="doc_y", to_provider_ids=[RECEIVER])
        assert collection.find.call_args.args[0] == {"to_provider_id": {"$in": []}}

    @pytest.mark.asyncio
    async def test_ensure_indexes(self, mongo_store, collection):
        collection.create_indexes = AsyncMock()
        await mongo_store.ensure_indexes()
        assert len(collection.create_indexes.call_args.args[0]) == 5
