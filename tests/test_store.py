import os
import uuid
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient

from services.payments.models import PurchaseItem
from services.payments.store import AlreadyProcessedError, InsufficientStockError, PaymentStore

REPLICA_URL = os.getenv("TEST_MONGO_REPLICA_URL")


class FakeSession:
    """Runs the transaction callback once, recording whether it committed."""

    def __init__(self):
        self.committed = False
        self.aborted = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def with_transaction(self, callback):
        try:
            await callback(self)
        except Exception:
            self.aborted = True
            raise
        self.committed = True


def make_store(products, modified_count=1):
    session = FakeSession()
    client = MagicMock()
    client.start_session = AsyncMock(return_value=session)
    db = MagicMock()
    db.products.find_one_and_update = AsyncMock(side_effect=products)
    db.payments.update_one = AsyncMock(return_value=MagicMock(modified_count=modified_count))
    return PaymentStore(client, db), db, session


@pytest.mark.asyncio
async def test_apply_purchase_runs_guarded_updates_in_one_transaction():
    first, second = ObjectId(), ObjectId()
    payment_id = ObjectId()
    now = datetime(2024, 5, 1)
    store, db, session = make_store([{"_id": first, "quantity": 2}, {"_id": second, "quantity": 0}])

    products = await store.apply_purchase(payment_id, [
        PurchaseItem(product_id=str(first), quantity=3),
        PurchaseItem(product_id=str(second), quantity=1),
    ], now)

    assert session.committed
    assert [p["_id"] for p in products] == [first, second]
    filters = [call.args[0] for call in db.products.find_one_and_update.await_args_list]
    assert filters == [
        {"_id": first, "quantity": {"$gte": 3}},
        {"_id": second, "quantity": {"$gte": 1}},
    ]
    update = db.products.find_one_and_update.await_args_list[0].args[1]
    assert update == {"$inc": {"quantity": -3}, "$set": {"updated_at": now}}
    for call in db.products.find_one_and_update.await_args_list:
        assert call.kwargs["session"] is session

    marker_filter, marker_update = db.payments.update_one.await_args.args
    assert marker_filter == {"_id": payment_id, "processed_at": None}
    assert marker_update == {"$set": {"processed_at": now, "updated_at": now}}
    assert db.payments.update_one.await_args.kwargs["session"] is session


@pytest.mark.asyncio
async def test_apply_purchase_aborts_on_stock_miss():
    product_id = ObjectId()
    store, db, session = make_store([None])

    with pytest.raises(InsufficientStockError) as excinfo:
        await store.apply_purchase(ObjectId(), [PurchaseItem(product_id=str(product_id), quantity=9)], datetime.utcnow())

    assert excinfo.value.product_id == str(product_id)
    assert session.aborted
    assert not session.committed


@pytest.mark.asyncio
async def test_apply_purchase_aborts_when_already_marked():
    store, db, session = make_store([{"_id": ObjectId(), "quantity": 4}], modified_count=0)

    with pytest.raises(AlreadyProcessedError):
        await store.apply_purchase(ObjectId(), [PurchaseItem(product_id=str(ObjectId()), quantity=1)], datetime.utcnow())

    assert session.aborted
    assert not session.committed
    db.products.find_one_and_update.assert_not_awaited()


@pytest.mark.asyncio
async def test_losing_confirmation_reports_already_processed_after_stock_ran_out():
    # The winning confirmation set the marker and took the last units
    store, db, session = make_store([None], modified_count=0)

    with pytest.raises(AlreadyProcessedError):
        await store.apply_purchase(ObjectId(), [PurchaseItem(product_id=str(ObjectId()), quantity=2)], datetime.utcnow())

    assert session.aborted
    db.products.find_one_and_update.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.skipif(not REPLICA_URL, reason="needs a MongoDB replica set in TEST_MONGO_REPLICA_URL")
async def test_stock_miss_rolls_back_marker_and_earlier_decrements():
    client = AsyncIOMotorClient(REPLICA_URL)
    db = client[f"inventory_test_{uuid.uuid4().hex[:8]}"]
    try:
        lamp = (await db.products.insert_one({"name": "Lamp", "quantity": 5})).inserted_id
        bowl = (await db.products.insert_one({"name": "Bowl", "quantity": 0})).inserted_id
        payment_id = (await db.payments.insert_one({"pidx": "p-1", "processed_at": None})).inserted_id
        store = PaymentStore(client, db)

        with pytest.raises(InsufficientStockError):
            await store.apply_purchase(payment_id, [
                PurchaseItem(product_id=str(lamp), quantity=2),
                PurchaseItem(product_id=str(bowl), quantity=1),
            ], datetime.utcnow())

        assert (await db.products.find_one({"_id": lamp}))["quantity"] == 5
        assert (await db.payments.find_one({"_id": payment_id}))["processed_at"] is None
    finally:
        await client.drop_database(db.name)
        client.close()


@pytest.mark.asyncio
async def test_listing_hides_initiated_and_raw(store, db):
    await db.payments.insert_many([
        {"pidx": "a", "user_id": "u1", "status": "Initiated", "raw": {"x": 1}, "created_at": datetime(2024, 1, 1)},
        {"pidx": "b", "user_id": "u1", "status": "Completed", "raw": {"x": 2}, "created_at": datetime(2024, 1, 2)},
        {"pidx": "c", "user_id": "u2", "status": "Completed", "raw": {"x": 3}, "created_at": datetime(2024, 1, 3)},
    ])

    docs = await store.list_for_owner("u1")

    assert [d["pidx"] for d in docs] == ["b"]
    assert "raw" not in docs[0]


@pytest.mark.asyncio
async def test_lookups_skip_malformed_ids(store, db):
    result = await db.products.insert_one({"name": "Lamp", "quantity": 1})

    found = await store.products_by_ids([str(result.inserted_id), "not-an-id"])

    assert list(found) == [str(result.inserted_id)]
    assert await store.users_by_ids(["bad"]) == {}
