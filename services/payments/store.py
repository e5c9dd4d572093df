from datetime import datetime
from typing import Dict, Iterable, List, Optional
import logging

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from services.payments.models import PaymentStatus, PurchaseItem

logger = logging.getLogger("inventory-api.payments.store")

LIST_PROJECTION = {"raw": 0}


class InsufficientStockError(Exception):
    def __init__(self, product_id: str, quantity: int):
        super().__init__(f"Insufficient stock for product {product_id}")
        self.product_id = product_id
        self.quantity = quantity


class AlreadyProcessedError(Exception):
    pass


def _object_ids(ids: Iterable[str]) -> List[ObjectId]:
    return [ObjectId(i) for i in set(ids) if ObjectId.is_valid(i)]


class PaymentStore:
    """
    Mongo access for payment records and the stock they consume.

    ``quantity`` on a product is only ever decremented through
    ``apply_purchase``, inside a multi-document transaction, so the
    deployment has to run as a replica set.
    """

    def __init__(self, client: AsyncIOMotorClient, db):
        self.client = client
        self.db = db

    async def ensure_indexes(self):
        await self.db.payments.create_index("pidx", unique=True)
        await self.db.payments.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        await self.db.payments.create_index(
            [("user_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)]
        )

    async def create(self, document: dict) -> dict:
        result = await self.db.payments.insert_one(document)
        return await self.db.payments.find_one({"_id": result.inserted_id})

    async def find_for_owner(self, pidx: str, owner_id: str) -> Optional[dict]:
        return await self.db.payments.find_one({"pidx": pidx, "user_id": owner_id})

    async def update(self, payment_id: ObjectId, changes: dict) -> Optional[dict]:
        return await self.db.payments.find_one_and_update(
            {"_id": payment_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )

    async def delete_stale_initiated(self, owner_id: str, cutoff: datetime) -> int:
        result = await self.db.payments.delete_many({
            "user_id": owner_id,
            "status": PaymentStatus.INITIATED.value,
            "created_at": {"$lt": cutoff},
        })
        return result.deleted_count

    async def list_for_owner(self, owner_id: str, include_initiated: bool = False) -> List[dict]:
        query = {"user_id": owner_id}
        if not include_initiated:
            query["status"] = {"$ne": PaymentStatus.INITIATED.value}
        cursor = self.db.payments.find(query, LIST_PROJECTION).sort("created_at", -1)
        return await cursor.to_list(length=None)

    async def list_page(self, skip: int, limit: int) -> List[dict]:
        cursor = self.db.payments.find({}, LIST_PROJECTION).sort("created_at", -1).skip(skip).limit(limit)
        return await cursor.to_list(length=limit)

    async def count(self) -> int:
        return await self.db.payments.count_documents({})

    async def products_by_ids(self, ids: Iterable[str]) -> Dict[str, dict]:
        oids = _object_ids(ids)
        if not oids:
            return {}
        cursor = self.db.products.find({"_id": {"$in": oids}})
        return {str(doc["_id"]): doc async for doc in cursor}

    async def users_by_ids(self, ids: Iterable[str]) -> Dict[str, dict]:
        oids = _object_ids(ids)
        if not oids:
            return {}
        cursor = self.db.users.find(
            {"_id": {"$in": oids}},
            {"name": 1, "email": 1, "phone": 1, "role": 1, "is_admin": 1},
        )
        return {str(doc["_id"]): doc async for doc in cursor}

    async def apply_purchase(self, payment_id: ObjectId, items: List[PurchaseItem], now: datetime) -> List[dict]:
        """
        Mark the payment processed and decrement stock for every item, atomically.

        The marker is claimed first, so a confirmation that lost the race
        raises ``AlreadyProcessedError`` even when the winner took the last
        units. ``InsufficientStockError`` is raised when any product lacks
        stock. Either way the transaction is aborted and nothing is written.
        """
        updated_products: List[dict] = []

        async def run(session):
            updated_products.clear()
            marked = await self.db.payments.update_one(
                {"_id": payment_id, "processed_at": None},
                {"$set": {"processed_at": now, "updated_at": now}},
                session=session,
            )
            if marked.modified_count == 0:
                raise AlreadyProcessedError()

            for item in items:
                product = await self.db.products.find_one_and_update(
                    {"_id": ObjectId(item.product_id), "quantity": {"$gte": item.quantity}},
                    {"$inc": {"quantity": -item.quantity}, "$set": {"updated_at": now}},
                    return_document=ReturnDocument.AFTER,
                    session=session,
                )
                if product is None:
                    raise InsufficientStockError(item.product_id, item.quantity)
                updated_products.append(product)

        async with await self.client.start_session() as session:
            await session.with_transaction(run)
        return list(updated_products)
