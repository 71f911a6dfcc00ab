from __future__ import annotations
from typing import Any, Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timezone

from config import settings

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(settings.DATABASE_URL)
        _db = _client[settings.DATABASE_NAME]
    return _db


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _oid(doc_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        return None


def _to_client(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if doc and "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


async def create_document(collection_name: str, data: dict[str, Any]) -> dict[str, Any]:
    db = await get_db()
    now = _now()
    data_with_meta = {**data, "created_at": now, "updated_at": now}
    result = await db[collection_name].insert_one(data_with_meta)
    inserted = await db[collection_name].find_one({"_id": result.inserted_id})
    return _to_client(inserted) or {}


async def get_documents(
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    limit: int = 100,
    sort: list[tuple[str, int]] | None = None,
) -> list[dict[str, Any]]:
    db = await get_db()
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    cursor = cursor.limit(limit)
    docs = []
    async for d in cursor:
        docs.append(_to_client(d))
    return docs


async def get_document(collection_name: str, doc_id: str) -> Optional[dict[str, Any]]:
    oid = _oid(doc_id)
    if oid is None:
        return None
    db = await get_db()
    return _to_client(await db[collection_name].find_one({"_id": oid}))


async def update_document(collection_name: str, doc_id: str, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
    oid = _oid(doc_id)
    if oid is None:
        return None
    db = await get_db()
    await db[collection_name].update_one({"_id": oid}, {"$set": {**changes, "updated_at": _now()}})
    return _to_client(await db[collection_name].find_one({"_id": oid}))


async def delete_document(collection_name: str, doc_id: str) -> bool:
    oid = _oid(doc_id)
    if oid is None:
        return False
    db = await get_db()
    result = await db[collection_name].delete_one({"_id": oid})
    return result.deleted_count == 1


class MongoStore:
    """Storage used by the checkout workflow and the admin screens."""

    # coupons

    async def find_active_coupon(self, code: str) -> Optional[dict[str, Any]]:
        docs = await get_documents("coupon", {"code": code, "is_active": True}, limit=2)
        # exactly one match or nothing
        return docs[0] if len(docs) == 1 else None

    async def get_coupon_by_code(self, code: str) -> Optional[dict[str, Any]]:
        docs = await get_documents("coupon", {"code": code}, limit=1)
        return docs[0] if docs else None

    async def get_coupon(self, coupon_id: str) -> Optional[dict[str, Any]]:
        return await get_document("coupon", coupon_id)

    async def list_coupons(self) -> list[dict[str, Any]]:
        return await get_documents("coupon", sort=[("created_at", -1)], limit=500)

    async def create_coupon(self, data: dict[str, Any]) -> dict[str, Any]:
        return await create_document("coupon", data)

    async def update_coupon(self, coupon_id: str, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
        return await update_document("coupon", coupon_id, changes)

    async def delete_coupon(self, coupon_id: str) -> bool:
        return await delete_document("coupon", coupon_id)

    # orders

    async def create_order(self, data: dict[str, Any]) -> dict[str, Any]:
        saved = await create_document("order", data)
        if not saved.get("id"):
            raise RuntimeError("Failed to create order")
        return saved

    async def create_order_items(self, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        db = await get_db()
        now = _now()
        docs = [{**item, "created_at": now, "updated_at": now} for item in items]
        await db["order_item"].insert_many(docs)
        return [_to_client(d) for d in docs]

    async def get_order(self, order_id: str) -> Optional[dict[str, Any]]:
        return await get_document("order", order_id)

    async def get_order_items(self, order_id: str) -> list[dict[str, Any]]:
        return await get_documents("order_item", {"order_id": order_id}, limit=500)

    async def update_order(self, order_id: str, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
        return await update_document("order", order_id, changes)

    async def delete_order(self, order_id: str) -> bool:
        return await delete_document("order", order_id)

    async def find_order_by_gateway_order(self, gateway_order_id: str) -> Optional[dict[str, Any]]:
        docs = await get_documents("order", {"payment_details.razorpay_order_id": gateway_order_id}, limit=1)
        return docs[0] if docs else None

    async def list_orders(self, limit: int = 100) -> list[dict[str, Any]]:
        return await get_documents("order", sort=[("created_at", -1)], limit=limit)

    # products

    async def list_products(self) -> list[dict[str, Any]]:
        return await get_documents("product", limit=200)

    async def get_product(self, product_id: str) -> Optional[dict[str, Any]]:
        return await get_document("product", product_id)

    async def count_products(self) -> int:
        db = await get_db()
        return await db["product"].count_documents({})

    async def create_product(self, data: dict[str, Any]) -> dict[str, Any]:
        return await create_document("product", data)

    async def update_product(self, product_id: str, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
        return await update_document("product", product_id, changes)

    async def delete_product(self, product_id: str) -> bool:
        return await delete_document("product", product_id)


_store: Optional[MongoStore] = None


def get_store() -> MongoStore:
    global _store
    if _store is None:
        _store = MongoStore()
    return _store
