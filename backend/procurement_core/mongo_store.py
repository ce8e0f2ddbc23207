"""
MONGODB DOCUMENT STORE (Motor)

One Mongo collection per logical collection. Records are namespaced by
tenant through a compound _id ("<tenant_id>:<key>") and a tenant_id field.

Encoding:
- Decimal  -> Decimal128 (native $inc support)
- date     -> ISO string
- Enum     -> value
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from bson import Decimal128
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from procurement_core.document_store import (
    DocumentStore,
    PURCHASE_ORDERS,
    BUDGETS,
    ANNUAL_BUDGETS,
)
from procurement_core.errors import NotFoundError, PersistenceError, WriteConflictError

logger = logging.getLogger(__name__)


def encode_value(value: Any) -> Any:
    """Convert Python values to BSON-storable values"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any) -> Any:
    """Convert BSON values back (Decimal128 -> Decimal)"""
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


class MongoDocumentStore(DocumentStore):
    """
    Motor-backed store. Driver errors are surfaced as PersistenceError.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    @staticmethod
    def _doc_id(tenant_id: str, key: str) -> str:
        return f"{tenant_id}:{key}"

    def _to_record(self, doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        record = decode_value(doc)
        record.pop("_id", None)
        record.pop("tenant_id", None)
        return record

    def _to_doc(self, tenant_id: str, key: str, record: Dict[str, Any]) -> Dict[str, Any]:
        doc = encode_value(dict(record))
        doc["_id"] = self._doc_id(tenant_id, key)
        doc["tenant_id"] = tenant_id
        doc["id"] = key
        return doc

    def _filter(self, tenant_id: str, key: str, expected: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query = {"_id": self._doc_id(tenant_id, key)}
        if expected:
            query.update(encode_value(expected))
        return query

    async def _raise_for_miss(self, tenant_id: str, collection: str, key: str, expected) -> None:
        exists = await self.db[collection].count_documents(
            {"_id": self._doc_id(tenant_id, key)}, limit=1
        )
        if not exists:
            raise NotFoundError(collection, key)
        raise WriteConflictError(collection, key, expected)

    async def get(self, tenant_id, collection, key):
        try:
            doc = await self.db[collection].find_one({"_id": self._doc_id(tenant_id, key)})
        except PyMongoError as e:
            logger.error(f"[STORE] get {collection}/{key} failed: {e}")
            raise PersistenceError(str(e)) from e
        return self._to_record(doc)

    async def query(self, tenant_id, collection, filters=None):
        query = {"tenant_id": tenant_id}
        query.update(encode_value(filters or {}))
        try:
            docs = await self.db[collection].find(query).to_list(length=None)
        except PyMongoError as e:
            logger.error(f"[STORE] query {collection} failed: {e}")
            raise PersistenceError(str(e)) from e
        return [self._to_record(doc) for doc in docs]

    async def put(self, tenant_id, collection, key, record):
        try:
            await self.db[collection].replace_one(
                {"_id": self._doc_id(tenant_id, key)},
                self._to_doc(tenant_id, key, record),
                upsert=True
            )
        except PyMongoError as e:
            logger.error(f"[STORE] put {collection}/{key} failed: {e}")
            raise PersistenceError(str(e)) from e

    async def insert(self, tenant_id, collection, key, record):
        try:
            await self.db[collection].insert_one(self._to_doc(tenant_id, key, record))
        except DuplicateKeyError:
            raise WriteConflictError(collection, key, {"exists": False})
        except PyMongoError as e:
            logger.error(f"[STORE] insert {collection}/{key} failed: {e}")
            raise PersistenceError(str(e)) from e

    async def merge(self, tenant_id, collection, key, partial, expected=None):
        try:
            result = await self.db[collection].update_one(
                self._filter(tenant_id, key, expected),
                {"$set": encode_value(partial)}
            )
        except DuplicateKeyError:
            raise WriteConflictError(collection, key, expected)
        except PyMongoError as e:
            logger.error(f"[STORE] merge {collection}/{key} failed: {e}")
            raise PersistenceError(str(e)) from e

        if result.matched_count == 0:
            await self._raise_for_miss(tenant_id, collection, key, expected)

    async def delete(self, tenant_id, collection, key, expected=None):
        try:
            result = await self.db[collection].delete_one(self._filter(tenant_id, key, expected))
        except PyMongoError as e:
            logger.error(f"[STORE] delete {collection}/{key} failed: {e}")
            raise PersistenceError(str(e)) from e

        if result.deleted_count == 0:
            await self._raise_for_miss(tenant_id, collection, key, expected)

    async def increment(self, tenant_id, collection, key, field, amount=1, set_fields=None):
        update = {
            "$inc": {field: encode_value(amount)},
            "$setOnInsert": {"tenant_id": tenant_id, "id": key},
        }
        if set_fields:
            update["$set"] = encode_value(set_fields)
        try:
            doc = await self.db[collection].find_one_and_update(
                {"_id": self._doc_id(tenant_id, key)},
                update,
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            logger.error(f"[STORE] increment {collection}/{key}.{field} failed: {e}")
            raise PersistenceError(str(e)) from e
        return self._to_record(doc)

    async def create_indexes(self):
        """
        Create tenant and uniqueness indexes.
        """
        try:
            await self.db[PURCHASE_ORDERS].create_index(
                [("tenant_id", 1), ("order_number", 1)],
                unique=True,
                name="unique_po_order_number"
            )
            await self.db[PURCHASE_ORDERS].create_index(
                [("tenant_id", 1), ("status", 1)],
                name="po_status"
            )
            await self.db[BUDGETS].create_index(
                [("tenant_id", 1), ("year", 1), ("category", 1)],
                name="budget_year_category"
            )
            await self.db[ANNUAL_BUDGETS].create_index(
                [("tenant_id", 1), ("year", 1)],
                unique=True,
                name="unique_annual_budget_year"
            )
            logger.info("Created procurement indexes")
        except PyMongoError as e:
            # Index may already exist with other options
            logger.warning(f"Index creation result: {str(e)}")
