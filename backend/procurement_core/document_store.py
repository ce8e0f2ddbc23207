"""
DOCUMENT STORE

Tenant-namespaced keyed collections of JSON-like records.

Contract:
- get / query / put / insert / merge / delete / increment
- No cross-document transactions
- merge and delete accept an `expected` field map; the write only applies
  if every expected field matches the stored record (compare-and-set),
  otherwise WriteConflictError
- increment is atomic on the server side (creates the record if absent)

Implementations:
- InMemoryDocumentStore (this module): development and tests
- MongoDocumentStore (mongo_store.py): Motor
"""

from typing import Any, Dict, List, Optional
from decimal import Decimal
import asyncio
import copy
import logging

from procurement_core.errors import NotFoundError, WriteConflictError

logger = logging.getLogger(__name__)


# Logical collections
PURCHASE_ORDERS = "purchase_orders"
BUDGETS = "budgets"
ANNUAL_BUDGETS = "annual_budgets"
EXPENSES = "expenses"
DOCUMENT_SEQUENCES = "document_sequences"


class DocumentStore:
    """
    Abstract tenant-scoped document store.

    Records are plain dicts; `key` is exposed back to callers as the
    record's "id" field.
    """

    async def get(self, tenant_id: str, collection: str, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def query(
        self,
        tenant_id: str,
        collection: str,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Equality match on every field of `filters`."""
        raise NotImplementedError

    async def put(self, tenant_id: str, collection: str, key: str, record: Dict[str, Any]) -> None:
        """Create or fully replace."""
        raise NotImplementedError

    async def insert(self, tenant_id: str, collection: str, key: str, record: Dict[str, Any]) -> None:
        """Create only. Raises WriteConflictError if the key exists."""
        raise NotImplementedError

    async def merge(
        self,
        tenant_id: str,
        collection: str,
        key: str,
        partial: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Shallow-merge `partial` into an existing record.

        Raises:
            NotFoundError if the record is missing
            WriteConflictError if `expected` does not match
        """
        raise NotImplementedError

    async def delete(
        self,
        tenant_id: str,
        collection: str,
        key: str,
        expected: Optional[Dict[str, Any]] = None
    ) -> None:
        raise NotImplementedError

    async def increment(
        self,
        tenant_id: str,
        collection: str,
        key: str,
        field: str,
        amount: Any = 1,
        set_fields: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Atomically add `amount` to `field`; returns the record AFTER update."""
        raise NotImplementedError


def _matches(record: Dict[str, Any], expected: Optional[Dict[str, Any]]) -> bool:
    if not expected:
        return True
    return all(record.get(field) == value for field, value in expected.items())


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store.

    Each read and write yields to the event loop once, so concurrent
    coroutines interleave between a read and the following write the way
    they would against a remote store. The compare-and-set step itself
    never yields.
    """

    def __init__(self):
        self._data: Dict[tuple, Dict[str, Dict[str, Any]]] = {}
        self.write_count = 0

    def _collection(self, tenant_id: str, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault((tenant_id, collection), {})

    def _load(self, tenant_id: str, collection: str, key: str) -> Dict[str, Any]:
        records = self._collection(tenant_id, collection)
        if key not in records:
            raise NotFoundError(collection, key)
        return records[key]

    async def get(self, tenant_id, collection, key):
        record = self._collection(tenant_id, collection).get(key)
        snapshot = copy.deepcopy(record) if record is not None else None
        await asyncio.sleep(0)
        return snapshot

    async def query(self, tenant_id, collection, filters=None):
        snapshot = [
            copy.deepcopy(record)
            for record in self._collection(tenant_id, collection).values()
            if _matches(record, filters)
        ]
        await asyncio.sleep(0)
        return snapshot

    async def put(self, tenant_id, collection, key, record):
        stored = copy.deepcopy(record)
        stored["id"] = key
        self._collection(tenant_id, collection)[key] = stored
        self.write_count += 1
        await asyncio.sleep(0)

    async def insert(self, tenant_id, collection, key, record):
        records = self._collection(tenant_id, collection)
        if key in records:
            raise WriteConflictError(collection, key, {"exists": False})
        stored = copy.deepcopy(record)
        stored["id"] = key
        records[key] = stored
        self.write_count += 1
        await asyncio.sleep(0)

    async def merge(self, tenant_id, collection, key, partial, expected=None):
        record = self._load(tenant_id, collection, key)
        if not _matches(record, expected):
            raise WriteConflictError(collection, key, expected)
        record.update(copy.deepcopy(partial))
        self.write_count += 1
        await asyncio.sleep(0)

    async def delete(self, tenant_id, collection, key, expected=None):
        record = self._load(tenant_id, collection, key)
        if not _matches(record, expected):
            raise WriteConflictError(collection, key, expected)
        del self._collection(tenant_id, collection)[key]
        self.write_count += 1
        await asyncio.sleep(0)

    async def increment(self, tenant_id, collection, key, field, amount=1, set_fields=None):
        records = self._collection(tenant_id, collection)
        record = records.setdefault(key, {"id": key})
        current = record.get(field, 0)
        if isinstance(amount, Decimal) and not isinstance(current, Decimal):
            current = Decimal(str(current))
        record[field] = current + amount
        if set_fields:
            record.update(copy.deepcopy(set_fields))
        self.write_count += 1
        result = copy.deepcopy(record)
        await asyncio.sleep(0)
        return result
