# healthchain/storage.py
"""
Keyed stores for consent grants and incentive payouts.

Both services only need get / set / delete / scan-by-prefix, so they take a
KeyValueStore instead of a module-level dict. Production uses the Mongo-backed
store; tests and single-process deployments can use the in-memory one.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]


class KeyValueStore(ABC):
    def __init__(self):
        self.locks = KeyedLocks()

    def lock(self, key: str):
        """Serialize read-modify-write sequences on a single key."""
        return self.locks.hold(key)

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def items(self, prefix: str = "") -> List[Tuple[str, Dict[str, Any]]]:
        ...


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Any]] = {}

    async def get(self, key):
        value = self._data.get(key)
        return dict(value) if value is not None else None

    async def set(self, key, value):
        self._data[key] = dict(value)

    async def delete(self, key):
        return self._data.pop(key, None) is not None

    async def items(self, prefix=""):
        return [(k, dict(v)) for k, v in self._data.items() if k.startswith(prefix)]


class MongoKeyValueStore(KeyValueStore):
    """Stores ``{"_id": key, "value": {...}}`` documents in one collection."""

    def __init__(self, collection):
        super().__init__()
        self.collection = collection

    async def get(self, key):
        doc = await self.collection.find_one({"_id": key})
        return doc.get("value") if doc else None

    async def set(self, key, value):
        await self.collection.replace_one({"_id": key}, {"_id": key, "value": value}, upsert=True)

    async def delete(self, key):
        result = await self.collection.delete_one({"_id": key})
        return result.deleted_count > 0

    async def items(self, prefix=""):
        query = {"_id": {"$regex": "^" + re.escape(prefix)}} if prefix else {}
        cursor = self.collection.find(query).sort("_id", 1)
        docs = await cursor.to_list(length=None)
        return [(d["_id"], d.get("value") or {}) for d in docs]
