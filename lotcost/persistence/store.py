"""
Persisted store contract + in-memory backend.

The store is a document store: each collection holds JSON-safe dicts keyed
by one field. Backends:
- MemoryStore: dicts in process memory (tests, ephemeral sessions)
- SQLiteStore: see sqlite_store.py

Design Principles:
- Records go in and come out as copies (no aliasing with caller objects)
- bulk_put and replace_all are all-or-nothing
- open_cursor streams records without materializing the collection
- Low-level failures surface as StoreError subclasses
"""
import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Iterator, List, Optional


# ============================================================
# Collections
# ============================================================

PRODUCTS = "products"
BATCHES = "batches"
SALES = "sales"
DAILY_STATS = "daily_stats"
INVENTORY_SUMMARY = "inventory_summary"
WASTE_LOG = "waste_log"

# Key field per collection
COLLECTION_KEYS: Dict[str, str] = {
    PRODUCTS: "id",
    BATCHES: "id",
    SALES: "timestamp",
    DAILY_STATS: "date",
    INVENTORY_SUMMARY: "id",
    WASTE_LOG: "id",
}

# Secondary indexes per collection
COLLECTION_INDEXES: Dict[str, tuple] = {
    PRODUCTS: (),
    BATCHES: ("product_id",),
    SALES: (),
    DAILY_STATS: (),
    INVENTORY_SUMMARY: (),
    WASTE_LOG: ("product_id",),
}

INVENTORY_SUMMARY_ID = "inventory_summary"


# ============================================================
# Custom Exceptions
# ============================================================

class StoreError(Exception):
    """Base exception for store operations"""
    pass


class UnknownCollectionError(StoreError):
    """Raised when a collection name is not part of the schema"""
    pass


class StorageReadFailure(StoreError):
    """Raised when a read (or full scan) could not complete"""
    pass


class StorageWriteFailure(StoreError):
    """Raised when a write could not be persisted"""
    pass


def key_field(collection: str) -> str:
    try:
        return COLLECTION_KEYS[collection]
    except KeyError:
        raise UnknownCollectionError(f"Unknown collection: {collection}") from None


def record_key(collection: str, record: Dict[str, Any]) -> str:
    field = key_field(collection)
    key = record.get(field)
    if key is None or key == "":
        raise StorageWriteFailure(f"Record for {collection} is missing key field '{field}'")
    return str(key)


# ============================================================
# Store contract
# ============================================================

class Store(ABC):
    """
    Abstract persisted store.

    Every method may raise StorageReadFailure / StorageWriteFailure.
    """

    @abstractmethod
    def get_all(self, collection: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def get_by_index(self, collection: str, index: str, value: Any) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def put(self, collection: str, record: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    def bulk_put(self, collection: str, records: Iterable[Dict[str, Any]]) -> int:
        ...

    @abstractmethod
    def replace_all(self, collection: str, records: Iterable[Dict[str, Any]]) -> int:
        """Atomically swap the whole collection for *records*."""
        ...

    @abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        ...

    @abstractmethod
    def count(self, collection: str) -> int:
        ...

    @abstractmethod
    def open_cursor(self, collection: str) -> Iterator[Dict[str, Any]]:
        """Iterate records in key order (sales: by timestamp)."""
        ...

    def close(self) -> None:
        pass


class MemoryStore(Store):
    """
    Dict-backed store.

    Single-process only. Copies records on every read and write, so callers
    can never mutate stored state by accident.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in COLLECTION_KEYS}

    def _table(self, collection: str) -> Dict[str, Dict[str, Any]]:
        key_field(collection)
        return self._data[collection]

    def get_all(self, collection: str) -> List[Dict[str, Any]]:
        return list(self.open_cursor(collection))

    def get_by_index(self, collection: str, index: str, value: Any) -> List[Dict[str, Any]]:
        table = self._table(collection)
        return [copy.deepcopy(r) for _, r in sorted(table.items()) if r.get(index) == value]

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        record = self._table(collection).get(str(key))
        return copy.deepcopy(record) if record is not None else None

    def put(self, collection: str, record: Dict[str, Any]) -> str:
        key = record_key(collection, record)
        self._table(collection)[key] = copy.deepcopy(record)
        return key

    def bulk_put(self, collection: str, records: Iterable[Dict[str, Any]]) -> int:
        table = self._table(collection)
        # Validate every key before touching the table (all-or-nothing)
        staged = [(record_key(collection, r), copy.deepcopy(r)) for r in records]
        for key, record in staged:
            table[key] = record
        return len(staged)

    def replace_all(self, collection: str, records: Iterable[Dict[str, Any]]) -> int:
        table = self._table(collection)
        staged = {record_key(collection, r): copy.deepcopy(r) for r in records}
        table.clear()
        table.update(staged)
        return len(staged)

    def delete(self, collection: str, key: str) -> bool:
        return self._table(collection).pop(str(key), None) is not None

    def count(self, collection: str) -> int:
        return len(self._table(collection))

    def open_cursor(self, collection: str) -> Iterator[Dict[str, Any]]:
        table = self._table(collection)
        for key in sorted(table.keys()):
            record = table.get(key)
            if record is not None:
                yield copy.deepcopy(record)

