"""
Shared fixtures: in-memory store, repositories, tracker, and stores that
fail on demand.
"""
import threading
import time

import pytest

from lotcost.analytics.valuation import InventoryValuationTracker
from lotcost.domain.models import Product
from lotcost.persistence.store import MemoryStore, StorageReadFailure, StorageWriteFailure
from lotcost.repositories import RepositoryFactory


class FlakyStore(MemoryStore):
    """MemoryStore whose cursors or writes can be made to fail."""

    def __init__(self):
        super().__init__()
        self.fail_cursor_on = set()    # collections whose cursor raises
        self.fail_put_keys = set()     # (collection, key) pairs whose put raises

    def open_cursor(self, collection):
        if collection in self.fail_cursor_on:
            raise StorageReadFailure(f"cursor over {collection} unavailable")
        return super().open_cursor(collection)

    def put(self, collection, record):
        key_field = "timestamp" if collection == "sales" else "date" if collection == "daily_stats" else "id"
        if (collection, str(record.get(key_field))) in self.fail_put_keys:
            raise StorageWriteFailure(f"write to {collection} rejected")
        return super().put(collection, record)


class SlowStore(MemoryStore):
    """MemoryStore whose cursors stall before yielding anything."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay
        self.cursor_threads = []    # (collection, thread name) per cursor opened

    def open_cursor(self, collection):
        self.cursor_threads.append((collection, threading.current_thread().name))
        time.sleep(self.delay)
        return super().open_cursor(collection)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def flaky_store():
    return FlakyStore()


@pytest.fixture
def repos(store):
    return RepositoryFactory(store)


@pytest.fixture
def tracker(store):
    return InventoryValuationTracker(store)


def simple_product(product_id="P", cost=5.0, price=10.0, stock=20.0, **kwargs):
    """Tracked product without batch management."""
    return Product(id=product_id, name=f"Product {product_id}", cost=cost, price=price, stock=stock, **kwargs)
