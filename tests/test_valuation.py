"""
Tests for the inventory valuation tracker: full scan, cost map,
incremental adjust, failure preservation.
"""
import pytest
from datetime import datetime

from lotcost.analytics.valuation import InventoryValuationTracker, scan_inventory
from lotcost.domain.models import Batch, BatchManagement, Product
from lotcost.persistence.store import (
    BATCHES,
    INVENTORY_SUMMARY,
    INVENTORY_SUMMARY_ID,
    PRODUCTS,
    MemoryStore,
    StorageReadFailure,
)
from lotcost.repositories import RepositoryFactory

from conftest import simple_product


class CountingStore(MemoryStore):
    """Counts writes per collection."""

    def __init__(self):
        super().__init__()
        self.puts = {}

    def put(self, collection, record):
        self.puts[collection] = self.puts.get(collection, 0) + 1
        return super().put(collection, record)


def seed_inventory(store):
    """
    P: simple, 20 x 5.00           -> 100.00
    Q: batch-managed, lots:
       Q-1 active 5 x 2.00         ->  10.00
       Q-2 inactive 8 x 3.00       ->   0
       Q-3 active, empty           ->   0
    U: untracked, 7 x 1.00         ->   0
    Z: simple, stock 0             ->   0
    """
    repos = RepositoryFactory(store)
    repos.products.save(simple_product("P", cost=5.0, stock=20))
    repos.products.save(Product(id="Q", name="Q", cost=2.0, price=4.0, stock=5,
                                batch_management=BatchManagement(enabled=True)))
    repos.products.save(simple_product("U", cost=1.0, stock=7, track_stock=False))
    repos.products.save(simple_product("Z", cost=3.0, stock=0))

    created = datetime(2026, 1, 1)
    repos.batches.save(Batch(id="Q-1", product_id="Q", stock=5, cost=2.0, price=4.0, created_at=created))
    repos.batches.save(Batch(id="Q-2", product_id="Q", stock=8, cost=3.0, price=4.0, created_at=created,
                             is_active=False))
    repos.batches.save(Batch(id="Q-3", product_id="Q", stock=0, cost=9.0, price=4.0, created_at=created))
    return repos


class TestScanInventory:
    """scan_inventory()"""

    def test_value_counts_available_lots_and_simple_products(self, store):
        seed_inventory(store)
        scan = scan_inventory(store)
        assert scan.value == 110.0
        assert scan.batches_counted == 1
        assert scan.products_counted == 1

    def test_cost_map_covers_every_product(self, store):
        seed_inventory(store)
        scan = scan_inventory(store)
        assert scan.cost_map == {"P": 5.0, "Q": 2.0, "U": 1.0, "Z": 3.0}

    def test_each_line_rounded_before_summing(self, store):
        repos = RepositoryFactory(store)
        repos.products.save(simple_product("A", cost=0.335, stock=1))
        repos.products.save(simple_product("B", cost=0.335, stock=1))
        # 0.335 -> 0.34 per line, 0.68 in total (not round(0.67))
        assert scan_inventory(store).value == 0.68

    def test_empty_store(self, store):
        scan = scan_inventory(store)
        assert scan.value == 0.0
        assert scan.cost_map == {}

    def test_scan_persists_nothing(self, store):
        seed_inventory(store)
        scan_inventory(store)
        assert store.count(INVENTORY_SUMMARY) == 0

    def test_malformed_record_is_read_failure(self, store):
        store.put(BATCHES, {"id": "broken"})
        with pytest.raises(StorageReadFailure):
            scan_inventory(store)


class TestTracker:
    """InventoryValuationTracker"""

    def test_get_computes_on_cold_cache(self, store, tracker):
        seed_inventory(store)
        assert tracker.peek() is None
        assert tracker.get() == 110.0
        assert store.get(INVENTORY_SUMMARY, INVENTORY_SUMMARY_ID)["value"] == 110.0

    def test_get_uses_cache(self, store, tracker):
        seed_inventory(store)
        tracker.get()
        RepositoryFactory(store).products.save(simple_product("NEW", cost=1.0, stock=1000))
        assert tracker.get() == 110.0

    def test_cost_map_reuses_scan(self, store, tracker):
        seed_inventory(store)
        tracker.recompute()
        RepositoryFactory(store).products.save(simple_product("LATE", cost=4.0, stock=1))
        assert "LATE" not in tracker.cost_map()

    def test_cost_map_scans_when_missing(self, store, tracker):
        seed_inventory(store)
        assert tracker.cost_map()["P"] == 5.0
        assert tracker.peek() == 110.0

    def test_force_recalculate_picks_up_changes(self, store, tracker):
        seed_inventory(store)
        tracker.get()
        RepositoryFactory(store).products.save(simple_product("NEW", cost=1.0, stock=10))
        assert tracker.force_recalculate() == 120.0
        assert tracker.peek() == 120.0


class TestAdjust:
    """Incremental adjust()"""

    def test_zero_delta_writes_nothing(self):
        store = CountingStore()
        tracker = InventoryValuationTracker(store)
        store.put(INVENTORY_SUMMARY, {"id": INVENTORY_SUMMARY_ID, "value": 50.0})
        store.puts.clear()

        assert tracker.adjust(0) == 50.0
        assert store.puts == {}

    def test_zero_delta_on_cold_cache(self):
        store = CountingStore()
        tracker = InventoryValuationTracker(store)
        assert tracker.adjust(0) is None
        assert store.puts == {}

    def test_positive_and_negative_deltas(self, store, tracker):
        seed_inventory(store)
        tracker.get()
        assert tracker.adjust(-15) == 95.0
        assert tracker.adjust(2.5) == 97.5
        assert tracker.peek() == 97.5

    def test_clamped_at_zero(self, store, tracker):
        seed_inventory(store)
        tracker.get()
        assert tracker.adjust(-500) == 0.0
        assert tracker.peek() == 0.0

    def test_cold_cache_left_cold(self, store, tracker):
        """Test adjust() never initializes the cache; the next get() scans instead."""
        seed_inventory(store)
        assert tracker.adjust(-10) is None
        assert store.count(INVENTORY_SUMMARY) == 0
        assert tracker.get() == 110.0


class TestFailurePreservation:
    """A failed scan leaves the cached value untouched."""

    def test_recompute_failure_keeps_previous_value(self, flaky_store):
        seed_inventory(flaky_store)
        tracker = InventoryValuationTracker(flaky_store)
        assert tracker.get() == 110.0

        flaky_store.fail_cursor_on.add(PRODUCTS)
        with pytest.raises(StorageReadFailure):
            tracker.force_recalculate()

        assert tracker.peek() == 110.0

    def test_recompute_failure_on_cold_cache_stays_cold(self, flaky_store):
        seed_inventory(flaky_store)
        flaky_store.fail_cursor_on.add(BATCHES)
        tracker = InventoryValuationTracker(flaky_store)

        with pytest.raises(StorageReadFailure):
            tracker.get()
        assert tracker.peek() is None
