"""
Tests for day-bucket aggregation: pure reducer, incremental recording,
rebuild equivalence, totals with valuation fallback.
"""
import threading
from datetime import datetime, timezone

import pytest

from lotcost.analytics.daily_stats import DailyStatsAggregator
from lotcost.analytics.valuation import InventoryValuationTracker
from lotcost.analytics.valuation_worker import WorkerUnavailable
from lotcost.domain.models import DailyStat, FulfillmentStatus, Sale, SaleItem
from lotcost.domain.stats import apply_sale, day_key, item_profit, replay, sum_totals
from lotcost.persistence.store import DAILY_STATS, SALES, StorageReadFailure
from lotcost.repositories import RepositoryFactory

from conftest import SlowStore, simple_product


def sale_at(ts, items, status=FulfillmentStatus.COMPLETED):
    total = round(sum(i.price * i.quantity for i in items), 2)
    return Sale(timestamp=ts, items=items, total=total, fulfillment_status=status)


@pytest.fixture
def catalog(repos):
    repos.products.save(simple_product("P", cost=5.0, price=10.0, stock=100))
    repos.products.save(simple_product("Q", cost=1.25, price=4.5, stock=100))
    return repos


@pytest.fixture
def sales_log():
    """Three days of sales, one of them cancelled, some items without cost."""
    return [
        sale_at(datetime(2026, 3, 1, 10, 0), [SaleItem("P", 10.0, 3, cost=5.0)]),
        sale_at(datetime(2026, 3, 1, 15, 30), [SaleItem("Q", 4.5, 2, cost=None)]),
        sale_at(datetime(2026, 3, 2, 9, 15), [
            SaleItem("P", 9.99, 1, cost=5.0),
            SaleItem("Q-SMALL", 4.25, 4, cost=0.0, parent_id="Q"),
        ]),
        sale_at(datetime(2026, 3, 2, 11, 0), [SaleItem("P", 10.0, 50, cost=5.0)],
                status=FulfillmentStatus.CANCELLED),
        sale_at(datetime(2026, 3, 3, 0, 5), [SaleItem("P", 10.0, 0.5, cost=5.0)]),
    ]


class FailingWorker:
    """Worker stand-in whose result never arrives."""

    def submit(self):
        return object()

    def collect(self, future):
        raise WorkerUnavailable("worker timed out")


class StaticWorker:
    def __init__(self, value):
        self.value = value

    def submit(self):
        return object()

    def collect(self, future):
        return self.value


class TestReducer:
    """Pure helpers in domain.stats"""

    def test_day_key_naive_is_local(self):
        assert day_key(datetime(2026, 3, 1, 23, 59)) == "2026-03-01"

    def test_day_key_aware_converted_to_local(self):
        ts = datetime(2026, 3, 1, 23, 30, tzinfo=timezone.utc)
        assert day_key(ts) == ts.astimezone().date().isoformat()

    def test_item_profit_rounds_margin_then_total(self):
        item = SaleItem("P", 10.0, 3, cost=5.0)
        assert item_profit(item) == 15.0

    def test_item_profit_falls_back_to_cost_map(self):
        item = SaleItem("Q-SMALL", 4.5, 2, cost=None, parent_id="Q")
        assert item_profit(item, {"Q": 1.25}) == 6.5

    def test_item_profit_without_any_cost(self):
        assert item_profit(SaleItem("X", 3.0, 2, cost=None), {}) == 6.0

    def test_apply_and_reverse_cancel_out(self):
        bucket = DailyStat(date="2026-03-01")
        sale = sale_at(datetime(2026, 3, 1, 12), [SaleItem("P", 10.0, 3, cost=5.0)])
        apply_sale(bucket, sale)
        apply_sale(bucket, sale, sign=-1)
        assert (bucket.revenue, bucket.profit, bucket.orders, bucket.items_sold) == (0.0, 0.0, 0, 0.0)

    def test_replay_skips_cancelled(self, sales_log):
        buckets = replay(sales_log, {"Q": 1.25})
        assert buckets["2026-03-02"].orders == 1
        assert buckets["2026-03-02"].items_sold == 5

    def test_sum_totals(self, sales_log):
        totals = sum_totals(replay(sales_log, {"Q": 1.25}).values())
        assert totals["total_orders"] == 4
        assert totals["total_revenue"] == round(30 + 9 + 9.99 + 17 + 5, 2)


class TestRecordSale:
    """Incremental bucket updates."""

    def test_first_sale_creates_bucket(self, store, catalog, tracker):
        stats = DailyStatsAggregator(store, tracker)
        sale = sale_at(datetime(2026, 3, 1, 12), [SaleItem("P", 10.0, 3, cost=5.0)])

        bucket = stats.record_sale(sale)

        assert bucket.to_record() == {
            "date": "2026-03-01", "revenue": 30.0, "profit": 15.0, "orders": 1, "items_sold": 3.0,
        }
        assert catalog.daily_stats.get("2026-03-01") == bucket

    def test_cancelled_sale_ignored(self, store, catalog, tracker):
        stats = DailyStatsAggregator(store, tracker)
        sale = sale_at(datetime(2026, 3, 1, 12), [SaleItem("P", 10.0, 3, cost=5.0)],
                       status=FulfillmentStatus.CANCELLED)
        assert stats.record_sale(sale) is None
        assert store.count(DAILY_STATS) == 0

    def test_cost_map_only_loaded_when_needed(self, store, catalog, tracker):
        """Test a fully costed sale never triggers an inventory scan."""
        stats = DailyStatsAggregator(store, tracker)
        stats.record_sale(sale_at(datetime(2026, 3, 1, 12), [SaleItem("P", 10.0, 1, cost=5.0)]))
        assert tracker.peek() is None

        stats.record_sale(sale_at(datetime(2026, 3, 1, 13), [SaleItem("Q", 4.5, 2)]))
        assert tracker.peek() is not None
        assert catalog.daily_stats.get("2026-03-01").profit == 5.0 + 6.5

    def test_reverse_sale(self, store, catalog, tracker):
        stats = DailyStatsAggregator(store, tracker)
        keep = sale_at(datetime(2026, 3, 1, 9), [SaleItem("P", 10.0, 1, cost=5.0)])
        undo = sale_at(datetime(2026, 3, 1, 12), [SaleItem("P", 10.0, 3, cost=5.0)])
        stats.record_sale(keep)
        stats.record_sale(undo)

        bucket = stats.reverse_sale(undo)

        assert (bucket.revenue, bucket.profit, bucket.orders, bucket.items_sold) == (10.0, 5.0, 1, 1.0)

    def test_reverse_without_bucket(self, store, catalog, tracker):
        stats = DailyStatsAggregator(store, tracker)
        sale = sale_at(datetime(2026, 3, 1, 12), [SaleItem("P", 10.0, 3, cost=5.0)])
        assert stats.reverse_sale(sale) is None
        assert store.count(DAILY_STATS) == 0


class TestRebuildEquivalence:
    """Incremental recording and full replay always agree."""

    def test_rebuild_matches_incremental(self, store, catalog, tracker, sales_log):
        stats = DailyStatsAggregator(store, tracker)
        for sale in sales_log:
            catalog.sales.save(sale)
            stats.record_sale(sale)
        incremental = {d: s.to_record() for d, s in catalog.daily_stats.by_date().items()}

        for date in list(incremental):
            store.delete(DAILY_STATS, date)
        stats.rebuild()
        rebuilt = {d: s.to_record() for d, s in catalog.daily_stats.by_date().items()}

        assert rebuilt == incremental
        assert sorted(rebuilt) == ["2026-03-01", "2026-03-02", "2026-03-03"]

    def test_rebuild_overwrites_drifted_buckets(self, store, catalog, tracker, sales_log):
        stats = DailyStatsAggregator(store, tracker)
        for sale in sales_log:
            catalog.sales.save(sale)
        catalog.daily_stats.save(DailyStat(date="2026-03-01", revenue=999.0, orders=42))
        catalog.daily_stats.save(DailyStat(date="2025-12-31", revenue=5.0, orders=1))

        stats.rebuild()

        by_date = catalog.daily_stats.by_date()
        assert by_date["2026-03-01"].orders == 2
        assert by_date["2026-03-01"].revenue == 39.0
        assert "2025-12-31" not in by_date

    def test_rebuild_drops_day_whose_only_sale_was_cancelled(self, store, catalog, tracker):
        stats = DailyStatsAggregator(store, tracker)
        sale = sale_at(datetime(2026, 3, 5, 10, 0), [SaleItem("P", 10.0, 2, cost=5.0)])
        catalog.sales.save(sale)
        stats.record_sale(sale)
        assert catalog.daily_stats.get("2026-03-05").orders == 1

        sale.fulfillment_status = FulfillmentStatus.CANCELLED
        catalog.sales.save(sale)
        assert stats.rebuild() == []

        assert catalog.daily_stats.get("2026-03-05") is None
        assert store.count(DAILY_STATS) == 0

    def test_rebuild_read_failure_persists_nothing(self, flaky_store, sales_log):
        repos = RepositoryFactory(flaky_store)
        repos.products.save(simple_product("P"))
        for sale in sales_log:
            repos.sales.save(sale)
        repos.daily_stats.save(DailyStat(date="2026-03-01", revenue=1.0, orders=1))
        flaky_store.fail_cursor_on.add(SALES)
        stats = DailyStatsAggregator(flaky_store, InventoryValuationTracker(flaky_store))

        with pytest.raises(StorageReadFailure):
            stats.rebuild()

        assert [s.to_record() for s in repos.daily_stats.list()] == [
            DailyStat(date="2026-03-01", revenue=1.0, orders=1).to_record()
        ]


class TestLoadTotals:
    """Lifetime totals + inventory value."""

    def test_empty_buckets_trigger_rebuild(self, store, catalog, tracker, sales_log):
        for sale in sales_log:
            catalog.sales.save(sale)
        stats = DailyStatsAggregator(store, tracker)

        totals = stats.load_totals()

        assert totals.total_orders == 4
        assert totals.total_items_sold == 3 + 2 + 5 + 0.5
        assert store.count(DAILY_STATS) == 3

    def test_no_sales_no_rebuild(self, store, catalog, tracker):
        totals = DailyStatsAggregator(store, tracker).load_totals()
        assert totals.total_orders == 0
        assert totals.total_revenue == 0.0
        assert store.count(DAILY_STATS) == 0

    def test_existing_buckets_used_as_is(self, store, catalog, tracker, sales_log):
        for sale in sales_log:
            catalog.sales.save(sale)
        catalog.daily_stats.save(DailyStat(date="2026-03-01", revenue=1.0, orders=1))

        totals = DailyStatsAggregator(store, tracker).load_totals()
        assert totals.total_revenue == 1.0

        totals = DailyStatsAggregator(store, tracker).load_totals(force_rebuild=True)
        assert totals.total_orders == 4

    def test_default_worker_scans_inventory(self, store, catalog, tracker):
        with DailyStatsAggregator(store, tracker) as stats:
            totals = stats.load_totals()
        assert totals.inventory_value == 500.0 + 125.0
        assert totals.inventory_error is None

    def test_valuation_overlaps_bucket_loading(self):
        slow = SlowStore(delay=0.2)
        RepositoryFactory(slow).products.save(simple_product("P", cost=5.0, stock=10))

        with DailyStatsAggregator(slow, InventoryValuationTracker(slow)) as stats:
            totals = stats.load_totals()

        assert totals.inventory_value == 50.0
        assert totals.inventory_error is None
        opened_on = dict(slow.cursor_threads)
        main = threading.main_thread().name
        assert opened_on[DAILY_STATS] == main
        assert opened_on["products"] != main
        assert opened_on["batches"] != main

    def test_inventory_value_from_worker(self, store, catalog, tracker):
        totals = DailyStatsAggregator(store, tracker, worker=StaticWorker(42.0)).load_totals()
        assert totals.inventory_value == 42.0
        assert totals.inventory_error is None

    def test_worker_failure_falls_back_to_last_known(self, store, catalog, tracker):
        tracker.get()
        tracker.adjust(-25)

        totals = DailyStatsAggregator(store, tracker, worker=FailingWorker()).load_totals()

        assert totals.inventory_value == 600.0
        assert totals.inventory_error == "worker timed out"

    def test_worker_failure_with_cold_cache_reports_zero(self, store, catalog, tracker):
        totals = DailyStatsAggregator(store, tracker, worker=FailingWorker()).load_totals()
        assert totals.inventory_value == 0.0
        assert totals.inventory_error is not None

    def test_force_recalculate(self, store, catalog, tracker, sales_log):
        for sale in sales_log:
            catalog.sales.save(sale)
        stats = DailyStatsAggregator(store, tracker)
        tracker.get()
        tracker.adjust(-100)

        totals = stats.force_recalculate()

        assert totals.inventory_value == 625.0
        assert totals.total_orders == 4
