"""
Tests for the background valuation worker (message protocol, thread and
process execution, timeout and failure signalling).
"""
import pytest

from lotcost.analytics.valuation_worker import (
    CALCULATE_STATS,
    STATS_RESULT,
    ValuationWorker,
    WorkerUnavailable,
    handle_message,
)
from lotcost.persistence.sqlite_store import SQLiteStore
from lotcost.persistence.store import PRODUCTS
from lotcost.repositories import RepositoryFactory

from conftest import SlowStore, simple_product


@pytest.fixture
def sqlite_path(tmp_path):
    path = tmp_path / "lotcost.db"
    store = SQLiteStore(path)
    repos = RepositoryFactory(store)
    repos.products.save(simple_product("P", cost=5.0, stock=17))
    repos.products.save(simple_product("Q", cost=2.5, stock=4))
    store.close()
    return path


class TestHandleMessage:
    """Worker-side protocol."""

    def test_stats_result(self, sqlite_path):
        response = handle_message({"type": CALCULATE_STATS, "db_path": str(sqlite_path)})
        assert response == {
            "success": True,
            "type": STATS_RESULT,
            "payload": {"inventory_value": 95.0},
        }

    def test_unknown_message_type(self, sqlite_path):
        response = handle_message({"type": "SOMETHING_ELSE", "db_path": str(sqlite_path)})
        assert response["success"] is False
        assert response["type"] == "ERROR"

    def test_missing_db_path(self):
        response = handle_message({"type": CALCULATE_STATS})
        assert response["success"] is False
        assert "db_path" in response["error"]

    def test_scan_failure_reported(self, tmp_path):
        path = tmp_path / "broken.db"
        store = SQLiteStore(path)
        # Negative cost cannot be loaded as a Product
        store.put(PRODUCTS, {"id": "X", "cost": -1.0, "stock": 1})
        store.close()

        response = handle_message({"type": CALCULATE_STATS, "db_path": str(path)})

        assert response["success"] is False
        assert response["error"]


class TestThreadWorker:
    """In-memory stores run in a background thread."""

    def test_calculate(self, store, repos):
        repos.products.save(simple_product("P", cost=5.0, stock=17))
        with ValuationWorker(store) as worker:
            assert not worker.use_processes
            assert worker.calculate() == 85.0

    def test_submit_then_collect(self, store, repos):
        repos.products.save(simple_product("P", cost=5.0, stock=17))
        worker = ValuationWorker(store, timeout=5.0)
        try:
            future = worker.submit()
            assert worker.collect(future) == 85.0
        finally:
            worker.close()

    def test_timeout_raises_unavailable(self):
        store = SlowStore(delay=1.0)
        worker = ValuationWorker(store, timeout=0.05)
        try:
            with pytest.raises(WorkerUnavailable, match="timed out"):
                worker.calculate()
        finally:
            worker.close()

    def test_failure_response_raises_unavailable(self, flaky_store):
        flaky_store.fail_cursor_on.add(PRODUCTS)
        with ValuationWorker(flaky_store) as worker:
            with pytest.raises(WorkerUnavailable):
                worker.calculate()

    def test_processes_need_sqlite(self, store):
        with pytest.raises(ValueError):
            ValuationWorker(store, use_processes=True)

    def test_submit_after_close_restarts(self, store, repos):
        repos.products.save(simple_product("P", cost=1.0, stock=3))
        worker = ValuationWorker(store)
        worker.close()
        try:
            assert worker.calculate() == 3.0
        finally:
            worker.close()


class TestProcessWorker:
    """SQLite stores are valued in a spawned process."""

    def test_calculate_in_subprocess(self, sqlite_path):
        store = SQLiteStore(sqlite_path)
        try:
            with ValuationWorker(store, timeout=60.0) as worker:
                assert worker.use_processes
                assert worker.calculate() == 95.0
        finally:
            store.close()
