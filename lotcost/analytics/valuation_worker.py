"""
Background inventory valuation.

The full valuation scan can run off the caller's control flow while day
buckets load. Caller and worker exchange plain dicts only:

    request : {"type": "CALCULATE_STATS", "db_path": "..."}
    response: {"success": True, "type": "STATS_RESULT",
               "payload": {"inventory_value": 123.45}}
           or {"success": False, "type": "ERROR", "error": "..."}

Architecture
------------
* SQLite stores: the request is pickled to a ``ProcessPoolExecutor``
  ("spawn" start method). The worker opens its own connection, so no
  memory is shared with the caller. ``handle_message`` is module-level so
  it can be pickled.
* Other stores (in-memory): a single background thread runs the same scan
  and still answers with a response dict.
* Every wait is bounded by a timeout. A timed-out, failed or unreachable
  worker raises ``WorkerUnavailable``; the caller decides the fallback.
"""

from __future__ import annotations

import logging
import multiprocessing
from concurrent.futures import Future, ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Optional

from .. import config
from ..persistence.store import Store
from ..persistence.sqlite_store import SQLiteStore
from .valuation import scan_inventory

logger = logging.getLogger(__name__)

CALCULATE_STATS = "CALCULATE_STATS"
STATS_RESULT = "STATS_RESULT"
ERROR = "ERROR"


class WorkerUnavailable(Exception):
    """The valuation worker failed, timed out or could not be started."""
    pass


def _result(inventory_value: float) -> dict:
    return {"success": True, "type": STATS_RESULT, "payload": {"inventory_value": inventory_value}}


def _failure(error: str) -> dict:
    return {"success": False, "type": ERROR, "error": error}


def _answer(store: Store, message: dict) -> dict:
    if message.get("type") != CALCULATE_STATS:
        return _failure(f"Unknown message type: {message.get('type')!r}")
    try:
        scan = scan_inventory(store)
    except Exception as exc:
        # Reported back as a failure response; the caller raises WorkerUnavailable
        logger.warning("Valuation worker scan failed: %s", exc)
        return _failure(str(exc))
    return _result(scan.value)


# ── Worker entry points ──────────────────────────────────────────────────────

def handle_message(message: dict) -> dict:
    """
    Answer one request in a spawned subprocess.

    Must not touch any state of the parent process: everything it needs is
    in *message*.
    """
    db_path = message.get("db_path")
    if not db_path:
        return _failure("Request is missing db_path")
    try:
        store = SQLiteStore(db_path)
    except Exception as exc:
        return _failure(f"Cannot open store: {exc}")
    try:
        return _answer(store, message)
    finally:
        store.close()


def _handle_local(store: Store, message: dict) -> dict:
    return _answer(store, message)


# ── Caller side ──────────────────────────────────────────────────────────────

class ValuationWorker:
    """
    Runs inventory valuation requests in the background.

    Usage:
        >>> with ValuationWorker(store, timeout=5.0) as worker:
        ...     future = worker.submit()
        ...     # ... do other work ...
        ...     value = worker.collect(future)
    """

    def __init__(self, store: Store, timeout: Optional[float] = None, use_processes: Optional[bool] = None):
        """
        Args:
            store: Store to value
            timeout: Seconds to wait in collect() (default: config.VALUATION_TIMEOUT_SECONDS)
            use_processes: Force process (True) or thread (False) execution;
                default is processes for SQLite stores only
        """
        self.store = store
        self.timeout = config.VALUATION_TIMEOUT_SECONDS if timeout is None else timeout
        if use_processes is None:
            use_processes = isinstance(store, SQLiteStore)
        if use_processes and not isinstance(store, SQLiteStore):
            raise ValueError("Process-based valuation needs a SQLiteStore (memory cannot be shared)")
        self.use_processes = use_processes
        self._executor = None

    def _get_executor(self):
        if self._executor is None:
            if self.use_processes:
                self._executor = ProcessPoolExecutor(
                    max_workers=1,
                    mp_context=multiprocessing.get_context("spawn"),
                )
            else:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="valuation")
        return self._executor

    def submit(self) -> Future:
        """Send a CALCULATE_STATS request; returns a future of the response dict."""
        message = {"type": CALCULATE_STATS}
        try:
            executor = self._get_executor()
            if self.use_processes:
                message["db_path"] = str(self.store.db_path)
                return executor.submit(handle_message, message)
            return executor.submit(_handle_local, self.store, message)
        except (RuntimeError, OSError) as exc:
            logger.error("Valuation worker could not start: %s", exc)
            failed: Future = Future()
            failed.set_exception(WorkerUnavailable(f"Worker could not start: {exc}"))
            return failed

    def collect(self, future: Future, timeout: Optional[float] = None) -> float:
        """
        Wait for the response and return the inventory value.

        Raises:
            WorkerUnavailable: failure response, worker crash or timeout
                (a timed-out request is cancelled)
        """
        wait = self.timeout if timeout is None else timeout
        try:
            response = future.result(timeout=wait)
        except FuturesTimeoutError:
            future.cancel()
            raise WorkerUnavailable(f"Valuation worker timed out after {wait}s") from None
        except WorkerUnavailable:
            raise
        except Exception as exc:
            raise WorkerUnavailable(f"Valuation worker crashed: {exc}") from exc

        if not response.get("success") or response.get("type") != STATS_RESULT:
            raise WorkerUnavailable(response.get("error") or "Valuation worker reported an error")
        return float(response["payload"]["inventory_value"])

    def calculate(self) -> float:
        return self.collect(self.submit())

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def __enter__(self) -> "ValuationWorker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
