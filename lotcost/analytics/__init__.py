"""Analytics package: inventory valuation and daily sales stats."""

from .valuation import InventoryValuationTracker, ValuationScan, scan_inventory
from .valuation_worker import ValuationWorker, WorkerUnavailable, handle_message
from .daily_stats import DailyStatsAggregator

__all__ = [
    "InventoryValuationTracker",
    "ValuationScan",
    "scan_inventory",
    "ValuationWorker",
    "WorkerUnavailable",
    "handle_message",
    "DailyStatsAggregator",
]
