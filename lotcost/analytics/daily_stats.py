"""
Daily stats aggregator.

Keeps one persisted bucket per local calendar day (revenue, profit, orders,
items sold). Buckets are created lazily by record_sale(), moved back by
reverse_sale() and can always be rebuilt from the sales log, which is the
source of truth.

Totals loading overlaps the inventory valuation (background worker) with
loading the buckets.
"""
import logging
from concurrent.futures import Future
from typing import List, Optional, Tuple

from ..domain.models import DailyStat, Sale, StatsTotals
from ..domain.stats import apply_sale, day_key, needs_cost_map, replay, sum_totals
from ..persistence.store import Store, StoreError
from ..repositories import RepositoryFactory
from .valuation import InventoryValuationTracker
from .valuation_worker import ValuationWorker, WorkerUnavailable

logger = logging.getLogger(__name__)


class DailyStatsAggregator:
    """Incremental day buckets + lifetime totals."""

    def __init__(
        self,
        store: Store,
        tracker: InventoryValuationTracker,
        worker: Optional[ValuationWorker] = None,
    ):
        """
        Args:
            store: Persisted store
            tracker: Inventory valuation tracker (cost map + fallback value)
            worker: Background valuation worker used by load_totals()
                (default: a ValuationWorker over *store*, closed by close())
        """
        self.store = store
        self.repos = RepositoryFactory(store)
        self.tracker = tracker
        self._owns_worker = worker is None
        self.worker = ValuationWorker(store) if worker is None else worker

    def close(self) -> None:
        if self._owns_worker:
            self.worker.close()

    def __enter__(self) -> "DailyStatsAggregator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Incremental updates
    # ------------------------------------------------------------------

    def _fold(self, sale: Sale, sign: int) -> DailyStat:
        cost_map = self.tracker.cost_map() if needs_cost_map(sale) else None
        key = day_key(sale.timestamp)
        bucket = self.repos.daily_stats.get(key) or DailyStat(date=key)
        apply_sale(bucket, sale, cost_map, sign=sign)
        self.repos.daily_stats.save(bucket)
        return bucket

    def record_sale(self, sale: Sale) -> Optional[DailyStat]:
        """
        Add one sale to its day bucket.

        Returns:
            Updated bucket, or None for a cancelled sale (never counted)
        """
        if sale.is_cancelled:
            logger.debug(f"Skipping cancelled sale {sale.key} in daily stats")
            return None
        return self._fold(sale, sign=1)

    def reverse_sale(self, sale: Sale) -> Optional[DailyStat]:
        """
        Take a previously recorded sale back out of its day bucket.

        Returns:
            Updated bucket, or None when the day has no bucket yet (a later
            rebuild covers it)
        """
        if self.repos.daily_stats.get(day_key(sale.timestamp)) is None:
            logger.warning(f"No day bucket to reverse sale {sale.key} from")
            return None
        return self._fold(sale, sign=-1)

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def rebuild(self) -> List[DailyStat]:
        """
        Recreate every bucket from the sales log.

        Streams the sales, replays them in memory and replaces the stored
        buckets in one write, so days without any counted sale disappear
        together with the refresh.

        Raises:
            StorageReadFailure: Sales or cost map could not be read (nothing
                is persisted in that case)
        """
        cost_map = self.tracker.cost_map()
        buckets = replay(self.repos.sales.iter_all(), cost_map)
        rebuilt = [buckets[k] for k in sorted(buckets)]

        self.repos.daily_stats.replace_all(rebuilt)

        logger.info(f"Daily stats rebuilt: {len(rebuilt)} day(s)")
        return rebuilt

    # ------------------------------------------------------------------
    # Totals
    # ------------------------------------------------------------------

    def _collect_inventory(self, future: Future) -> Tuple[float, Optional[str]]:
        try:
            return self.worker.collect(future), None
        except (WorkerUnavailable, StoreError) as e:
            logger.warning(f"Inventory valuation unavailable, using last known value: {e}")
            last_known = self.tracker.peek()
            return (last_known if last_known is not None else 0.0), str(e)

    def load_totals(self, force_rebuild: bool = False) -> StatsTotals:
        """
        Lifetime totals plus current inventory value.

        Args:
            force_rebuild: Rebuild buckets from the sales log first

        Returns:
            StatsTotals; ``inventory_error`` is set when the inventory value
            is a last-known fallback
        """
        future = self.worker.submit()

        buckets = self.repos.daily_stats.list()
        if (not buckets or force_rebuild) and self.repos.sales.count() > 0:
            buckets = self.rebuild()

        totals = sum_totals(buckets)
        inventory_value, inventory_error = self._collect_inventory(future)

        return StatsTotals(
            total_revenue=totals["total_revenue"],
            total_net_profit=totals["total_net_profit"],
            total_orders=totals["total_orders"],
            total_items_sold=totals["total_items_sold"],
            inventory_value=inventory_value,
            inventory_error=inventory_error,
        )

    def force_recalculate(self) -> StatsTotals:
        """Rescan inventory, then rebuild buckets and reload totals."""
        self.tracker.force_recalculate()
        return self.load_totals(force_rebuild=True)
