"""
Inventory valuation tracker.

Keeps a cached scalar (collection ``inventory_summary``) of the total cost
value of stock on hand:

    Σ round(cost × stock) over active lots with stock > 0
  + Σ round(cost × stock) over tracked, non-batch-managed products with stock > 0

The cache moves by incremental adjust() deltas (sales, waste, corrections,
reversals) and can be rebuilt at any time by recompute(), which scans the
store once and also yields a product_id -> cost map reused by the stats
rebuild.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional
import logging

from ..domain.models import Batch, Product
from ..persistence.store import (
    BATCHES,
    INVENTORY_SUMMARY,
    INVENTORY_SUMMARY_ID,
    PRODUCTS,
    Store,
    StoreError,
    StorageReadFailure,
)
from ..utils.money import round_currency, to_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValuationScan:
    """Result of one full inventory scan."""
    value: float
    cost_map: Dict[str, float] = field(default_factory=dict)
    batches_counted: int = 0
    products_counted: int = 0


def scan_inventory(store: Store) -> ValuationScan:
    """
    Full valuation pass over batches and products.

    Pure with respect to the cache: reads only, persists nothing.

    Raises:
        StorageReadFailure: The scan could not complete (cursor error or
            malformed record)
    """
    value = 0.0
    cost_map: Dict[str, float] = {}
    batches_counted = 0
    products_counted = 0

    try:
        for record in store.open_cursor(BATCHES):
            batch = Batch.from_record(record)
            if batch.is_available:
                value += round_currency(batch.cost * batch.stock)
                batches_counted += 1

        for record in store.open_cursor(PRODUCTS):
            product = Product.from_record(record)
            cost_map[product.id] = product.cost
            if not product.uses_batches and product.track_stock and product.stock > 0:
                value += round_currency(product.cost * product.stock)
                products_counted += 1

    except StorageReadFailure:
        raise
    except (StoreError, KeyError, ValueError, TypeError) as e:
        raise StorageReadFailure(f"Inventory scan incomplete: {e}") from e

    return ValuationScan(
        value=round_currency(value),
        cost_map=cost_map,
        batches_counted=batches_counted,
        products_counted=products_counted,
    )


class InventoryValuationTracker:
    """Cached inventory value with incremental adjustments."""

    def __init__(self, store: Store):
        self.store = store
        self._cost_map: Optional[Dict[str, float]] = None

    def peek(self) -> Optional[float]:
        """Last persisted value, or None when the cache is cold. Never scans."""
        record = self.store.get(INVENTORY_SUMMARY, INVENTORY_SUMMARY_ID)
        if record is None or not isinstance(record.get("value"), (int, float)):
            return None
        return float(record["value"])

    def get(self) -> float:
        """Cached value; a cold cache triggers recompute()."""
        cached = self.peek()
        if cached is not None:
            return cached
        logger.info("Inventory value not cached, computing from scratch")
        return self.recompute().value

    def recompute(self) -> ValuationScan:
        """
        Scan the store, persist the new value and remember the cost map.

        On failure the previously cached value is left untouched.

        Raises:
            StorageReadFailure: Scan incomplete
        """
        scan = scan_inventory(self.store)
        self.store.put(INVENTORY_SUMMARY, {"id": INVENTORY_SUMMARY_ID, "value": scan.value})
        self._cost_map = dict(scan.cost_map)
        logger.debug(
            f"Inventory recomputed: value={scan.value} "
            f"(batches={scan.batches_counted}, products={scan.products_counted})"
        )
        return scan

    def cost_map(self) -> Dict[str, float]:
        """product_id -> cost from the last scan (scans once if none yet)."""
        if self._cost_map is None:
            self.recompute()
        return dict(self._cost_map)

    def adjust(self, delta: float) -> Optional[float]:
        """
        Move the cached value by *delta*, clamped at 0.

        A zero delta touches nothing. A cold cache is left cold: callers
        persist stock changes before adjusting, so the next get() scan
        already reflects them and applying the delta would count it twice.

        Returns:
            New cached value, or None when the cache was cold
        """
        delta = to_number(delta)
        if delta == 0:
            return self.peek()

        current = self.peek()
        if current is None:
            logger.warning(f"adjust({delta}) on cold inventory cache; next read will rescan")
            return None

        new_value = round_currency(current + delta)
        if new_value < 0:
            new_value = 0.0

        self.store.put(INVENTORY_SUMMARY, {"id": INVENTORY_SUMMARY_ID, "value": new_value})
        return new_value

    def force_recalculate(self) -> float:
        """Discard the cached value in favor of a fresh scan."""
        self._cost_map = None
        return self.recompute().value
