"""
Composite pricing engine.

Computes the unit price charged for a requested quantity:

- simple products: base price, overridden by the best wholesale tier;
- batch-managed products: weighted average over the lots that would be
  consumed (FIFO or FEFO), overridden by the best wholesale tier unless
  the tier price is below product cost.

Deterministic and I/O free. Active lots are passed in by the caller.
"""
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional
import logging

from .models import Batch, Product, SelectionStrategy, WholesaleTier
from ..utils.money import round_currency

logger = logging.getLogger(__name__)

DEFAULT_CACHE_CAPACITY = 200


# ============================================================
# Lot ordering & tier helpers
# ============================================================

def sort_batches_by_strategy(batches: Iterable[Batch], strategy=SelectionStrategy.FIFO) -> List[Batch]:
    """
    Order lots for consumption.

    FIFO: oldest ``created_at`` first.
    FEFO: earliest ``expiry_date`` first; lots with an expiry come before
    lots without one; equal or missing expiries fall back to FIFO.

    Returns:
        New sorted list (input untouched)
    """
    strategy = SelectionStrategy.parse(strategy)

    if strategy == SelectionStrategy.FEFO:
        def key(b: Batch):
            has_expiry = b.expiry_date is not None
            return (
                0 if has_expiry else 1,
                b.expiry_date if has_expiry else datetime.min,
                b.created_at,
            )
    else:
        def key(b: Batch):
            return b.created_at

    return sorted(batches, key=key)


def find_wholesale_tier(tiers: Iterable[WholesaleTier], quantity: float) -> Optional[WholesaleTier]:
    """Best matching tier: the one with the largest ``min`` not above *quantity*."""
    best = None
    for tier in tiers:
        if quantity >= tier.min and (best is None or tier.min > best.min):
            best = tier
    return best


def tier_undercuts_cost(tier_price: float, cost: float) -> bool:
    """
    Loss-protection rule for wholesale tiers.

    Only applies when the product has a known cost (> 0).
    """
    return cost > 0 and tier_price < cost


def composite_average(product: Product, quantity: float, batches: List[Batch]) -> float:
    """
    Weighted-average unit price from consuming *batches* in order.

    Args:
        product: Product (fallback price when no lots exist)
        quantity: Requested quantity (> 0)
        batches: Active lots already sorted by strategy

    Returns:
        round_currency(accumulated / quantity)
    """
    remaining = quantity
    accumulated = 0.0

    for batch in batches:
        if remaining <= 0:
            break
        if batch.stock <= 0:
            continue
        take = min(remaining, batch.stock)
        accumulated += round_currency(take * batch.price)
        remaining -= take

    # Oversell: charge the shortfall at the last lot's price (or list price)
    if remaining > 0:
        fallback = batches[-1].price if batches else product.price
        accumulated += remaining * fallback

    return round_currency(accumulated / quantity)


# ============================================================
# Bounded price cache
# ============================================================

class PriceCache:
    """
    Bounded memo of composite prices.

    Insertion ordered; when full the oldest entry is evicted first.
    Pure performance layer: a miss simply recomputes.
    """

    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY):
        if capacity < 1:
            raise ValueError("Price cache capacity must be >= 1")
        self.capacity = capacity
        self._entries: "OrderedDict[str, float]" = OrderedDict()

    @staticmethod
    def make_key(product: Product, quantity: float, active_count: int) -> str:
        return f"{product.id}|{quantity}|{product.price}|{active_count}|{product.cost}"

    def get(self, key: str) -> Optional[float]:
        return self._entries.get(key)

    def put(self, key: str, value: float) -> None:
        if key in self._entries:
            self._entries[key] = value
            return
        while len(self._entries) >= self.capacity:
            self._entries.popitem(last=False)
        self._entries[key] = value

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


# ============================================================
# Engine
# ============================================================

@dataclass(frozen=True)
class WholesaleCheck:
    """
    Advisory result of validate_wholesale_condition().

    status: "ok" | "conflict"
    reason: "no_tier" | "no_cost" | "above_cost" | "below_cost"
    safe_price: unit price charged when the tier is rejected
    """
    status: str
    reason: str
    tier_price: Optional[float]
    cost: float
    safe_price: float

    @property
    def is_conflict(self) -> bool:
        return self.status == "conflict"


class PricingEngine:
    """Unit-price calculator with an instance-owned bounded cache."""

    def __init__(self, cache_capacity: int = DEFAULT_CACHE_CAPACITY):
        self.cache = PriceCache(cache_capacity)

    @staticmethod
    def _available(active_batches: Optional[Iterable[Batch]]) -> List[Batch]:
        return [b for b in (active_batches or []) if b.is_available]

    def _simple_price(self, product: Product, quantity: float) -> float:
        tier = find_wholesale_tier(product.wholesale_tiers, quantity)
        if tier is not None:
            return float(tier.price)
        return product.base_price

    def price_for(
        self,
        product: Optional[Product],
        quantity: float,
        active_batches: Optional[Iterable[Batch]] = None,
    ) -> float:
        """
        Unit price for *quantity* units of *product*.

        Args:
            product: Product to price (None -> 0)
            quantity: Requested quantity
            active_batches: Lots of a batch-managed product; inactive or
                empty lots are ignored

        Returns:
            Unit price (finite)
        """
        if product is None:
            return 0.0
        if quantity is None or quantity <= 0:
            return product.price or 0.0

        # Pre-selected lot / variant
        if product.selected_batch_id:
            return self._simple_price(product, quantity)

        lots = self._available(active_batches)
        if not product.uses_batches or not lots:
            return self._simple_price(product, quantity)

        key = PriceCache.make_key(product, quantity, len(lots))
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        ordered = sort_batches_by_strategy(lots, product.batch_management.selection_strategy)
        average = composite_average(product, quantity, ordered)

        price = average
        tier = find_wholesale_tier(product.wholesale_tiers, quantity)
        if tier is not None:
            if tier_undercuts_cost(tier.price, product.cost):
                logger.info(
                    f"Wholesale tier {tier.price} below cost {product.cost} for {product.id}; "
                    f"charging composite average {average}"
                )
            else:
                price = float(tier.price)

        self.cache.put(key, price)
        return price

    def validate_wholesale_condition(
        self,
        product: Product,
        quantity: float,
        active_batches: Optional[Iterable[Batch]] = None,
    ) -> WholesaleCheck:
        """
        Check whether the tier that applies at *quantity* would sell below cost.

        Advisory only: never changes what price_for() charges. Uses the same
        tier_undercuts_cost() predicate as the batch pricing path.
        """
        cost = float(product.cost or 0)
        lots = self._available(active_batches)

        if product.uses_batches and lots and quantity > 0 and not product.selected_batch_id:
            ordered = sort_batches_by_strategy(lots, product.batch_management.selection_strategy)
            safe_price = composite_average(product, quantity, ordered)
        else:
            safe_price = product.base_price

        tier = find_wholesale_tier(product.wholesale_tiers, quantity)
        if tier is None:
            return WholesaleCheck("ok", "no_tier", None, cost, safe_price)

        tier_price = float(tier.price)
        if cost <= 0:
            return WholesaleCheck("ok", "no_cost", tier_price, cost, safe_price)
        if tier_undercuts_cost(tier_price, cost):
            return WholesaleCheck("conflict", "below_cost", tier_price, cost, safe_price)
        return WholesaleCheck("ok", "above_cost", tier_price, cost, safe_price)
