"""
Day-bucket aggregation (pure).

apply_sale() is the single rule for folding one sale into one bucket.
Both the incremental path (DailyStatsAggregator.record_sale) and the full
replay use it, so replaying the sales log always reproduces the buckets
that incremental updates produced.
"""
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional

from .models import DailyStat, Sale, SaleItem
from ..utils.money import round_currency, to_number


def day_key(timestamp: datetime) -> str:
    """
    Local calendar day of *timestamp* (YYYY-MM-DD).

    Aware datetimes are converted to the local timezone first; naive
    datetimes are already local.
    """
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone()
    return timestamp.date().isoformat()


def item_cost(item: SaleItem, cost_map: Optional[Mapping[str, float]] = None) -> float:
    """Item cost, falling back to the catalog cost map when missing or zero."""
    cost = to_number(item.cost)
    if cost == 0 and cost_map:
        cost = to_number(cost_map.get(item.product_id))
    return cost


def item_profit(item: SaleItem, cost_map: Optional[Mapping[str, float]] = None) -> float:
    """round(round(price - cost) * quantity)"""
    unit_margin = round_currency(to_number(item.price) - item_cost(item, cost_map))
    return round_currency(unit_margin * to_number(item.quantity))


def needs_cost_map(sale: Sale) -> bool:
    return any(not to_number(item.cost) for item in sale.items)


def apply_sale(
    bucket: DailyStat,
    sale: Sale,
    cost_map: Optional[Mapping[str, float]] = None,
    sign: int = 1,
) -> DailyStat:
    """
    Fold one sale into *bucket* (in place) and return it.

    Args:
        bucket: Day bucket for the sale's calendar day
        sale: Sale to apply
        cost_map: product_id -> cost, used for items without cost
        sign: 1 to add the sale, -1 to take it back out (reversal)

    Returns:
        The same bucket
    """
    profit = 0.0
    items_sold = 0.0
    for item in sale.items:
        profit = round_currency(profit + item_profit(item, cost_map))
        items_sold += to_number(item.quantity)

    bucket.revenue = round_currency(bucket.revenue + sign * to_number(sale.total))
    bucket.profit = round_currency(bucket.profit + sign * profit)
    bucket.orders += sign
    bucket.items_sold = bucket.items_sold + sign * items_sold
    return bucket


def replay(sales: Iterable[Sale], cost_map: Optional[Mapping[str, float]] = None) -> Dict[str, DailyStat]:
    """
    Rebuild all day buckets from the sales log.

    Cancelled sales are skipped.

    Returns:
        {date_key: DailyStat}
    """
    buckets: Dict[str, DailyStat] = {}
    for sale in sales:
        if sale.is_cancelled:
            continue
        key = day_key(sale.timestamp)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = DailyStat(date=key)
        apply_sale(bucket, sale, cost_map)
    return buckets


def sum_totals(buckets: Iterable[DailyStat]) -> Dict[str, float]:
    """Lifetime totals across day buckets."""
    totals = {
        "total_revenue": 0.0,
        "total_net_profit": 0.0,
        "total_orders": 0,
        "total_items_sold": 0.0,
    }
    for day in buckets:
        totals["total_revenue"] = round_currency(totals["total_revenue"] + day.revenue)
        totals["total_net_profit"] = round_currency(totals["total_net_profit"] + day.profit)
        totals["total_orders"] += day.orders
        totals["total_items_sold"] += day.items_sold
    return totals
