"""
Sale workflow: price, deduct stock, log the sale, update aggregates.

complete_sale() order of effects:
    1. price every line (no writes) and check the caller's total
    2. stock writes (lots / product stock / recipe ingredients)
    3. sale record
    4. inventory value -= cost of stock taken
    5. day bucket

cancel_sale() walks the same path backwards.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union
import logging

from .. import config
from ..analytics.daily_stats import DailyStatsAggregator
from ..analytics.valuation import InventoryValuationTracker
from ..domain.models import BatchUsage, FulfillmentStatus, Product, Sale, SaleItem
from ..domain.pricing import PricingEngine
from ..domain.validation import ValidationError, require, validate_quantity
from ..persistence.store import Store
from ..repositories import RepositoryFactory
from ..utils.money import round_currency
from .batches import BatchLedger

logger = logging.getLogger(__name__)


class PriceIntegrityError(ValidationError):
    """The caller's total does not match the authoritative computed total."""

    def __init__(self, expected_total: float, computed_total: float):
        self.expected_total = expected_total
        self.computed_total = computed_total
        super().__init__(
            f"Sale total mismatch: client sent {expected_total}, computed {computed_total}"
        )


@dataclass
class _PricedLine:
    item_id: str
    parent_id: Optional[str]
    product: Product
    quantity: float
    unit_price: float


class SaleWorkflow:
    """Completes and cancels sales."""

    def __init__(
        self,
        store: Store,
        engine: PricingEngine,
        ledger: BatchLedger,
        tracker: InventoryValuationTracker,
        stats: DailyStatsAggregator,
    ):
        self.store = store
        self.repos = RepositoryFactory(store)
        self.engine = engine
        self.ledger = ledger
        self.tracker = tracker
        self.stats = stats

    # ============================================================
    # Pricing
    # ============================================================

    def _price_line(self, line: Dict[str, Any]) -> _PricedLine:
        item_id = line.get("id")
        parent_id = line.get("parent_id")
        quantity = line.get("quantity")
        require(validate_quantity(quantity), context=f"sale line {item_id}")

        product = self.repos.products.get(parent_id or item_id) if (parent_id or item_id) else None
        if product is None:
            raise ValidationError(f"Product {parent_id or item_id} not found")

        batch_id = line.get("batch_id")
        if batch_id:
            batch = self.repos.batches.get(batch_id)
            if batch is None or batch.product_id != product.id:
                raise ValidationError(f"Batch {batch_id} does not belong to product {product.id}")
            product.selected_batch_id = batch.id
            product.original_price = batch.price

        active = self.ledger.active_batches(product.id) if product.uses_batches else None
        unit_price = self.engine.price_for(product, quantity, active)
        return _PricedLine(item_id, parent_id, product, float(quantity), unit_price)

    # ============================================================
    # Stock deduction
    # ============================================================

    def _take_direct(self, product: Product, quantity: float) -> BatchUsage:
        # Reload: an earlier line of the same sale may have moved this stock
        product = self.repos.products.get(product.id) or product
        product.stock = product.stock - quantity
        product.updated_at = datetime.now()
        self.repos.products.save(product)
        if product.stock < 0:
            logger.warning(f"Stock of {product.id} is negative after sale: {product.stock}")
        return BatchUsage(batch_id=None, quantity=quantity, product_id=product.id, cost=product.cost)

    def _deduct(self, product: Product, quantity: float) -> Tuple[float, List[BatchUsage]]:
        """
        Remove stock for one line.

        Returns:
            (cost_total, usages)
        """
        if product.has_recipe:
            cost_total = 0.0
            usages: List[BatchUsage] = []
            for line in product.recipe:
                ingredient = self.repos.products.get(line.ingredient_id)
                if ingredient is None:
                    logger.warning(f"Recipe of {product.id} references missing ingredient {line.ingredient_id}")
                    continue
                ingredient_cost, ingredient_usages = self._deduct(ingredient, line.quantity * quantity)
                cost_total += ingredient_cost
                usages.extend(ingredient_usages)
            return round_currency(cost_total), usages

        if product.uses_batches:
            consumption = self.ledger.consume(product, quantity)
            return consumption.cost_total, consumption.batches_used

        cost_total = round_currency(product.cost * quantity)
        if not product.track_stock:
            return cost_total, []
        return cost_total, [self._take_direct(product, quantity)]

    @staticmethod
    def _stock_cost(usages: List[BatchUsage]) -> float:
        return round_currency(sum(round_currency(u.quantity * u.cost) for u in usages))

    # ============================================================
    # Operations
    # ============================================================

    def complete_sale(
        self,
        lines: List[Dict[str, Any]],
        timestamp: Optional[datetime] = None,
        expected_total: Optional[float] = None,
    ) -> Sale:
        """
        Complete a sale.

        Args:
            lines: [{"id": ..., "quantity": ..., "parent_id"?: ..., "batch_id"?: ...}]
            timestamp: Sale time, also the sale's key (default: now)
            expected_total: Total shown to the customer; checked against the
                computed total within config.TOTAL_DRIFT_TOLERANCE

        Returns:
            Persisted Sale

        Raises:
            ValidationError: Empty sale, bad quantity, unknown product, duplicate timestamp
            PriceIntegrityError: expected_total drifted from the computed total
        """
        if not lines:
            raise ValidationError("Sale has no lines")
        timestamp = timestamp or datetime.now()
        if self.repos.sales.get(timestamp.isoformat()) is not None:
            raise ValidationError(f"A sale already exists at {timestamp.isoformat()}")

        priced = [self._price_line(line) for line in lines]
        total = round_currency(sum(round_currency(p.unit_price * p.quantity) for p in priced))

        if expected_total is not None and abs(total - float(expected_total)) > config.TOTAL_DRIFT_TOLERANCE:
            logger.warning(f"Rejected sale at {timestamp.isoformat()}: client total {expected_total} != {total}")
            raise PriceIntegrityError(float(expected_total), total)

        items: List[SaleItem] = []
        for p in priced:
            cost_total, usages = self._deduct(p.product, p.quantity)
            items.append(SaleItem(
                id=p.item_id,
                parent_id=p.parent_id,
                name=p.product.name,
                price=p.unit_price,
                quantity=p.quantity,
                cost=round_currency(cost_total / p.quantity),
                batches_used=usages,
                stock_deducted=sum(u.quantity for u in usages),
            ))

        sale = Sale(timestamp=timestamp, items=items, total=total)
        self.repos.sales.save(sale)

        stock_cost = sum(self._stock_cost(i.batches_used) for i in items)
        self.tracker.adjust(-stock_cost)
        self.stats.record_sale(sale)

        logger.info(f"Sale {sale.key} completed: {len(items)} item(s), total={total}")
        return sale

    def cancel_sale(self, timestamp: Union[datetime, str]) -> Sale:
        """
        Cancel a completed sale: stock comes back, aggregates go back.

        Raises:
            ValidationError: Unknown sale or sale already cancelled
        """
        key = timestamp.isoformat() if isinstance(timestamp, datetime) else str(timestamp)
        sale = self.repos.sales.get(key)
        if sale is None:
            raise ValidationError(f"Sale {key} not found")
        if sale.is_cancelled:
            raise ValidationError(f"Sale {key} is already cancelled")

        restored = 0.0
        for item in sale.items:
            restored += self.ledger.restore(item.batches_used)
            for usage in item.batches_used:
                if usage.from_lot:
                    continue
                product = self.repos.products.get(usage.product_id)
                if product is None:
                    logger.warning(f"Cannot restore stock of missing product {usage.product_id}")
                    continue
                product.stock = product.stock + usage.quantity
                product.updated_at = datetime.now()
                self.repos.products.save(product)
                restored += round_currency(usage.quantity * usage.cost)

        sale.fulfillment_status = FulfillmentStatus.CANCELLED
        self.repos.sales.save(sale)

        self.tracker.adjust(restored)
        self.stats.reverse_sale(sale)

        logger.info(f"Sale {key} cancelled, restored stock value {round_currency(restored)}")
        return sale
