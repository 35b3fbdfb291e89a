"""
Batch ledger: lot lifecycle and lot consumption.

Every lot change that moves stock on hand also moves the cached inventory
value, always after the lot itself has been persisted:

- add_batch      -> +value of the new lot
- update_batch   -> value after - value before
- archive_batch  -> -value of the lot
- correct_stock  -> value after - value before
- consume        -> no adjustment here; the caller (sale, waste) adjusts
  with the cost it books

Product.stock/cost/price of a batch-managed product always mirror its lots
(see sync_product()).
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional
import logging
import uuid

from ..analytics.valuation import InventoryValuationTracker
from ..config import FLOAT_EPSILON
from ..domain.models import Batch, BatchUsage, Product, SelectionStrategy
from ..domain.pricing import sort_batches_by_strategy
from ..domain.validation import ValidationError, require, validate_price, validate_quantity
from ..persistence.store import Store
from ..repositories import RepositoryFactory
from ..utils.money import round_currency

logger = logging.getLogger(__name__)

_PATCHABLE_FIELDS = ("stock", "cost", "price", "expiry_date", "sku", "attributes", "is_active")


@dataclass
class LotConsumption:
    """Outcome of consuming a quantity from a product's lots."""
    batches_used: List[BatchUsage] = field(default_factory=list)
    cost_total: float = 0.0
    shortfall: float = 0.0  # Quantity no lot could cover (costed at product.cost)

    @property
    def stock_cost(self) -> float:
        """Lot value actually removed (excludes the shortfall)."""
        return round_currency(sum(round_currency(u.quantity * u.cost) for u in self.batches_used))


def lot_value(batch: Batch) -> float:
    """Contribution of one lot to the inventory value."""
    if not batch.is_available:
        return 0.0
    return round_currency(batch.cost * batch.stock)


def product_value(product: Product) -> float:
    """Contribution of a non-batch-managed product to the inventory value."""
    if product.uses_batches or not product.track_stock or product.stock <= 0:
        return 0.0
    return round_currency(product.cost * product.stock)


class BatchLedger:
    """Lot operations for batch-managed products."""

    def __init__(self, store: Store, tracker: InventoryValuationTracker):
        self.store = store
        self.repos = RepositoryFactory(store)
        self.tracker = tracker

    # ============================================================
    # Queries
    # ============================================================

    def active_batches(self, product_id: str) -> List[Batch]:
        """Active lots with stock > 0."""
        return self.repos.batches.by_product(product_id, only_active=True)

    def sorted_active_batches(self, product: Product) -> List[Batch]:
        """
        Active lots in consumption order.

        A pre-selected lot (``product.selected_batch_id``) goes first; the
        rest follow the product's selection strategy.
        """
        ordered = sort_batches_by_strategy(
            self.active_batches(product.id),
            product.batch_management.selection_strategy,
        )
        if product.selected_batch_id:
            selected = [b for b in ordered if b.id == product.selected_batch_id]
            others = [b for b in ordered if b.id != product.selected_batch_id]
            ordered = selected + others
        return ordered

    def _owned_batch(self, product_id: str, batch_id: str) -> Batch:
        batch = self.repos.batches.require(batch_id)
        if batch.product_id != product_id:
            raise ValidationError(f"Batch {batch_id} does not belong to product {product_id}")
        return batch

    # ============================================================
    # Lot lifecycle
    # ============================================================

    def add_batch(
        self,
        product_id: str,
        stock: float,
        cost: float,
        price: float,
        created_at: Optional[datetime] = None,
        expiry_date: Optional[datetime] = None,
        sku: str = "",
        attributes: Optional[Dict] = None,
    ) -> Batch:
        """
        Register a new lot and enable batch management on its product.

        Args:
            product_id: Owning product
            stock: Quantity received (>= 0)
            cost: Unit cost (>= 0)
            price: Unit sale price (> 0)
            created_at: Receipt time (default: now); drives FIFO order
            expiry_date: Optional expiry; drives FEFO order

        Returns:
            Persisted Batch

        Raises:
            ValidationError: Invalid stock, cost or price
            NotFoundError: Unknown product
        """
        require(validate_quantity(stock, allow_zero=True), context=f"batch stock for {product_id}")
        require(validate_price(cost, allow_zero=True), context=f"batch cost for {product_id}")
        require(validate_price(price), context=f"batch price for {product_id}")

        product = self.repos.products.require(product_id)
        # Stock held directly on the product stops counting once lots take over
        value_before = product_value(product)

        now = datetime.now()
        batch = Batch(
            id=f"batch-{uuid.uuid4().hex[:12]}",
            product_id=product_id,
            stock=float(stock),
            cost=float(cost),
            price=float(price),
            created_at=created_at or now,
            expiry_date=expiry_date,
            attributes=dict(attributes or {}),
            is_active=True,
            sku=sku,
            updated_at=now,
        )
        self.repos.batches.save(batch)

        if not product.batch_management.enabled:
            product.batch_management.enabled = True
            self.repos.products.save(product)
        self.sync_product(product_id)

        self.tracker.adjust(lot_value(batch) - value_before)
        logger.info(f"Batch {batch.id} added to {product_id}: stock={stock} cost={cost} price={price}")
        return batch

    def update_batch(self, product_id: str, batch_id: str, /, **patch) -> Batch:
        """
        Patch lot fields (stock, cost, price, expiry_date, sku, attributes, is_active).

        Raises:
            ValidationError: Lot of another product, unknown field or invalid value
        """
        unknown = set(patch) - set(_PATCHABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update batch fields: {sorted(unknown)}")
        if "stock" in patch:
            require(validate_quantity(patch["stock"], allow_zero=True), context=f"batch {batch_id}")
        if "cost" in patch:
            require(validate_price(patch["cost"], allow_zero=True), context=f"batch {batch_id}")
        if "price" in patch:
            require(validate_price(patch["price"]), context=f"batch {batch_id}")

        batch = self._owned_batch(product_id, batch_id)
        value_before = lot_value(batch)

        for name, value in patch.items():
            setattr(batch, name, value)
        if batch.is_archived:
            batch.is_active = False
        batch.updated_at = datetime.now()
        self.repos.batches.save(batch)
        self.sync_product(product_id)

        self.tracker.adjust(lot_value(batch) - value_before)
        return batch

    def archive_batch(self, product_id: str, batch_id: str) -> Batch:
        """Retire a lot. Lots are never deleted so sale history keeps resolving."""
        batch = self._owned_batch(product_id, batch_id)
        value_before = lot_value(batch)

        batch.is_active = False
        batch.is_archived = True
        batch.updated_at = datetime.now()
        self.repos.batches.save(batch)
        self.sync_product(product_id)

        self.tracker.adjust(-value_before)
        logger.info(f"Batch {batch_id} of {product_id} archived")
        return batch

    def sync_product(self, product_id: str) -> Product:
        """
        Mirror lot state onto the product.

        stock := sum of active lots; cost/price := oldest active lot, or the
        most recently saved lot when none is active.
        """
        product = self.repos.products.require(product_id)
        lots = self.repos.batches.by_product(product_id)
        active = [b for b in lots if b.is_available]

        product.stock = round(sum(b.stock for b in active), 6)
        if active:
            reference = sort_batches_by_strategy(active, SelectionStrategy.FIFO)[0]
        elif lots:
            reference = max(lots, key=lambda b: b.updated_at or b.created_at)
        else:
            reference = None

        if reference is not None:
            product.cost = reference.cost
            product.price = reference.price
        product.updated_at = datetime.now()
        self.repos.products.save(product)
        return product

    # ============================================================
    # Consumption
    # ============================================================

    def consume(self, product: Product, quantity: float) -> LotConsumption:
        """
        Deduct *quantity* from the product's active lots in strategy order.

        Lots that reach zero are deactivated. Quantity beyond the available
        lots is reported as ``shortfall`` and costed at ``product.cost``.
        All lot writes happen before the product is re-synced.

        Returns:
            LotConsumption
        """
        remaining = float(quantity)
        usages: List[BatchUsage] = []
        touched: List[Batch] = []
        cost_total = 0.0
        now = datetime.now()

        for batch in self.sorted_active_batches(product):
            if remaining <= FLOAT_EPSILON:
                break
            take = min(remaining, batch.stock)
            batch.stock = batch.stock - take
            if batch.stock <= FLOAT_EPSILON:
                batch.stock = 0.0
                batch.is_active = False
            batch.updated_at = now

            cost_total += round_currency(take * batch.cost)
            usages.append(BatchUsage(batch_id=batch.id, quantity=take, product_id=product.id, cost=batch.cost))
            touched.append(batch)
            remaining -= take

        shortfall = remaining if remaining > FLOAT_EPSILON else 0.0
        if shortfall:
            logger.warning(f"Lots of {product.id} short by {shortfall}; costing remainder at {product.cost}")
            cost_total += round_currency(shortfall * product.cost)

        for batch in touched:
            self.repos.batches.save(batch)
        self.sync_product(product.id)

        return LotConsumption(batches_used=usages, cost_total=round_currency(cost_total), shortfall=shortfall)

    def restore(self, usages: Iterable[BatchUsage]) -> float:
        """
        Put consumed lot quantities back (sale reversal).

        Lots are reactivated unless archived. Usages without a lot are ignored.

        Returns:
            Cost value returned to stock on hand
        """
        restored = 0.0
        product_ids = set()

        for usage in usages:
            if not usage.from_lot:
                continue
            batch = self.repos.batches.get(usage.batch_id)
            if batch is None:
                logger.warning(f"Cannot restore {usage.quantity} to missing batch {usage.batch_id}")
                continue
            batch.stock = batch.stock + usage.quantity
            if not batch.is_archived:
                batch.is_active = True
                restored += round_currency(usage.quantity * usage.cost)
            batch.updated_at = datetime.now()
            self.repos.batches.save(batch)
            product_ids.add(batch.product_id)

        for product_id in sorted(product_ids):
            self.sync_product(product_id)
        return round_currency(restored)

    # ============================================================
    # Manual correction
    # ============================================================

    def correct_stock(self, product_id: str, new_stock: float, batch_id: Optional[str] = None) -> float:
        """
        Set the counted stock of a product (or of one of its lots).

        Args:
            product_id: Product to correct
            new_stock: Counted quantity (>= 0)
            batch_id: Lot to correct; required for batch-managed products

        Returns:
            Inventory value delta applied

        Raises:
            ValidationError: Invalid quantity, missing/foreign batch_id
        """
        require(validate_quantity(new_stock, allow_zero=True), context=f"stock correction for {product_id}")
        product = self.repos.products.require(product_id)

        if batch_id is not None:
            batch = self._owned_batch(product_id, batch_id)
            value_before = lot_value(batch)
            old_stock = batch.stock
            batch.stock = float(new_stock)
            batch.is_active = batch.stock > 0 and not batch.is_archived
            batch.updated_at = datetime.now()
            self.repos.batches.save(batch)
            self.sync_product(product_id)
            delta = lot_value(batch) - value_before
        elif product.uses_batches:
            raise ValidationError(f"Product {product_id} is batch-managed: correct a specific batch")
        else:
            value_before = product_value(product)
            old_stock = product.stock
            product.stock = float(new_stock)
            product.updated_at = datetime.now()
            self.repos.products.save(product)
            delta = product_value(product) - value_before

        logger.info(f"Stock correction {product_id}{'/' + batch_id if batch_id else ''}: {old_stock} -> {new_stock}")
        self.tracker.adjust(delta)
        return round_currency(delta)
