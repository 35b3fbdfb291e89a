"""
Waste / shrinkage workflow.

Removes spoiled or lost stock, books the loss at cost and writes an
immutable waste log entry. Recipe products are wasted through their
ingredients (cascade).
"""
from datetime import datetime
from typing import List, Optional, Tuple
import logging
import uuid

from ..analytics.valuation import InventoryValuationTracker
from ..domain.models import Product, WasteRecord
from ..domain.validation import ValidationError, require, validate_quantity
from ..persistence.store import Store, StoreError
from ..repositories import RepositoryFactory
from ..utils.money import round_currency
from .batches import BatchLedger, product_value

logger = logging.getLogger(__name__)


class PartialCascadeFailure(Exception):
    """
    An ingredient write failed midway through a recipe waste cascade.

    Ingredients listed in ``applied`` were already decremented and are not
    rolled back; no waste record was written.
    """

    def __init__(self, ingredient_id: str, applied: List[str], cause: Optional[Exception] = None):
        self.ingredient_id = ingredient_id
        self.applied = list(applied)
        self.cause = cause
        super().__init__(
            f"Waste cascade failed at ingredient {ingredient_id} "
            f"(already applied: {', '.join(self.applied) or 'none'}): {cause}"
        )


class WasteWorkflow:
    """Record waste events and keep inventory value in step."""

    def __init__(self, store: Store, tracker: InventoryValuationTracker, ledger: BatchLedger):
        self.store = store
        self.repos = RepositoryFactory(store)
        self.tracker = tracker
        self.ledger = ledger

    def record_waste(
        self,
        product_id: str,
        quantity: float,
        reason: str = "expired",
        notes: str = "",
        timestamp: Optional[datetime] = None,
    ) -> WasteRecord:
        """
        Waste *quantity* units of a product.

        Args:
            product_id: Product (or recipe product) to waste
            quantity: Units wasted (> 0)
            reason: Free-form reason code ("expired", "damaged", ...)
            notes: Optional operator notes
            timestamp: Event time (default: now)

        Returns:
            Persisted WasteRecord

        Raises:
            ValidationError: Bad quantity, unknown product, or more than in stock
            PartialCascadeFailure: Ingredient write failed midway
        """
        require(validate_quantity(quantity), context=f"waste of {product_id}")
        product = self.repos.products.get(product_id)
        if product is None:
            raise ValidationError(f"Product {product_id} not found")

        if product.has_recipe:
            loss, removed = self._waste_ingredients(product, quantity)
        else:
            loss, removed = self._waste_direct(product, quantity)

        record = WasteRecord(
            id=f"waste-{uuid.uuid4().hex[:12]}",
            product_id=product.id,
            product_name=product.name,
            quantity=float(quantity),
            unit=product.unit,
            cost_at_time=loss / quantity,
            loss_amount=round_currency(loss),
            reason=reason,
            notes=notes,
            timestamp=timestamp or datetime.now(),
        )
        self.repos.waste.append(record)
        self.tracker.adjust(-removed)

        logger.info(f"Waste recorded: {quantity} {product.unit} of {product.id} ({reason}), loss={record.loss_amount}")
        return record

    def _waste_direct(self, product: Product, quantity: float) -> Tuple[float, float]:
        """
        Returns:
            (loss at cost, inventory value removed)
        """
        require(validate_quantity(quantity, max_val=product.stock), context=f"waste of {product.id}")
        loss = product.cost * quantity

        if product.uses_batches:
            consumption = self.ledger.consume(product, quantity)
            return consumption.cost_total, consumption.stock_cost

        if not product.track_stock:
            return loss, 0.0

        value_before = product_value(product)
        product.stock = product.stock - quantity
        product.updated_at = datetime.now()
        self.repos.products.save(product)
        return loss, value_before - product_value(product)

    def _waste_ingredients(self, product: Product, quantity: float) -> Tuple[float, float]:
        """Decrement every ingredient by line quantity x wasted units (stock may go negative)."""
        loss = 0.0
        removed = 0.0
        applied: List[str] = []

        for line in product.recipe:
            ingredient = self.repos.products.get(line.ingredient_id)
            if ingredient is None:
                logger.warning(f"Recipe of {product.id} references missing ingredient {line.ingredient_id}")
                continue

            required = line.quantity * quantity
            try:
                if ingredient.uses_batches:
                    consumption = self.ledger.consume(ingredient, required)
                    loss += consumption.cost_total
                    removed += consumption.stock_cost
                else:
                    value_before = product_value(ingredient)
                    ingredient.stock = ingredient.stock - required
                    ingredient.updated_at = datetime.now()
                    self.repos.products.save(ingredient)
                    loss += ingredient.cost * required
                    removed += value_before - product_value(ingredient)
            except StoreError as e:
                logger.error(
                    f"Waste cascade for {product.id} failed at {ingredient.id}; "
                    f"already applied: {applied}"
                )
                raise PartialCascadeFailure(ingredient.id, applied, e) from e

            applied.append(ingredient.id)

        return loss, removed

    def list_waste(self) -> List[WasteRecord]:
        """Waste log, newest first."""
        return self.repos.waste.list()
