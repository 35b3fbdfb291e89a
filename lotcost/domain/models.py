"""
Domain models for lotcost.

Pure data classes + value objects. No I/O, no side effects.
Every persisted model converts to/from a JSON-safe dict (``to_record`` /
``from_record``) which is what the store keeps.
"""
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..utils.money import to_number


class SelectionStrategy(Enum):
    """Lot consumption order for batch-managed products."""
    FIFO = "fifo"  # Oldest lot first (created_at)
    FEFO = "fefo"  # Earliest expiry first, then oldest

    @classmethod
    def parse(cls, value) -> "SelectionStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "fifo").lower())
        except ValueError:
            return cls.FIFO


class FulfillmentStatus(Enum):
    """Sale lifecycle status. Cancelled sales never count in aggregates."""
    COMPLETED = "completed"
    PENDING = "pending"
    CANCELLED = "cancelled"


def _parse_dt(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class WholesaleTier:
    """Quantity threshold that switches the unit price."""
    min: float
    price: float

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "WholesaleTier":
        return cls(min=to_number(data.get("min")), price=to_number(data.get("price")))

    def to_record(self) -> Dict[str, Any]:
        return {"min": self.min, "price": self.price}


@dataclass(frozen=True)
class RecipeLine:
    """One ingredient of a composite product (per unit of the product)."""
    ingredient_id: str
    quantity: float
    unit: str = ""

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "RecipeLine":
        return cls(
            ingredient_id=data["ingredient_id"],
            quantity=to_number(data.get("quantity")),
            unit=data.get("unit") or "",
        )

    def to_record(self) -> Dict[str, Any]:
        return {"ingredient_id": self.ingredient_id, "quantity": self.quantity, "unit": self.unit}


@dataclass
class BatchManagement:
    enabled: bool = False
    selection_strategy: SelectionStrategy = SelectionStrategy.FIFO

    @classmethod
    def from_record(cls, data: Optional[Dict[str, Any]]) -> "BatchManagement":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            selection_strategy=SelectionStrategy.parse(data.get("selection_strategy")),
        )

    def to_record(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "selection_strategy": self.selection_strategy.value}


@dataclass
class Product:
    """Catalog product (or ingredient). ``stock`` mirrors active-lot stock when batches are used."""
    id: str
    name: str
    price: float = 0.0
    cost: float = 0.0
    stock: float = 0.0
    track_stock: bool = True
    batch_management: BatchManagement = field(default_factory=BatchManagement)
    wholesale_tiers: List[WholesaleTier] = field(default_factory=list)
    recipe: List[RecipeLine] = field(default_factory=list)
    original_price: Optional[float] = None   # Base price override (daily pricing, variants)
    selected_batch_id: Optional[str] = None  # Set when this instance stands for one lot
    unit: str = "u"
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id or not str(self.id).strip():
            raise ValueError("Product id cannot be empty")
        if self.cost < 0:
            raise ValueError("Product cost cannot be negative")
        if self.price < 0:
            raise ValueError("Product price cannot be negative")

    @property
    def has_recipe(self) -> bool:
        return len(self.recipe) > 0

    @property
    def uses_batches(self) -> bool:
        return self.batch_management.enabled

    @property
    def base_price(self) -> float:
        return self.original_price if self.original_price is not None else self.price

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Product":
        original = data.get("original_price")
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            price=to_number(data.get("price")),
            cost=to_number(data.get("cost")),
            stock=to_number(data.get("stock")),
            track_stock=bool(data.get("track_stock", True)),
            batch_management=BatchManagement.from_record(data.get("batch_management")),
            wholesale_tiers=[WholesaleTier.from_record(t) for t in data.get("wholesale_tiers") or []],
            recipe=[RecipeLine.from_record(r) for r in data.get("recipe") or [] if r.get("ingredient_id")],
            original_price=to_number(original) if original is not None else None,
            selected_batch_id=data.get("selected_batch_id"),
            unit=data.get("unit") or "u",
            updated_at=_parse_dt(data.get("updated_at")),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "cost": self.cost,
            "stock": self.stock,
            "track_stock": self.track_stock,
            "batch_management": self.batch_management.to_record(),
            "wholesale_tiers": [t.to_record() for t in self.wholesale_tiers],
            "recipe": [r.to_record() for r in self.recipe],
            "original_price": self.original_price,
            "selected_batch_id": self.selected_batch_id,
            "unit": self.unit,
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Batch:
    """Stock lot: a dated quantity of one product with its own cost and price."""
    id: str
    product_id: str
    stock: float
    cost: float
    price: float
    created_at: datetime
    expiry_date: Optional[datetime] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    sku: str = ""
    is_archived: bool = False
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id or not str(self.id).strip():
            raise ValueError("Batch id cannot be empty")
        if not self.product_id:
            raise ValueError("Batch product_id cannot be empty")

    @property
    def is_available(self) -> bool:
        """Counts for pricing and valuation."""
        return self.is_active and self.stock > 0

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Batch":
        return cls(
            id=data["id"],
            product_id=data["product_id"],
            stock=to_number(data.get("stock")),
            cost=to_number(data.get("cost")),
            price=to_number(data.get("price")),
            created_at=_parse_dt(data.get("created_at")) or datetime.min,
            expiry_date=_parse_dt(data.get("expiry_date")),
            attributes=dict(data.get("attributes") or {}),
            is_active=bool(data.get("is_active", True)),
            sku=data.get("sku") or "",
            is_archived=bool(data.get("is_archived", False)),
            updated_at=_parse_dt(data.get("updated_at")),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "stock": self.stock,
            "cost": self.cost,
            "price": self.price,
            "created_at": _iso(self.created_at),
            "expiry_date": _iso(self.expiry_date),
            "attributes": dict(self.attributes),
            "is_active": self.is_active,
            "sku": self.sku,
            "is_archived": self.is_archived,
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class BatchUsage:
    """
    Quantity taken from stock by a sale line.

    ``batch_id`` is None when the quantity came straight out of
    ``Product.stock`` (products without batch management).
    """
    batch_id: Optional[str]
    quantity: float
    product_id: str = ""
    cost: float = 0.0

    @property
    def from_lot(self) -> bool:
        return bool(self.batch_id)

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "BatchUsage":
        return cls(
            batch_id=data.get("batch_id"),
            quantity=to_number(data.get("quantity")),
            product_id=data.get("product_id") or "",
            cost=to_number(data.get("cost")),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "quantity": self.quantity,
            "product_id": self.product_id,
            "cost": self.cost,
        }


@dataclass
class SaleItem:
    id: str
    price: float
    quantity: float
    cost: Optional[float] = None
    parent_id: Optional[str] = None
    name: str = ""
    batches_used: List[BatchUsage] = field(default_factory=list)
    stock_deducted: float = 0.0

    @property
    def product_id(self) -> str:
        """Catalog id used for cost lookups (variants point at their parent)."""
        return self.parent_id or self.id

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "SaleItem":
        cost = data.get("cost")
        return cls(
            id=data["id"],
            price=to_number(data.get("price")),
            quantity=to_number(data.get("quantity")),
            cost=to_number(cost) if cost is not None else None,
            parent_id=data.get("parent_id"),
            name=data.get("name") or "",
            batches_used=[BatchUsage.from_record(b) for b in data.get("batches_used") or []],
            stock_deducted=to_number(data.get("stock_deducted")),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "price": self.price,
            "quantity": self.quantity,
            "cost": self.cost,
            "parent_id": self.parent_id,
            "name": self.name,
            "batches_used": [b.to_record() for b in self.batches_used],
            "stock_deducted": self.stock_deducted,
        }


@dataclass
class Sale:
    """Append-only sales log entry, keyed by its timestamp."""
    timestamp: datetime
    items: List[SaleItem]
    total: float
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.COMPLETED

    @property
    def key(self) -> str:
        return self.timestamp.isoformat()

    @property
    def is_cancelled(self) -> bool:
        return self.fulfillment_status == FulfillmentStatus.CANCELLED

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Sale":
        try:
            status = FulfillmentStatus(data.get("fulfillment_status") or "completed")
        except ValueError:
            status = FulfillmentStatus.COMPLETED
        return cls(
            timestamp=_parse_dt(data["timestamp"]),
            items=[SaleItem.from_record(i) for i in data.get("items") or []],
            total=to_number(data.get("total")),
            fulfillment_status=status,
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "timestamp": self.key,
            "items": [i.to_record() for i in self.items],
            "total": self.total,
            "fulfillment_status": self.fulfillment_status.value,
        }


@dataclass
class DailyStat:
    """Day bucket: additive aggregates of all non-cancelled sales of one calendar day."""
    date: str  # YYYY-MM-DD (local calendar day)
    revenue: float = 0.0
    profit: float = 0.0
    orders: int = 0
    items_sold: float = 0.0

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "DailyStat":
        return cls(
            date=data["date"],
            revenue=to_number(data.get("revenue")),
            profit=to_number(data.get("profit")),
            orders=int(to_number(data.get("orders"))),
            items_sold=to_number(data.get("items_sold")),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "revenue": self.revenue,
            "profit": self.profit,
            "orders": self.orders,
            "items_sold": self.items_sold,
        }


@dataclass(frozen=True)
class WasteRecord:
    """Immutable shrinkage log entry."""
    id: str
    product_id: str
    quantity: float
    unit: str
    cost_at_time: float  # Average unit cost of this waste event
    loss_amount: float
    reason: str
    timestamp: datetime
    product_name: str = ""
    notes: str = ""

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "WasteRecord":
        return cls(
            id=data["id"],
            product_id=data["product_id"],
            quantity=to_number(data.get("quantity")),
            unit=data.get("unit") or "",
            cost_at_time=to_number(data.get("cost_at_time")),
            loss_amount=to_number(data.get("loss_amount")),
            reason=data.get("reason") or "",
            timestamp=_parse_dt(data.get("timestamp")),
            product_name=data.get("product_name") or "",
            notes=data.get("notes") or "",
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit": self.unit,
            "cost_at_time": self.cost_at_time,
            "loss_amount": self.loss_amount,
            "reason": self.reason,
            "notes": self.notes,
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True)
class StatsTotals:
    """Lifetime totals returned by the stats aggregator."""
    total_revenue: float = 0.0
    total_net_profit: float = 0.0
    total_orders: int = 0
    total_items_sold: float = 0.0
    inventory_value: float = 0.0
    inventory_error: Optional[str] = None  # Set when inventory_value is a fallback
