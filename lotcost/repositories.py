"""
Repository layer over the persisted store.

- ProductRepository: catalog products and ingredients
- BatchRepository: stock lots (indexed by product_id)
- SalesRepository: append-only sales log keyed by timestamp
- DailyStatsRepository: day buckets keyed by date
- WasteRepository: immutable waste log

Design Principles:
- Typed models in, typed models out (store keeps dicts)
- No business logic: pure data access
- Store errors propagate unchanged to the operation boundary
"""

from typing import Dict, Iterator, List, Optional

from .domain.models import Batch, DailyStat, Product, Sale, WasteRecord
from .persistence.store import (
    BATCHES,
    DAILY_STATS,
    PRODUCTS,
    SALES,
    WASTE_LOG,
    Store,
    StoreError,
)


# ============================================================
# Custom Exceptions
# ============================================================

class NotFoundError(StoreError):
    """Raised when an entity is not found"""
    pass


# ============================================================
# Repositories
# ============================================================

class ProductRepository:
    """Catalog products (including recipe ingredients)."""

    def __init__(self, store: Store):
        self.store = store

    def get(self, product_id: str) -> Optional[Product]:
        record = self.store.get(PRODUCTS, product_id)
        return Product.from_record(record) if record else None

    def require(self, product_id: str) -> Product:
        product = self.get(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    def save(self, product: Product) -> str:
        return self.store.put(PRODUCTS, product.to_record())


class BatchRepository:
    """Stock lots. Lots are never deleted, only deactivated/archived."""

    def __init__(self, store: Store):
        self.store = store

    def get(self, batch_id: str) -> Optional[Batch]:
        record = self.store.get(BATCHES, batch_id)
        return Batch.from_record(record) if record else None

    def require(self, batch_id: str) -> Batch:
        batch = self.get(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        return batch

    def save(self, batch: Batch) -> str:
        return self.store.put(BATCHES, batch.to_record())

    def by_product(self, product_id: str, only_active: bool = False) -> List[Batch]:
        """
        Lots of one product.

        Args:
            product_id: Product id
            only_active: Keep only active lots with stock > 0
        """
        batches = [Batch.from_record(r) for r in self.store.get_by_index(BATCHES, "product_id", product_id)]
        if only_active:
            batches = [b for b in batches if b.is_available]
        return batches


class SalesRepository:
    """Sales log. Iteration is in timestamp order."""

    def __init__(self, store: Store):
        self.store = store

    def get(self, key: str) -> Optional[Sale]:
        record = self.store.get(SALES, key)
        return Sale.from_record(record) if record else None

    def save(self, sale: Sale) -> str:
        return self.store.put(SALES, sale.to_record())

    def count(self) -> int:
        return self.store.count(SALES)

    def iter_all(self) -> Iterator[Sale]:
        for record in self.store.open_cursor(SALES):
            yield Sale.from_record(record)


class DailyStatsRepository:
    """Day buckets keyed by local calendar date."""

    def __init__(self, store: Store):
        self.store = store

    def get(self, date_key: str) -> Optional[DailyStat]:
        record = self.store.get(DAILY_STATS, date_key)
        return DailyStat.from_record(record) if record else None

    def save(self, stat: DailyStat) -> str:
        return self.store.put(DAILY_STATS, stat.to_record())

    def replace_all(self, stats: List[DailyStat]) -> int:
        """Swap every bucket for *stats* in one write (days not listed are dropped)."""
        return self.store.replace_all(DAILY_STATS, [s.to_record() for s in stats])

    def list(self) -> List[DailyStat]:
        return [DailyStat.from_record(r) for r in self.store.get_all(DAILY_STATS)]

    def by_date(self) -> Dict[str, DailyStat]:
        return {s.date: s for s in self.list()}


class WasteRepository:
    """Append-only waste log."""

    def __init__(self, store: Store):
        self.store = store

    def append(self, record: WasteRecord) -> str:
        return self.store.put(WASTE_LOG, record.to_record())

    def list(self) -> List[WasteRecord]:
        records = [WasteRecord.from_record(r) for r in self.store.get_all(WASTE_LOG)]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records

    def by_product(self, product_id: str) -> List[WasteRecord]:
        return [WasteRecord.from_record(r) for r in self.store.get_by_index(WASTE_LOG, "product_id", product_id)]


class RepositoryFactory:
    """Builds every repository over one store."""

    def __init__(self, store: Store):
        self.store = store
        self.products = ProductRepository(store)
        self.batches = BatchRepository(store)
        self.sales = SalesRepository(store)
        self.daily_stats = DailyStatsRepository(store)
        self.waste = WasteRepository(store)
