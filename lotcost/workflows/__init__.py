"""Workflows module."""
from .batches import BatchLedger, LotConsumption
from .waste import WasteWorkflow, PartialCascadeFailure
from .sale import SaleWorkflow, PriceIntegrityError

__all__ = [
    'BatchLedger',
    'LotConsumption',
    'WasteWorkflow',
    'PartialCascadeFailure',
    'SaleWorkflow',
    'PriceIntegrityError',
]
