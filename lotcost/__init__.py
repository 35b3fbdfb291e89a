"""lotcost: lot-aware costing, pricing and inventory valuation for a point of sale."""

__version__ = "1.0.0"
