"""Domain models and algorithms for the lot ledger.

This package contains in-memory (Pydantic) models describing tracked accounts,
lots, disposals and pending operations, together with the pure lot-selection
and gain arithmetic. They are independent from persistence models so that
business logic and testing can evolve without DB coupling.
"""

__all__ = [
    "assets",
    "errors",
    "gains",
    "ledger",
    "lot_selection",
    "pending",
    "pricing",
]
