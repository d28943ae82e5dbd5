"""Cost basis and gain arithmetic over lots and disposed lots.

All functions are pure. Amounts are converted to UI units through the asset's
decimal precision before being multiplied by a unit price.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from .assets import Asset
from .ledger import DisposedLot, Lot

LONG_TERM_HOLDING_PERIOD = timedelta(days=365)


def basis(asset: Asset, lot: Lot) -> Decimal:
    return asset.ui_amount(lot.amount) * lot.acquisition.price


def income(asset: Asset, lot: Lot) -> Decimal:
    if lot.acquisition.is_income:
        return basis(asset, lot)
    return Decimal(0)


def current_value(asset: Asset, lot: Lot, price: Decimal) -> Decimal:
    return asset.ui_amount(lot.amount) * price


def cap_gain(asset: Asset, lot: Lot, price: Decimal) -> Decimal:
    """Gain of ``lot`` valued at ``price`` (a disposal price or the current price)."""
    return current_value(asset, lot, price) - basis(asset, lot)


def is_long_term(acquisition: date, disposal: date | None = None) -> bool:
    disposal = disposal or date.today()
    return disposal - acquisition >= LONG_TERM_HOLDING_PERIOD


def disposed_lot_gain(disposed_lot: DisposedLot) -> Decimal:
    return cap_gain(disposed_lot.asset, disposed_lot.lot, disposed_lot.price)


@dataclass
class DisposalSummary:
    """Aggregate totals over a set of disposed lots."""

    lots: int = 0
    basis: Decimal = Decimal(0)
    proceeds: Decimal = Decimal(0)
    income: Decimal = Decimal(0)
    short_term_cap_gain: Decimal = Decimal(0)
    long_term_cap_gain: Decimal = Decimal(0)

    @property
    def cap_gain(self) -> Decimal:
        return self.short_term_cap_gain + self.long_term_cap_gain

    def add(self, disposed_lot: DisposedLot) -> None:
        asset = disposed_lot.asset
        lot = disposed_lot.lot
        gain = disposed_lot_gain(disposed_lot)

        self.lots += 1
        self.basis += basis(asset, lot)
        self.proceeds += current_value(asset, lot, disposed_lot.price)
        self.income += income(asset, lot)
        if is_long_term(lot.acquisition.when, disposed_lot.when):
            self.long_term_cap_gain += gain
        else:
            self.short_term_cap_gain += gain


def summarize_disposals(disposed_lots: Iterable[DisposedLot]) -> DisposalSummary:
    summary = DisposalSummary()
    for disposed_lot in disposed_lots:
        summary.add(disposed_lot)
    return summary


__all__ = [
    "DisposalSummary",
    "LONG_TERM_HOLDING_PERIOD",
    "basis",
    "cap_gain",
    "current_value",
    "disposed_lot_gain",
    "income",
    "is_long_term",
    "summarize_disposals",
]
