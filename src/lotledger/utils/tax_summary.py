from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from lotledger.domain.assets import Asset
from lotledger.domain.gains import basis, disposed_lot_gain, income, is_long_term
from lotledger.domain.ledger import DisposedLot, TaxRate, TrackedAccount

from .formatting import format_currency

# US estimated tax payment periods: Jan-Mar, Apr-May, Jun-Aug, Sep-Dec.
MONTH_TO_PAYMENT_PERIOD = (0, 0, 0, 1, 1, 2, 2, 2, 3, 3, 3, 3)


@dataclass
class RealizedGain:
    income: Decimal = Decimal(0)
    short_term_cap_gain: Decimal = Decimal(0)
    long_term_cap_gain: Decimal = Decimal(0)

    @property
    def cap_gain(self) -> Decimal:
        return self.short_term_cap_gain + self.long_term_cap_gain

    def is_empty(self) -> bool:
        return not (self.income or self.short_term_cap_gain or self.long_term_cap_gain)

    def estimated_tax(self, tax_rate: TaxRate) -> Decimal:
        income_tax = self.income * tax_rate.income
        gain_tax = (
            self.short_term_cap_gain * tax_rate.short_term_gain + self.long_term_cap_gain * tax_rate.long_term_gain
        )
        return max(income_tax, Decimal(0)) + max(gain_tax, Decimal(0))


def _four_periods() -> list[RealizedGain]:
    return [RealizedGain() for _ in range(4)]


@dataclass
class AnnualRealizedGain:
    by_quarter: list[RealizedGain] = field(default_factory=_four_periods)
    by_payment_period: list[RealizedGain] = field(default_factory=_four_periods)

    def _periods(self, when: date) -> tuple[RealizedGain, RealizedGain]:
        month = when.month - 1
        return self.by_quarter[month // 3], self.by_payment_period[MONTH_TO_PAYMENT_PERIOD[month]]

    def record_income(self, when: date, amount: Decimal) -> None:
        for period in self._periods(when):
            period.income += amount

    def record_cap_gain(self, when: date, amount: Decimal, *, long_term: bool) -> None:
        for period in self._periods(when):
            if long_term:
                period.long_term_cap_gain += amount
            else:
                period.short_term_cap_gain += amount

    @property
    def total(self) -> RealizedGain:
        total = RealizedGain()
        for period in self.by_quarter:
            total.income += period.income
            total.short_term_cap_gain += period.short_term_cap_gain
            total.long_term_cap_gain += period.long_term_cap_gain
        return total


def compute_realized_gains(
    disposed_lots: Iterable[DisposedLot], accounts: Iterable[TrackedAccount]
) -> dict[int, AnnualRealizedGain]:
    """Realized gains per calendar year.

    Income is recognized when a lot is acquired, whether or not it has been
    disposed since; capital gains are recognized on the disposal date.
    """
    annual: dict[int, AnnualRealizedGain] = defaultdict(AnnualRealizedGain)

    for account in accounts:
        for lot in account.lots:
            lot_income = income(account.asset, lot)
            if lot_income:
                annual[lot.acquisition.when.year].record_income(lot.acquisition.when, lot_income)

    for disposed_lot in disposed_lots:
        acquired = disposed_lot.lot.acquisition.when
        lot_income = income(disposed_lot.asset, disposed_lot.lot)
        if lot_income:
            annual[acquired.year].record_income(acquired, lot_income)
        annual[disposed_lot.when.year].record_cap_gain(
            disposed_lot.when,
            disposed_lot_gain(disposed_lot),
            long_term=is_long_term(acquired, disposed_lot.when),
        )

    return dict(sorted(annual.items()))


@dataclass
class AverageCostBasis:
    asset: Asset
    amount: int
    basis: Decimal

    @property
    def price(self) -> Decimal:
        ui_amount = self.asset.ui_amount(self.amount)
        if not ui_amount:
            return Decimal(0)
        return self.basis / ui_amount


def compute_average_cost_basis(
    when: date, disposed_lots: Iterable[DisposedLot], accounts: Iterable[TrackedAccount]
) -> list[AverageCostBasis]:
    """Average cost basis per asset of everything held on ``when``.

    wSOL is merged into SOL and fiat-fungible assets are skipped.
    """
    totals: dict[Asset, AverageCostBasis] = {}

    def _add(asset: Asset, amount: int, lot_basis: Decimal) -> None:
        if asset == Asset.wSOL:
            asset = Asset.SOL
        if asset.fiat_fungible:
            return
        entry = totals.setdefault(asset, AverageCostBasis(asset=asset, amount=0, basis=Decimal(0)))
        entry.amount += amount
        entry.basis += lot_basis

    for disposed_lot in disposed_lots:
        if disposed_lot.lot.acquisition.when > when or disposed_lot.when < when:
            continue
        _add(disposed_lot.asset, disposed_lot.lot.amount, basis(disposed_lot.asset, disposed_lot.lot))

    for account in accounts:
        for lot in account.lots:
            if lot.acquisition.when <= when:
                _add(account.asset, lot.amount, basis(account.asset, lot))

    return [totals[asset] for asset in sorted(totals) if totals[asset].amount > 0]


def render_realized_gains(
    annual: dict[int, AnnualRealizedGain], tax_rate: TaxRate | None, *, by_quarter: bool = False
) -> None:
    symbol = "Q" if by_quarter else "P"
    rows: list[tuple[str, str, str, str, str]] = []
    for year, annual_gain in annual.items():
        periods = annual_gain.by_quarter if by_quarter else annual_gain.by_payment_period
        for index, gain in enumerate(periods):
            if gain.is_empty():
                continue
            tax = format_currency(gain.estimated_tax(tax_rate)) if tax_rate is not None else "-"
            rows.append(
                (
                    f"{year} {symbol}{index + 1}",
                    format_currency(gain.income),
                    format_currency(gain.short_term_cap_gain),
                    format_currency(gain.long_term_cap_gain),
                    tax,
                )
            )

    print("Realized Gains")
    if not rows:
        print("  (none)")
        return

    labels = ("Period", "Income", "Short-term gain", "Long-term gain", "Estimated tax")
    widths = [max(len(label), max(len(row[i]) for row in rows)) for i, label in enumerate(labels)]
    header = f"{labels[0]:<{widths[0]}} | " + " | ".join(
        f"{label:>{width}}" for label, width in zip(labels[1:], widths[1:])
    )
    lines = [header, "-" * len(header)]
    for row in rows:
        lines.append(
            f"{row[0]:<{widths[0]}} | " + " | ".join(f"{cell:>{width}}" for cell, width in zip(row[1:], widths[1:]))
        )
    print("\n".join(lines))


def render_average_cost_basis(when: date, entries: Iterable[AverageCostBasis]) -> None:
    print(f"Average Cost Basis on {when}")
    for entry in entries:
        print(
            f"  {entry.asset.value:>7}: {entry.asset.format_amount(entry.amount):<20} "
            f"at {format_currency(entry.basis)} ; {format_currency(entry.price)} per {entry.asset.value}"
        )


__all__ = [
    "AnnualRealizedGain",
    "AverageCostBasis",
    "MONTH_TO_PAYMENT_PERIOD",
    "RealizedGain",
    "compute_average_cost_basis",
    "compute_realized_gains",
    "render_average_cost_basis",
    "render_realized_gains",
]
