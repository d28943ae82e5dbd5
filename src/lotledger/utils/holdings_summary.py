from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from lotledger.domain.assets import Asset
from lotledger.domain.errors import ChainInconclusiveError
from lotledger.domain.gains import basis, cap_gain, is_long_term
from lotledger.domain.ledger import TaxRate, TrackedAccount
from lotledger.domain.pricing import PriceProvider

from .formatting import format_currency, format_percent

logger = logging.getLogger(__name__)


@dataclass
class AssetHolding:
    asset: Asset
    amount: int = 0
    basis: Decimal = Decimal(0)
    price: Decimal | None = None
    short_term_unrealized_gain: Decimal = Decimal(0)
    long_term_unrealized_gain: Decimal = Decimal(0)

    @property
    def value(self) -> Decimal | None:
        if self.price is None:
            return None
        return self.asset.ui_amount(self.amount) * self.price

    def estimated_tax(self, tax_rate: TaxRate) -> Decimal:
        return (
            self.short_term_unrealized_gain * tax_rate.short_term_gain
            + self.long_term_unrealized_gain * tax_rate.long_term_gain
        )


@dataclass
class HoldingsSummary:
    as_of: date
    holdings: list[AssetHolding] = field(default_factory=list)


def compute_holdings_summary(
    accounts: Iterable[TrackedAccount],
    *,
    price_provider: PriceProvider,
    as_of: date | None = None,
) -> HoldingsSummary:
    """Current holdings per asset, ordered by value (unpriced assets last)."""
    today = as_of or date.today()
    holdings: dict[Asset, AssetHolding] = {}
    prices: dict[Asset, Decimal | None] = {}

    for account in accounts:
        asset = account.asset
        if asset not in prices:
            try:
                prices[asset] = price_provider.current_price(asset)
            except ChainInconclusiveError:
                logger.warning("No current price for %s", asset)
                prices[asset] = None
        price = prices[asset]

        holding = holdings.setdefault(asset, AssetHolding(asset=asset, price=price))
        for lot in account.lots:
            holding.amount += lot.amount
            holding.basis += basis(asset, lot)
            if price is None or asset.fiat_fungible:
                continue
            gain = cap_gain(asset, lot, price)
            if is_long_term(lot.acquisition.when, today):
                holding.long_term_unrealized_gain += gain
            else:
                holding.short_term_unrealized_gain += gain

    ordered = sorted(
        (holding for holding in holdings.values() if holding.amount > 0),
        key=lambda holding: (holding.value is None, -(holding.value or Decimal(0))),
    )
    return HoldingsSummary(as_of=today, holdings=ordered)


def render_holdings_summary(summary: HoldingsSummary, tax_rate: TaxRate | None = None) -> None:
    print("Current Holdings")
    if not summary.holdings:
        print("  (empty)")
        return

    for holding in summary.holdings:
        amount_text = holding.asset.format_amount(holding.amount)
        if holding.asset.fiat_fungible:
            print(f"  {holding.asset.value:<7} {amount_text:<20}")
            continue

        value = holding.value
        if value is None:
            print(f"  {holding.asset.value:<7} {amount_text:<20} [?]")
            continue

        change = f" ({format_percent((value - holding.basis) / holding.basis)})" if holding.basis else ""
        estimated_tax = ""
        if tax_rate is not None:
            tax = holding.estimated_tax(tax_rate)
            if tax > 0:
                estimated_tax = f"; {format_currency(tax)} estimated tax"
        print(
            f"  {holding.asset.value:<7} {amount_text:<20} "
            f"[{format_currency(value)}{change}; {format_currency(holding.price or Decimal(0))} per "
            f"{holding.asset.value}{estimated_tax}]"
        )


__all__ = ["AssetHolding", "HoldingsSummary", "compute_holdings_summary", "render_holdings_summary"]
