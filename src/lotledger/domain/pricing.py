from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Protocol

from .assets import Asset
from .errors import ChainInconclusiveError


class PriceProvider(Protocol):
    """Lookup interface for an asset's USD unit price."""

    def current_price(self, asset: Asset) -> Decimal: ...

    def historical_price(self, asset: Asset, when: date) -> Decimal: ...


def require_historical_price(provider: PriceProvider | None, asset: Asset, when: date) -> Decimal:
    if provider is None:
        raise ChainInconclusiveError(f"No price provider to value {asset} on {when}")
    return provider.historical_price(asset, when)


__all__ = ["PriceProvider", "require_historical_price"]
