from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import StrEnum


@dataclass(frozen=True)
class _AssetInfo:
    decimals: int
    symbol: str
    fiat_fungible: bool = False


class Asset(StrEnum):
    SOL = "SOL"
    wSOL = "wSOL"
    mSOL = "mSOL"
    stSOL = "stSOL"
    JitoSOL = "JitoSOL"
    bSOL = "bSOL"
    USDC = "USDC"
    USDT = "USDT"
    USDS = "USDS"
    PYUSD = "PYUSD"
    JUP = "JUP"
    JTO = "JTO"
    BONK = "BONK"
    WIF = "WIF"
    PYTH = "PYTH"

    @property
    def decimals(self) -> int:
        return _ASSET_INFO[self].decimals

    @property
    def symbol(self) -> str:
        return _ASSET_INFO[self].symbol

    @property
    def fiat_fungible(self) -> bool:
        """Stablecoins track fiat 1:1 and carry no gain/loss accounting."""
        return _ASSET_INFO[self].fiat_fungible

    @property
    def is_native(self) -> bool:
        return self is Asset.SOL

    def is_sol_or_wsol(self) -> bool:
        return self in (Asset.SOL, Asset.wSOL)

    def ui_amount(self, amount: int) -> Decimal:
        return Decimal(amount).scaleb(-self.decimals)

    def amount(self, ui_amount: Decimal | str | int) -> int:
        """Convert a UI amount to smallest units, truncating sub-unit dust."""
        scaled = Decimal(ui_amount).scaleb(self.decimals)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))

    def format_amount(self, amount: int) -> str:
        return self.format_ui_amount(self.ui_amount(amount))

    def format_ui_amount(self, ui_amount: Decimal) -> str:
        return f"{self.symbol}{ui_amount:,.{self.decimals}f}"


_SOL_SYMBOL = "◎"

_ASSET_INFO: dict[Asset, _AssetInfo] = {
    Asset.SOL: _AssetInfo(decimals=9, symbol=_SOL_SYMBOL),
    Asset.wSOL: _AssetInfo(decimals=9, symbol=_SOL_SYMBOL),
    Asset.mSOL: _AssetInfo(decimals=9, symbol="mSOL "),
    Asset.stSOL: _AssetInfo(decimals=9, symbol="stSOL "),
    Asset.JitoSOL: _AssetInfo(decimals=9, symbol="JitoSOL "),
    Asset.bSOL: _AssetInfo(decimals=9, symbol="bSOL "),
    Asset.USDC: _AssetInfo(decimals=6, symbol="$", fiat_fungible=True),
    Asset.USDT: _AssetInfo(decimals=6, symbol="$", fiat_fungible=True),
    Asset.USDS: _AssetInfo(decimals=6, symbol="$", fiat_fungible=True),
    Asset.PYUSD: _AssetInfo(decimals=6, symbol="$", fiat_fungible=True),
    Asset.JUP: _AssetInfo(decimals=6, symbol="JUP "),
    Asset.JTO: _AssetInfo(decimals=9, symbol="JTO "),
    Asset.BONK: _AssetInfo(decimals=5, symbol="BONK "),
    Asset.WIF: _AssetInfo(decimals=6, symbol="WIF "),
    Asset.PYTH: _AssetInfo(decimals=6, symbol="PYTH "),
}


__all__ = ["Asset"]
