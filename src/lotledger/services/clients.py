"""Contracts of the collaborators that feed facts into the ledger.

The ledger never talks to a network itself. These protocols describe what the
chain, exchanges and price oracles must answer; ``None`` always means "no
terminal fact yet".
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Protocol

from lotledger.domain.assets import Asset


@dataclass(frozen=True)
class ChainError:
    """Explicit on-chain failure of a transaction."""

    message: str


@dataclass(frozen=True)
class ConfirmedTransaction:
    when: date


ConfirmationStatus = ConfirmedTransaction | ChainError


@dataclass(frozen=True)
class SwapAmounts:
    from_amount: int
    to_amount: int


@dataclass(frozen=True)
class DepositCompletion:
    when: date
    amount: int


@dataclass(frozen=True)
class WithdrawalCompletion:
    when: date
    tx_ref: str | None


class ChainClient(Protocol):
    def current_height(self) -> int: ...

    def confirm(self, signature: str) -> ConfirmationStatus | None: ...

    def balance(self, address: str, asset: Asset) -> int: ...

    def transfer_amount(self, signature: str) -> int | None: ...

    def swap_amounts(self, signature: str) -> SwapAmounts: ...


class ExchangeClient(Protocol):
    name: str
    supports_deposit_history: bool

    def deposit_completed(self, tx_id: str) -> DepositCompletion | None: ...

    def withdrawal_completed(self, tag: str) -> WithdrawalCompletion | None: ...


class PriceOracle(Protocol):
    def fetch_current_price(self, asset: Asset) -> Decimal | None: ...

    def fetch_historical_price(self, asset: Asset, when: date) -> Decimal | None: ...


__all__ = [
    "ChainClient",
    "ChainError",
    "ConfirmationStatus",
    "ConfirmedTransaction",
    "DepositCompletion",
    "ExchangeClient",
    "PriceOracle",
    "SwapAmounts",
    "WithdrawalCompletion",
]
