from __future__ import annotations

from decimal import Decimal
from enum import StrEnum
from typing import cast

from pydantic import BaseModel, model_validator

from .assets import Asset
from .ledger import Address, Signature
from .lot_selection import LotSelectionMethod


class PendingKind(StrEnum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    SWAP = "swap"


class PendingResolution(StrEnum):
    """Terminal outcome of a pending operation.

    ``EXPIRED`` is inferred from block height, ``FAILED`` is an explicit
    on-chain failure and ``REJECTED`` comes from an exchange.
    """

    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"
    REJECTED = "rejected"
    DROPPED = "dropped"


class TransferDescriptor(BaseModel):
    signature: Signature
    last_valid_block_height: int
    from_address: Address
    from_asset: Asset
    to_address: Address
    to_asset: Asset
    amount: int | None = None

    @model_validator(mode="after")
    def _validate_amount(self) -> TransferDescriptor:
        if self.amount is not None and self.amount <= 0:
            raise ValueError("TransferDescriptor.amount must be > 0 when provided")
        return self


class PendingDeposit(BaseModel):
    transfer: TransferDescriptor
    exchange: str
    lot_selection_method: LotSelectionMethod = LotSelectionMethod.FIFO
    lot_numbers: set[int] | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> PendingDeposit:
        if self.transfer.amount is None:
            raise ValueError("PendingDeposit requires an amount")
        if not self.exchange:
            raise ValueError("PendingDeposit.exchange must be non-empty")
        return self

    @property
    def signature(self) -> Signature:
        return self.transfer.signature

    @property
    def amount(self) -> int:
        return cast(int, self.transfer.amount)


class PendingWithdrawal(BaseModel):
    exchange: str
    tag: str
    asset: Asset
    amount: int
    fee: int
    from_address: Address
    to_address: Address
    lot_selection_method: LotSelectionMethod = LotSelectionMethod.FIFO
    lot_numbers: set[int] | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> PendingWithdrawal:
        if not self.tag:
            raise ValueError("PendingWithdrawal.tag must be non-empty")
        if self.amount <= 0:
            raise ValueError("PendingWithdrawal.amount must be > 0")
        if not 0 <= self.fee <= self.amount:
            raise ValueError("PendingWithdrawal.fee must be within [0, amount]")
        return self


class PendingTransfer(BaseModel):
    """Address-to-address move or wrap/unwrap; ``amount`` None sweeps the whole balance."""

    transfer: TransferDescriptor
    lot_selection_method: LotSelectionMethod = LotSelectionMethod.FIFO
    lot_numbers: set[int] | None = None

    @property
    def signature(self) -> Signature:
        return self.transfer.signature


class PendingSwap(BaseModel):
    signature: Signature
    last_valid_block_height: int
    address: Address
    from_asset: Asset
    from_price: Decimal
    to_asset: Asset
    to_price: Decimal
    lot_selection_method: LotSelectionMethod = LotSelectionMethod.FIFO
    lot_numbers: set[int] | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> PendingSwap:
        if self.from_asset == self.to_asset:
            raise ValueError("PendingSwap requires distinct assets")
        if self.from_price < 0 or self.to_price < 0:
            raise ValueError("PendingSwap prices must be >= 0")
        return self


def is_expired(last_valid_block_height: int, current_height: int) -> bool:
    return current_height > last_valid_block_height


__all__ = [
    "PendingDeposit",
    "PendingKind",
    "PendingResolution",
    "PendingSwap",
    "PendingTransfer",
    "PendingWithdrawal",
    "TransferDescriptor",
    "is_expired",
]
