from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Annotated, Literal, NewType, Union

from pydantic import BaseModel, Field, model_validator

from .assets import Asset
from .errors import InvariantViolation

Address = NewType("Address", str)
Signature = NewType("Signature", str)


class TransactionAcquisition(BaseModel):
    kind: Literal["transaction"] = "transaction"
    signature: Signature
    slot: int | None = None


class EpochRewardAcquisition(BaseModel):
    kind: Literal["epoch_reward"] = "epoch_reward"
    epoch: int
    slot: int


class ExchangeAcquisition(BaseModel):
    kind: Literal["exchange"] = "exchange"
    exchange: str
    pair: str
    order_id: str


class SwapAcquisition(BaseModel):
    kind: Literal["swap"] = "swap"
    signature: Signature
    asset: Asset
    amount: int | None = None


class FiatAcquisition(BaseModel):
    kind: Literal["fiat"] = "fiat"


class IncomeAcquisition(BaseModel):
    kind: Literal["income"] = "income"
    description: str = ""


class NotAvailableAcquisition(BaseModel):
    """Provenance unknown, e.g. balance found during reconciliation."""

    kind: Literal["not_available"] = "not_available"


AcquisitionKind = Annotated[
    Union[
        TransactionAcquisition,
        EpochRewardAcquisition,
        ExchangeAcquisition,
        SwapAcquisition,
        FiatAcquisition,
        IncomeAcquisition,
        NotAvailableAcquisition,
    ],
    Field(discriminator="kind"),
]

INCOME_ACQUISITION_KINDS = frozenset({"epoch_reward", "income"})


class LotAcquisition(BaseModel):
    when: date
    price: Decimal
    kind: AcquisitionKind

    @model_validator(mode="after")
    def _validate_price(self) -> LotAcquisition:
        if self.price < 0:
            raise ValueError("LotAcquisition.price must be >= 0")
        return self

    @property
    def is_income(self) -> bool:
        return self.kind.kind in INCOME_ACQUISITION_KINDS


class Lot(BaseModel):
    """A quantity of one asset acquired at a single date and unit price.

    Only ``amount`` ever changes after creation; ``lot_number`` and the
    acquisition follow the lot when it changes owner.
    """

    lot_number: int
    acquisition: LotAcquisition
    amount: int

    @model_validator(mode="after")
    def _validate_amount(self) -> Lot:
        if self.amount < 0:
            raise ValueError("Lot.amount must be >= 0")
        return self


class DisposalFee(BaseModel):
    amount: Decimal
    currency: str


class SaleDisposal(BaseModel):
    kind: Literal["sale"] = "sale"
    description: str = ""
    exchange: str | None = None
    pair: str | None = None
    order_id: str | None = None
    fee: DisposalFee | None = None


class WithdrawalFeeDisposal(BaseModel):
    kind: Literal["withdrawal_fee"] = "withdrawal_fee"
    exchange: str
    tag: str
    fee: DisposalFee | None = None


class SwapDisposal(BaseModel):
    kind: Literal["swap"] = "swap"
    signature: Signature
    asset: Asset
    amount: int
    fee: DisposalFee | None = None


class DropDisposal(BaseModel):
    """Bookkeeping correction, not an economic event."""

    kind: Literal["drop"] = "drop"
    description: str = ""
    fee: DisposalFee | None = None


DisposalKind = Annotated[
    Union[SaleDisposal, WithdrawalFeeDisposal, SwapDisposal, DropDisposal],
    Field(discriminator="kind"),
]


class DisposedLot(BaseModel):
    """Append-only record of (part of) a lot leaving the ledger.

    ``lot`` is a snapshot carrying the original lot number and acquisition with
    ``amount`` set to the disposed quantity.
    """

    lot: Lot
    address: Address
    asset: Asset
    when: date
    price: Decimal
    kind: DisposalKind


class TrackedAccount(BaseModel):
    address: Address
    asset: Asset
    description: str = ""
    last_update_epoch: int = 0
    last_update_balance: int = 0
    lots: list[Lot] = Field(default_factory=list)
    no_sync: bool = False

    @property
    def key(self) -> tuple[Address, Asset]:
        return self.address, self.asset

    def lot_balance(self) -> int:
        return sum(lot.amount for lot in self.lots)

    def assert_lot_balance(self) -> None:
        lot_balance = self.lot_balance()
        if lot_balance != self.last_update_balance:
            raise InvariantViolation(
                f"Lot balance mismatch for {self.address} ({self.asset}): "
                f"tracked={self.last_update_balance} lots={lot_balance}",
                address=self.address,
                asset=self.asset,
            )


class TaxRate(BaseModel):
    income: Decimal
    short_term_gain: Decimal
    long_term_gain: Decimal

    @model_validator(mode="after")
    def _validate_rates(self) -> TaxRate:
        for name in ("income", "short_term_gain", "long_term_gain"):
            rate = getattr(self, name)
            if not Decimal(0) <= rate <= Decimal(1):
                raise ValueError(f"TaxRate.{name} must be in the range [0, 1]: {rate}")
        return self


class SweepStakeAccount(BaseModel):
    address: Address
    stake_authority: Path


__all__ = [
    "AcquisitionKind",
    "Address",
    "DisposalFee",
    "DisposalKind",
    "DisposedLot",
    "DropDisposal",
    "EpochRewardAcquisition",
    "ExchangeAcquisition",
    "FiatAcquisition",
    "INCOME_ACQUISITION_KINDS",
    "IncomeAcquisition",
    "Lot",
    "LotAcquisition",
    "NotAvailableAcquisition",
    "SaleDisposal",
    "Signature",
    "SwapAcquisition",
    "SwapDisposal",
    "SweepStakeAccount",
    "TaxRate",
    "TrackedAccount",
    "TransactionAcquisition",
    "WithdrawalFeeDisposal",
]
