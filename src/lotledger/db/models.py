from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, Date, ForeignKeyConstraint, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


class TrackedAccountOrm(Base):
    __tablename__ = "tracked_accounts"

    address: Mapped[str] = mapped_column(String, primary_key=True)
    asset: Mapped[str] = mapped_column(String, primary_key=True)
    description: Mapped[str] = mapped_column(String, nullable=False, default="")
    last_update_epoch: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_update_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    no_sync: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class LotOrm(Base):
    __tablename__ = "lots"
    __table_args__ = (
        ForeignKeyConstraint(
            ["address", "asset"], ["tracked_accounts.address", "tracked_accounts.asset"]
        ),
    )

    lot_number: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    address: Mapped[str] = mapped_column(String, nullable=False)
    asset: Mapped[str] = mapped_column(String, nullable=False)
    acquisition_when: Mapped[date] = mapped_column(Date, nullable=False)
    acquisition_price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    acquisition_kind: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)


class DisposedLotOrm(Base):
    __tablename__ = "disposed_lots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lot_number: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    address: Mapped[str] = mapped_column(String, nullable=False)
    asset: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    acquisition_when: Mapped[date] = mapped_column(Date, nullable=False)
    acquisition_price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    acquisition_kind: Mapped[str] = mapped_column(Text, nullable=False)
    disposal_when: Mapped[date] = mapped_column(Date, nullable=False)
    disposal_price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    disposal_kind: Mapped[str] = mapped_column(Text, nullable=False)


class PendingDepositOrm(Base):
    __tablename__ = "pending_deposits"

    signature: Mapped[str] = mapped_column(String, primary_key=True)
    last_valid_block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    exchange: Mapped[str] = mapped_column(String, nullable=False, index=True)
    from_address: Mapped[str] = mapped_column(String, nullable=False)
    from_asset: Mapped[str] = mapped_column(String, nullable=False)
    to_address: Mapped[str] = mapped_column(String, nullable=False)
    to_asset: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    lot_selection_method: Mapped[str] = mapped_column(String, nullable=False)
    lot_numbers: Mapped[str | None] = mapped_column(Text, nullable=True)


class PendingWithdrawalOrm(Base):
    __tablename__ = "pending_withdrawals"

    tag: Mapped[str] = mapped_column(String, primary_key=True)
    exchange: Mapped[str] = mapped_column(String, nullable=False, index=True)
    asset: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    from_address: Mapped[str] = mapped_column(String, nullable=False)
    to_address: Mapped[str] = mapped_column(String, nullable=False)
    lot_selection_method: Mapped[str] = mapped_column(String, nullable=False)
    lot_numbers: Mapped[str | None] = mapped_column(Text, nullable=True)


class PendingTransferOrm(Base):
    __tablename__ = "pending_transfers"

    signature: Mapped[str] = mapped_column(String, primary_key=True)
    last_valid_block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    from_address: Mapped[str] = mapped_column(String, nullable=False)
    from_asset: Mapped[str] = mapped_column(String, nullable=False)
    to_address: Mapped[str] = mapped_column(String, nullable=False)
    to_asset: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    lot_selection_method: Mapped[str] = mapped_column(String, nullable=False)
    lot_numbers: Mapped[str | None] = mapped_column(Text, nullable=True)


class PendingSwapOrm(Base):
    __tablename__ = "pending_swaps"

    signature: Mapped[str] = mapped_column(String, primary_key=True)
    last_valid_block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    address: Mapped[str] = mapped_column(String, nullable=False)
    from_asset: Mapped[str] = mapped_column(String, nullable=False)
    from_price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    to_asset: Mapped[str] = mapped_column(String, nullable=False)
    to_price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    lot_selection_method: Mapped[str] = mapped_column(String, nullable=False)
    lot_numbers: Mapped[str | None] = mapped_column(Text, nullable=True)


class SettingOrm(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class TransitorySweepAddressOrm(Base):
    __tablename__ = "transitory_sweep_addresses"

    address: Mapped[str] = mapped_column(String, primary_key=True)
