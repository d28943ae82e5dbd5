from __future__ import annotations

import json

from pydantic import TypeAdapter
from sqlalchemy import select
from sqlalchemy.orm import Session

from lotledger.db import models
from lotledger.domain.assets import Asset
from lotledger.domain.ledger import (
    AcquisitionKind,
    Address,
    DisposalKind,
    DisposedLot,
    Lot,
    LotAcquisition,
    Signature,
    TrackedAccount,
)
from lotledger.domain.lot_selection import LotSelectionMethod
from lotledger.domain.pending import (
    PendingDeposit,
    PendingSwap,
    PendingTransfer,
    PendingWithdrawal,
    TransferDescriptor,
)

_ACQUISITION_KIND_ADAPTER: TypeAdapter[AcquisitionKind] = TypeAdapter(AcquisitionKind)
_DISPOSAL_KIND_ADAPTER: TypeAdapter[DisposalKind] = TypeAdapter(DisposalKind)


def _dump_lot_numbers(lot_numbers: set[int] | None) -> str | None:
    if lot_numbers is None:
        return None
    return json.dumps(sorted(lot_numbers))


def _load_lot_numbers(raw: str | None) -> set[int] | None:
    if raw is None:
        return None
    return {int(number) for number in json.loads(raw)}


def _lot_to_domain(orm_lot: models.LotOrm) -> Lot:
    return Lot(
        lot_number=orm_lot.lot_number,
        acquisition=LotAcquisition(
            when=orm_lot.acquisition_when,
            price=orm_lot.acquisition_price,
            kind=_ACQUISITION_KIND_ADAPTER.validate_json(orm_lot.acquisition_kind),
        ),
        amount=orm_lot.amount,
    )


class AccountRepository:
    """Tracked accounts together with the live lots they own."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, account: TrackedAccount) -> TrackedAccount:
        self._session.add(
            models.TrackedAccountOrm(
                address=account.address,
                asset=account.asset.value,
                description=account.description,
                last_update_epoch=account.last_update_epoch,
                last_update_balance=account.last_update_balance,
                no_sync=account.no_sync,
            )
        )
        self._session.flush()
        self._replace_lots(account)
        return account

    def get(self, address: str, asset: Asset) -> TrackedAccount | None:
        orm_account = self._session.get(models.TrackedAccountOrm, (address, asset.value))
        if orm_account is None:
            return None
        return self._to_domain(orm_account)

    def list(self) -> list[TrackedAccount]:
        orm_accounts = self._session.scalars(
            select(models.TrackedAccountOrm).order_by(
                models.TrackedAccountOrm.address.asc(), models.TrackedAccountOrm.asset.asc()
            )
        ).all()
        return [self._to_domain(orm_account) for orm_account in orm_accounts]

    def list_for_address(self, address: str) -> list[TrackedAccount]:
        orm_accounts = self._session.scalars(
            select(models.TrackedAccountOrm)
            .where(models.TrackedAccountOrm.address == address)
            .order_by(models.TrackedAccountOrm.asset.asc())
        ).all()
        return [self._to_domain(orm_account) for orm_account in orm_accounts]

    def update(self, account: TrackedAccount) -> TrackedAccount:
        orm_account = self._session.get(models.TrackedAccountOrm, (account.address, account.asset.value))
        if orm_account is None:
            msg = f"Unknown account {account.address} ({account.asset})"
            raise ValueError(msg)
        orm_account.description = account.description
        orm_account.last_update_epoch = account.last_update_epoch
        orm_account.last_update_balance = account.last_update_balance
        orm_account.no_sync = account.no_sync
        self._replace_lots(account)
        return account

    def delete(self, address: str, asset: Asset) -> None:
        for orm_lot in self._lots_of(address, asset):
            self._session.delete(orm_lot)
        orm_account = self._session.get(models.TrackedAccountOrm, (address, asset.value))
        if orm_account is not None:
            self._session.delete(orm_account)
        self._session.flush()

    def find_lot_owner(self, lot_number: int) -> tuple[Address, Asset] | None:
        orm_lot = self._session.get(models.LotOrm, lot_number)
        if orm_lot is None:
            return None
        return Address(orm_lot.address), Asset(orm_lot.asset)

    def _lots_of(self, address: str, asset: Asset) -> list[models.LotOrm]:
        return list(
            self._session.scalars(
                select(models.LotOrm)
                .where(models.LotOrm.address == address, models.LotOrm.asset == asset.value)
                .order_by(models.LotOrm.lot_number.asc())
            ).all()
        )

    def _replace_lots(self, account: TrackedAccount) -> None:
        wanted = {lot.lot_number: lot for lot in account.lots}
        for orm_lot in self._lots_of(account.address, account.asset):
            if orm_lot.lot_number not in wanted:
                self._session.delete(orm_lot)
        self._session.flush()

        for lot in account.lots:
            orm_lot = self._session.get(models.LotOrm, lot.lot_number)
            if orm_lot is None:
                orm_lot = models.LotOrm(lot_number=lot.lot_number)
                self._session.add(orm_lot)
            orm_lot.address = account.address
            orm_lot.asset = account.asset.value
            orm_lot.acquisition_when = lot.acquisition.when
            orm_lot.acquisition_price = lot.acquisition.price
            orm_lot.acquisition_kind = _ACQUISITION_KIND_ADAPTER.dump_json(lot.acquisition.kind).decode()
            orm_lot.amount = lot.amount
        self._session.flush()

    def _to_domain(self, orm_account: models.TrackedAccountOrm) -> TrackedAccount:
        return TrackedAccount(
            address=Address(orm_account.address),
            asset=Asset(orm_account.asset),
            description=orm_account.description,
            last_update_epoch=orm_account.last_update_epoch,
            last_update_balance=orm_account.last_update_balance,
            lots=[_lot_to_domain(orm_lot) for orm_lot in self._lots_of(orm_account.address, Asset(orm_account.asset))],
            no_sync=orm_account.no_sync,
        )


class DisposedLotRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, disposed_lots: list[DisposedLot]) -> list[DisposedLot]:
        orm_lots = [
            models.DisposedLotOrm(
                lot_number=disposed.lot.lot_number,
                address=disposed.address,
                asset=disposed.asset.value,
                amount=disposed.lot.amount,
                acquisition_when=disposed.lot.acquisition.when,
                acquisition_price=disposed.lot.acquisition.price,
                acquisition_kind=_ACQUISITION_KIND_ADAPTER.dump_json(disposed.lot.acquisition.kind).decode(),
                disposal_when=disposed.when,
                disposal_price=disposed.price,
                disposal_kind=_DISPOSAL_KIND_ADAPTER.dump_json(disposed.kind).decode(),
            )
            for disposed in disposed_lots
        ]
        self._session.add_all(orm_lots)
        self._session.flush()
        return disposed_lots

    def list(self) -> list[DisposedLot]:
        orm_lots = self._session.scalars(
            select(models.DisposedLotOrm).order_by(models.DisposedLotOrm.id.asc())
        ).all()
        return [
            DisposedLot(
                lot=Lot(
                    lot_number=orm_lot.lot_number,
                    acquisition=LotAcquisition(
                        when=orm_lot.acquisition_when,
                        price=orm_lot.acquisition_price,
                        kind=_ACQUISITION_KIND_ADAPTER.validate_json(orm_lot.acquisition_kind),
                    ),
                    amount=orm_lot.amount,
                ),
                address=Address(orm_lot.address),
                asset=Asset(orm_lot.asset),
                when=orm_lot.disposal_when,
                price=orm_lot.disposal_price,
                kind=_DISPOSAL_KIND_ADAPTER.validate_json(orm_lot.disposal_kind),
            )
            for orm_lot in orm_lots
        ]

    def exists_for_lot(self, lot_number: int) -> bool:
        found = self._session.scalars(
            select(models.DisposedLotOrm.id).where(models.DisposedLotOrm.lot_number == lot_number).limit(1)
        ).first()
        return found is not None


class PendingDepositRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, deposit: PendingDeposit) -> PendingDeposit:
        transfer = deposit.transfer
        self._session.add(
            models.PendingDepositOrm(
                signature=transfer.signature,
                last_valid_block_height=transfer.last_valid_block_height,
                exchange=deposit.exchange,
                from_address=transfer.from_address,
                from_asset=transfer.from_asset.value,
                to_address=transfer.to_address,
                to_asset=transfer.to_asset.value,
                amount=deposit.amount,
                lot_selection_method=deposit.lot_selection_method.value,
                lot_numbers=_dump_lot_numbers(deposit.lot_numbers),
            )
        )
        self._session.flush()
        return deposit

    def get(self, signature: str) -> PendingDeposit | None:
        orm_deposit = self._session.get(models.PendingDepositOrm, signature)
        if orm_deposit is None:
            return None
        return self._to_domain(orm_deposit)

    def list(self, exchange: str | None = None) -> list[PendingDeposit]:
        query = select(models.PendingDepositOrm).order_by(models.PendingDepositOrm.signature.asc())
        if exchange is not None:
            query = query.where(models.PendingDepositOrm.exchange == exchange)
        return [self._to_domain(orm_deposit) for orm_deposit in self._session.scalars(query).all()]

    def delete(self, signature: str) -> None:
        orm_deposit = self._session.get(models.PendingDepositOrm, signature)
        if orm_deposit is not None:
            self._session.delete(orm_deposit)
            self._session.flush()

    @staticmethod
    def _to_domain(orm_deposit: models.PendingDepositOrm) -> PendingDeposit:
        return PendingDeposit(
            transfer=TransferDescriptor(
                signature=Signature(orm_deposit.signature),
                last_valid_block_height=orm_deposit.last_valid_block_height,
                from_address=Address(orm_deposit.from_address),
                from_asset=Asset(orm_deposit.from_asset),
                to_address=Address(orm_deposit.to_address),
                to_asset=Asset(orm_deposit.to_asset),
                amount=orm_deposit.amount,
            ),
            exchange=orm_deposit.exchange,
            lot_selection_method=LotSelectionMethod(orm_deposit.lot_selection_method),
            lot_numbers=_load_lot_numbers(orm_deposit.lot_numbers),
        )


class PendingWithdrawalRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, withdrawal: PendingWithdrawal) -> PendingWithdrawal:
        self._session.add(
            models.PendingWithdrawalOrm(
                tag=withdrawal.tag,
                exchange=withdrawal.exchange,
                asset=withdrawal.asset.value,
                amount=withdrawal.amount,
                fee=withdrawal.fee,
                from_address=withdrawal.from_address,
                to_address=withdrawal.to_address,
                lot_selection_method=withdrawal.lot_selection_method.value,
                lot_numbers=_dump_lot_numbers(withdrawal.lot_numbers),
            )
        )
        self._session.flush()
        return withdrawal

    def get(self, tag: str) -> PendingWithdrawal | None:
        orm_withdrawal = self._session.get(models.PendingWithdrawalOrm, tag)
        if orm_withdrawal is None:
            return None
        return self._to_domain(orm_withdrawal)

    def list(self, exchange: str | None = None) -> list[PendingWithdrawal]:
        query = select(models.PendingWithdrawalOrm).order_by(models.PendingWithdrawalOrm.tag.asc())
        if exchange is not None:
            query = query.where(models.PendingWithdrawalOrm.exchange == exchange)
        return [self._to_domain(orm_withdrawal) for orm_withdrawal in self._session.scalars(query).all()]

    def delete(self, tag: str) -> None:
        orm_withdrawal = self._session.get(models.PendingWithdrawalOrm, tag)
        if orm_withdrawal is not None:
            self._session.delete(orm_withdrawal)
            self._session.flush()

    @staticmethod
    def _to_domain(orm_withdrawal: models.PendingWithdrawalOrm) -> PendingWithdrawal:
        return PendingWithdrawal(
            exchange=orm_withdrawal.exchange,
            tag=orm_withdrawal.tag,
            asset=Asset(orm_withdrawal.asset),
            amount=orm_withdrawal.amount,
            fee=orm_withdrawal.fee,
            from_address=Address(orm_withdrawal.from_address),
            to_address=Address(orm_withdrawal.to_address),
            lot_selection_method=LotSelectionMethod(orm_withdrawal.lot_selection_method),
            lot_numbers=_load_lot_numbers(orm_withdrawal.lot_numbers),
        )


class PendingTransferRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, pending: PendingTransfer) -> PendingTransfer:
        transfer = pending.transfer
        self._session.add(
            models.PendingTransferOrm(
                signature=transfer.signature,
                last_valid_block_height=transfer.last_valid_block_height,
                from_address=transfer.from_address,
                from_asset=transfer.from_asset.value,
                to_address=transfer.to_address,
                to_asset=transfer.to_asset.value,
                amount=transfer.amount,
                lot_selection_method=pending.lot_selection_method.value,
                lot_numbers=_dump_lot_numbers(pending.lot_numbers),
            )
        )
        self._session.flush()
        return pending

    def get(self, signature: str) -> PendingTransfer | None:
        orm_transfer = self._session.get(models.PendingTransferOrm, signature)
        if orm_transfer is None:
            return None
        return self._to_domain(orm_transfer)

    def list(self) -> list[PendingTransfer]:
        orm_transfers = self._session.scalars(
            select(models.PendingTransferOrm).order_by(models.PendingTransferOrm.signature.asc())
        ).all()
        return [self._to_domain(orm_transfer) for orm_transfer in orm_transfers]

    def delete(self, signature: str) -> None:
        orm_transfer = self._session.get(models.PendingTransferOrm, signature)
        if orm_transfer is not None:
            self._session.delete(orm_transfer)
            self._session.flush()

    @staticmethod
    def _to_domain(orm_transfer: models.PendingTransferOrm) -> PendingTransfer:
        return PendingTransfer(
            transfer=TransferDescriptor(
                signature=Signature(orm_transfer.signature),
                last_valid_block_height=orm_transfer.last_valid_block_height,
                from_address=Address(orm_transfer.from_address),
                from_asset=Asset(orm_transfer.from_asset),
                to_address=Address(orm_transfer.to_address),
                to_asset=Asset(orm_transfer.to_asset),
                amount=orm_transfer.amount,
            ),
            lot_selection_method=LotSelectionMethod(orm_transfer.lot_selection_method),
            lot_numbers=_load_lot_numbers(orm_transfer.lot_numbers),
        )


class PendingSwapRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, swap: PendingSwap) -> PendingSwap:
        self._session.add(
            models.PendingSwapOrm(
                signature=swap.signature,
                last_valid_block_height=swap.last_valid_block_height,
                address=swap.address,
                from_asset=swap.from_asset.value,
                from_price=swap.from_price,
                to_asset=swap.to_asset.value,
                to_price=swap.to_price,
                lot_selection_method=swap.lot_selection_method.value,
                lot_numbers=_dump_lot_numbers(swap.lot_numbers),
            )
        )
        self._session.flush()
        return swap

    def get(self, signature: str) -> PendingSwap | None:
        orm_swap = self._session.get(models.PendingSwapOrm, signature)
        if orm_swap is None:
            return None
        return self._to_domain(orm_swap)

    def list(self) -> list[PendingSwap]:
        orm_swaps = self._session.scalars(
            select(models.PendingSwapOrm).order_by(models.PendingSwapOrm.signature.asc())
        ).all()
        return [self._to_domain(orm_swap) for orm_swap in orm_swaps]

    def delete(self, signature: str) -> None:
        orm_swap = self._session.get(models.PendingSwapOrm, signature)
        if orm_swap is not None:
            self._session.delete(orm_swap)
            self._session.flush()

    @staticmethod
    def _to_domain(orm_swap: models.PendingSwapOrm) -> PendingSwap:
        return PendingSwap(
            signature=Signature(orm_swap.signature),
            last_valid_block_height=orm_swap.last_valid_block_height,
            address=Address(orm_swap.address),
            from_asset=Asset(orm_swap.from_asset),
            from_price=orm_swap.from_price,
            to_asset=Asset(orm_swap.to_asset),
            to_price=orm_swap.to_price,
            lot_selection_method=LotSelectionMethod(orm_swap.lot_selection_method),
            lot_numbers=_load_lot_numbers(orm_swap.lot_numbers),
        )


class SettingsRepository:
    """Key/value JSON settings."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, key: str) -> str | None:
        orm_setting = self._session.get(models.SettingOrm, key)
        if orm_setting is None:
            return None
        return orm_setting.value

    def set(self, key: str, value: str) -> None:
        orm_setting = self._session.get(models.SettingOrm, key)
        if orm_setting is None:
            self._session.add(models.SettingOrm(key=key, value=value))
        else:
            orm_setting.value = value
        self._session.flush()

    def delete(self, key: str) -> None:
        orm_setting = self._session.get(models.SettingOrm, key)
        if orm_setting is not None:
            self._session.delete(orm_setting)
            self._session.flush()


class TransitorySweepAddressRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, address: str) -> None:
        if self._session.get(models.TransitorySweepAddressOrm, address) is None:
            self._session.add(models.TransitorySweepAddressOrm(address=address))
            self._session.flush()

    def remove(self, address: str) -> None:
        orm_address = self._session.get(models.TransitorySweepAddressOrm, address)
        if orm_address is not None:
            self._session.delete(orm_address)
            self._session.flush()

    def list(self) -> list[Address]:
        addresses = self._session.scalars(
            select(models.TransitorySweepAddressOrm.address).order_by(models.TransitorySweepAddressOrm.address)
        ).all()
        return [Address(address) for address in addresses]
