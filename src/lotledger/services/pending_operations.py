"""Pending deposits, withdrawals, transfers and swaps.

Every operation is opened when it is submitted and later reaches exactly one
terminal state. Confirmation applies the ledger mutation and removes the
record in one store transaction; cancellation only removes the record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from lotledger.db.store import LedgerStore
from lotledger.domain.assets import Asset
from lotledger.domain.errors import AssetMismatchError, BlindDepositRefusedError
from lotledger.domain.ledger import (
    DisposedLot,
    DropDisposal,
    Lot,
    LotAcquisition,
    SwapAcquisition,
    SwapDisposal,
    TrackedAccount,
    TransactionAcquisition,
    WithdrawalFeeDisposal,
)
from lotledger.domain.lot_selection import LotSelectionMethod, extract_lots
from lotledger.domain.pending import (
    PendingDeposit,
    PendingKind,
    PendingResolution,
    PendingSwap,
    PendingTransfer,
    PendingWithdrawal,
    TransferDescriptor,
    is_expired,
)
from lotledger.domain.pricing import PriceProvider, require_historical_price
from lotledger.services.disposal_service import DisposalEngine, take_lots

logger = logging.getLogger(__name__)


@dataclass
class PendingOperations:
    deposits: list[PendingDeposit]
    withdrawals: list[PendingWithdrawal]
    transfers: list[PendingTransfer]
    swaps: list[PendingSwap]

    def __len__(self) -> int:
        return len(self.deposits) + len(self.withdrawals) + len(self.transfers) + len(self.swaps)


@dataclass(frozen=True)
class ResolvedOperation:
    kind: PendingKind
    key: str
    resolution: PendingResolution


class PendingOperationService:
    def __init__(
        self,
        store: LedgerStore,
        *,
        disposal_engine: DisposalEngine | None = None,
        price_provider: PriceProvider | None = None,
    ) -> None:
        self.store = store
        self.disposal_engine = disposal_engine or DisposalEngine(store)
        self.price_provider = price_provider

    def list_pending(self, exchange: str | None = None) -> PendingOperations:
        return PendingOperations(
            deposits=self.store.pending_deposits(exchange),
            withdrawals=self.store.pending_withdrawals(exchange),
            transfers=self.store.pending_transfers() if exchange is None else [],
            swaps=self.store.pending_swaps() if exchange is None else [],
        )

    # Deposits

    def open_deposit(
        self,
        transfer: TransferDescriptor,
        exchange: str,
        method: LotSelectionMethod = LotSelectionMethod.FIFO,
        lot_numbers: set[int] | None = None,
    ) -> PendingDeposit:
        _check_transfer_assets(transfer.from_asset, transfer.to_asset)
        deposit = PendingDeposit(
            transfer=transfer, exchange=exchange, lot_selection_method=method, lot_numbers=lot_numbers
        )
        source = self.store.get_account(transfer.from_address, transfer.from_asset)
        if source is not None:
            _check_lots(source, deposit.amount, method, lot_numbers)
        self.store.add_pending_deposit(deposit)
        logger.info(
            "Pending deposit %s of %s %s to %s",
            deposit.signature,
            transfer.from_asset.format_amount(deposit.amount),
            transfer.from_asset,
            exchange,
        )
        return deposit

    def confirm_deposit(self, signature: str, when: date, price: Decimal | None = None) -> TrackedAccount:
        """Credit the exchange account with the deposited lots.

        Lots of a tracked source account move with their acquisition history;
        from an untracked source a new lot is created at ``price`` (or the
        historical price on ``when``).
        """
        with self.store.transaction():
            deposit = self.store.get_pending_deposit(signature)
            transfer = deposit.transfer
            source = self.store.get_account(transfer.from_address, transfer.from_asset)
            if source is not None:
                lots = self._take_for_move(source, deposit.amount, deposit.lot_selection_method, deposit.lot_numbers)
                self.store.update_account(source)
            else:
                lot_price = price
                if lot_price is None:
                    lot_price = require_historical_price(self.price_provider, transfer.to_asset, when)
                lots = [
                    Lot(
                        lot_number=self.store.next_lot_number(),
                        acquisition=LotAcquisition(
                            when=when, price=lot_price, kind=TransactionAcquisition(signature=transfer.signature)
                        ),
                        amount=deposit.amount,
                    )
                ]
            destination = self._credit(
                transfer.to_address, transfer.to_asset, lots, description=f"{deposit.exchange} deposit"
            )
            self.store.remove_pending_deposit(signature)

        self._log_resolution(PendingKind.DEPOSIT, signature, PendingResolution.CONFIRMED)
        return destination

    def cancel_deposit(self, signature: str, resolution: PendingResolution = PendingResolution.FAILED) -> None:
        self.store.remove_pending_deposit(signature)
        self._log_resolution(PendingKind.DEPOSIT, signature, resolution)

    def drop_deposit(self, signature: str, when: date) -> list[DisposedLot]:
        """Settle a deposit to an exchange that offers no deposit history.

        Only fiat-fungible assets may be dropped this way, since they carry no
        cost basis; any other asset raises :class:`BlindDepositRefusedError`.
        """
        with self.store.transaction():
            deposit = self.store.get_pending_deposit(signature)
            transfer = deposit.transfer
            if not transfer.from_asset.fiat_fungible:
                raise BlindDepositRefusedError(signature, transfer.from_asset)

            disposed_lots: list[DisposedLot] = []
            source = self.store.get_account(transfer.from_address, transfer.from_asset)
            if source is not None:
                disposed_lots = self.disposal_engine.dispose_from(
                    source,
                    deposit.amount,
                    when,
                    None,
                    DropDisposal(description=f"Deposit {signature} to {deposit.exchange}"),
                    deposit.lot_selection_method,
                    deposit.lot_numbers,
                )
                self.store.update_account(source)
                self.store.add_disposed_lots(disposed_lots)
            self.store.remove_pending_deposit(signature)

        self._log_resolution(PendingKind.DEPOSIT, signature, PendingResolution.DROPPED)
        return disposed_lots

    # Withdrawals

    def open_withdrawal(self, withdrawal: PendingWithdrawal) -> PendingWithdrawal:
        source = self.store.require_account(withdrawal.from_address, withdrawal.asset)
        self.store.require_account(withdrawal.to_address, withdrawal.asset)
        _check_lots(source, withdrawal.amount, withdrawal.lot_selection_method, withdrawal.lot_numbers)
        self.store.add_pending_withdrawal(withdrawal)
        logger.info(
            "Pending withdrawal %s of %s %s from %s to %s",
            withdrawal.tag,
            withdrawal.asset.format_amount(withdrawal.amount),
            withdrawal.asset,
            withdrawal.exchange,
            withdrawal.to_address,
        )
        return withdrawal

    def confirm_withdrawal(
        self, tag: str, when: date, fee_price: Decimal | None = None
    ) -> tuple[TrackedAccount, list[DisposedLot]]:
        """Move the withdrawn lots to the destination and dispose the fee portion."""
        with self.store.transaction():
            withdrawal = self.store.get_pending_withdrawal(tag)
            source = self.store.require_account(withdrawal.from_address, withdrawal.asset)
            if withdrawal.fee > 0 and fee_price is None:
                fee_price = require_historical_price(self.price_provider, withdrawal.asset, when)

            taken = take_lots(source, withdrawal.amount, withdrawal.lot_selection_method, withdrawal.lot_numbers)
            fee_part, moved = _split_lots(taken, withdrawal.fee)
            fee_kind = WithdrawalFeeDisposal(exchange=withdrawal.exchange, tag=withdrawal.tag)
            fee_lots = [
                DisposedLot(
                    lot=lot, address=source.address, asset=source.asset, when=when, price=fee_price, kind=fee_kind
                )
                for lot in fee_part
            ]
            lots = self._renumber_split(source, moved)
            self.store.update_account(source)
            destination = self._credit(withdrawal.to_address, withdrawal.asset, lots)
            self.store.add_disposed_lots(fee_lots)
            self.store.remove_pending_withdrawal(tag)

        self._log_resolution(PendingKind.WITHDRAWAL, tag, PendingResolution.CONFIRMED)
        return destination, fee_lots

    def cancel_withdrawal(self, tag: str, resolution: PendingResolution = PendingResolution.REJECTED) -> None:
        self.store.remove_pending_withdrawal(tag)
        self._log_resolution(PendingKind.WITHDRAWAL, tag, resolution)

    # Transfers

    def open_transfer(
        self,
        transfer: TransferDescriptor,
        method: LotSelectionMethod = LotSelectionMethod.FIFO,
        lot_numbers: set[int] | None = None,
    ) -> PendingTransfer:
        _check_transfer_assets(transfer.from_asset, transfer.to_asset)
        source = self.store.require_account(transfer.from_address, transfer.from_asset)
        if transfer.amount is not None:
            _check_lots(source, transfer.amount, method, lot_numbers)
        pending = PendingTransfer(transfer=transfer, lot_selection_method=method, lot_numbers=lot_numbers)
        self.store.add_pending_transfer(pending)
        logger.info(
            "Pending transfer %s from %s (%s) to %s (%s)",
            transfer.signature,
            transfer.from_address,
            transfer.from_asset,
            transfer.to_address,
            transfer.to_asset,
        )
        return pending

    def confirm_transfer(self, signature: str, when: date, amount: int | None = None) -> TrackedAccount:
        """Move lots to the destination, creating it if needed.

        ``amount`` overrides the amount recorded at submission; with neither,
        the whole source balance is moved.
        """
        with self.store.transaction():
            pending = self.store.get_pending_transfer(signature)
            transfer = pending.transfer
            source = self.store.require_account(transfer.from_address, transfer.from_asset)
            if amount is None:
                amount = transfer.amount if transfer.amount is not None else source.last_update_balance
            lots = self._take_for_move(source, amount, pending.lot_selection_method, pending.lot_numbers)
            self.store.update_account(source)
            destination = self._credit(transfer.to_address, transfer.to_asset, lots)
            self.store.remove_pending_transfer(signature)

        logger.info(
            "Transferred %s %s on %s", transfer.from_asset.format_amount(amount), transfer.from_asset, when
        )
        self._log_resolution(PendingKind.TRANSFER, signature, PendingResolution.CONFIRMED)
        return destination

    def cancel_transfer(self, signature: str, resolution: PendingResolution = PendingResolution.FAILED) -> None:
        self.store.remove_pending_transfer(signature)
        self._log_resolution(PendingKind.TRANSFER, signature, resolution)

    # Swaps

    def open_swap(self, swap: PendingSwap) -> PendingSwap:
        self.store.require_account(swap.address, swap.from_asset)
        self.store.add_pending_swap(swap)
        logger.info(
            "Pending swap %s of %s for %s at %s", swap.signature, swap.from_asset, swap.to_asset, swap.address
        )
        return swap

    def confirm_swap(
        self, signature: str, when: date, from_amount: int, to_amount: int
    ) -> tuple[TrackedAccount, list[DisposedLot]]:
        """Dispose the from-asset lots at the from price and add one to-asset lot at the to price."""
        with self.store.transaction():
            swap = self.store.get_pending_swap(signature)
            source = self.store.require_account(swap.address, swap.from_asset)
            disposed_lots = self.disposal_engine.dispose_from(
                source,
                from_amount,
                when,
                swap.from_price,
                SwapDisposal(signature=swap.signature, asset=swap.to_asset, amount=to_amount),
                swap.lot_selection_method,
                swap.lot_numbers,
            )
            self.store.update_account(source)
            self.store.add_disposed_lots(disposed_lots)

            lots = []
            if to_amount > 0:
                lots.append(
                    Lot(
                        lot_number=self.store.next_lot_number(),
                        acquisition=LotAcquisition(
                            when=when,
                            price=swap.to_price,
                            kind=SwapAcquisition(signature=swap.signature, asset=swap.from_asset, amount=from_amount),
                        ),
                        amount=to_amount,
                    )
                )
            destination = self._credit(swap.address, swap.to_asset, lots)
            self.store.remove_pending_swap(signature)

        logger.info(
            "Swapped %s %s for %s %s",
            swap.from_asset.format_amount(from_amount),
            swap.from_asset,
            swap.to_asset.format_amount(to_amount),
            swap.to_asset,
        )
        self._log_resolution(PendingKind.SWAP, signature, PendingResolution.CONFIRMED)
        return destination, disposed_lots

    def cancel_swap(self, signature: str, resolution: PendingResolution = PendingResolution.FAILED) -> None:
        self.store.remove_pending_swap(signature)
        self._log_resolution(PendingKind.SWAP, signature, resolution)

    # Expiry

    def expire(self, current_height: int) -> list[ResolvedOperation]:
        """Cancel every signature-keyed record whose last valid block height has passed.

        Callers must only use this once the chain has no terminal fact for the
        records, since expiry is an inference rather than an observed failure.
        """
        expired: list[ResolvedOperation] = []
        with self.store.transaction():
            for deposit in self.store.pending_deposits():
                if is_expired(deposit.transfer.last_valid_block_height, current_height):
                    self.store.remove_pending_deposit(deposit.signature)
                    expired.append(ResolvedOperation(PendingKind.DEPOSIT, deposit.signature, PendingResolution.EXPIRED))
            for transfer in self.store.pending_transfers():
                if is_expired(transfer.transfer.last_valid_block_height, current_height):
                    self.store.remove_pending_transfer(transfer.signature)
                    expired.append(
                        ResolvedOperation(PendingKind.TRANSFER, transfer.signature, PendingResolution.EXPIRED)
                    )
            for swap in self.store.pending_swaps():
                if is_expired(swap.last_valid_block_height, current_height):
                    self.store.remove_pending_swap(swap.signature)
                    expired.append(ResolvedOperation(PendingKind.SWAP, swap.signature, PendingResolution.EXPIRED))

        for operation in expired:
            self._log_resolution(operation.kind, operation.key, operation.resolution)
        return expired

    def _take_for_move(
        self,
        source: TrackedAccount,
        amount: int,
        method: LotSelectionMethod,
        lot_numbers: set[int] | None,
    ) -> list[Lot]:
        """Like :func:`take_lots`, but a lot split between source and destination gets a new number."""
        return self._renumber_split(source, take_lots(source, amount, method, lot_numbers))

    def _renumber_split(self, source: TrackedAccount, lots: list[Lot]) -> list[Lot]:
        kept = {lot.lot_number for lot in source.lots}
        return [
            lot.model_copy(update={"lot_number": self.store.next_lot_number()}) if lot.lot_number in kept else lot
            for lot in lots
        ]

    def _credit(
        self, address: str, asset: Asset, lots: list[Lot], *, description: str = ""
    ) -> TrackedAccount:
        account = self.store.get_account(address, asset)
        if account is None:
            account = TrackedAccount(address=address, asset=asset, description=description)
            self.store.add_account(account)
        account.lots = sorted([*account.lots, *lots], key=lambda lot: lot.lot_number)
        account.last_update_balance += sum(lot.amount for lot in lots)
        self.store.update_account(account)
        return account

    @staticmethod
    def _log_resolution(kind: PendingKind, key: str, resolution: PendingResolution) -> None:
        logger.info("Pending %s %s %s", kind, key, resolution)


def _check_lots(
    account: TrackedAccount, amount: int, method: LotSelectionMethod, lot_numbers: set[int] | None
) -> None:
    extract_lots(account.lots, amount, method, lot_numbers, asset=account.asset, address=account.address)


def _split_lots(lots: list[Lot], amount: int) -> tuple[list[Lot], list[Lot]]:
    """Split selected lots into the first ``amount`` units and the rest, keeping selection order."""
    head: list[Lot] = []
    tail: list[Lot] = []
    remaining = amount
    for lot in lots:
        if remaining >= lot.amount:
            head.append(lot)
            remaining -= lot.amount
        elif remaining > 0:
            head.append(lot.model_copy(update={"amount": remaining}))
            tail.append(lot.model_copy(update={"amount": lot.amount - remaining}))
            remaining = 0
        else:
            tail.append(lot)
    return head, tail


def _check_transfer_assets(from_asset: Asset, to_asset: Asset) -> None:
    if from_asset != to_asset and not (from_asset.is_sol_or_wsol() and to_asset.is_sol_or_wsol()):
        raise AssetMismatchError(from_asset, to_asset)


__all__ = ["PendingOperationService", "PendingOperations", "ResolvedOperation"]
