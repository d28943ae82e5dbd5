from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from lotledger.db.store import LedgerStore
from lotledger.domain.assets import Asset
from lotledger.domain.errors import AssetMismatchError
from lotledger.domain.ledger import (
    EpochRewardAcquisition,
    Lot,
    LotAcquisition,
    NotAvailableAcquisition,
    TrackedAccount,
)
from lotledger.domain.lot_selection import LotSelectionMethod, sort_lots
from lotledger.domain.pending import PendingKind, PendingResolution, is_expired
from lotledger.domain.pricing import PriceProvider, require_historical_price
from lotledger.services.clients import ChainClient, ChainError, ConfirmedTransaction, ExchangeClient
from lotledger.services.pending_operations import PendingOperationService, ResolvedOperation

logger = logging.getLogger(__name__)

# Exchanges occasionally keep a few smallest units of a deposit.
DEPOSIT_MISMATCH_TOLERANCE = 10

UNEXPLAINED_BALANCE_DUST = Decimal("0.005")


class PendingReconciler:
    """Resolves pending operations from chain and exchange facts."""

    def __init__(self, pending: PendingOperationService, chain: ChainClient) -> None:
        self.pending = pending
        self.store: LedgerStore = pending.store
        self.chain = chain

    def sync_transfers(self) -> list[ResolvedOperation]:
        height = self.chain.current_height()
        resolved: list[ResolvedOperation] = []
        for transfer in self.store.pending_transfers():
            signature = transfer.signature
            status = self.chain.confirm(signature)
            if isinstance(status, ConfirmedTransaction):
                amount = transfer.transfer.amount
                if amount is None:
                    amount = self.chain.transfer_amount(signature)
                self.pending.confirm_transfer(signature, status.when, amount)
                resolved.append(ResolvedOperation(PendingKind.TRANSFER, signature, PendingResolution.CONFIRMED))
            elif isinstance(status, ChainError):
                logger.info("Pending transfer failed with %s: %s", status.message, signature)
                self.pending.cancel_transfer(signature, PendingResolution.FAILED)
                resolved.append(ResolvedOperation(PendingKind.TRANSFER, signature, PendingResolution.FAILED))
            elif is_expired(transfer.transfer.last_valid_block_height, height):
                self.pending.cancel_transfer(signature, PendingResolution.EXPIRED)
                resolved.append(ResolvedOperation(PendingKind.TRANSFER, signature, PendingResolution.EXPIRED))
            else:
                logger.info(
                    "Transfer pending for at most %d blocks: %s",
                    transfer.transfer.last_valid_block_height - height,
                    signature,
                )
        return resolved

    def sync_swaps(self) -> list[ResolvedOperation]:
        height = self.chain.current_height()
        resolved: list[ResolvedOperation] = []
        for swap in self.store.pending_swaps():
            signature = swap.signature
            status = self.chain.confirm(signature)
            if isinstance(status, ConfirmedTransaction):
                amounts = self.chain.swap_amounts(signature)
                self.pending.confirm_swap(signature, status.when, amounts.from_amount, amounts.to_amount)
                resolved.append(ResolvedOperation(PendingKind.SWAP, signature, PendingResolution.CONFIRMED))
            elif isinstance(status, ChainError):
                logger.info("Pending swap failed with %s: %s", status.message, signature)
                self.pending.cancel_swap(signature, PendingResolution.FAILED)
                resolved.append(ResolvedOperation(PendingKind.SWAP, signature, PendingResolution.FAILED))
            elif is_expired(swap.last_valid_block_height, height):
                self.pending.cancel_swap(signature, PendingResolution.EXPIRED)
                resolved.append(ResolvedOperation(PendingKind.SWAP, signature, PendingResolution.EXPIRED))
            else:
                logger.info(
                    "Swap %s -> %s pending for at most %d blocks: %s",
                    swap.from_asset,
                    swap.to_asset,
                    swap.last_valid_block_height - height,
                    signature,
                )
        return resolved

    def sync_withdrawals(self, exchange: ExchangeClient) -> list[ResolvedOperation]:
        resolved: list[ResolvedOperation] = []
        for withdrawal in self.store.pending_withdrawals(exchange.name):
            completion = exchange.withdrawal_completed(withdrawal.tag)
            if completion is None:
                logger.info(
                    "%s withdrawal %s of %s to %s pending",
                    exchange.name,
                    withdrawal.tag,
                    withdrawal.asset.format_amount(withdrawal.amount),
                    withdrawal.to_address,
                )
                continue

            if completion.tx_ref is None:
                self.pending.cancel_withdrawal(withdrawal.tag, PendingResolution.REJECTED)
                resolved.append(ResolvedOperation(PendingKind.WITHDRAWAL, withdrawal.tag, PendingResolution.REJECTED))
                continue

            logger.info("%s withdrawal %s completed (%s)", exchange.name, withdrawal.tag, completion.tx_ref)
            self.pending.confirm_withdrawal(withdrawal.tag, completion.when)
            resolved.append(ResolvedOperation(PendingKind.WITHDRAWAL, withdrawal.tag, PendingResolution.CONFIRMED))
        return resolved

    def sync_deposits(self, exchange: ExchangeClient) -> list[ResolvedOperation]:
        """Resolve the exchange's pending deposits.

        A deposit confirmed on chain is only credited once the exchange reports
        it. Exchanges without deposit history get the blind path, which drops
        fiat-fungible deposits and refuses anything else.
        """
        height = self.chain.current_height()
        resolved: list[ResolvedOperation] = []
        for deposit in self.store.pending_deposits(exchange.name):
            signature = deposit.signature
            asset = deposit.transfer.to_asset
            status = self.chain.confirm(signature)

            if isinstance(status, ChainError):
                logger.info("Pending %s deposit failed with %s: %s", asset, status.message, signature)
                self.pending.cancel_deposit(signature, PendingResolution.FAILED)
                resolved.append(ResolvedOperation(PendingKind.DEPOSIT, signature, PendingResolution.FAILED))
                continue

            if status is None:
                if is_expired(deposit.transfer.last_valid_block_height, height):
                    self.pending.cancel_deposit(signature, PendingResolution.EXPIRED)
                    resolved.append(ResolvedOperation(PendingKind.DEPOSIT, signature, PendingResolution.EXPIRED))
                else:
                    logger.info(
                        "%s deposit pending for at most %d blocks (%s unconfirmed)",
                        asset,
                        deposit.transfer.last_valid_block_height - height,
                        signature,
                    )
                continue

            if not exchange.supports_deposit_history:
                self.pending.drop_deposit(signature, status.when)
                logger.info("%s %s BLIND deposit successful (%s)", asset, asset.format_amount(deposit.amount), signature)
                resolved.append(ResolvedOperation(PendingKind.DEPOSIT, signature, PendingResolution.DROPPED))
                continue

            completion = exchange.deposit_completed(signature)
            if completion is None:
                logger.info("%s deposit pending (%s confirmed)", asset, signature)
                continue

            missing = abs(completion.amount - deposit.amount)
            if missing >= DEPOSIT_MISMATCH_TOLERANCE:
                logger.error(
                    "%s deposit amount mismatch for %s: actual %d, expected %d",
                    asset,
                    signature,
                    completion.amount,
                    deposit.amount,
                )
                continue
            if missing:
                logger.warning("%s kept %d smallest units of deposit %s", exchange.name, missing, signature)

            self.pending.confirm_deposit(signature, status.when)
            resolved.append(ResolvedOperation(PendingKind.DEPOSIT, signature, PendingResolution.CONFIRMED))
        return resolved

    def sync_exchange(self, exchange: ExchangeClient) -> list[ResolvedOperation]:
        return [*self.sync_withdrawals(exchange), *self.sync_deposits(exchange)]


class BalanceReconciler:
    """Brings tracked account balances in line with the chain."""

    def __init__(
        self, store: LedgerStore, chain: ChainClient, price_provider: PriceProvider | None = None
    ) -> None:
        self.store = store
        self.chain = chain
        self.price_provider = price_provider

    def reconcile_accounts(
        self,
        address: str | None = None,
        *,
        epoch: int | None = None,
        when: date | None = None,
        reconcile_no_sync: bool = False,
    ) -> list[TrackedAccount]:
        accounts = self.store.get_account_tokens(address) if address is not None else self.store.get_accounts()
        reconciled = []
        for account in accounts:
            if account.no_sync and not reconcile_no_sync:
                continue
            reconciled.append(self.reconcile_account_balance(account.address, account.asset, epoch=epoch, when=when))
        return reconciled

    def reconcile_account_balance(
        self, address: str, asset: Asset, *, epoch: int | None = None, when: date | None = None
    ) -> TrackedAccount:
        """Compare the tracked balance with the chain balance and absorb any increase.

        No-sync accounts add the increase to their lowest-basis lot. Synced
        accounts record an increase above dust as a new lot of unknown
        provenance. A shortfall is only reported.
        """
        grown: Lot | None = None
        unexplained: Lot | None = None
        with self.store.transaction():
            account = self.store.require_account(address, asset)
            current_balance = self.chain.balance(address, asset)
            additional = current_balance - account.last_update_balance

            if additional < 0:
                logger.warning(
                    "%s (%s) balance is less than expected. Actual: %s, expected: %s",
                    address,
                    asset,
                    asset.format_amount(current_balance),
                    asset.format_amount(account.last_update_balance),
                )
            elif account.no_sync:
                if account.lots and additional > 0:
                    grown = self._grow_lowest_basis_lot(account, current_balance)
            elif current_balance > account.last_update_balance + asset.amount(UNEXPLAINED_BALANCE_DUST):
                unexplained = self._add_unexplained_lot(account, current_balance, when or date.today())

            if epoch is not None and not account.no_sync:
                account.last_update_epoch = max(account.last_update_epoch, epoch)
            self.store.update_account(account)

        if grown is not None:
            logger.info(
                "%s (%s): additional %s added to lot %d",
                address,
                asset,
                asset.format_amount(additional),
                grown.lot_number,
            )
        if unexplained is not None:
            logger.info(
                "%s (%s): unexplained %s recorded as lot %d",
                address,
                asset,
                asset.format_amount(unexplained.amount),
                unexplained.lot_number,
            )
        return account

    def record_epoch_reward(
        self,
        address: str,
        asset: Asset,
        *,
        epoch: int,
        slot: int,
        amount: int,
        when: date,
        price: Decimal | None = None,
    ) -> Lot | None:
        """Append a staking reward lot; epochs at or below the high-water mark are skipped."""
        if not asset.is_native:
            raise AssetMismatchError(Asset.SOL, asset)

        with self.store.transaction():
            account = self.store.require_account(address, asset)
            if account.last_update_epoch >= epoch:
                return None

            if price is None:
                price = require_historical_price(self.price_provider, asset, when)
            lot = Lot(
                lot_number=self.store.next_lot_number(),
                acquisition=LotAcquisition(when=when, price=price, kind=EpochRewardAcquisition(epoch=epoch, slot=slot)),
                amount=amount,
            )
            account.lots.append(lot)
            account.last_update_balance += amount
            account.last_update_epoch = epoch
            self.store.update_account(account)

        logger.info("%s: epoch %d reward of %s", address, epoch, asset.format_amount(amount))
        return lot

    def _grow_lowest_basis_lot(self, account: TrackedAccount, current_balance: int) -> Lot:
        lowest_basis = sort_lots(account.lots, LotSelectionMethod.LOWEST_BASIS)[0]
        lowest_basis.amount += current_balance - account.last_update_balance
        account.last_update_balance = current_balance
        return lowest_basis

    def _add_unexplained_lot(self, account: TrackedAccount, current_balance: int, when: date) -> Lot:
        lot = Lot(
            lot_number=self.store.next_lot_number(),
            acquisition=LotAcquisition(
                when=when,
                price=require_historical_price(self.price_provider, account.asset, when),
                kind=NotAvailableAcquisition(),
            ),
            amount=current_balance - account.last_update_balance,
        )
        account.lots.append(lot)
        account.last_update_balance = current_balance
        return lot


__all__ = ["BalanceReconciler", "DEPOSIT_MISMATCH_TOLERANCE", "PendingReconciler", "UNEXPLAINED_BALANCE_DUST"]
