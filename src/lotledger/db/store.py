from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from lotledger.db.repositories import (
    AccountRepository,
    DisposedLotRepository,
    PendingDepositRepository,
    PendingSwapRepository,
    PendingTransferRepository,
    PendingWithdrawalRepository,
    SettingsRepository,
    TransitorySweepAddressRepository,
)
from lotledger.domain.assets import Asset
from lotledger.domain.errors import (
    AccountNotEmptyError,
    AccountNotFoundError,
    AlreadyExistsError,
    AssetMismatchError,
    InvariantViolation,
    LotAlreadyDisposedError,
    LotNotFoundError,
    PendingOperationNotFoundError,
)
from lotledger.domain.ledger import Address, DisposedLot, Lot, SweepStakeAccount, TaxRate, TrackedAccount
from lotledger.domain.pending import PendingDeposit, PendingKind, PendingSwap, PendingTransfer, PendingWithdrawal

logger = logging.getLogger(__name__)

LOT_COUNTER_KEY = "lot_counter"
TAX_RATE_KEY = "tax_rate"
SWEEP_STAKE_ACCOUNT_KEY = "sweep_stake_account"


def _interchangeable(a: Asset, b: Asset) -> bool:
    return a == b or (a.is_sol_or_wsol() and b.is_sol_or_wsol())


class LedgerStore:
    """Durable accounts, lots, pending operations and ledger configuration.

    Every mutator runs inside :meth:`transaction`; blocks nest and only the
    outermost one commits. An exception anywhere inside rolls the whole
    session back, so a failed operation leaves the store unchanged.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._depth = 0
        self._accounts = AccountRepository(session)
        self._disposed_lots = DisposedLotRepository(session)
        self._deposits = PendingDepositRepository(session)
        self._withdrawals = PendingWithdrawalRepository(session)
        self._transfers = PendingTransferRepository(session)
        self._swaps = PendingSwapRepository(session)
        self._settings = SettingsRepository(session)
        self._sweep_addresses = TransitorySweepAddressRepository(session)

    @property
    def session(self) -> Session:
        return self._session

    @contextmanager
    def transaction(self) -> Iterator[LedgerStore]:
        if self._depth > 0:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield self
        except BaseException:
            self._session.rollback()
            raise
        else:
            self._session.commit()
        finally:
            self._depth = 0

    # Accounts

    def add_account(self, account: TrackedAccount) -> TrackedAccount:
        with self.transaction():
            if self._accounts.get(account.address, account.asset) is not None:
                raise AlreadyExistsError(
                    f"Account already tracked: {account.address} ({account.asset})",
                    key=f"{account.address}:{account.asset}",
                )
            account.assert_lot_balance()
            self._accounts.create(account)
        logger.info("Tracking account %s (%s)", account.address, account.asset)
        return account

    def get_account(self, address: str, asset: Asset) -> TrackedAccount | None:
        return self._accounts.get(address, asset)

    def require_account(self, address: str, asset: Asset) -> TrackedAccount:
        account = self._accounts.get(address, asset)
        if account is None:
            raise AccountNotFoundError(address, asset)
        return account

    def get_account_tokens(self, address: str) -> list[TrackedAccount]:
        return self._accounts.list_for_address(address)

    def get_accounts(self) -> list[TrackedAccount]:
        return self._accounts.list()

    def update_account(self, account: TrackedAccount) -> TrackedAccount:
        self.update_accounts([account])
        return account

    def update_accounts(self, accounts: Iterable[TrackedAccount]) -> None:
        """Full replace of each account and its lots, applied atomically.

        Lots listed on an account are re-owned by it even if another account
        held them before, which is how lots move between accounts.
        """
        with self.transaction():
            for account in accounts:
                account.assert_lot_balance()
                if self._accounts.get(account.address, account.asset) is None:
                    raise AccountNotFoundError(account.address, account.asset)
                self._accounts.update(account)

    def remove_account(self, address: str, asset: Asset, *, force: bool = False) -> None:
        with self.transaction():
            account = self.require_account(address, asset)
            if account.lots and not force:
                raise AccountNotEmptyError(address, asset, len(account.lots))
            self._accounts.delete(address, asset)
        logger.info("Removed account %s (%s)", address, asset)

    # Lots

    def next_lot_number(self) -> int:
        with self.transaction():
            raw = self._settings.get(LOT_COUNTER_KEY)
            lot_number = (json.loads(raw) if raw is not None else 0) + 1
            self._settings.set(LOT_COUNTER_KEY, json.dumps(lot_number))
        return lot_number

    def find_lot(self, lot_number: int) -> tuple[TrackedAccount, Lot]:
        owner = self._accounts.find_lot_owner(lot_number)
        if owner is None:
            raise LotNotFoundError([lot_number])
        account = self.require_account(*owner)
        lot = next(lot for lot in account.lots if lot.lot_number == lot_number)
        return account, lot

    def swap_lots(self, lot_number_a: int, lot_number_b: int) -> None:
        """Exchange which accounts hold the two lots.

        Both account balances stay unchanged: when the amounts differ, the
        larger lot keeps its number and its excess in place, and only a new
        lot (same acquisition) matching the smaller amount changes owner.
        """
        with self.transaction():
            missing = [number for number in (lot_number_a, lot_number_b) if self._accounts.find_lot_owner(number) is None]
            if missing:
                raise LotNotFoundError(missing)

            account_a, lot_a = self.find_lot(lot_number_a)
            account_b, lot_b = self.find_lot(lot_number_b)
            if account_a.key == account_b.key:
                return
            if not _interchangeable(account_a.asset, account_b.asset):
                raise AssetMismatchError(account_a.asset, account_b.asset)

            _detach(account_a, lot_a)
            _detach(account_b, lot_b)
            if lot_a.amount > lot_b.amount:
                moving = self._split_off(lot_a, lot_b.amount)
                _attach(account_a, lot_a)
                lot_a = moving
            elif lot_b.amount > lot_a.amount:
                moving = self._split_off(lot_b, lot_a.amount)
                _attach(account_b, lot_b)
                lot_b = moving
            _attach(account_a, lot_b)
            _attach(account_b, lot_a)
            self.update_accounts([account_a, account_b])
        logger.info(
            "Swapped lot %d (%s) with lot %d (%s)",
            lot_a.lot_number,
            account_a.address,
            lot_b.lot_number,
            account_b.address,
        )

    def _split_off(self, lot: Lot, amount: int) -> Lot:
        """Shrink ``lot`` by ``amount`` and return that amount as a new numbered lot."""
        lot.amount -= amount
        return lot.model_copy(update={"lot_number": self.next_lot_number(), "amount": amount}, deep=True)

    def move_lot(self, lot_number: int, new_address: str) -> None:
        with self.transaction():
            source, lot = self.find_lot(lot_number)
            if source.address == new_address:
                return
            destination = self.require_account(new_address, source.asset)

            _detach(source, lot)
            _attach(destination, lot)
            self.update_accounts([source, destination])
        logger.info("Moved lot %d from %s to %s", lot_number, source.address, new_address)

    def delete_lot(self, lot_number: int) -> None:
        with self.transaction():
            account, lot = self.find_lot(lot_number)
            if self._disposed_lots.exists_for_lot(lot_number):
                raise LotAlreadyDisposedError(lot_number)
            _detach(account, lot)
            self.update_account(account)
        logger.info("Deleted lot %d from %s (%s)", lot_number, account.address, account.asset)

    # Disposals

    def add_disposed_lots(self, disposed_lots: list[DisposedLot]) -> None:
        with self.transaction():
            self._disposed_lots.create_many(disposed_lots)

    def disposed_lots(self) -> list[DisposedLot]:
        return self._disposed_lots.list()

    # Pending operations

    def _assert_signature_free(self, signature: str) -> None:
        for kind, repository in (
            (PendingKind.DEPOSIT, self._deposits),
            (PendingKind.TRANSFER, self._transfers),
            (PendingKind.SWAP, self._swaps),
        ):
            if repository.get(signature) is not None:
                raise InvariantViolation(f"Signature {signature} already has a pending {kind}")

    def add_pending_deposit(self, deposit: PendingDeposit) -> PendingDeposit:
        with self.transaction():
            self._assert_signature_free(deposit.signature)
            return self._deposits.create(deposit)

    def get_pending_deposit(self, signature: str) -> PendingDeposit:
        deposit = self._deposits.get(signature)
        if deposit is None:
            raise PendingOperationNotFoundError(PendingKind.DEPOSIT, signature)
        return deposit

    def pending_deposits(self, exchange: str | None = None) -> list[PendingDeposit]:
        return self._deposits.list(exchange)

    def remove_pending_deposit(self, signature: str) -> None:
        with self.transaction():
            self.get_pending_deposit(signature)
            self._deposits.delete(signature)

    def add_pending_withdrawal(self, withdrawal: PendingWithdrawal) -> PendingWithdrawal:
        with self.transaction():
            if self._withdrawals.get(withdrawal.tag) is not None:
                raise InvariantViolation(f"Withdrawal tag {withdrawal.tag} is already pending")
            return self._withdrawals.create(withdrawal)

    def get_pending_withdrawal(self, tag: str) -> PendingWithdrawal:
        withdrawal = self._withdrawals.get(tag)
        if withdrawal is None:
            raise PendingOperationNotFoundError(PendingKind.WITHDRAWAL, tag)
        return withdrawal

    def pending_withdrawals(self, exchange: str | None = None) -> list[PendingWithdrawal]:
        return self._withdrawals.list(exchange)

    def remove_pending_withdrawal(self, tag: str) -> None:
        with self.transaction():
            self.get_pending_withdrawal(tag)
            self._withdrawals.delete(tag)

    def add_pending_transfer(self, transfer: PendingTransfer) -> PendingTransfer:
        with self.transaction():
            self._assert_signature_free(transfer.signature)
            return self._transfers.create(transfer)

    def get_pending_transfer(self, signature: str) -> PendingTransfer:
        transfer = self._transfers.get(signature)
        if transfer is None:
            raise PendingOperationNotFoundError(PendingKind.TRANSFER, signature)
        return transfer

    def pending_transfers(self) -> list[PendingTransfer]:
        return self._transfers.list()

    def remove_pending_transfer(self, signature: str) -> None:
        with self.transaction():
            self.get_pending_transfer(signature)
            self._transfers.delete(signature)

    def add_pending_swap(self, swap: PendingSwap) -> PendingSwap:
        with self.transaction():
            self._assert_signature_free(swap.signature)
            return self._swaps.create(swap)

    def get_pending_swap(self, signature: str) -> PendingSwap:
        swap = self._swaps.get(signature)
        if swap is None:
            raise PendingOperationNotFoundError(PendingKind.SWAP, signature)
        return swap

    def pending_swaps(self) -> list[PendingSwap]:
        return self._swaps.list()

    def remove_pending_swap(self, signature: str) -> None:
        with self.transaction():
            self.get_pending_swap(signature)
            self._swaps.delete(signature)

    # Configuration

    def get_tax_rate(self) -> TaxRate | None:
        raw = self._settings.get(TAX_RATE_KEY)
        if raw is None:
            return None
        return TaxRate.model_validate_json(raw)

    def set_tax_rate(self, tax_rate: TaxRate) -> None:
        with self.transaction():
            self._settings.set(TAX_RATE_KEY, tax_rate.model_dump_json())

    def get_sweep_stake_account(self) -> SweepStakeAccount | None:
        raw = self._settings.get(SWEEP_STAKE_ACCOUNT_KEY)
        if raw is None:
            return None
        return SweepStakeAccount.model_validate_json(raw)

    def set_sweep_stake_account(self, sweep_stake_account: SweepStakeAccount) -> None:
        with self.transaction():
            self._settings.set(SWEEP_STAKE_ACCOUNT_KEY, sweep_stake_account.model_dump_json())

    def get_transitory_sweep_addresses(self) -> list[Address]:
        return self._sweep_addresses.list()

    def add_transitory_sweep_address(self, address: str) -> None:
        with self.transaction():
            self._sweep_addresses.add(address)

    def remove_transitory_sweep_address(self, address: str) -> None:
        with self.transaction():
            self._sweep_addresses.remove(address)


def _detach(account: TrackedAccount, lot: Lot) -> None:
    account.lots = [held for held in account.lots if held.lot_number != lot.lot_number]
    account.last_update_balance -= lot.amount


def _attach(account: TrackedAccount, lot: Lot) -> None:
    account.lots = sorted([*account.lots, lot], key=lambda held: held.lot_number)
    account.last_update_balance += lot.amount
