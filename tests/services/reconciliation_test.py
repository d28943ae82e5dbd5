from __future__ import annotations

import logging
from decimal import Decimal

import pytest

from lotledger.db.store import LedgerStore
from lotledger.domain.assets import Asset
from lotledger.domain.errors import AssetMismatchError
from lotledger.domain.ledger import Address
from lotledger.domain.pending import PendingKind, PendingResolution, PendingSwap, PendingWithdrawal, TransferDescriptor
from lotledger.services.clients import (
    ChainError,
    ConfirmedTransaction,
    DepositCompletion,
    SwapAmounts,
    WithdrawalCompletion,
)
from lotledger.services.pending_operations import PendingOperationService, ResolvedOperation
from lotledger.services.reconciliation import BalanceReconciler, PendingReconciler
from tests.helpers.builders import add_account_with_lots, day, make_account
from tests.helpers.fakes import FakeChain, FakeExchange, FixedPriceProvider

UNIT = 1_000_000_000


def _deposit_transfer(signature: str, amount: int = 100) -> TransferDescriptor:
    return TransferDescriptor(
        signature=signature,
        last_valid_block_height=1000,
        from_address=Address("wallet"),
        from_asset=Asset.SOL,
        to_address=Address("kraken-addr"),
        to_asset=Asset.SOL,
        amount=amount,
    )


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain(height=900)


@pytest.fixture
def reconciler(pending_service: PendingOperationService, chain: FakeChain) -> PendingReconciler:
    return PendingReconciler(pending_service, chain)


@pytest.fixture
def funded_wallet(store: LedgerStore) -> None:
    add_account_with_lots(store, "wallet", Asset.SOL, [(1000, "1", day(0))])


@pytest.mark.usefixtures("funded_wallet")
def test_sync_transfers_resolves_each_outcome(
    pending_service: PendingOperationService, reconciler: PendingReconciler, chain: FakeChain, store: LedgerStore
) -> None:
    for signature, height in (("ok", 1000), ("err", 1000), ("gone", 950), ("waiting", 1000)):
        pending_service.open_transfer(
            TransferDescriptor(
                signature=signature,
                last_valid_block_height=height,
                from_address=Address("wallet"),
                from_asset=Asset.SOL,
                to_address=Address("cold"),
                to_asset=Asset.SOL,
                amount=100,
            )
        )
    chain.statuses["ok"] = ConfirmedTransaction(when=day(1))
    chain.statuses["err"] = ChainError("InsufficientFunds")
    chain.height = 960

    resolved = reconciler.sync_transfers()

    assert sorted(resolved, key=lambda op: op.key) == [
        ResolvedOperation(PendingKind.TRANSFER, "err", PendingResolution.FAILED),
        ResolvedOperation(PendingKind.TRANSFER, "gone", PendingResolution.EXPIRED),
        ResolvedOperation(PendingKind.TRANSFER, "ok", PendingResolution.CONFIRMED),
    ]
    assert [transfer.signature for transfer in store.pending_transfers()] == ["waiting"]
    assert store.require_account("cold", Asset.SOL).last_update_balance == 100


@pytest.mark.usefixtures("funded_wallet")
def test_sync_transfer_uses_chain_amount_for_sweeps(
    pending_service: PendingOperationService, reconciler: PendingReconciler, chain: FakeChain, store: LedgerStore
) -> None:
    pending_service.open_transfer(
        TransferDescriptor(
            signature="sweep",
            last_valid_block_height=1000,
            from_address=Address("wallet"),
            from_asset=Asset.SOL,
            to_address=Address("cold"),
            to_asset=Asset.SOL,
        )
    )
    chain.statuses["sweep"] = ConfirmedTransaction(when=day(1))
    chain.transfer_amounts["sweep"] = 990

    reconciler.sync_transfers()

    assert store.require_account("cold", Asset.SOL).last_update_balance == 990
    assert store.require_account("wallet", Asset.SOL).last_update_balance == 10


def test_sync_swaps_confirms_with_chain_amounts(
    store: LedgerStore, pending_service: PendingOperationService, reconciler: PendingReconciler, chain: FakeChain
) -> None:
    add_account_with_lots(store, "wallet", Asset.USDC, [(50_000_000, "1", day(0))])
    pending_service.open_swap(
        PendingSwap(
            signature="swap",
            last_valid_block_height=1000,
            address=Address("wallet"),
            from_asset=Asset.USDC,
            from_price=Decimal(1),
            to_asset=Asset.JUP,
            to_price=Decimal("0.5"),
        )
    )
    chain.statuses["swap"] = ConfirmedTransaction(when=day(2))
    chain.swaps["swap"] = SwapAmounts(from_amount=10_000_000, to_amount=20_000_000)

    assert reconciler.sync_swaps() == [ResolvedOperation(PendingKind.SWAP, "swap", PendingResolution.CONFIRMED)]
    assert store.require_account("wallet", Asset.JUP).last_update_balance == 20_000_000
    assert store.require_account("wallet", Asset.USDC).last_update_balance == 40_000_000


@pytest.mark.usefixtures("funded_wallet")
def test_sync_deposits_tolerates_small_shortfall(
    pending_service: PendingOperationService, reconciler: PendingReconciler, chain: FakeChain, store: LedgerStore
) -> None:
    exchange = FakeExchange()
    pending_service.open_deposit(_deposit_transfer("small"), exchange.name)
    pending_service.open_deposit(_deposit_transfer("large"), exchange.name)
    pending_service.open_deposit(_deposit_transfer("unreported"), exchange.name)
    for signature in ("small", "large", "unreported"):
        chain.statuses[signature] = ConfirmedTransaction(when=day(1))
    exchange.deposits["small"] = DepositCompletion(when=day(1), amount=91)
    exchange.deposits["large"] = DepositCompletion(when=day(1), amount=90)

    resolved = reconciler.sync_deposits(exchange)

    assert resolved == [ResolvedOperation(PendingKind.DEPOSIT, "small", PendingResolution.CONFIRMED)]
    assert sorted(deposit.signature for deposit in store.pending_deposits()) == ["large", "unreported"]
    assert store.require_account("kraken-addr", Asset.SOL).last_update_balance == 100


@pytest.mark.usefixtures("funded_wallet")
def test_sync_deposits_failed_and_expired(
    pending_service: PendingOperationService, reconciler: PendingReconciler, chain: FakeChain, store: LedgerStore
) -> None:
    exchange = FakeExchange()
    pending_service.open_deposit(_deposit_transfer("failed"), exchange.name)
    pending_service.open_deposit(_deposit_transfer("lost"), exchange.name)
    chain.statuses["failed"] = ChainError("BlockhashNotFound")
    chain.height = 1001

    resolved = reconciler.sync_deposits(exchange)

    assert resolved == [
        ResolvedOperation(PendingKind.DEPOSIT, "failed", PendingResolution.FAILED),
        ResolvedOperation(PendingKind.DEPOSIT, "lost", PendingResolution.EXPIRED),
    ]
    assert store.pending_deposits() == []
    assert store.require_account("wallet", Asset.SOL).last_update_balance == 1000


def test_sync_deposits_blind_exchange(
    store: LedgerStore, pending_service: PendingOperationService, reconciler: PendingReconciler, chain: FakeChain
) -> None:
    add_account_with_lots(store, "wallet", Asset.USDC, [(100, "1", day(0))])
    exchange = FakeExchange(name="coinbase", supports_deposit_history=False)
    pending_service.open_deposit(
        TransferDescriptor(
            signature="usdc",
            last_valid_block_height=1000,
            from_address=Address("wallet"),
            from_asset=Asset.USDC,
            to_address=Address("coinbase-addr"),
            to_asset=Asset.USDC,
            amount=100,
        ),
        exchange.name,
    )
    chain.statuses["usdc"] = ConfirmedTransaction(when=day(1))

    assert reconciler.sync_deposits(exchange) == [
        ResolvedOperation(PendingKind.DEPOSIT, "usdc", PendingResolution.DROPPED)
    ]
    assert store.require_account("wallet", Asset.USDC).lots == []
    assert store.get_account("coinbase-addr", Asset.USDC) is None


def test_sync_withdrawals(
    store: LedgerStore, pending_service: PendingOperationService, reconciler: PendingReconciler
) -> None:
    add_account_with_lots(store, "kraken-addr", Asset.SOL, [(100, "1", day(0))])
    store.add_account(make_account("wallet", Asset.SOL))
    exchange = FakeExchange()
    for tag in ("done", "rejected", "waiting"):
        pending_service.open_withdrawal(
            PendingWithdrawal(
                exchange=exchange.name,
                tag=tag,
                asset=Asset.SOL,
                amount=20,
                fee=0,
                from_address=Address("kraken-addr"),
                to_address=Address("wallet"),
            )
        )
    exchange.withdrawals["done"] = WithdrawalCompletion(when=day(1), tx_ref="chain-sig")
    exchange.withdrawals["rejected"] = WithdrawalCompletion(when=day(1), tx_ref=None)

    resolved = reconciler.sync_withdrawals(exchange)

    assert resolved == [
        ResolvedOperation(PendingKind.WITHDRAWAL, "done", PendingResolution.CONFIRMED),
        ResolvedOperation(PendingKind.WITHDRAWAL, "rejected", PendingResolution.REJECTED),
    ]
    assert [withdrawal.tag for withdrawal in store.pending_withdrawals()] == ["waiting"]
    assert store.require_account("wallet", Asset.SOL).last_update_balance == 20


def test_reconcile_adds_unexplained_lot_above_dust(
    store: LedgerStore, chain: FakeChain, price_provider: FixedPriceProvider
) -> None:
    add_account_with_lots(store, "wallet", Asset.SOL, [(UNIT, "10", day(0))])
    price_provider.historical[(Asset.SOL, day(9))] = Decimal(30)
    chain.balances[("wallet", Asset.SOL)] = 2 * UNIT
    reconciler = BalanceReconciler(store, chain, price_provider)

    account = reconciler.reconcile_account_balance("wallet", Asset.SOL, epoch=500, when=day(9))

    assert account.last_update_balance == 2 * UNIT
    assert account.last_update_epoch == 500
    assert account.lots[-1].acquisition.kind.kind == "not_available"
    assert account.lots[-1].acquisition.price == Decimal(30)


def test_reconcile_ignores_dust_and_shortfall(store: LedgerStore, chain: FakeChain) -> None:
    add_account_with_lots(store, "wallet", Asset.SOL, [(UNIT, "10", day(0))])
    add_account_with_lots(store, "other", Asset.SOL, [(UNIT, "10", day(0))])
    chain.balances[("wallet", Asset.SOL)] = UNIT + 4_000_000
    chain.balances[("other", Asset.SOL)] = UNIT // 2
    reconciler = BalanceReconciler(store, chain)

    reconciled = reconciler.reconcile_accounts(when=day(9))

    assert [account.last_update_balance for account in reconciled] == [UNIT, UNIT]
    assert [len(account.lots) for account in reconciled] == [1, 1]


def test_reconcile_no_sync_grows_lowest_basis_lot(store: LedgerStore, chain: FakeChain) -> None:
    add_account_with_lots(store, "vault", Asset.SOL, [(UNIT, "10", day(0)), (UNIT, "5", day(1))], no_sync=True)
    chain.balances[("vault", Asset.SOL)] = 2 * UNIT + 7
    reconciler = BalanceReconciler(store, chain)

    assert reconciler.reconcile_accounts(when=day(9)) == []
    (account,) = reconciler.reconcile_accounts(when=day(9), reconcile_no_sync=True)

    assert account.last_update_balance == 2 * UNIT + 7
    assert [(lot.lot_number, lot.amount) for lot in account.lots] == [(1, UNIT), (2, UNIT + 7)]


def test_reconcile_logs_growth_only_after_commit(
    store: LedgerStore, chain: FakeChain, monkeypatch: pytest.MonkeyPatch, caplog
) -> None:
    add_account_with_lots(store, "vault", Asset.SOL, [(UNIT, "10", day(0))], no_sync=True)
    chain.balances[("vault", Asset.SOL)] = UNIT + 7
    reconciler = BalanceReconciler(store, chain)
    caplog.set_level(logging.INFO, logger="lotledger.services.reconciliation")

    def fail(account):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "update_account", fail)
    with pytest.raises(RuntimeError):
        reconciler.reconcile_account_balance("vault", Asset.SOL)
    assert "added to lot" not in caplog.text
    assert store.require_account("vault", Asset.SOL).last_update_balance == UNIT

    monkeypatch.undo()
    reconciler.reconcile_account_balance("vault", Asset.SOL)
    assert "0.000000007 added to lot 1" in caplog.text


def test_epoch_reward_skips_seen_epochs(
    store: LedgerStore, chain: FakeChain, price_provider: FixedPriceProvider
) -> None:
    store.add_account(make_account("stake", Asset.SOL, last_update_epoch=400))
    price_provider.historical[(Asset.SOL, day(5))] = Decimal(25)
    reconciler = BalanceReconciler(store, chain, price_provider)

    assert reconciler.record_epoch_reward("stake", Asset.SOL, epoch=400, slot=1, amount=5, when=day(5)) is None
    lot = reconciler.record_epoch_reward("stake", Asset.SOL, epoch=401, slot=2, amount=5, when=day(5))

    assert lot is not None
    assert lot.acquisition.is_income
    account = store.require_account("stake", Asset.SOL)
    assert account.last_update_epoch == 401
    assert account.last_update_balance == 5

    with pytest.raises(AssetMismatchError):
        reconciler.record_epoch_reward("stake", Asset.mSOL, epoch=402, slot=3, amount=5, when=day(5))
