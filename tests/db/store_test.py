from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from lotledger.db.db import init_db
from lotledger.db.store import LedgerStore
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
from lotledger.domain.ledger import (
    Address,
    DisposedLot,
    EpochRewardAcquisition,
    SaleDisposal,
    SweepStakeAccount,
    TaxRate,
)
from lotledger.domain.lot_selection import LotSelectionMethod
from lotledger.domain.pending import PendingDeposit, PendingSwap, PendingTransfer, PendingWithdrawal, TransferDescriptor
from tests.helpers.builders import DAY0, add_account_with_lots, day, make_account, make_lot


def _descriptor(signature: str, amount: int | None = 10) -> TransferDescriptor:
    return TransferDescriptor(
        signature=signature,
        last_valid_block_height=1000,
        from_address=Address("a"),
        from_asset=Asset.SOL,
        to_address=Address("b"),
        to_asset=Asset.SOL,
        amount=amount,
    )


def test_add_and_get_account_round_trips_lots(store: LedgerStore) -> None:
    reward = make_lot(1, 5, "12.5", day(3), EpochRewardAcquisition(epoch=400, slot=123))
    store.add_account(make_account("a", Asset.SOL, [make_lot(2, 10, "1"), reward], description="main"))

    account = store.require_account("a", Asset.SOL)
    assert account.description == "main"
    assert account.last_update_balance == 15
    assert [lot.lot_number for lot in account.lots] == [1, 2]
    assert account.lots[0] == reward


def test_add_account_twice_raises(store: LedgerStore) -> None:
    store.add_account(make_account("a"))

    with pytest.raises(AlreadyExistsError):
        store.add_account(make_account("a"))


def test_add_account_with_unbalanced_lots_raises(store: LedgerStore) -> None:
    account = make_account("a", lots=[make_lot(1, 10)])
    account.last_update_balance = 9

    with pytest.raises(InvariantViolation):
        store.add_account(account)
    assert store.get_account("a", Asset.SOL) is None


def test_get_account_tokens_and_accounts(store: LedgerStore) -> None:
    store.add_account(make_account("a", Asset.SOL))
    store.add_account(make_account("a", Asset.USDC))
    store.add_account(make_account("b", Asset.SOL))

    assert [account.asset for account in store.get_account_tokens("a")] == [Asset.SOL, Asset.USDC]
    assert [account.key for account in store.get_accounts()] == [
        ("a", Asset.SOL),
        ("a", Asset.USDC),
        ("b", Asset.SOL),
    ]


def test_remove_account_requires_force_when_lots_remain(store: LedgerStore) -> None:
    store.add_account(make_account("a", lots=[make_lot(1, 10)]))

    with pytest.raises(AccountNotEmptyError):
        store.remove_account("a", Asset.SOL)

    store.remove_account("a", Asset.SOL, force=True)
    assert store.get_account("a", Asset.SOL) is None
    with pytest.raises(LotNotFoundError):
        store.find_lot(1)


def test_remove_unknown_account_raises(store: LedgerStore) -> None:
    with pytest.raises(AccountNotFoundError):
        store.remove_account("nope", Asset.SOL)


def test_lot_numbers_are_unique_and_survive_restart(tmp_path: Path) -> None:
    db_file = tmp_path / "ledger.db"
    store = LedgerStore(init_db(db_file=db_file))
    first = [store.next_lot_number() for _ in range(3)]
    store.session.close()

    reopened = LedgerStore(init_db(db_file=db_file))
    assert first == [1, 2, 3]
    assert reopened.next_lot_number() == 4
    reopened.session.close()


def test_failed_transaction_rolls_back(store: LedgerStore) -> None:
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.add_account(make_account("a"))
            store.next_lot_number()
            raise RuntimeError("boom")

    assert store.get_accounts() == []
    assert store.next_lot_number() == 1


def test_swap_lots_of_equal_amount(store: LedgerStore) -> None:
    add_account_with_lots(store, "a", Asset.SOL, [(10, "1", DAY0)])
    add_account_with_lots(store, "b", Asset.SOL, [(10, "5", day(1))])

    store.swap_lots(1, 2)

    assert [lot.lot_number for lot in store.require_account("a", Asset.SOL).lots] == [2]
    assert [lot.lot_number for lot in store.require_account("b", Asset.SOL).lots] == [1]


def test_swap_lots_of_different_amounts_keeps_balances(store: LedgerStore) -> None:
    add_account_with_lots(store, "a", Asset.SOL, [(30, "1", DAY0)])
    add_account_with_lots(store, "b", Asset.wSOL, [(10, "5", day(1))])

    store.swap_lots(1, 2)

    a = store.require_account("a", Asset.SOL)
    b = store.require_account("b", Asset.wSOL)
    assert a.last_update_balance == 30
    assert b.last_update_balance == 10
    assert [(lot.lot_number, lot.amount, lot.acquisition.price) for lot in a.lots] == [
        (1, 20, Decimal(1)),
        (2, 10, Decimal(5)),
    ]
    assert [(lot.lot_number, lot.amount, lot.acquisition.price) for lot in b.lots] == [(3, 10, Decimal(1))]


def test_swap_lots_within_one_account_is_noop(store: LedgerStore) -> None:
    add_account_with_lots(store, "a", Asset.SOL, [(10, "1", DAY0), (20, "2", DAY0)])

    store.swap_lots(1, 2)

    assert [(lot.lot_number, lot.amount) for lot in store.require_account("a", Asset.SOL).lots] == [(1, 10), (2, 20)]


def test_swap_lots_errors(store: LedgerStore) -> None:
    add_account_with_lots(store, "a", Asset.SOL, [(10, "1", DAY0)])
    add_account_with_lots(store, "b", Asset.USDC, [(10, "1", DAY0)])

    with pytest.raises(LotNotFoundError) as excinfo:
        store.swap_lots(1, 42)
    assert excinfo.value.lot_numbers == [42]

    with pytest.raises(AssetMismatchError):
        store.swap_lots(1, 2)


def test_move_lot(store: LedgerStore) -> None:
    add_account_with_lots(store, "a", Asset.SOL, [(10, "1", DAY0), (5, "2", DAY0)])
    store.add_account(make_account("b", Asset.SOL))

    store.move_lot(2, "b")

    assert store.require_account("a", Asset.SOL).last_update_balance == 10
    b = store.require_account("b", Asset.SOL)
    assert b.last_update_balance == 5
    assert [lot.lot_number for lot in b.lots] == [2]
    assert store.find_lot(2)[0].address == "b"


def test_move_lot_to_untracked_account_raises(store: LedgerStore) -> None:
    add_account_with_lots(store, "a", Asset.SOL, [(10, "1", DAY0)])

    with pytest.raises(AccountNotFoundError):
        store.move_lot(1, "b")
    assert store.find_lot(1)[0].address == "a"


def test_delete_lot(store: LedgerStore) -> None:
    add_account_with_lots(store, "a", Asset.SOL, [(10, "1", DAY0), (5, "2", DAY0)])

    store.delete_lot(1)

    account = store.require_account("a", Asset.SOL)
    assert [lot.lot_number for lot in account.lots] == [2]
    assert account.last_update_balance == 5


def test_delete_lot_with_disposal_history_raises(store: LedgerStore) -> None:
    add_account_with_lots(store, "a", Asset.SOL, [(10, "1", DAY0)])
    store.add_disposed_lots(
        [
            DisposedLot(
                lot=make_lot(1, 4, "1", DAY0),
                address=Address("a"),
                asset=Asset.SOL,
                when=day(1),
                price=Decimal(2),
                kind=SaleDisposal(),
            )
        ]
    )

    with pytest.raises(LotAlreadyDisposedError):
        store.delete_lot(1)
    with pytest.raises(LotNotFoundError):
        store.delete_lot(99)


def test_disposed_lots_round_trip(store: LedgerStore) -> None:
    disposed = DisposedLot(
        lot=make_lot(7, 4, "1.25", DAY0),
        address=Address("a"),
        asset=Asset.JUP,
        when=day(1),
        price=Decimal("2.5"),
        kind=SaleDisposal(exchange="kraken", pair="JUPUSD", order_id="o-1"),
    )
    store.add_disposed_lots([disposed])

    assert store.disposed_lots() == [disposed]


def test_pending_records_round_trip(store: LedgerStore) -> None:
    deposit = PendingDeposit(transfer=_descriptor("d1"), exchange="kraken", lot_numbers={1, 2})
    withdrawal = PendingWithdrawal(
        exchange="kraken",
        tag="w1",
        asset=Asset.SOL,
        amount=10,
        fee=1,
        from_address=Address("x"),
        to_address=Address("y"),
        lot_selection_method=LotSelectionMethod.LIFO,
    )
    transfer = PendingTransfer(transfer=_descriptor("t1", amount=None))
    swap = PendingSwap(
        signature="s1",
        last_valid_block_height=5,
        address=Address("a"),
        from_asset=Asset.USDC,
        from_price=Decimal(1),
        to_asset=Asset.SOL,
        to_price=Decimal("20.5"),
    )

    store.add_pending_deposit(deposit)
    store.add_pending_withdrawal(withdrawal)
    store.add_pending_transfer(transfer)
    store.add_pending_swap(swap)

    assert store.get_pending_deposit("d1") == deposit
    assert store.get_pending_withdrawal("w1") == withdrawal
    assert store.get_pending_transfer("t1") == transfer
    assert store.get_pending_swap("s1") == swap
    assert store.pending_deposits("kraken") == [deposit]
    assert store.pending_deposits("coinbase") == []
    assert store.pending_withdrawals("kraken") == [withdrawal]


def test_duplicate_pending_signature_is_invariant_violation(store: LedgerStore) -> None:
    store.add_pending_deposit(PendingDeposit(transfer=_descriptor("sig"), exchange="kraken"))

    with pytest.raises(InvariantViolation):
        store.add_pending_transfer(PendingTransfer(transfer=_descriptor("sig")))
    assert store.pending_transfers() == []


def test_duplicate_withdrawal_tag_is_invariant_violation(store: LedgerStore) -> None:
    withdrawal = PendingWithdrawal(
        exchange="kraken", tag="w", asset=Asset.SOL, amount=2, fee=0, from_address="x", to_address="y"
    )
    store.add_pending_withdrawal(withdrawal)

    with pytest.raises(InvariantViolation):
        store.add_pending_withdrawal(withdrawal)


def test_missing_pending_record_raises(store: LedgerStore) -> None:
    with pytest.raises(PendingOperationNotFoundError):
        store.get_pending_swap("missing")
    with pytest.raises(PendingOperationNotFoundError):
        store.remove_pending_deposit("missing")


def test_tax_rate_and_sweep_configuration(store: LedgerStore) -> None:
    assert store.get_tax_rate() is None
    tax_rate = TaxRate(income=Decimal("0.35"), short_term_gain=Decimal("0.35"), long_term_gain=Decimal("0.2"))
    store.set_tax_rate(tax_rate)
    assert store.get_tax_rate() == tax_rate

    sweep = SweepStakeAccount(address=Address("stake"), stake_authority=Path("/keys/authority.json"))
    store.set_sweep_stake_account(sweep)
    assert store.get_sweep_stake_account() == sweep

    store.add_transitory_sweep_address("t1")
    store.add_transitory_sweep_address("t2")
    store.remove_transitory_sweep_address("t1")
    assert store.get_transitory_sweep_addresses() == ["t2"]
