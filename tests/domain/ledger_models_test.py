from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from lotledger.domain.assets import Asset
from lotledger.domain.errors import InvariantViolation, LedgerError
from lotledger.domain.ledger import Address, LotAcquisition, FiatAcquisition, TaxRate
from lotledger.domain.pending import (
    PendingDeposit,
    PendingSwap,
    PendingWithdrawal,
    TransferDescriptor,
    is_expired,
)
from tests.helpers.builders import DAY0, make_account, make_lot


def _descriptor(amount: int | None = 10) -> TransferDescriptor:
    return TransferDescriptor(
        signature="sig",
        last_valid_block_height=1000,
        from_address=Address("a"),
        from_asset=Asset.SOL,
        to_address=Address("b"),
        to_asset=Asset.SOL,
        amount=amount,
    )


def test_asset_amount_conversion_truncates_dust() -> None:
    assert Asset.SOL.amount("1.5") == 1_500_000_000
    assert Asset.USDC.amount("0.0000019") == 1
    assert Asset.USDC.ui_amount(2_500_000) == Decimal("2.5")


def test_sol_and_wsol_are_interchangeable() -> None:
    assert Asset.SOL.is_sol_or_wsol() and Asset.wSOL.is_sol_or_wsol()
    assert not Asset.mSOL.is_sol_or_wsol()
    assert Asset.SOL.is_native and not Asset.wSOL.is_native


def test_negative_lot_amount_rejected() -> None:
    with pytest.raises(ValidationError):
        make_lot(1, -1)


def test_negative_acquisition_price_rejected() -> None:
    with pytest.raises(ValidationError):
        LotAcquisition(when=DAY0, price=Decimal("-1"), kind=FiatAcquisition())


def test_assert_lot_balance() -> None:
    account = make_account("a", lots=[make_lot(1, 5), make_lot(2, 7)])
    account.assert_lot_balance()

    account.last_update_balance = 13
    with pytest.raises(InvariantViolation) as excinfo:
        account.assert_lot_balance()
    assert not isinstance(excinfo.value, LedgerError)


def test_tax_rate_range() -> None:
    TaxRate(income=Decimal("0.3"), short_term_gain=Decimal("0.3"), long_term_gain=Decimal(0))

    with pytest.raises(ValidationError):
        TaxRate(income=Decimal("1.1"), short_term_gain=Decimal(0), long_term_gain=Decimal(0))


def test_transfer_amount_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        _descriptor(amount=0)
    assert _descriptor(amount=None).amount is None


def test_deposit_requires_amount_and_exchange() -> None:
    with pytest.raises(ValidationError):
        PendingDeposit(transfer=_descriptor(amount=None), exchange="kraken")
    with pytest.raises(ValidationError):
        PendingDeposit(transfer=_descriptor(), exchange="")

    deposit = PendingDeposit(transfer=_descriptor(amount=25), exchange="kraken")
    assert deposit.amount == 25
    assert deposit.signature == "sig"


def test_withdrawal_fee_within_amount() -> None:
    with pytest.raises(ValidationError):
        PendingWithdrawal(
            exchange="kraken",
            tag="t",
            asset=Asset.SOL,
            amount=10,
            fee=11,
            from_address=Address("x"),
            to_address=Address("y"),
        )


def test_swap_requires_distinct_assets() -> None:
    with pytest.raises(ValidationError):
        PendingSwap(
            signature="s",
            last_valid_block_height=1,
            address=Address("a"),
            from_asset=Asset.USDC,
            from_price=Decimal(1),
            to_asset=Asset.USDC,
            to_price=Decimal(1),
        )


def test_expiry_is_strictly_after_last_valid_height() -> None:
    assert not is_expired(1000, 1000)
    assert is_expired(1000, 1001)
