from __future__ import annotations

from datetime import date
from decimal import Decimal

from lotledger.domain.assets import Asset
from lotledger.domain.ledger import Address, DisposedLot, IncomeAcquisition, SaleDisposal, TaxRate
from lotledger.utils.tax_summary import (
    MONTH_TO_PAYMENT_PERIOD,
    RealizedGain,
    compute_average_cost_basis,
    compute_realized_gains,
    render_realized_gains,
)
from tests.helpers.builders import make_account, make_lot

UNIT = 1_000_000_000


def _disposed(lot_number: int, amount: int, price, acquired: date, disposed: date, sale_price, asset=Asset.SOL):
    return DisposedLot(
        lot=make_lot(lot_number, amount, price, acquired),
        address=Address("wallet"),
        asset=asset,
        when=disposed,
        price=Decimal(sale_price),
        kind=SaleDisposal(),
    )


def test_payment_periods() -> None:
    assert MONTH_TO_PAYMENT_PERIOD[0:3] == (0, 0, 0)
    assert MONTH_TO_PAYMENT_PERIOD[3:5] == (1, 1)
    assert MONTH_TO_PAYMENT_PERIOD[5:8] == (2, 2, 2)
    assert MONTH_TO_PAYMENT_PERIOD[8:] == (3, 3, 3, 3)


def test_estimated_tax_floors_each_component() -> None:
    rate = TaxRate(income=Decimal("0.3"), short_term_gain=Decimal("0.3"), long_term_gain=Decimal("0.15"))

    gain = RealizedGain(income=Decimal(100), short_term_cap_gain=Decimal(-500), long_term_cap_gain=Decimal(200))

    assert gain.estimated_tax(rate) == Decimal(30)


def test_realized_gains_by_period() -> None:
    income_lot = make_lot(3, 2 * UNIT, "10", date(2024, 4, 15), IncomeAcquisition(description="airdrop"))
    accounts = [make_account("wallet", Asset.SOL, [income_lot])]
    disposed = [
        _disposed(1, UNIT, "10", date(2023, 1, 1), date(2024, 2, 1), "30"),
        _disposed(2, UNIT, "20", date(2024, 1, 1), date(2024, 6, 1), "15"),
    ]

    annual = compute_realized_gains(disposed, accounts)

    year = annual[2024]
    assert year.by_payment_period[0].long_term_cap_gain == Decimal(20)
    assert year.by_payment_period[1].income == Decimal(20)
    assert year.by_payment_period[2].short_term_cap_gain == Decimal(-5)
    assert year.by_quarter[1].income == Decimal(20)
    assert year.by_quarter[1].short_term_cap_gain == Decimal(-5)
    assert year.total.cap_gain == Decimal(15)
    assert list(annual) == [2024]


def test_income_of_disposed_lot_counts_in_acquisition_year() -> None:
    reward = _disposed(1, UNIT, "10", date(2023, 12, 1), date(2024, 1, 2), "10")
    reward.lot.acquisition.kind = IncomeAcquisition()

    annual = compute_realized_gains([reward], [])

    assert annual[2023].total.income == Decimal(10)
    assert annual[2024].total.cap_gain == Decimal(0)


def test_average_cost_basis_merges_wsol_and_skips_fiat() -> None:
    accounts = [
        make_account("a", Asset.SOL, [make_lot(1, UNIT, "10", date(2024, 1, 1))]),
        make_account("a", Asset.wSOL, [make_lot(2, UNIT, "30", date(2024, 2, 1))]),
        make_account("a", Asset.USDC, [make_lot(3, 1_000_000, "1", date(2024, 1, 1))]),
        make_account("b", Asset.SOL, [make_lot(4, UNIT, "99", date(2024, 6, 1))]),
    ]
    disposed = [
        _disposed(5, UNIT, "20", date(2023, 1, 1), date(2024, 3, 1), "25"),
        _disposed(6, UNIT, "50", date(2023, 1, 1), date(2024, 2, 1), "25"),
    ]

    (entry,) = compute_average_cost_basis(date(2024, 3, 1), disposed, accounts)

    assert entry.asset == Asset.SOL
    assert entry.amount == 3 * UNIT
    assert entry.basis == Decimal(60)
    assert entry.price == Decimal(20)


def test_render_realized_gains(capsys) -> None:
    disposed = [_disposed(1, UNIT, "10", date(2023, 1, 1), date(2024, 2, 1), "30")]
    rate = TaxRate(income=Decimal("0.3"), short_term_gain=Decimal("0.3"), long_term_gain=Decimal("0.15"))

    render_realized_gains(compute_realized_gains(disposed, []), rate)

    out = capsys.readouterr().out
    assert "2024 P1" in out
    assert "$20.00" in out
    assert "$3.00" in out
