from __future__ import annotations

import argparse
import logging
from collections.abc import Callable, Sequence
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path

from lotledger.config import AppSettings, config
from lotledger.db.db import init_db
from lotledger.db.store import LedgerStore
from lotledger.domain.assets import Asset
from lotledger.domain.errors import LedgerError
from lotledger.domain.gains import basis, is_long_term
from lotledger.domain.ledger import (
    Address,
    IncomeAcquisition,
    Lot,
    LotAcquisition,
    NotAvailableAcquisition,
    SaleDisposal,
    TaxRate,
    TrackedAccount,
)
from lotledger.domain.lot_selection import LotSelectionMethod
from lotledger.services.coingecko_source import CoinGeckoSource
from lotledger.services.disposal_service import DisposalEngine
from lotledger.services.pending_operations import PendingOperationService
from lotledger.services.price_service import CurrentPriceCache, PriceService
from lotledger.services.price_store import JsonlPriceStore
from lotledger.services.store_lock import StoreLockedError, store_lock
from lotledger.utils.formatting import format_currency
from lotledger.utils.holdings_summary import compute_holdings_summary, render_holdings_summary
from lotledger.utils.tax_summary import (
    compute_average_cost_basis,
    compute_realized_gains,
    render_average_cost_basis,
    render_realized_gains,
)

logger = logging.getLogger(__name__)


def build_price_service(settings: AppSettings) -> PriceService:
    settings.price_cache_dir.mkdir(parents=True, exist_ok=True)
    oracle = CoinGeckoSource(api_key=settings.coingecko_api_key)
    return PriceService(
        oracle=oracle,
        store=JsonlPriceStore(root_dir=settings.price_cache_dir),
        cache=CurrentPriceCache(ttl_seconds=settings.current_price_ttl_seconds),
        source_name=oracle.source_name,
    )


class _Context:
    """Lazily built collaborators shared by the command handlers."""

    def __init__(self, settings: AppSettings, store: LedgerStore) -> None:
        self.settings = settings
        self.store = store
        self._price_service: PriceService | None = None

    @property
    def price_service(self) -> PriceService:
        if self._price_service is None:
            self._price_service = build_price_service(self.settings)
        return self._price_service

    @property
    def disposal_engine(self) -> DisposalEngine:
        return DisposalEngine(self.store)

    @property
    def pending(self) -> PendingOperationService:
        return PendingOperationService(self.store, price_provider=self.price_service)


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {value}") from exc


def _lot_numbers(value: str) -> set[int]:
    try:
        return {int(part) for part in value.split(",") if part.strip()}
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected comma separated lot numbers: {value}") from exc


def _print_account(account: TrackedAccount) -> None:
    asset = account.asset
    no_sync = " (no sync)" if account.no_sync else ""
    print(f"{account.address} ({asset}): {account.description}{no_sync}")
    for lot in account.lots:
        term = "long" if is_long_term(lot.acquisition.when) else "short"
        print(
            f"  {lot.lot_number:>5} | {lot.acquisition.when} | {asset.format_amount(lot.amount):>24} | "
            f"{format_currency(lot.acquisition.price):>14} | basis {format_currency(basis(asset, lot)):>14} | "
            f"{lot.acquisition.kind.kind} | {term}-term"
        )
    print(f"  Balance: {asset.format_amount(account.last_update_balance)}")


# Handlers


def cmd_account_add(ctx: _Context, args: argparse.Namespace) -> None:
    asset: Asset = args.asset
    account = TrackedAccount(
        address=Address(args.address), asset=asset, description=args.description, no_sync=args.no_sync
    )
    if args.amount is not None:
        amount = asset.amount(args.amount)
        when = args.when or date.today()
        price = args.price if args.price is not None else ctx.price_service.historical_price(asset, when)
        kind = IncomeAcquisition(description=args.description) if args.income else NotAvailableAcquisition()
        with ctx.store.transaction():
            account.lots.append(
                Lot(
                    lot_number=ctx.store.next_lot_number(),
                    acquisition=LotAcquisition(when=when, price=price, kind=kind),
                    amount=amount,
                )
            )
            account.last_update_balance = amount
            ctx.store.add_account(account)
    else:
        ctx.store.add_account(account)
    _print_account(account)


def cmd_account_ls(ctx: _Context, args: argparse.Namespace) -> None:
    accounts = ctx.store.get_account_tokens(args.address) if args.address else ctx.store.get_accounts()
    if not accounts:
        print("No accounts")
        return
    for account in accounts:
        _print_account(account)
        print()

    sweep_stake_account = ctx.store.get_sweep_stake_account()
    if sweep_stake_account is not None:
        print(f"Sweep stake account: {sweep_stake_account.address}")
        print(f"Stake authority: {sweep_stake_account.stake_authority}")
        print()

    if args.holdings:
        summary = compute_holdings_summary(accounts, price_provider=ctx.price_service)
        render_holdings_summary(summary, ctx.store.get_tax_rate())


def cmd_account_remove(ctx: _Context, args: argparse.Namespace) -> None:
    if not args.confirm:
        print(f"Add --confirm to remove {args.address} ({args.asset})")
        return
    ctx.store.remove_account(args.address, args.asset, force=args.force)
    print(f"Removed {args.address} ({args.asset})")


def cmd_lot_swap(ctx: _Context, args: argparse.Namespace) -> None:
    print(f"Swapping lots {args.lot_number1} and {args.lot_number2}")
    ctx.store.swap_lots(args.lot_number1, args.lot_number2)


def cmd_lot_move(ctx: _Context, args: argparse.Namespace) -> None:
    ctx.store.move_lot(args.lot_number, args.to_address)
    print(f"Moved lot {args.lot_number} to {args.to_address}")


def cmd_lot_delete(ctx: _Context, args: argparse.Namespace) -> None:
    lot_numbers = sorted(args.lot_numbers)
    if not args.confirm:
        print(f"Add --confirm to remove lot(s) {', '.join(str(number) for number in lot_numbers)}")
        return
    with ctx.store.transaction():
        for lot_number in lot_numbers:
            ctx.store.delete_lot(lot_number)
    print(f"Deleted {len(lot_numbers)} lot(s)")


def cmd_lot_collect(ctx: _Context, args: argparse.Namespace) -> None:
    print(f"Collecting {args.method} lots for {args.address} ({args.asset})")
    swaps = ctx.disposal_engine.collect_lots(args.address, args.asset, args.method)
    print(f"Done after {swaps} swap(s)")


def cmd_dispose(ctx: _Context, args: argparse.Namespace) -> None:
    asset: Asset = args.asset
    when = args.when or date.today()
    price = args.price if args.price is not None else ctx.price_service.historical_price(asset, when)
    disposed_lots = ctx.disposal_engine.record_disposal(
        args.address,
        asset,
        asset.amount(args.amount),
        when,
        price,
        SaleDisposal(description=args.description),
        args.method,
        args.lots,
    )
    _print_disposed(disposed_lots)


def cmd_drop(ctx: _Context, args: argparse.Namespace) -> None:
    asset: Asset = args.asset
    if not args.confirm:
        print(f"Add --confirm to drop {asset.format_ui_amount(args.amount)} from {args.address}")
        return
    disposed_lots = ctx.disposal_engine.record_drop(
        args.address,
        asset,
        asset.amount(args.amount),
        args.when or date.today(),
        args.description,
        args.method,
        args.lots,
    )
    _print_disposed(disposed_lots)


def _print_disposed(disposed_lots: list) -> None:
    if not disposed_lots:
        return
    print("Disposed Lots:")
    for disposed in disposed_lots:
        asset = disposed.asset
        print(
            f"  {disposed.lot.lot_number:>5} | {asset.format_amount(disposed.lot.amount):>24} | "
            f"acquired {disposed.lot.acquisition.when} at {format_currency(disposed.lot.acquisition.price)} | "
            f"disposed {disposed.when} at {format_currency(disposed.price)} | {disposed.kind.kind}"
        )


def cmd_pending_ls(ctx: _Context, args: argparse.Namespace) -> None:
    pending = ctx.pending.list_pending(args.exchange)
    if not len(pending):
        print("No pending operations")
        return
    for deposit in pending.deposits:
        transfer = deposit.transfer
        print(
            f"deposit    {deposit.signature} {transfer.from_asset.format_amount(deposit.amount)} "
            f"{transfer.from_address} -> {deposit.exchange} (valid until height {transfer.last_valid_block_height})"
        )
    for withdrawal in pending.withdrawals:
        print(
            f"withdrawal {withdrawal.tag} {withdrawal.asset.format_amount(withdrawal.amount)} "
            f"{withdrawal.exchange} -> {withdrawal.to_address} (fee {withdrawal.asset.format_amount(withdrawal.fee)})"
        )
    for transfer in pending.transfers:
        descriptor = transfer.transfer
        amount = descriptor.from_asset.format_amount(descriptor.amount) if descriptor.amount is not None else "all"
        print(
            f"transfer   {transfer.signature} {amount} {descriptor.from_address} ({descriptor.from_asset}) -> "
            f"{descriptor.to_address} ({descriptor.to_asset}) (valid until height {descriptor.last_valid_block_height})"
        )
    for swap in pending.swaps:
        print(
            f"swap       {swap.signature} {swap.address} {swap.from_asset} -> {swap.to_asset} "
            f"(valid until height {swap.last_valid_block_height})"
        )


def cmd_pending_expire(ctx: _Context, args: argparse.Namespace) -> None:
    expired = ctx.pending.expire(args.height)
    for operation in expired:
        print(f"Expired pending {operation.kind} {operation.key}")
    if not expired:
        print("Nothing to expire")


def cmd_tax_rate_set(ctx: _Context, args: argparse.Namespace) -> None:
    tax_rate = TaxRate(income=args.income, short_term_gain=args.short_term_gain, long_term_gain=args.long_term_gain)
    ctx.store.set_tax_rate(tax_rate)
    cmd_tax_rate_show(ctx, args)


def cmd_tax_rate_show(ctx: _Context, args: argparse.Namespace) -> None:
    tax_rate = ctx.store.get_tax_rate()
    if tax_rate is None:
        print("No tax rate set")
        return
    print(f"Income:          {tax_rate.income}")
    print(f"Short-term gain: {tax_rate.short_term_gain}")
    print(f"Long-term gain:  {tax_rate.long_term_gain}")


def cmd_realized_gains(ctx: _Context, args: argparse.Namespace) -> None:
    annual = compute_realized_gains(ctx.store.disposed_lots(), ctx.store.get_accounts())
    render_realized_gains(annual, ctx.store.get_tax_rate(), by_quarter=args.by_quarter)


def cmd_cost_basis(ctx: _Context, args: argparse.Namespace) -> None:
    when = args.when or date.today()
    entries = compute_average_cost_basis(when, ctx.store.disposed_lots(), ctx.store.get_accounts())
    render_average_cost_basis(when, entries)


def _add_selection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--method", type=LotSelectionMethod, choices=list(LotSelectionMethod), default=LotSelectionMethod.FIFO
    )
    parser.add_argument("--lots", type=_lot_numbers, default=None, help="Comma separated lot numbers to use")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lotledger", description="Track tax lots across addresses.")
    parser.add_argument("--db-file", type=Path, default=None, help="Override the configured ledger database")
    parser.add_argument("--log-level", default=None)
    commands = parser.add_subparsers(dest="command", required=True)

    account = commands.add_parser("account", help="Manage tracked accounts").add_subparsers(
        dest="account_command", required=True
    )
    add = account.add_parser("add", help="Track an address/asset pair")
    add.add_argument("address")
    add.add_argument("asset", type=Asset, choices=list(Asset))
    add.add_argument("--description", default="")
    add.add_argument("--no-sync", action="store_true")
    add.add_argument("--amount", type=_decimal, default=None, help="Initial balance in UI units")
    add.add_argument("--price", type=_decimal, default=None)
    add.add_argument("--when", type=date.fromisoformat, default=None)
    add.add_argument("--income", action="store_true", help="Initial balance was received as income")
    add.set_defaults(handler=cmd_account_add)

    ls = account.add_parser("ls", help="List tracked accounts and their lots")
    ls.add_argument("address", nargs="?")
    ls.add_argument("--holdings", action="store_true", help="Also show current holdings at market prices")
    ls.set_defaults(handler=cmd_account_ls)

    remove = account.add_parser("remove", help="Stop tracking an account")
    remove.add_argument("address")
    remove.add_argument("asset", type=Asset, choices=list(Asset))
    remove.add_argument("--force", action="store_true", help="Remove even if lots remain")
    remove.add_argument("--confirm", action="store_true")
    remove.set_defaults(handler=cmd_account_remove)

    lot = commands.add_parser("lot", help="Manipulate individual lots").add_subparsers(
        dest="lot_command", required=True
    )
    swap = lot.add_parser("swap", help="Exchange the owners of two lots")
    swap.add_argument("lot_number1", type=int)
    swap.add_argument("lot_number2", type=int)
    swap.set_defaults(handler=cmd_lot_swap)

    move = lot.add_parser("move", help="Move a lot to another tracked account")
    move.add_argument("lot_number", type=int)
    move.add_argument("to_address")
    move.set_defaults(handler=cmd_lot_move)

    delete = lot.add_parser("delete", help="Delete lots that were never disposed")
    delete.add_argument("lot_numbers", type=_lot_numbers)
    delete.add_argument("--confirm", action="store_true")
    delete.set_defaults(handler=cmd_lot_delete)

    collect = lot.add_parser("collect", help="Gather the preferred lots into one account")
    collect.add_argument("address")
    collect.add_argument("asset", type=Asset, choices=list(Asset))
    collect.add_argument(
        "--method", type=LotSelectionMethod, choices=list(LotSelectionMethod), default=LotSelectionMethod.FIFO
    )
    collect.set_defaults(handler=cmd_lot_collect)

    dispose = commands.add_parser("dispose", help="Record a sale")
    dispose.add_argument("address")
    dispose.add_argument("asset", type=Asset, choices=list(Asset))
    dispose.add_argument("amount", type=_decimal, help="Amount in UI units")
    dispose.add_argument("--price", type=_decimal, default=None)
    dispose.add_argument("--when", type=date.fromisoformat, default=None)
    dispose.add_argument("--description", default="")
    _add_selection_args(dispose)
    dispose.set_defaults(handler=cmd_dispose)

    drop = commands.add_parser("drop", help="Remove lots as a bookkeeping correction")
    drop.add_argument("address")
    drop.add_argument("asset", type=Asset, choices=list(Asset))
    drop.add_argument("amount", type=_decimal, help="Amount in UI units")
    drop.add_argument("--when", type=date.fromisoformat, default=None)
    drop.add_argument("--description", default="")
    drop.add_argument("--confirm", action="store_true")
    _add_selection_args(drop)
    drop.set_defaults(handler=cmd_drop)

    pending = commands.add_parser("pending", help="Inspect pending operations").add_subparsers(
        dest="pending_command", required=True
    )
    pending_ls = pending.add_parser("ls", help="List pending operations")
    pending_ls.add_argument("--exchange", default=None)
    pending_ls.set_defaults(handler=cmd_pending_ls)

    expire = pending.add_parser("expire", help="Cancel operations whose last valid block height has passed")
    expire.add_argument("--height", type=int, required=True, help="Current chain block height")
    expire.set_defaults(handler=cmd_pending_expire)

    tax_rate = commands.add_parser("tax-rate", help="Configure tax rates").add_subparsers(
        dest="tax_rate_command", required=True
    )
    tax_rate_set = tax_rate.add_parser("set", help="Set rates as fractions, e.g. 0.35")
    tax_rate_set.add_argument("income", type=_decimal)
    tax_rate_set.add_argument("short_term_gain", type=_decimal)
    tax_rate_set.add_argument("long_term_gain", type=_decimal)
    tax_rate_set.set_defaults(handler=cmd_tax_rate_set)
    tax_rate.add_parser("show").set_defaults(handler=cmd_tax_rate_show)

    realized = commands.add_parser("realized-gains", help="Realized gains per payment period")
    realized.add_argument("--by-quarter", action="store_true")
    realized.set_defaults(handler=cmd_realized_gains)

    cost_basis = commands.add_parser("cost-basis", help="Average cost basis of holdings on a date")
    cost_basis.add_argument("when", type=date.fromisoformat, nargs="?", default=None)
    cost_basis.set_defaults(handler=cmd_cost_basis)

    return parser


def run(settings: AppSettings, handler: Callable[[_Context, argparse.Namespace], None], args: argparse.Namespace) -> None:
    with store_lock(settings.resolved_lock_dir):
        session = init_db(db_file=settings.db_file)
        try:
            handler(_Context(settings, LedgerStore(session)), args)
        finally:
            session.close()


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = config()
    if args.db_file is not None:
        settings = settings.model_copy(update={"db_file": args.db_file})
    logging.basicConfig(
        level=args.log_level or settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s"
    )

    try:
        run(settings, args.handler, args)
    except StoreLockedError as exc:
        logger.error("%s", exc)
        return 2
    except LedgerError as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
