from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from lotledger.db.store import LedgerStore
from lotledger.domain.assets import Asset
from lotledger.domain.ledger import DisposalKind, DisposedLot, DropDisposal, Lot, TrackedAccount
from lotledger.domain.lot_selection import LotSelectionMethod, extract_lots, sort_lots, sorts_before

logger = logging.getLogger(__name__)


def take_lots(
    account: TrackedAccount,
    amount: int,
    method: LotSelectionMethod,
    lot_numbers: set[int] | None = None,
) -> list[Lot]:
    """Remove ``amount`` from ``account``'s live lots in memory and return what was taken.

    The account is not persisted; on failure it is left untouched.
    """
    extraction = extract_lots(
        account.lots, amount, method, lot_numbers, asset=account.asset, address=account.address
    )
    account.lots = [lot for lot in extraction.remaining if lot.amount > 0]
    account.last_update_balance -= extraction.extracted_amount
    return extraction.extracted


class DisposalEngine:
    """Realizes disposals against the live lots of tracked accounts."""

    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def record_disposal(
        self,
        address: str,
        asset: Asset,
        amount: int,
        when: date,
        price: Decimal,
        kind: DisposalKind,
        method: LotSelectionMethod = LotSelectionMethod.FIFO,
        lot_numbers: set[int] | None = None,
    ) -> list[DisposedLot]:
        with self.store.transaction():
            account = self.store.require_account(address, asset)
            disposed_lots = self.dispose_from(account, amount, when, price, kind, method, lot_numbers)
            self.store.update_account(account)
            self.store.add_disposed_lots(disposed_lots)

        logger.info(
            "Disposed %s %s from %s at %s (%d lot(s), %s)",
            asset.format_amount(amount),
            asset,
            address,
            price,
            len(disposed_lots),
            kind.kind,
        )
        return disposed_lots

    def dispose_from(
        self,
        account: TrackedAccount,
        amount: int,
        when: date,
        price: Decimal | None,
        kind: DisposalKind,
        method: LotSelectionMethod = LotSelectionMethod.FIFO,
        lot_numbers: set[int] | None = None,
    ) -> list[DisposedLot]:
        """Consume lots from an in-memory account and build their disposal records.

        ``price`` None values each lot at its own acquisition price, which makes
        the disposal gain-neutral. Persisting is left to the caller.
        """
        return [
            DisposedLot(
                lot=lot,
                address=account.address,
                asset=account.asset,
                when=when,
                price=lot.acquisition.price if price is None else price,
                kind=kind,
            )
            for lot in take_lots(account, amount, method, lot_numbers)
        ]

    def record_drop(
        self,
        address: str,
        asset: Asset,
        amount: int,
        when: date,
        description: str = "",
        method: LotSelectionMethod = LotSelectionMethod.FIFO,
        lot_numbers: set[int] | None = None,
    ) -> list[DisposedLot]:
        """Remove lots as a bookkeeping correction; no gain or loss is realized."""
        kind = DropDisposal(description=description)
        with self.store.transaction():
            account = self.store.require_account(address, asset)
            disposed_lots = self.dispose_from(account, amount, when, None, kind, method, lot_numbers)
            self.store.update_account(account)
            self.store.add_disposed_lots(disposed_lots)

        logger.info("Dropped %s %s from %s (%s)", asset.format_amount(amount), asset, address, description)
        return disposed_lots

    def collect_lots(self, address: str, asset: Asset, method: LotSelectionMethod) -> int:
        """Gather into one account the lots that sort first under ``method``.

        Lots are swapped with every other account holding the same asset (SOL
        and wSOL count as one) until no other account holds a lot that sorts
        before one of ours. Returns the number of swaps performed.
        """
        self.store.require_account(address, asset)
        swaps = 0
        while True:
            current: list[Lot] = []
            candidates: list[Lot] = []
            for account in self.store.get_accounts():
                if account.asset != asset and not (asset.is_sol_or_wsol() and account.asset.is_sol_or_wsol()):
                    continue
                if account.address == address and account.asset == asset:
                    current = list(account.lots)
                else:
                    candidates.extend(account.lots)

            current = sort_lots(current, method)
            candidates = sort_lots(candidates, method)
            while current and candidates and not sorts_before(method, candidates[0], current[0]):
                current.pop(0)

            if not current or not candidates:
                break

            logger.info("Swapping lots %d and %d", current[0].lot_number, candidates[0].lot_number)
            self.store.swap_lots(current[0].lot_number, candidates[0].lot_number)
            swaps += 1

        logger.info("Collected %s lots for %s (%s) in %d swap(s)", method, address, asset, swaps)
        return swaps


__all__ = ["DisposalEngine", "take_lots"]
