from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from .errors import InsufficientLotsError, LotNotFoundError
from .ledger import Lot


class LotSelectionMethod(StrEnum):
    """Order in which lots are consumed by a disposal.

    An explicit set of lot numbers, when supplied next to the method, overrides
    which lots are eligible; the method then only orders that subset.
    """

    FIFO = "fifo"
    LIFO = "lifo"
    LOWEST_BASIS = "lowest-basis"
    HIGHEST_BASIS = "highest-basis"


def _acquisition_key(method: LotSelectionMethod) -> Callable[[Lot], tuple[Any, ...]]:
    if method == LotSelectionMethod.FIFO:
        return lambda lot: (lot.acquisition.when,)
    if method == LotSelectionMethod.LIFO:
        return lambda lot: (-lot.acquisition.when.toordinal(),)
    if method == LotSelectionMethod.LOWEST_BASIS:
        return lambda lot: (lot.acquisition.price,)
    if method == LotSelectionMethod.HIGHEST_BASIS:
        return lambda lot: (-lot.acquisition.price,)
    raise ValueError(f"Unsupported lot selection method: {method}")


def lot_sort_key(method: LotSelectionMethod) -> Callable[[Lot], tuple[Any, ...]]:
    """Total order per method; ties fall back to ascending lot number."""
    acquisition_key = _acquisition_key(method)
    return lambda lot: (*acquisition_key(lot), lot.lot_number)


def sort_lots(lots: Iterable[Lot], method: LotSelectionMethod) -> list[Lot]:
    return sorted(lots, key=lot_sort_key(method))


def cmp_lots(method: LotSelectionMethod, a: Lot, b: Lot) -> int:
    key = lot_sort_key(method)
    key_a, key_b = key(a), key(b)
    return (key_a > key_b) - (key_a < key_b)


def sorts_before(method: LotSelectionMethod, a: Lot, b: Lot) -> bool:
    """Whether ``a`` is strictly preferred over ``b`` on acquisition alone, ignoring lot numbers."""
    key = _acquisition_key(method)
    return key(a) < key(b)


@dataclass
class LotExtraction:
    """Result of :func:`extract_lots`.

    ``extracted`` holds detached copies covering exactly the requested amount
    (a split lot keeps its lot number on both sides); ``remaining`` is the pool
    after extraction, with a split lot's amount reduced in place.
    """

    extracted: list[Lot]
    remaining: list[Lot]

    @property
    def extracted_amount(self) -> int:
        return sum(lot.amount for lot in self.extracted)

    @property
    def remaining_amount(self) -> int:
        return sum(lot.amount for lot in self.remaining)


def extract_lots(
    pool: Iterable[Lot],
    requested_amount: int,
    method: LotSelectionMethod,
    lot_numbers: set[int] | None = None,
    *,
    asset: str = "",
    address: str | None = None,
) -> LotExtraction:
    """Select lots from ``pool`` covering ``requested_amount``.

    The input lots are never mutated. Raises :class:`LotNotFoundError` if an
    explicit lot number is absent from the pool and
    :class:`InsufficientLotsError` if the eligible lots cannot cover the amount.
    """
    if requested_amount < 0:
        raise ValueError("requested_amount must be >= 0")

    lots = [lot.model_copy(deep=True) for lot in pool]

    if lot_numbers is not None:
        pool_numbers = {lot.lot_number for lot in lots}
        missing = set(lot_numbers) - pool_numbers
        if missing:
            raise LotNotFoundError(missing)
        eligible = [lot for lot in lots if lot.lot_number in lot_numbers]
        kept = [lot for lot in lots if lot.lot_number not in lot_numbers]
    else:
        eligible = lots
        kept = []

    available = sum(lot.amount for lot in eligible)
    if available < requested_amount:
        raise InsufficientLotsError(
            address=address,
            asset=asset,
            requested=requested_amount,
            available=available,
        )

    extracted: list[Lot] = []
    remaining_request = requested_amount
    for lot in sort_lots(eligible, method):
        if remaining_request == 0:
            kept.append(lot)
            continue

        if lot.amount <= remaining_request:
            extracted.append(lot)
            remaining_request -= lot.amount
            continue

        extracted.append(lot.model_copy(update={"amount": remaining_request}, deep=True))
        lot.amount -= remaining_request
        remaining_request = 0
        kept.append(lot)

    kept.sort(key=lambda lot: lot.lot_number)
    return LotExtraction(extracted=extracted, remaining=kept)


__all__ = [
    "LotExtraction",
    "LotSelectionMethod",
    "cmp_lots",
    "extract_lots",
    "lot_sort_key",
    "sort_lots",
    "sorts_before",
]
