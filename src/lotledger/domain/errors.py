from __future__ import annotations

from collections.abc import Iterable


class LedgerError(Exception):
    """Recoverable ledger failure; the store is left unchanged."""


class NotFoundError(LedgerError):
    pass


class AccountNotFoundError(NotFoundError):
    def __init__(self, address: str, asset: str) -> None:
        self.address = address
        self.asset = asset
        super().__init__(f"Account not tracked: address={address} asset={asset}")


class LotNotFoundError(NotFoundError):
    def __init__(self, lot_numbers: Iterable[int]) -> None:
        self.lot_numbers = sorted(lot_numbers)
        numbers = ", ".join(str(number) for number in self.lot_numbers)
        super().__init__(f"Unknown lot number(s): {numbers}")


class PendingOperationNotFoundError(NotFoundError):
    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"No pending {kind}: {key}")


class AlreadyExistsError(LedgerError):
    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class InsufficientLotsError(LedgerError):
    def __init__(self, *, address: str | None, asset: str, requested: int, available: int) -> None:
        self.address = address
        self.asset = asset
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient lots for asset={asset} address={address} requested={requested} available={available}"
        )


class AssetMismatchError(LedgerError):
    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Asset mismatch: expected {expected}, got {actual}")


class AccountNotEmptyError(LedgerError):
    def __init__(self, address: str, asset: str, lot_count: int) -> None:
        self.address = address
        self.asset = asset
        self.lot_count = lot_count
        super().__init__(f"Account {address} ({asset}) still holds {lot_count} lot(s)")


class LotAlreadyDisposedError(LedgerError):
    def __init__(self, lot_number: int) -> None:
        self.lot_number = lot_number
        super().__init__(f"Lot {lot_number} has disposal history and cannot be deleted")


class ChainInconclusiveError(LedgerError):
    """A chain, exchange or price collaborator could not answer; the caller may retry."""


class BlindDepositRefusedError(LedgerError):
    def __init__(self, signature: str, asset: str) -> None:
        self.signature = signature
        self.asset = asset
        super().__init__(
            f"Refusing to drop lots of non fiat-fungible asset {asset} for deposit {signature} "
            "without exchange deposit history"
        )


class InvariantViolation(Exception):
    """The ledger's core guarantee is already broken; the process must not continue.

    Deliberately not a ``LedgerError`` so recoverable-error handlers never catch it.
    """

    def __init__(self, message: str, *, address: str | None = None, asset: str | None = None) -> None:
        super().__init__(message)
        self.address = address
        self.asset = asset


__all__ = [
    "AccountNotEmptyError",
    "AccountNotFoundError",
    "AssetMismatchError",
    "AlreadyExistsError",
    "BlindDepositRefusedError",
    "ChainInconclusiveError",
    "InsufficientLotsError",
    "InvariantViolation",
    "LedgerError",
    "LotAlreadyDisposedError",
    "LotNotFoundError",
    "NotFoundError",
    "PendingOperationNotFoundError",
]
