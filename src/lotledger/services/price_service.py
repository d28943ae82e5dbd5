from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from lotledger.domain.assets import Asset
from lotledger.domain.errors import ChainInconclusiveError

from .clients import PriceOracle
from .price_store import PriceStore

logger = logging.getLogger(__name__)

DEFAULT_CURRENT_PRICE_TTL_SECONDS = 30.0


@dataclass(frozen=True)
class _CachedPrice:
    price: Decimal
    fetched_at: float


class CurrentPriceCache:
    """Current prices kept for ``ttl_seconds`` according to ``clock``."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CURRENT_PRICE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Asset, _CachedPrice] = {}

    def get(self, asset: Asset) -> Decimal | None:
        entry = self._entries.get(asset)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self.ttl_seconds:
            del self._entries[asset]
            return None
        return entry.price

    def put(self, asset: Asset, price: Decimal) -> None:
        self._entries[asset] = _CachedPrice(price=price, fetched_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()


class PriceService:
    """Price lookups backed by caches and a price oracle.

    Current prices come from the in-memory TTL cache or the oracle; historical
    prices come from the persistent store or the oracle, and are written back
    to the store once fetched.
    """

    def __init__(
        self,
        oracle: PriceOracle,
        store: PriceStore,
        *,
        cache: CurrentPriceCache | None = None,
        source_name: str = "oracle",
    ) -> None:
        self.oracle = oracle
        self.store = store
        self.cache = cache or CurrentPriceCache()
        self.source_name = source_name

    def current_price(self, asset: Asset) -> Decimal:
        cached = self.cache.get(asset)
        if cached is not None:
            return cached

        fetched = self.oracle.fetch_current_price(asset)
        if fetched is None:
            raise ChainInconclusiveError(f"No current price available for {asset}")
        self.cache.put(asset, fetched)
        return fetched

    def historical_price(self, asset: Asset, when: date) -> Decimal:
        existing = self.store.read(asset, when)
        if existing is not None:
            return existing

        fetched = self.oracle.fetch_historical_price(asset, when)
        if fetched is None:
            raise ChainInconclusiveError(f"No price available for {asset} on {when}")
        logger.debug("Fetched %s price on %s: %s", asset, when, fetched)
        self.store.write(asset, when, fetched, self.source_name)
        return fetched


__all__ = ["CurrentPriceCache", "DEFAULT_CURRENT_PRICE_TTL_SECONDS", "PriceService"]
