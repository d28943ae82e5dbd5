from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from lotledger.domain.assets import Asset
from lotledger.domain.errors import ChainInconclusiveError

from .clients import PriceOracle

logger = logging.getLogger(__name__)

COIN_IDS: dict[Asset, str] = {
    Asset.SOL: "solana",
    Asset.wSOL: "solana",
    Asset.mSOL: "msol",
    Asset.stSOL: "lido-staked-sol",
    Asset.JitoSOL: "jito-staked-sol",
    Asset.bSOL: "blazestake-staked-sol",
    Asset.USDC: "usd-coin",
    Asset.USDT: "tether",
    Asset.USDS: "usds",
    Asset.PYUSD: "paypal-usd",
    Asset.JUP: "jupiter-exchange-solana",
    Asset.JTO: "jito-governance-token",
    Asset.BONK: "bonk",
    Asset.WIF: "dogwifcoin",
    Asset.PYTH: "pyth-network",
}


class CoinGeckoAPIError(ChainInconclusiveError):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class CoinGeckoSource(PriceOracle):
    """USD prices from the CoinGecko ``simple/price`` and ``coins/{id}/history`` endpoints.

    With an API key the Pro host is used and the key is passed as the
    ``x_cg_pro_api_key`` query parameter.
    """

    source_name = "coingecko"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 5,
        retry_backoff_seconds: float = 1,
    ) -> None:
        self.api_key = api_key
        self.base_url = "https://pro-api.coingecko.com/api/v3" if api_key else "https://api.coingecko.com/api/v3"
        self.timeout = timeout
        self._session = session or requests.Session()

        retry = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist={429},
            allowed_methods={"GET"},
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)

    def fetch_current_price(self, asset: Asset) -> Decimal | None:
        coin_id = self._coin_id(asset)
        payload = self._request("/simple/price", params={"ids": coin_id, "vs_currencies": "usd"})
        entry = payload.get(coin_id)
        if not isinstance(entry, dict) or entry.get("usd") is None:
            logger.warning("CoinGecko returned no current price for %s", asset)
            return None
        return self._to_decimal(entry["usd"])

    def fetch_historical_price(self, asset: Asset, when: date) -> Decimal | None:
        coin_id = self._coin_id(asset)
        payload = self._request(
            f"/coins/{coin_id}/history",
            params={"date": when.strftime("%d-%m-%Y"), "localization": "false"},
        )
        market_data = payload.get("market_data")
        if not isinstance(market_data, dict):
            logger.warning("CoinGecko has no market data for %s on %s", asset, when)
            return None
        current_price = market_data.get("current_price")
        if not isinstance(current_price, dict) or current_price.get("usd") is None:
            return None
        return self._to_decimal(current_price["usd"])

    @staticmethod
    def _coin_id(asset: Asset) -> str:
        try:
            return COIN_IDS[asset]
        except KeyError:
            raise CoinGeckoAPIError(f"CoinGecko price data not available for {asset}") from None

    def _request(self, path: str, *, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        if self.api_key:
            params = {**params, "x_cg_pro_api_key": self.api_key}
        try:
            response = self._session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            message, payload_err = self._extract_error(resp)
            raise CoinGeckoAPIError(message, status_code=resp.status_code, payload=payload_err) from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise CoinGeckoAPIError("CoinGecko API request failed", status_code=status_code) from exc

        try:
            payload: dict[str, Any] = response.json()
        except ValueError as exc:
            raise CoinGeckoAPIError("CoinGecko API returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload, dict):
            raise CoinGeckoAPIError("CoinGecko API returned unexpected payload type", payload=payload)
        return payload

    @staticmethod
    def _to_decimal(value: Any) -> Decimal:
        return Decimal(str(value))

    @staticmethod
    def _extract_error(response: Response) -> tuple[str, Any]:
        message = "CoinGecko API request failed"
        try:
            payload = response.json()
            if isinstance(payload, dict):
                status = payload.get("status")
                if isinstance(status, dict) and status.get("error_message"):
                    message = status["error_message"]
                elif payload.get("error"):
                    message = str(payload["error"])
        except ValueError:
            payload = response.text
        return message, payload


__all__ = ["COIN_IDS", "CoinGeckoAPIError", "CoinGeckoSource"]
