"""Fiat/crypto exchange rates from a CoinGecko-style price API, cached in memory."""
import time
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Protocol, Tuple

import httpx
import structlog

from checkout_payments.config import Settings
from checkout_payments.integrations.base import (
    ProviderError,
    ProviderErrorType,
    ProviderHttpClient,
    ProviderUnavailableError,
)

logger = structlog.get_logger(__name__)

COIN_IDS = {"BTC": "bitcoin", "XMR": "monero"}


class RateOracle(Protocol):
    async def get_rate(self, asset: str, fiat: str) -> Decimal:
        """Fiat price of one unit of the asset."""
        ...


class CoinGeckoRateOracle:
    """
    Rate oracle with a short-lived cache.

    Fresh rates are reused for rate_cache_seconds. When the API is down a
    cached rate up to rate_stale_max_seconds old is served instead.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.http = ProviderHttpClient(
            "exchange_rates", settings, settings.rate_oracle_base_url, client
        )
        self.cache_seconds = settings.rate_cache_seconds
        self.stale_max_seconds = settings.rate_stale_max_seconds
        self._cache: Dict[Tuple[str, str], Tuple[Decimal, float]] = {}

    async def get_rate(self, asset: str, fiat: str) -> Decimal:
        key = (asset.upper(), fiat.upper())
        cached = self._cache.get(key)
        if cached and time.monotonic() - cached[1] < self.cache_seconds:
            return cached[0]

        try:
            rate = await self._fetch(*key)
        except ProviderError as e:
            if cached and time.monotonic() - cached[1] < self.stale_max_seconds:
                logger.warning(
                    "exchange_rate_stale_fallback",
                    asset=key[0],
                    fiat=key[1],
                    age_seconds=round(time.monotonic() - cached[1]),
                    error=str(e),
                )
                return cached[0]
            raise

        self._cache[key] = (rate, time.monotonic())
        return rate

    async def _fetch(self, asset: str, fiat: str) -> Decimal:
        coin_id = COIN_IDS.get(asset)
        if coin_id is None:
            raise ProviderError(
                f"Unsupported asset {asset}", ProviderErrorType.PERMANENT, provider="exchange_rates"
            )

        response = await self.http.request(
            "get_rate",
            "GET",
            "/simple/price",
            params={"ids": coin_id, "vs_currencies": fiat.lower()},
        )
        try:
            rate = Decimal(str(response.json()[coin_id][fiat.lower()]))
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise ProviderUnavailableError(
                "Exchange rate response was malformed",
                ProviderErrorType.TRANSIENT,
                provider="exchange_rates",
                original_error=e,
            )
        if rate <= 0:
            raise ProviderUnavailableError(
                "Exchange rate must be positive",
                ProviderErrorType.TRANSIENT,
                provider="exchange_rates",
            )

        logger.info("exchange_rate_fetched", asset=asset, fiat=fiat, rate=str(rate))
        return rate

    async def aclose(self) -> None:
        await self.http.aclose()
