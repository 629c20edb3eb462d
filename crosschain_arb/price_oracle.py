# price_oracle.py

import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import ccxt.async_support as ccxt

from crosschain_arb.data_models import PriceQuote
from crosschain_arb.logging_config import get_logger
from crosschain_arb.utils import ConfigError, NATIVE_TOKEN, PriceNotFound, find_token_by_address, to_decimal

logger = get_logger(__name__)


class PriceOracle(ABC):
    """get_price(token_address, network) -> PriceQuote; unknown tokens raise PriceNotFound."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    def _symbol_for(self, token_address: str, network: str) -> str:
        token = find_token_by_address(self.config, network, token_address)
        if token is None:
            raise PriceNotFound(f"Token {token_address} is not configured on {network}")
        return token.symbol

    @abstractmethod
    async def get_price(self, token_address: str, network: str) -> PriceQuote:
        ...

    async def close(self):
        pass


class FiatRateSource:
    """
    Native-asset/USD rate from a centralized exchange ticker (ccxt), cached for
    a TTL. Falls back to the configured reference price when the exchange
    cannot be reached.
    """
    def __init__(self, config: Dict[str, Any], exchange=None):
        oracle_config = config.get("price_oracle", {})
        self.symbol = oracle_config.get("fiat_symbol", "ETH/USDT")
        self.ttl_s = float(oracle_config.get("cache_ttl_s", 60))
        self.fallback_rate = to_decimal(oracle_config.get("fallback_fiat_rate",
                                                          config.get("simulation", {}).get("fiat_reference_price", 3000)))
        if exchange is None:
            ex_id = oracle_config.get("fiat_exchange", "binance")
            try:
                exchange = getattr(ccxt, ex_id)({"enableRateLimit": True})
            except AttributeError:
                raise ConfigError(f"Exchange '{ex_id}' is not supported by ccxt.")
        self.exchange = exchange
        self._cached_rate: Optional[Decimal] = None
        self._cached_at = 0.0

    async def get_rate(self) -> Decimal:
        if self._cached_rate is not None and time.monotonic() - self._cached_at < self.ttl_s:
            return self._cached_rate
        try:
            ticker = await self.exchange.fetch_ticker(self.symbol)
            rate = to_decimal(ticker["last"])
        except (ccxt.BaseError, KeyError, TypeError) as e:
            logger.warning(f"Could not fetch {self.symbol} ticker: {e}. Using fallback rate {self.fallback_rate}.")
            return self._cached_rate or self.fallback_rate
        self._cached_rate, self._cached_at = rate, time.monotonic()
        return rate

    async def close(self):
        await self.exchange.close()


class DexPriceOracle(PriceOracle):
    """Prices one whole token against the native asset through the swap layer."""

    def __init__(self, config: Dict[str, Any], swapper, fiat_source: FiatRateSource):
        super().__init__(config)
        self.swapper = swapper
        self.fiat_source = fiat_source

    async def get_price(self, token_address: str, network: str) -> PriceQuote:
        symbol = self._symbol_for(token_address, network)
        quote = await self.swapper.get_best_quote(network, token_address, NATIVE_TOKEN, Decimal("1"))
        fiat_rate = await self.fiat_source.get_rate()
        return PriceQuote(token_symbol=symbol, network=network, price_in_reference=quote.output_amount,
                          price_in_fiat=quote.output_amount * fiat_rate)

    async def close(self):
        await self.fiat_source.close()
