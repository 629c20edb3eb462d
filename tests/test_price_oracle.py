# tests/test_price_oracle.py

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt
import pytest

from conftest import SOLO_ETHEREUM, TKX_ARBITRUM
from crosschain_arb.data_models import SwapQuote
from crosschain_arb.price_oracle import DexPriceOracle, FiatRateSource
from crosschain_arb.utils import NATIVE_TOKEN, PriceNotFound


@pytest.fixture
def exchange():
    exchange = MagicMock()
    exchange.fetch_ticker = AsyncMock(return_value={"symbol": "ETH/USDT", "last": 3100.5})
    exchange.close = AsyncMock()
    return exchange


def test_fiat_rate_is_cached(config, exchange):
    source = FiatRateSource(config, exchange=exchange)

    first = asyncio.run(source.get_rate())
    second = asyncio.run(source.get_rate())

    assert first == second == Decimal("3100.5")
    exchange.fetch_ticker.assert_awaited_once_with("ETH/USDT")


def test_fiat_rate_falls_back_when_exchange_fails(config, exchange):
    exchange.fetch_ticker.side_effect = ccxt.NetworkError("binance unreachable")
    source = FiatRateSource(config, exchange=exchange)

    assert asyncio.run(source.get_rate()) == Decimal("3000")


def test_dex_oracle_prices_one_token_in_native(config, exchange):
    swapper = MagicMock()
    swapper.get_best_quote = AsyncMock(return_value=SwapQuote(
        exchange="uniswap_v3", network="arbitrum", from_token=TKX_ARBITRUM, to_token=NATIVE_TOKEN,
        input_amount=Decimal("1"), output_amount=Decimal("1.02")))
    oracle = DexPriceOracle(config, swapper, FiatRateSource(config, exchange=exchange))

    quote = asyncio.run(oracle.get_price(TKX_ARBITRUM, "arbitrum"))

    assert quote.token_symbol == "TKX"
    assert quote.price_in_reference == Decimal("1.02")
    assert quote.price_in_fiat == Decimal("1.02") * Decimal("3100.5")
    swapper.get_best_quote.assert_awaited_once_with("arbitrum", TKX_ARBITRUM, NATIVE_TOKEN, Decimal("1"))


def test_dex_oracle_rejects_token_not_on_network(config, exchange):
    oracle = DexPriceOracle(config, MagicMock(), FiatRateSource(config, exchange=exchange))

    with pytest.raises(PriceNotFound):
        asyncio.run(oracle.get_price(SOLO_ETHEREUM, "arbitrum"))


def test_close_releases_exchange(config, exchange):
    oracle = DexPriceOracle(config, MagicMock(), FiatRateSource(config, exchange=exchange))

    asyncio.run(oracle.close())

    exchange.close.assert_awaited_once()
