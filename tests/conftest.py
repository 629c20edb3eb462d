# tests/conftest.py

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from crosschain_arb.logging_config import setup_custom_log_levels
setup_custom_log_levels()

from crosschain_arb.data_models import ArbitrageOpportunity, GasEstimate, PriceQuote, ProfitabilityAnalysis
from crosschain_arb.utils import load_tokens

WETH_ETHEREUM = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
WETH_ARBITRUM = "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1"
WETH_OPTIMISM = "0x4200000000000000000000000000000000000006"
TKX_ETHEREUM = "0x1111111111111111111111111111111111111111"
TKX_ARBITRUM = "0x2222222222222222222222222222222222222222"
TKX_OPTIMISM = "0x3333333333333333333333333333333333333333"
SOLO_ETHEREUM = "0x4444444444444444444444444444444444444444"
WALLET_ADDRESS = "0x9999999999999999999999999999999999999999"

FIAT_RATE = Decimal("3000")


@pytest.fixture
def config(tmp_path):
    """Three networks, one token listed everywhere and one listed only on ethereum."""
    return {
        "networks": {
            "ethereum": {"chain_id": 1, "wrapped_native": WETH_ETHEREUM},
            "arbitrum": {"chain_id": 42161, "wrapped_native": WETH_ARBITRUM},
            "optimism": {"chain_id": 10, "wrapped_native": WETH_OPTIMISM},
        },
        "arbitrage": {
            "min_profit_threshold_usd": 50,
            "max_slippage_percent": 0.5,
            "price_deviation_threshold": 0.5,
            "flash_loan_enabled": False,
            "flash_loan_fee_bps": 9,
            "monitoring_interval_s": 0,
        },
        "sizing": {"min_trade_size": 0.1, "max_trade_size": 100, "optimal_size_multiplier": 50},
        "wallet": {"max_exposure_per_trade": 5, "min_native_balance": 0.1},
        "gas": {"gas_limit": 500000, "max_fee_per_gas_gwei": 30, "max_priority_fee_gwei": 2},
        "exchanges": {"providers": []},
        "bridges": {"providers": [], "default_fee_percent": 0.5, "poll_interval_s": 0.01, "completion_timeout_s": 0.05},
        "ledger": {"initial_balance": 10, "data_dir": str(tmp_path / "data")},
        "tokens": {
            "TKX": {"name": "Token X", "decimals": 18,
                    "addresses": {"ethereum": TKX_ETHEREUM, "arbitrum": TKX_ARBITRUM, "optimism": TKX_OPTIMISM}},
            "SOLO": {"name": "Single network token", "decimals": 18,
                     "addresses": {"ethereum": SOLO_ETHEREUM, "arbitrum": "", "optimism": ""}},
        },
        "simulation": {
            "fiat_reference_price": 3000,
            "initial_native_balance": 10,
            "pool_fee_percent": 0.05,
            "bridge_fee_percent": 0.05,
            "gas_price_gwei": {"ethereum": 1, "arbitrum": 1, "optimism": 1},
            "base_prices": {"TKX": 1.0},
            "network_variance": {"ethereum": 0, "arbitrum": 0.02, "optimism": 0},
        },
    }


@pytest.fixture
def token_x(config):
    return load_tokens(config)["TKX"]


def make_quote(network: str, price, symbol: str = "TKX") -> PriceQuote:
    price = Decimal(str(price))
    return PriceQuote(token_symbol=symbol, network=network, price_in_reference=price, price_in_fiat=price * FIAT_RATE)


def make_opportunity(token, buy_network="ethereum", sell_network="arbitrum", buy_price="0.975", sell_price="0.99",
                     recommended="2", net_profit="0.05") -> ArbitrageOpportunity:
    buy_quote = make_quote(buy_network, buy_price, token.symbol)
    sell_quote = make_quote(sell_network, sell_price, token.symbol)
    analysis = ProfitabilityAnalysis(
        is_profitable=True,
        reason="Profitable",
        capital_in=Decimal("5"),
        expected_buy_amount=Decimal("5.1"),
        expected_sell_amount=Decimal("5.09"),
        net_profit=Decimal(net_profit),
        net_profit_fiat=Decimal(net_profit) * FIAT_RATE,
        recommended_trade_size=Decimal(recommended),
        sufficient_margin=True,
    )
    diff = (sell_quote.price_in_reference - buy_quote.price_in_reference) / buy_quote.price_in_reference * 100
    return ArbitrageOpportunity(token=token, buy_network=buy_network, sell_network=sell_network,
                                buy_quote=buy_quote, sell_quote=sell_quote, price_difference=diff,
                                profitability=analysis)


@pytest.fixture
def mock_swapper():
    """Swapper stand-in: every gas estimate costs 0.001 ETH."""
    swapper = MagicMock()
    swapper.estimate_swap_gas_cost = AsyncMock(return_value=GasEstimate(gas_units=150000, gas_cost=Decimal("0.001")))
    return swapper


@pytest.fixture
def mock_bridge_router():
    """Bridge router stand-in: every fee estimate is 0.001 and every route takes 5 minutes."""
    router = MagicMock()
    router.get_bridge_fee = AsyncMock(return_value=Decimal("0.001"))
    router.get_bridging_time_estimate_minutes.return_value = 5
    return router
