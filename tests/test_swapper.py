# tests/test_swapper.py

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import TKX_ETHEREUM, WETH_ETHEREUM
from crosschain_arb.simulation import PaperWallet, SimulatedPriceOracle, SimulatedSwapConnector
from crosschain_arb.swapper import Swapper, UniswapV3Connector, create_connector
from crosschain_arb.utils import NATIVE_TOKEN, ConfigError, QuoteUnavailable, TransactionFailure

ONE = 10 ** 18


def fake_connector(name, amount_out=None, fee_tier=3000, supported=True):
    connector = MagicMock()
    connector.name = name
    connector.is_supported.return_value = supported
    if isinstance(amount_out, Exception):
        connector.get_quote = AsyncMock(side_effect=amount_out)
    else:
        connector.get_quote = AsyncMock(return_value=(amount_out, fee_tier))
    connector.execute_swap = AsyncMock()
    connector.estimate_gas = AsyncMock(return_value=180000)
    return connector


def test_best_quote_picks_highest_output(config):
    low = fake_connector("sushiswap", amount_out=ONE * 98 // 100, fee_tier=30)
    high = fake_connector("uniswap_v3", amount_out=ONE * 99 // 100, fee_tier=500)
    swapper = Swapper(config, MagicMock(), connectors=[low, high])

    quote = asyncio.run(swapper.get_best_quote("ethereum", NATIVE_TOKEN, TKX_ETHEREUM, Decimal("1")))

    assert quote.exchange == "uniswap_v3"
    assert quote.output_amount == Decimal("0.99")
    assert quote.fee_tier == 500
    assert quote.rate == Decimal("0.99")
    low.get_quote.assert_awaited_once_with("ethereum", NATIVE_TOKEN, TKX_ETHEREUM, ONE)


def test_unsupported_connectors_are_not_asked(config):
    absent = fake_connector("sushiswap", amount_out=ONE, supported=False)
    present = fake_connector("uniswap_v3", amount_out=ONE // 2)
    swapper = Swapper(config, MagicMock(), connectors=[absent, present])

    quote = asyncio.run(swapper.get_best_quote("ethereum", NATIVE_TOKEN, TKX_ETHEREUM, Decimal("1")))

    assert quote.exchange == "uniswap_v3"
    absent.get_quote.assert_not_awaited()


def test_no_quotes_aggregates_failures(config):
    swapper = Swapper(config, MagicMock(), connectors=[
        fake_connector("uniswap_v3", amount_out=QuoteUnavailable("no pool")),
        fake_connector("sushiswap", amount_out=RuntimeError("rpc timeout")),
    ])

    with pytest.raises(QuoteUnavailable) as exc_info:
        asyncio.run(swapper.get_best_quote("ethereum", NATIVE_TOKEN, TKX_ETHEREUM, Decimal("1")))

    assert exc_info.value.failures == ["uniswap_v3: no pool", "sushiswap: rpc timeout"]


@pytest.mark.parametrize("from_token,to_token", [
    (NATIVE_TOKEN, WETH_ETHEREUM),
    (TKX_ETHEREUM, TKX_ETHEREUM.upper().replace("0X", "0x")),
])
def test_swap_of_token_for_itself_is_rejected(config, from_token, to_token):
    connector = fake_connector("uniswap_v3", amount_out=ONE)
    swapper = Swapper(config, MagicMock(), connectors=[connector])

    with pytest.raises(QuoteUnavailable):
        asyncio.run(swapper.get_best_quote("ethereum", from_token, to_token, Decimal("1")))
    connector.get_quote.assert_not_awaited()


def test_execute_falls_back_to_next_best_connector(config):
    best = fake_connector("uniswap_v3", amount_out=1000 * 10 ** 15)
    best.execute_swap.side_effect = TransactionFailure("reverted")
    second = fake_connector("sushiswap", amount_out=990 * 10 ** 15, fee_tier=30)
    second.execute_swap.return_value = ("0xswap", 991 * 10 ** 15, Decimal("0.002"))
    swapper = Swapper(config, MagicMock(), connectors=[second, best])

    result = asyncio.run(swapper.execute_swap("ethereum", NATIVE_TOKEN, TKX_ETHEREUM, Decimal("1"), Decimal("0.5")))

    assert result.exchange == "sushiswap"
    assert result.tx_ref == "0xswap"
    assert result.output_amount == Decimal("0.991")
    assert result.gas_cost == Decimal("0.002")
    # Slippage floor comes from the best quote, for every attempt
    min_out = 1000 * 10 ** 15 * 9950 // 10000
    assert best.execute_swap.await_args.args[4] == min_out
    assert second.execute_swap.await_args.args[4] == min_out
    assert result.min_output == Decimal("0.995")


def test_execute_raises_when_every_exchange_fails(config):
    only = fake_connector("uniswap_v3", amount_out=ONE)
    only.execute_swap.side_effect = TransactionFailure("reverted")
    swapper = Swapper(config, MagicMock(), connectors=[only])

    with pytest.raises(TransactionFailure):
        asyncio.run(swapper.execute_swap("ethereum", NATIVE_TOKEN, TKX_ETHEREUM, Decimal("1"), Decimal("0.5")))


def test_gas_estimate_uses_best_connector_and_gas_price(config):
    wallet = MagicMock()
    wallet.max_fee_per_gas = AsyncMock(return_value=20 * 10 ** 9)
    connector = fake_connector("uniswap_v3", amount_out=ONE)
    swapper = Swapper(config, wallet, connectors=[connector])

    estimate = asyncio.run(swapper.estimate_swap_gas_cost("ethereum", NATIVE_TOKEN, TKX_ETHEREUM, Decimal("1")))

    assert estimate.gas_units == 180000
    assert estimate.gas_cost == Decimal("0.0036")
    assert estimate.is_default is False


def test_gas_estimate_falls_back_to_default(config):
    swapper = Swapper(config, MagicMock(), connectors=[])

    estimate = asyncio.run(swapper.estimate_swap_gas_cost("ethereum", NATIVE_TOKEN, TKX_ETHEREUM, Decimal("1")))

    assert estimate.is_default is True
    assert estimate.gas_units == 500000
    assert estimate.gas_cost == Decimal("0.015")


def test_create_connector_rejects_unknown_name(config):
    with pytest.raises(ConfigError):
        create_connector("curve", config, MagicMock())


def test_uniswap_probes_fee_tiers(config):
    config["exchanges"]["uniswap_v3"] = {
        "fee_tiers": [100, 500, 3000],
        "routers": {"ethereum": "0x68b3465833fb72A70ecDF485E0e4C7bD8665Fc45"},
        "quoters": {"ethereum": "0x61fFE014bA17989E743c5F6cB21bF9697530B21e"},
    }
    wallet = MagicMock()
    quoter = wallet.contract.return_value
    quoter.functions.quoteExactInputSingle.return_value.call = AsyncMock(side_effect=[
        Exception("no pool"), (990, 0, 0, 0), (995, 0, 0, 0),
    ])
    connector = UniswapV3Connector(config, wallet)

    amount_out, fee_tier = asyncio.run(connector.get_quote("ethereum", NATIVE_TOKEN, TKX_ETHEREUM, 1000))

    assert connector.is_supported("ethereum") is True
    assert connector.is_supported("arbitrum") is False
    assert (amount_out, fee_tier) == (995, 3000)


def test_simulated_swap_moves_paper_balances(config):
    wallet = PaperWallet(config)
    connector = SimulatedSwapConnector(config, wallet, SimulatedPriceOracle(config))
    swapper = Swapper(config, wallet, connectors=[connector])

    result = asyncio.run(swapper.execute_swap("arbitrum", NATIVE_TOKEN, "0x2222222222222222222222222222222222222222",
                                              Decimal("1.02"), Decimal("0.5")))

    assert result.exchange == "simulated"
    assert result.output_amount == Decimal("0.9995")
    assert wallet.balances["arbitrum"][NATIVE_TOKEN] == Decimal("8.98")
    assert result.gas_cost == Decimal("0.00015")


def test_live_swap_reports_output_in_token_decimals(config, mocker):
    config["tokens"]["TKX"]["decimals"] = 6
    config["exchanges"]["uniswap_v3"] = {"routers": {"ethereum": "0x68b3465833fb72A70ecDF485E0e4C7bD8665Fc45"}}
    wallet = MagicMock()
    wallet.ensure_allowance = AsyncMock()
    wallet.get_token_balance = AsyncMock(side_effect=[Decimal("0"), Decimal("2.5")])
    wallet.send_transaction = AsyncMock(return_value="0xswap")
    wallet.wait_for_transaction = AsyncMock(return_value={"gasUsed": 150000, "effectiveGasPrice": 10 ** 9})
    wallet.gas_cost_of.return_value = Decimal("0.00015")
    connector = UniswapV3Connector(config, wallet)
    mocker.patch.object(connector, "build_swap_tx", new=AsyncMock(return_value={"to": "0xrouter"}))

    tx_ref, amount_out, gas_cost = asyncio.run(
        connector.execute_swap("ethereum", NATIVE_TOKEN, TKX_ETHEREUM, ONE, 2 * 10 ** 6, 3000))

    assert tx_ref == "0xswap"
    assert amount_out == 2500000
    assert gas_cost == Decimal("0.00015")
