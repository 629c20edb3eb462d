# tests/test_paper_trading.py

import asyncio
from decimal import Decimal

import pytest

from conftest import TKX_ARBITRUM, TKX_ETHEREUM
from crosschain_arb.data_models import ExecutionStatus, StepAction
from crosschain_arb.factory import build_bot
from crosschain_arb.paper_trader import analyze_trade_history, run_paper_trading
from crosschain_arb.simulation import PaperWallet, SimulatedPriceOracle
from crosschain_arb.utils import NATIVE_TOKEN, PriceNotFound, TransactionFailure


@pytest.fixture
def paper_bot(config):
    return build_bot(config, paper=True)


def test_simulated_prices_apply_network_variance(config):
    oracle = SimulatedPriceOracle(config)

    ethereum = asyncio.run(oracle.get_price(TKX_ETHEREUM, "ethereum"))
    arbitrum = asyncio.run(oracle.get_price(TKX_ARBITRUM, "arbitrum"))

    assert ethereum.price_in_reference == Decimal("1.0")
    assert arbitrum.price_in_reference == Decimal("1.02")
    assert arbitrum.price_in_fiat == Decimal("1.02") * 3000


def test_simulated_oracle_rejects_unknown_token(config):
    oracle = SimulatedPriceOracle(config)

    with pytest.raises(PriceNotFound):
        asyncio.run(oracle.get_price("0x5555555555555555555555555555555555555555", "ethereum"))


def test_paper_wallet_refuses_overdraft(config):
    wallet = PaperWallet(config)

    with pytest.raises(TransactionFailure):
        wallet.debit("ethereum", NATIVE_TOKEN, Decimal("10.5"))
    assert wallet.balances["ethereum"][NATIVE_TOKEN] == Decimal("10")


def test_paper_scan_finds_variance_spread(paper_bot):
    opportunities = asyncio.run(paper_bot.scan(auto_execute=False))

    pairs = {(o.buy_network, o.sell_network) for o in opportunities}
    assert pairs == {("ethereum", "arbitrum"), ("optimism", "arbitrum")}
    assert all(o.profitability.is_profitable for o in opportunities)


def test_paper_trade_runs_all_four_steps(paper_bot):
    opportunities = asyncio.run(paper_bot.scan(auto_execute=False))

    execution = asyncio.run(paper_bot.execute(opportunities[0]))

    assert execution.status == ExecutionStatus.SUCCESS
    assert [s.action for s in execution.steps] == [
        StepAction.BUY, StepAction.BRIDGE_FORWARD, StepAction.SELL, StepAction.BRIDGE_BACK,
    ]
    assert execution.pnl.net_profit > 0
    assert execution.total_gas_used > 0
    wallet = paper_bot.executor.wallet
    assert wallet.balances["ethereum"][NATIVE_TOKEN] > Decimal("10")
    assert paper_bot.ledger.current_balance > Decimal("10")


def test_run_paper_trading_session(paper_bot):
    summary = asyncio.run(run_paper_trading(paper_bot, iterations=2, sleep_s=0))

    assert summary["total_trades"] == 2
    assert summary["successful_trades"] == 2
    assert summary["net_profit"] > 0


def test_analyze_trade_history(paper_bot):
    asyncio.run(run_paper_trading(paper_bot, iterations=1, sleep_s=0))

    analysis = analyze_trade_history(paper_bot.ledger)

    assert analysis["by_token"]["TKX"]["trades"] == 1
    assert list(analysis["by_network_pair"]) == [
        f"{paper_bot.ledger.trades[0].buy_network}-{paper_bot.ledger.trades[0].sell_network}"
    ]
    (hour, bucket), = analysis["hourly_distribution"].items()
    assert 0 <= hour < 24
    assert bucket["count"] == 1
    assert bucket["profit"] == paper_bot.ledger.trades[0].net_profit


def test_paper_ledger_is_kept_apart_from_live(paper_bot, config):
    assert paper_bot.ledger.data_dir.endswith("paper")
    assert paper_bot.ledger.data_dir != config["ledger"]["data_dir"]
