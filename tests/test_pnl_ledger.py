# tests/test_pnl_ledger.py

import json
import os
from decimal import Decimal

import pytest

from conftest import make_opportunity
from crosschain_arb.calculator import calculate_pnl
from crosschain_arb.data_models import Execution, ExecutionStatus, GasEstimate, Strategy
from crosschain_arb.pnl_ledger import PnLLedger


@pytest.fixture
def ledger(tmp_path):
    return PnLLedger(initial_balance=Decimal("10"), data_dir=str(tmp_path / "ledger"))


def make_execution(token, net_profit="0.05", gas="0.003", status=ExecutionStatus.SUCCESS,
                   buy_network="ethereum", sell_network="arbitrum"):
    opportunity = make_opportunity(token, buy_network=buy_network, sell_network=sell_network)
    strategy = Strategy(opportunity=opportunity, use_flash_loan=False, trade_size=Decimal("2"),
                        gas_estimate_buy=GasEstimate(0, Decimal("0")), gas_estimate_sell=GasEstimate(0, Decimal("0")),
                        bridge_fee=Decimal("0"), bridge_time_minutes=5, steps=())
    execution = Execution(strategy=strategy)
    gas = Decimal(gas)
    execution.total_gas_used = gas
    if status == ExecutionStatus.SUCCESS:
        execution.pnl = calculate_pnl(Decimal("10"), Decimal("10") + Decimal(net_profit) + gas, gas)
        execution.finish(status)
    else:
        execution.finish(status, "Failed at step 1 (buy): reverted")
    return execution


def test_new_ledger_is_empty(ledger):
    summary = ledger.get_summary()

    assert summary["total_trades"] == 0
    assert summary["current_balance"] == Decimal("10")
    assert summary["win_rate"] == 0
    assert ledger.get_trade_history()["trades"] == []


def test_success_advances_balance_and_history(ledger, token_x):
    record = ledger.record_trade(make_execution(token_x, net_profit="0.05"))

    assert record.id == 1
    assert record.status == "success"
    assert ledger.current_balance == Decimal("10.05")
    assert len(ledger.pnl_history) == 1
    assert ledger.pnl_history[0].balance == Decimal("10.05")
    assert ledger.pnl_history[0].profit == Decimal("0.05")


def test_failure_is_recorded_without_moving_balance(ledger, token_x):
    record = ledger.record_trade(make_execution(token_x, gas="0.002", status=ExecutionStatus.FAILED))

    assert record.status == "failed"
    assert record.error.startswith("Failed at step 1")
    assert record.gas_cost == Decimal("0.002")
    assert ledger.current_balance == Decimal("10")
    assert ledger.pnl_history == []
    assert ledger.get_summary()["failed_trade_gas_cost"] == Decimal("0.002")


def test_summary_aggregates(ledger, token_x):
    ledger.record_trade(make_execution(token_x, net_profit="0.05"))
    ledger.record_trade(make_execution(token_x, net_profit="-0.01", buy_network="optimism"))
    ledger.record_trade(make_execution(token_x, status=ExecutionStatus.FAILED))
    ledger.record_trade(make_execution(token_x, net_profit="0.02"))

    summary = ledger.get_summary()

    assert summary["total_trades"] == 4
    assert summary["successful_trades"] == 3
    assert summary["failed_trades"] == 1
    assert summary["win_rate"] == Decimal("75")
    assert summary["current_balance"] == Decimal("10.06")
    assert summary["net_profit"] == Decimal("0.06")
    assert summary["largest_profit"] == Decimal("0.05")
    assert summary["largest_loss"] == Decimal("-0.01")
    assert summary["roi"] == Decimal("0.6")
    assert summary["by_token"]["TKX"]["trades"] == 4
    assert summary["by_network_pair"]["ethereum-arbitrum"]["successful_trades"] == 2
    assert summary["by_network_pair"]["optimism-arbitrum"]["total_profit"] == Decimal("-0.01")


def test_summary_is_idempotent(ledger, token_x):
    ledger.record_trade(make_execution(token_x))

    assert ledger.get_summary() == ledger.get_summary()


def test_history_is_newest_first_and_paginated(ledger, token_x):
    for _ in range(5):
        ledger.record_trade(make_execution(token_x))

    first_page = ledger.get_trade_history(limit=2, offset=0)
    last_page = ledger.get_trade_history(limit=2, offset=4)

    assert first_page["total"] == 5
    assert [t["id"] for t in first_page["trades"]] == [5, 4]
    assert [t["id"] for t in last_page["trades"]] == [1]
    assert ledger.get_trade_history(limit=2, offset=10)["trades"] == []


def test_history_serializes_decimals_as_strings(ledger, token_x):
    ledger.record_trade(make_execution(token_x, net_profit="0.05"))

    trade = ledger.get_trade_history()["trades"][0]

    assert isinstance(trade["net_profit"], str)
    assert Decimal(trade["net_profit"]) == Decimal("0.05")
    assert trade["buy_price"] == "0.975"


def test_reset_clears_state_and_files(ledger, token_x):
    ledger.record_trade(make_execution(token_x))

    ledger.reset()

    assert ledger.trades == []
    assert ledger.current_balance == ledger.initial_balance
    with open(ledger.trades_path) as f:
        assert json.load(f) == []
    with open(ledger.history_path) as f:
        assert json.load(f) == []


def test_state_survives_reload(ledger, token_x):
    ledger.record_trade(make_execution(token_x, net_profit="0.05"))
    ledger.record_trade(make_execution(token_x, status=ExecutionStatus.FAILED))

    reloaded = PnLLedger(initial_balance=Decimal("10"), data_dir=ledger.data_dir)

    assert len(reloaded.trades) == 2
    assert reloaded.current_balance == Decimal("10.05")
    assert reloaded.trades[0].net_profit == Decimal("0.05")
    assert reloaded.get_summary() == ledger.get_summary()


def test_corrupt_file_is_set_aside(tmp_path):
    data_dir = tmp_path / "ledger"
    data_dir.mkdir()
    (data_dir / PnLLedger.TRADES_FILE).write_text("{not json")

    ledger = PnLLedger(data_dir=str(data_dir))

    assert ledger.trades == []
    assert os.path.exists(str(data_dir / PnLLedger.TRADES_FILE) + ".corrupt")


def test_from_config_uses_separate_paper_directory(config):
    live = PnLLedger.from_config(config)
    paper = PnLLedger.from_config(config, paper=True)

    assert paper.data_dir == os.path.join(config["ledger"]["data_dir"], "paper")
    assert live.data_dir != paper.data_dir
    assert live.initial_balance == Decimal("10")
