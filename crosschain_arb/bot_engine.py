# bot_engine.py
"""
Async engine that orchestrates:
- OpportunityFinder (scan and rank)
- StrategyBuilder (size and plan one opportunity)
- TradeExecutor (run the plan, standard or flash-loan path)
- PnLLedger (durable record of every attempt)

Only one trade runs at a time; a second execute() while one is active is
refused rather than queued. Scans skip while a trade is active.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from crosschain_arb.data_models import ArbitrageOpportunity, Execution, ExecutionStatus, Strategy, utc_now
from crosschain_arb.logging_config import get_logger
from crosschain_arb.utils import ArbitrageError

RECENT_OPPORTUNITIES_SHOWN = 5


@dataclass
class BotState:
    running: bool = False
    last_scan: Optional[datetime] = None
    active_trade: Optional[Dict[str, Any]] = None
    recent_opportunities: List[Dict[str, Any]] = field(default_factory=list)
    total_scans: int = 0
    opportunities_found: int = 0
    trades_executed: int = 0
    trades_successful: int = 0
    trades_failed: int = 0

    @property
    def success_rate(self) -> str:
        if self.trades_executed == 0:
            return "N/A"
        return f"{self.trades_successful / self.trades_executed * 100:.2f}%"


class ArbitrageBot:
    def __init__(self, config: Dict[str, Any], finder: Any, strategy_builder: Any, executor: Any, ledger: Any,
                 *, closeables: Optional[List[Any]] = None):
        self.log = get_logger(__name__)
        self.config = config
        self.finder = finder
        self.strategy_builder = strategy_builder
        self.executor = executor
        self.ledger = ledger
        self._closeables = closeables or []

        arb_config = config.get("arbitrage", {})
        self.monitoring_interval_s = float(arb_config.get("monitoring_interval_s", 60))
        self.auto_execute = bool(arb_config.get("auto_execute", False))

        self.state = BotState()
        self._trade_lock = asyncio.Lock()
        self._stop_evt = asyncio.Event()
        self.start_time = 0.0

    # ---------- Scanning ----------

    async def scan(self, auto_execute: Optional[bool] = None) -> List[ArbitrageOpportunity]:
        """Ranked opportunities (best fiat profit first). Empty while a trade is active."""
        if self._trade_lock.locked():
            self.log.info("Skip scan: Active trade in progress")
            return []

        self.log.info("Scanning for arbitrage opportunities")
        self.state.last_scan = utc_now()
        self.state.total_scans += 1

        opportunities = self.finder.rank_opportunities(await self.finder.find_arbitrage_opportunities())
        if not opportunities:
            self.log.info("No arbitrage opportunities found")
            return []

        self.state.opportunities_found += len(opportunities)
        self.state.recent_opportunities = [o.summary() for o in opportunities]
        top = opportunities[0]
        self.log.info(f"Found {len(opportunities)} arbitrage opportunities. Top: {top.token.symbol} "
                      f"{top.buy_network}->{top.sell_network}, estimated profit ${top.estimated_profit_fiat:.2f}")

        should_execute = self.auto_execute if auto_execute is None else auto_execute
        if should_execute:
            await self.execute(top)
        return opportunities

    # ---------- Execution ----------

    async def execute(self, opportunity: ArbitrageOpportunity) -> Optional[Execution]:
        """Returns None when another trade is already active."""
        if self._trade_lock.locked():
            self.log.warning("Cannot execute: Active trade in progress")
            return None

        async with self._trade_lock:
            symbol = opportunity.token.symbol
            self.log.trade(f"Executing arbitrage for {symbol} between {opportunity.buy_network} and {opportunity.sell_network}")
            self.state.active_trade = {
                "token": symbol,
                "buy_network": opportunity.buy_network,
                "sell_network": opportunity.sell_network,
                "start_time": utc_now().isoformat(),
                "status": ExecutionStatus.IN_PROGRESS.value,
            }
            try:
                execution = await self._run_strategy(opportunity)
                try:
                    self.ledger.record_trade(execution)
                except Exception as e:
                    self.log.error(f"Failed to record trade in PnL ledger: {e}", exc_info=True)
            finally:
                self.state.active_trade = None

            self.state.trades_executed += 1
            if execution.status == ExecutionStatus.SUCCESS:
                self.state.trades_successful += 1
                self.log.success(f"Trade executed successfully with profit: {execution.pnl.net_profit} ETH")
            else:
                self.state.trades_failed += 1
                self.log.error(f"Trade execution failed: {execution.error}")
            return execution

    async def _run_strategy(self, opportunity: ArbitrageOpportunity) -> Execution:
        try:
            strategy = await self.strategy_builder.get_best_arbitrage_strategy(opportunity)
        except Exception as e:
            self.log.error(f"Failed to build strategy for {opportunity.token.symbol}: {e}", exc_info=True)
            execution = Execution(strategy=Strategy.unplanned(opportunity))
            execution.finish(ExecutionStatus.FAILED, f"Strategy build failed: {e}")
            return execution

        if strategy.use_flash_loan:
            self.log.info("Using flash loan for arbitrage")
        else:
            self.log.info("Using regular arbitrage strategy")
        return await self.executor.execute(strategy)

    async def manual_execute(self, index: int = 0) -> Optional[Execution]:
        """Executes the index-th recent opportunity if a fresh scan still finds it."""
        if not self.state.recent_opportunities:
            await self.scan(auto_execute=False)
        if not self.state.recent_opportunities:
            raise ArbitrageError("No recent opportunities to execute")
        if index < 0 or index >= len(self.state.recent_opportunities):
            raise ArbitrageError(f"Invalid opportunity index: {index}")

        recent = self.state.recent_opportunities[index]
        self.log.info(f"Manually executing opportunity: {recent['token']} between {recent['buy_network']} and {recent['sell_network']}")
        fresh = await self.finder.find_arbitrage_opportunities()
        match = next((o for o in fresh if o.token.symbol == recent["token"]
                      and o.buy_network == recent["buy_network"]
                      and o.sell_network == recent["sell_network"]), None)
        if match is None:
            raise ArbitrageError("Opportunity is no longer available")
        return await self.execute(match)

    # ---------- Queries ----------

    def get_status(self) -> Dict[str, Any]:
        summary = self.ledger.get_summary()
        return {
            "running": self.state.running,
            "last_scan": self.state.last_scan.isoformat() if self.state.last_scan else None,
            "active_trade": self.state.active_trade,
            "stats": {
                "total_scans": self.state.total_scans,
                "opportunities_found": self.state.opportunities_found,
                "trades_executed": self.state.trades_executed,
                "trades_successful": self.state.trades_successful,
                "trades_failed": self.state.trades_failed,
                "success_rate": self.state.success_rate,
            },
            "pnl": {
                "net_profit": summary["net_profit"],
                "current_balance": summary["current_balance"],
                "roi": summary["roi"],
                "total_trades": summary["total_trades"],
            },
            "recent_opportunities": self.state.recent_opportunities[:RECENT_OPPORTUNITIES_SHOWN],
        }

    def get_history(self, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        return self.ledger.get_trade_history(limit, offset)

    def reset_ledger(self) -> Dict[str, Any]:
        self.ledger.reset()
        return self.ledger.get_summary()

    # ---------- Lifecycle ----------

    async def run(self) -> None:
        """Periodic scan loop until stop() or a stop condition."""
        if self.state.running:
            self.log.warning("Bot already running; ignoring run()")
            return
        self.state.running = True
        self.start_time = time.time()
        self._stop_evt.clear()
        self.executor.reset_stop()
        self.log.info(f"Starting arbitrage bot, scanning every {self.monitoring_interval_s}s")

        try:
            while self.state.running:
                if self._check_stop_conditions():
                    break
                try:
                    await self.scan()
                except Exception as e:
                    self.log.error(f"An error occurred in the main bot loop: {e}", exc_info=True)
                try:
                    await asyncio.wait_for(self._stop_evt.wait(), timeout=self.monitoring_interval_s)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            self.log.info("Bot run task was cancelled.")
            raise
        finally:
            self.state.running = False
            self.log.info("Bot loop finished.")

    def _check_stop_conditions(self) -> bool:
        stop_conditions = self.config.get("stop_conditions")
        if not stop_conditions:
            return False

        max_trades = stop_conditions.get("max_trades")
        if max_trades is not None and self.state.trades_executed >= max_trades:
            self.log.info(f"Stop condition met: Maximum trades ({max_trades}) reached.")
            return True

        run_duration_s = stop_conditions.get("run_duration_s")
        if run_duration_s is not None and (time.time() - self.start_time) >= run_duration_s:
            self.log.info(f"Stop condition met: Maximum run duration ({run_duration_s}s) reached.")
            return True

        return False

    def stop(self) -> None:
        """Ends the loop and abandons any unstarted steps of the active trade."""
        self.state.running = False
        self._stop_evt.set()
        self.executor.request_stop()
        self.log.info("Stop requested")

    async def close(self) -> None:
        for resource in self._closeables:
            try:
                await resource.close()
            except Exception as e:
                self.log.warning(f"Error closing {type(resource).__name__}: {e}")
