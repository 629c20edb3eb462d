# paper_trader.py

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from crosschain_arb.logging_config import get_logger

logger = get_logger(__name__)

ANALYZED_TRADES = 100


async def run_paper_trading(bot, iterations: int = 10, sleep_s: float = 5.0) -> Dict[str, Any]:
    """Scan, execute the top opportunity, repeat. Returns the ledger summary."""
    logger.info(f"Starting paper trading for {iterations} iterations")

    for i in range(iterations):
        logger.info(f"Paper trading iteration {i + 1}/{iterations}")
        opportunities = await bot.scan(auto_execute=False)

        if not opportunities:
            logger.info("No arbitrage opportunities found in this iteration")
        else:
            execution = await bot.execute(opportunities[0])
            if execution is None:
                logger.warning("Paper trade skipped: another trade is active")
            elif execution.pnl is not None:
                logger.info(f"Paper trade execution successful: {execution.pnl.net_profit} ETH profit")
            else:
                logger.info(f"Paper trade execution failed: {execution.error}")

        if i < iterations - 1 and sleep_s > 0:
            logger.info(f"Sleeping for {sleep_s} seconds before next iteration")
            await asyncio.sleep(sleep_s)

    summary = bot.ledger.get_summary()
    logger.info("=== Paper Trading Summary ===")
    for key in ("initial_balance", "current_balance", "total_trades", "successful_trades",
                "failed_trades", "win_rate", "total_profit", "total_gas_cost", "net_profit", "roi"):
        logger.info(f"{key}: {summary[key]}")
    return summary


def analyze_trade_history(ledger) -> Dict[str, Any]:
    """Ledger summary plus an hour-of-day distribution over the most recent trades."""
    summary = ledger.get_summary()
    history = ledger.get_trade_history(ANALYZED_TRADES, 0)

    hourly = {hour: {"count": 0, "profit": Decimal("0")} for hour in range(24)}
    for trade in history["trades"]:
        hour = datetime.fromisoformat(trade["timestamp"]).hour
        hourly[hour]["count"] += 1
        if trade["status"] == "success":
            hourly[hour]["profit"] += Decimal(trade["net_profit"])

    for token, performance in summary["by_token"].items():
        logger.info(f"{token}: {performance['trades']} trades, {performance['successful_trades']} successful, "
                    f"{performance['total_profit']} ETH profit")
    for pair, performance in summary["by_network_pair"].items():
        logger.info(f"{pair}: {performance['trades']} trades, {performance['successful_trades']} successful, "
                    f"{performance['total_profit']} ETH profit")

    return {
        "summary": summary,
        "by_token": summary["by_token"],
        "by_network_pair": summary["by_network_pair"],
        "hourly_distribution": {hour: data for hour, data in hourly.items() if data["count"] > 0},
    }
