# main.py

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from crosschain_arb.factory import build_bot
from crosschain_arb.logging_config import setup_logging
from crosschain_arb.paper_trader import analyze_trade_history, run_paper_trading
from crosschain_arb.performance_analyzer import PerformanceAnalyzer
from crosschain_arb.pnl_ledger import PnLLedger
from crosschain_arb.utils import ArbitrageError, ConfigError, inject_secrets, load_config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crosschain-arb",
                                     description="Cross-chain liquid staking derivative arbitrage bot")
    parser.add_argument("--config", default=None, help="Path to config.yaml (default: config/config.yaml)")
    parser.add_argument("--paper", action="store_true", help="Use the simulated wallet, DEX and bridge stack")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("start", help="Run the periodic scan loop until interrupted")
    sub.add_parser("scan", help="Scan once and print ranked opportunities")
    execute = sub.add_parser("execute", help="Scan and execute the opportunity at INDEX")
    execute.add_argument("index", nargs="?", type=int, default=0)
    sub.add_parser("status", help="Print bot and ledger status")
    sub.add_parser("pnl", help="Print the PnL summary")
    history = sub.add_parser("history", help="Print trade history, newest first")
    history.add_argument("limit", nargs="?", type=int, default=10)
    history.add_argument("offset", nargs="?", type=int, default=0)
    sub.add_parser("reset-pnl", help="Clear the trade history and restore the initial balance")
    paper = sub.add_parser("paper-trade", help="Run a paper trading session")
    paper.add_argument("iterations", nargs="?", type=int, default=10)
    paper.add_argument("sleep", nargs="?", type=float, default=5.0, help="Seconds between iterations")
    report = sub.add_parser("report", help="Performance KPIs and charts")
    report.add_argument("output_dir", nargs="?", default="reports")
    return parser


async def run_bot_command(config: Dict[str, Any], args: argparse.Namespace) -> Any:
    paper = args.paper or args.command == "paper-trade"
    bot = build_bot(config, paper=paper)
    try:
        if args.command == "start":
            await bot.run()
            return bot.get_status()
        if args.command == "scan":
            opportunities = await bot.scan(auto_execute=False)
            return [o.summary() for o in opportunities]
        if args.command == "execute":
            execution = await bot.manual_execute(args.index)
            return execution.to_dict() if execution else {"status": "skipped", "message": "Active trade in progress"}
        if args.command == "status":
            return bot.get_status()
        if args.command == "paper-trade":
            summary = await run_paper_trading(bot, args.iterations, args.sleep)
            return {"summary": summary, "analysis": analyze_trade_history(bot.ledger)}
        raise ArbitrageError(f"Unknown command: {args.command}")
    finally:
        await bot.close()


def run_ledger_command(config: Dict[str, Any], args: argparse.Namespace) -> Any:
    ledger = PnLLedger.from_config(config, paper=args.paper)
    if args.command == "pnl":
        return ledger.get_summary()
    if args.command == "history":
        return ledger.get_trade_history(args.limit, args.offset)
    if args.command == "reset-pnl":
        ledger.reset()
        return {"status": "success", "message": "PnL ledger reset", "summary": ledger.get_summary()}
    if args.command == "report":
        return PerformanceAnalyzer(ledger).report(args.output_dir)
    raise ArbitrageError(f"Unknown command: {args.command}")


LEDGER_COMMANDS = {"pnl", "history", "reset-pnl", "report"}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = inject_secrets(load_config(args.config))
    except ConfigError as e:
        print(json.dumps({"status": "error", "message": str(e)}), file=sys.stderr)
        return 1
    setup_logging(config)

    try:
        if args.command in LEDGER_COMMANDS:
            result = run_ledger_command(config, args)
        else:
            result = asyncio.run(run_bot_command(config, args))
    except KeyboardInterrupt:
        logging.info("Shutdown signal received (Ctrl+C). Exiting gracefully.")
        return 130
    except ArbitrageError as e:
        logging.error(f"Command '{args.command}' failed: {e}")
        print(json.dumps({"status": "error", "message": str(e)}))
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
