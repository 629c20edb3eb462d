# pnl_ledger.py

import json
import os
import tempfile
import threading
from decimal import Decimal
from typing import Any, Dict, List, Optional

from crosschain_arb.data_models import (Execution, ExecutionStatus, PnLHistoryPoint, TradeRecord, utc_now)
from crosschain_arb.logging_config import get_logger
from crosschain_arb.utils import to_decimal

logger = get_logger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class PnLLedger:
    """
    Append-only, single-writer record of every execution attempt, persisted as
    two JSON files (trades and PnL history) rewritten atomically on each change.
    Aggregates are always recomputed from the trade list.
    """
    TRADES_FILE = "trades.json"
    HISTORY_FILE = "pnl_history.json"

    def __init__(self, initial_balance: Decimal = Decimal("10"), data_dir: str = "data"):
        self.initial_balance = to_decimal(initial_balance)
        self.data_dir = data_dir
        self.trades: List[TradeRecord] = []
        self.pnl_history: List[PnLHistoryPoint] = []
        self._lock = threading.Lock()
        os.makedirs(self.data_dir, exist_ok=True)
        self.trades_path = os.path.join(self.data_dir, self.TRADES_FILE)
        self.history_path = os.path.join(self.data_dir, self.HISTORY_FILE)
        self._load()

    @classmethod
    def from_config(cls, config: Dict[str, Any], paper: bool = False) -> "PnLLedger":
        ledger_config = config.get("ledger", {})
        data_dir = ledger_config.get("data_dir", "data")
        if paper:
            data_dir = ledger_config.get("paper_data_dir", os.path.join(data_dir, "paper"))
        return cls(initial_balance=to_decimal(ledger_config.get("initial_balance", 10)), data_dir=data_dir)

    # -------- Persistence --------

    def _load(self):
        self.trades = [TradeRecord.from_dict(d) for d in self._read_json(self.trades_path)]
        self.pnl_history = [PnLHistoryPoint.from_dict(d) for d in self._read_json(self.history_path)]
        logger.info(f"Loaded PnL data: current balance {self.current_balance} ETH, total trades {len(self.trades)}")

    def _read_json(self, path: str) -> List[Dict[str, Any]]:
        if not os.path.exists(path):
            return []
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            # Keep the unreadable file for inspection instead of overwriting it on the next save
            backup = f"{path}.corrupt"
            os.replace(path, backup)
            logger.error(f"Could not read {path}: {e}. Moved to {backup}, starting empty.")
            return []

    def _write_json(self, path: str, payload: List[Dict[str, Any]]):
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _save(self):
        self._write_json(self.trades_path, [t.to_dict() for t in self.trades])
        self._write_json(self.history_path, [p.to_dict() for p in self.pnl_history])

    # -------- Mutations --------

    def record_trade(self, execution: Execution) -> TradeRecord:
        """Always appends; only successful executions advance the running balance."""
        opportunity = execution.strategy.opportunity
        pnl = execution.pnl
        with self._lock:
            record = TradeRecord(
                id=len(self.trades) + 1,
                timestamp=utc_now().isoformat(),
                token=opportunity.token.symbol,
                buy_network=opportunity.buy_network,
                sell_network=opportunity.sell_network,
                buy_price=opportunity.buy_quote.price_in_reference,
                sell_price=opportunity.sell_quote.price_in_reference,
                trade_size=execution.flash_loan_amount if execution.flash_loan else execution.strategy.trade_size,
                status=execution.status.value,
                net_profit=pnl.net_profit if pnl else ZERO,
                gross_profit=pnl.gross_profit if pnl else ZERO,
                gas_cost=pnl.gas_used if pnl else execution.total_gas_used,
                duration_ms=execution.duration_ms,
                flash_loan=execution.flash_loan,
                error=execution.error,
                requires_manual_intervention=execution.requires_manual_intervention,
                steps=[s.to_dict() for s in execution.steps],
            )
            self.trades.append(record)

            if execution.status == ExecutionStatus.SUCCESS and pnl is not None:
                balance = self.current_balance
                self.pnl_history.append(PnLHistoryPoint(timestamp=record.timestamp, trade_id=record.id,
                                                        profit=pnl.net_profit, balance=balance, token=record.token))
                logger.info(f"Recorded successful trade: ID {record.id}, profit {pnl.net_profit} ETH, new balance {balance} ETH")
            else:
                logger.info(f"Recorded unsuccessful trade: ID {record.id}, status {record.status}")
            self._save()
        return record

    def reset(self):
        with self._lock:
            self.trades = []
            self.pnl_history = []
            self._save()
        logger.info("PnL ledger reset successfully")

    # -------- Queries --------

    def _successful(self) -> List[TradeRecord]:
        return [t for t in self.trades if t.status == ExecutionStatus.SUCCESS.value]

    @property
    def current_balance(self) -> Decimal:
        return self.initial_balance + sum((t.net_profit for t in self._successful()), ZERO)

    def get_summary(self) -> Dict[str, Any]:
        trades = list(self.trades)
        successful = self._successful()
        total = len(trades)

        total_profit = sum((t.gross_profit for t in successful), ZERO)
        total_gas = sum((t.gas_cost for t in successful), ZERO)
        failed_gas = sum((t.gas_cost for t in trades if t.status != ExecutionStatus.SUCCESS.value), ZERO)
        net_profits = [t.net_profit for t in successful]
        current = self.current_balance

        return {
            "initial_balance": self.initial_balance,
            "current_balance": current,
            "total_trades": total,
            "successful_trades": len(successful),
            "failed_trades": total - len(successful),
            "win_rate": (Decimal(len(successful)) / Decimal(total) * HUNDRED) if total else ZERO,
            "total_profit": total_profit,
            "total_gas_cost": total_gas,
            "net_profit": total_profit - total_gas,
            "failed_trade_gas_cost": failed_gas,
            "roi": (current - self.initial_balance) / self.initial_balance * HUNDRED if self.initial_balance else ZERO,
            "largest_profit": max([p for p in net_profits if p > 0], default=ZERO),
            "largest_loss": min([p for p in net_profits if p < 0], default=ZERO),
            "manual_interventions": sum(1 for t in trades if t.requires_manual_intervention),
            "by_token": self._breakdown(trades, lambda t: t.token),
            "by_network_pair": self._breakdown(trades, lambda t: f"{t.buy_network}-{t.sell_network}"),
        }

    @staticmethod
    def _breakdown(trades: List[TradeRecord], key) -> Dict[str, Dict[str, Any]]:
        groups: Dict[str, Dict[str, Any]] = {}
        for trade in trades:
            group = groups.setdefault(key(trade), {"trades": 0, "successful_trades": 0, "total_profit": ZERO})
            group["trades"] += 1
            if trade.status == ExecutionStatus.SUCCESS.value:
                group["successful_trades"] += 1
                group["total_profit"] += trade.net_profit
        return groups

    def get_trade_history(self, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        """Newest first. An offset past the end yields an empty page."""
        ordered = sorted(self.trades, key=lambda t: (t.timestamp, t.id), reverse=True)
        page = ordered[offset:offset + limit] if limit > 0 and offset >= 0 else []
        return {
            "total": len(ordered),
            "limit": limit,
            "offset": offset,
            "trades": [t.to_dict() for t in page],
        }

    def get_pnl_history(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.pnl_history]
