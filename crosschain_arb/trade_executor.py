# trade_executor.py
from __future__ import annotations

import threading
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

from crosschain_arb.calculator import calculate_pnl
from crosschain_arb.data_models import (Execution, ExecutionStatus, StepAction, StepRecord, StepStatus,
                                        Strategy)
from crosschain_arb.flash_loans import CallbackResult, calculate_flash_loan_fee, can_repay_flash_loan
from crosschain_arb.logging_config import get_logger
from crosschain_arb.utils import FlashLoanError, InsufficientRepayment, NATIVE_TOKEN, to_decimal


class TradeExecutor:
    """
    Runs a Strategy as a strictly sequential chain of irreversible steps.

    Responsibilities:
    - Standard path: buy, bridge forward, sell, bridge back. Each step consumes
      the previous step's actual output.
    - Flash-loan path: buy and atomic swap inside a loan settlement check, then repay.
    - Provide busy flag and request_stop() for lifecycle coordination. A stop
      only abandons steps that have not started. The stop flag stays set until
      reset_stop().
    - Stream progress via an optional callback.
    - Never raise: every failure is reported on the returned Execution.
    """

    def __init__(self, config: Dict[str, Any], wallet: Any, swapper: Any, bridge_router: Any,
                 flash_loan_provider: Any = None, simulate: bool = False):
        self.log = get_logger(__name__)
        self.config = config
        self.wallet = wallet
        self.swapper = swapper
        self.bridge_router = bridge_router
        self.flash_loan_provider = flash_loan_provider
        # Simulated runs treat bridge transfers as instantaneous
        self.simulate = simulate
        self._busy = False
        self._stop_evt = threading.Event()
        self._progress_cb: Optional[Callable[[str], None]] = None

        arb_config = config["arbitrage"]
        self.max_slippage_percent = to_decimal(arb_config["max_slippage_percent"])
        self.flash_loan_fee_bps = int(arb_config.get("flash_loan_fee_bps", 9))

        self._handlers: Dict[StepAction, Callable[[Strategy, StepRecord, Decimal], Awaitable[Decimal]]] = {
            StepAction.BUY: self._buy,
            StepAction.BRIDGE_FORWARD: self._bridge_forward,
            StepAction.SELL: self._sell,
            StepAction.BRIDGE_BACK: self._bridge_back,
        }

    # -------- Lifecycle --------

    def set_progress_callback(self, cb: Optional[Callable[[str], None]]) -> None:
        self._progress_cb = cb

    def request_stop(self) -> None:
        """Abandon every step that has not started yet."""
        self._stop_evt.set()
        self._emit("received stop signal")

    def reset_stop(self) -> None:
        self._stop_evt.clear()

    def is_stopping(self) -> bool:
        return self._stop_evt.is_set()

    def set_busy(self, value: bool) -> None:
        self._busy = bool(value)

    def is_busy(self) -> bool:
        return self._busy

    # -------- Public trading API --------

    async def execute(self, strategy: Strategy) -> Execution:
        if strategy.use_flash_loan:
            return await self.execute_flash_loan_arbitrage(strategy)
        return await self.execute_arbitrage_strategy(strategy)

    async def execute_arbitrage_strategy(self, strategy: Strategy) -> Execution:
        opportunity = strategy.opportunity
        execution = Execution(strategy=strategy)
        self.set_busy(True)
        try:
            self._emit(f"Executing {opportunity.token.symbol} {opportunity.buy_network}->{opportunity.sell_network}, "
                       f"size {strategy.trade_size} ETH")
            execution.start_balance = await self.wallet.get_balance(opportunity.buy_network)

            amount = strategy.trade_size
            for plan in strategy.steps:
                if self.is_stopping():
                    self._abandon(execution, f"Stopped before step {plan.step} ({plan.action.value})")
                    return execution

                record = StepRecord(step=plan.step, action=plan.action, network=plan.network, details=plan.details)
                execution.steps.append(record)
                self.log.trade(f"Step {plan.step}: {plan.details}")
                try:
                    amount = await self._handlers[plan.action](strategy, record, amount)
                except Exception as e:
                    record.fail(str(e), getattr(e, "tx_ref", None))
                    self._fail_at_step(execution, record, e)
                    return execution
                execution.total_gas_used += record.gas_cost
                self._emit(f"Step {plan.step} ({plan.action.value}) done: {record.input_amount} -> {record.output_amount}")

            execution.end_balance = await self.wallet.get_balance(opportunity.buy_network)
            execution.pnl = calculate_pnl(execution.start_balance, execution.end_balance, execution.total_gas_used)
            execution.finish(ExecutionStatus.SUCCESS)
            self._log_completion(execution)
        except Exception as e:
            self.log.exception("Trade execution error: %s", e)
            execution.finish(ExecutionStatus.FAILED, str(e))
        finally:
            self.set_busy(False)
        return execution

    async def execute_flash_loan_arbitrage(self, strategy: Strategy) -> Execution:
        opportunity = strategy.opportunity
        buy = opportunity.buy_network
        principal = opportunity.profitability.recommended_trade_size
        fee = calculate_flash_loan_fee(principal, self.flash_loan_fee_bps)
        execution = Execution(strategy=strategy, flash_loan=True, flash_loan_amount=principal)
        self.set_busy(True)
        try:
            if self.flash_loan_provider is None:
                raise FlashLoanError("No flash-loan provider configured")
            if self.is_stopping():
                self._abandon(execution, "Stopped before flash loan was requested")
                return execution

            self._emit(f"Requesting flash loan of {principal} ETH on {buy} for {opportunity.token.symbol}")
            result = await self.flash_loan_provider.execute_flash_loan(
                buy, NATIVE_TOKEN, principal, lambda: self._flash_loan_callback(strategy, execution, principal),
            )
            callback_result = result.callback_result
            if not result.success:
                execution.finish(ExecutionStatus.FAILED, callback_result.error or "Flash loan failed")
                self.log.error(f"Flash loan arbitrage failed: {execution.error}")
                return execution

            execution.flash_loan_tx_ref = result.tx_ref
            for record in execution.steps:
                record.tx_ref = result.tx_ref
            repay = StepRecord(step=3, action=StepAction.REPAY, network=buy,
                               details=f"Repay {principal} ETH + {fee} ETH fee")
            repay.complete(result.tx_ref, principal + fee, principal + fee)
            execution.steps.append(repay)

            execution.total_gas_used = fee
            execution.pnl = calculate_pnl(principal, callback_result.proceeds, fee)
            execution.finish(ExecutionStatus.SUCCESS)
            self._log_completion(execution)
        except Exception as e:
            self.log.error(f"Flash loan arbitrage failed: {e}")
            execution.finish(ExecutionStatus.FAILED, str(e))
        finally:
            self.set_busy(False)
        return execution

    # -------- Standard path steps --------

    async def _buy(self, strategy: Strategy, record: StepRecord, amount: Decimal) -> Decimal:
        opportunity = strategy.opportunity
        record.input_amount = amount
        token = opportunity.token.address_on(opportunity.buy_network)
        result = await self.swapper.execute_swap(opportunity.buy_network, NATIVE_TOKEN, token, amount, self.max_slippage_percent)
        record.complete(result.tx_ref, result.input_amount, result.output_amount, result.gas_cost)
        return result.output_amount

    async def _bridge_forward(self, strategy: Strategy, record: StepRecord, amount: Decimal) -> Decimal:
        opportunity = strategy.opportunity
        token = opportunity.token.address_on(opportunity.buy_network)
        return await self._bridge(record, opportunity.buy_network, opportunity.sell_network, token, amount)

    async def _sell(self, strategy: Strategy, record: StepRecord, amount: Decimal) -> Decimal:
        opportunity = strategy.opportunity
        record.input_amount = amount
        token = opportunity.token.address_on(opportunity.sell_network)
        result = await self.swapper.execute_swap(opportunity.sell_network, token, NATIVE_TOKEN, amount, self.max_slippage_percent)
        record.complete(result.tx_ref, result.input_amount, result.output_amount, result.gas_cost)
        return result.output_amount

    async def _bridge_back(self, strategy: Strategy, record: StepRecord, amount: Decimal) -> Decimal:
        opportunity = strategy.opportunity
        return await self._bridge(record, opportunity.sell_network, opportunity.buy_network, NATIVE_TOKEN, amount)

    async def _bridge(self, record: StepRecord, source: str, dest: str, token: str, amount: Decimal) -> Decimal:
        record.input_amount = amount
        recipient = self.wallet.get_address(dest)
        transfer = await self.bridge_router.bridge_tokens(source, dest, token, amount, recipient)
        record.tx_ref = transfer.tx_ref
        received = transfer.expected_output if transfer.expected_output is not None else amount
        if not self.simulate:
            self._emit(f"Waiting for bridge {transfer.tx_ref} to complete on {dest}")
            status = await self.bridge_router.wait_for_completion(transfer)
            if status.received_amount is not None:
                received = status.received_amount
        record.complete(transfer.tx_ref, amount, received, transfer.gas_cost)
        return received

    # -------- Flash-loan path --------

    async def _flash_loan_callback(self, strategy: Strategy, execution: Execution, principal: Decimal) -> CallbackResult:
        """
        Settlement check run before the loan is drawn: prices the buy and the
        atomic swap, then verifies proceeds cover principal plus fee.
        """
        opportunity = strategy.opportunity
        buy = opportunity.buy_network
        token = opportunity.token
        current: Optional[StepRecord] = None
        try:
            current = StepRecord(step=1, action=StepAction.FLASH_LOAN_BUY, network=buy,
                                 details=f"Buy {token.symbol} on {buy} with {principal} ETH flash loan")
            execution.steps.append(current)
            quote = await self.swapper.get_best_quote(buy, NATIVE_TOKEN, token.address_on(buy), principal)
            bought = quote.output_amount
            current.complete(None, principal, bought)

            current = StepRecord(step=2, action=StepAction.ATOMIC_SWAP, network=buy,
                                 details=f"Swap {token.symbol} back to ETH within the loan")
            execution.steps.append(current)
            proceeds = bought * opportunity.sell_quote.price_in_reference
            current.complete(None, bought, proceeds)

            if not can_repay_flash_loan(principal, proceeds, self.flash_loan_fee_bps):
                current = StepRecord(step=3, action=StepAction.REPAY, network=buy,
                                     details=f"Repay {principal} ETH flash loan")
                execution.steps.append(current)
                repayment = principal + calculate_flash_loan_fee(principal, self.flash_loan_fee_bps)
                raise InsufficientRepayment(
                    f"Cannot repay flash loan: proceeds {proceeds} ETH < principal plus fee {repayment} ETH")

            self._emit(f"Flash loan settlement check passed, expected proceeds {proceeds} ETH")
            return CallbackResult(success=True, proceeds=proceeds)
        except Exception as e:
            self.log.error(f"Flash loan callback failed: {e}")
            if current is not None and current.status != StepStatus.SUCCESS:
                current.fail(str(e))
            return CallbackResult(success=False, error=str(e))

    # -------- Utility --------

    def _fail_at_step(self, execution: Execution, record: StepRecord, error: Exception) -> None:
        execution.total_gas_used += record.gas_cost
        execution.finish(ExecutionStatus.FAILED, f"Failed at step {record.step} ({record.action.value}): {error}")
        self.log.error(execution.error)
        self._flag_manual_intervention(execution, record)

    def _abandon(self, execution: Execution, reason: str) -> None:
        execution.finish(ExecutionStatus.FAILED, reason)
        self._emit(reason)
        completed = [s for s in execution.steps if s.status == StepStatus.SUCCESS]
        if completed:
            self._flag_manual_intervention(execution, None)

    def _flag_manual_intervention(self, execution: Execution, failed: Optional[StepRecord]) -> None:
        """Completed steps are never reversed; describe where value was left."""
        opportunity = execution.strategy.opportunity
        symbol = opportunity.token.symbol
        buy, sell = opportunity.buy_network, opportunity.sell_network

        if failed is not None and failed.tx_ref and failed.action in (StepAction.BRIDGE_FORWARD, StepAction.BRIDGE_BACK):
            asset = symbol if failed.action == StepAction.BRIDGE_FORWARD else "ETH"
            source, dest = (buy, sell) if failed.action == StepAction.BRIDGE_FORWARD else (sell, buy)
            note = (f"Bridge transfer {failed.tx_ref} of {failed.input_amount} {asset} from {source} to {dest} "
                    f"did not complete; funds may be in transit or held by the bridge.")
        else:
            completed = [s for s in execution.steps if s.status == StepStatus.SUCCESS]
            if not completed:
                return
            last = completed[-1]
            holdings = {
                StepAction.BUY: (symbol, buy),
                StepAction.BRIDGE_FORWARD: (symbol, sell),
                StepAction.SELL: ("ETH", sell),
                StepAction.BRIDGE_BACK: ("ETH", buy),
            }
            asset, network = holdings.get(last.action, (symbol, last.network))
            note = (f"Step {last.step} ({last.action.value}) left {last.output_amount} {asset} on {network}; "
                    f"position must be unwound manually.")

        execution.requires_manual_intervention = True
        execution.recovery_note = note
        self.log.critical(f"Manual intervention required: {note}")

    def _log_completion(self, execution: Execution) -> None:
        pnl = execution.pnl
        message = f"Arbitrage execution completed. PnL: {pnl.net_profit} ETH ({pnl.roi:.2f}%)"
        if pnl.is_profit:
            self.log.success(message)
        else:
            self.log.info(message)

    def _emit(self, msg: str) -> None:
        if self._progress_cb:
            try:
                self._progress_cb(msg)
            except Exception:
                self.log.exception("Progress callback failed")
        self.log.info("[Trade] %s", msg)
