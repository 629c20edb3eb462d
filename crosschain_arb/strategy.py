# strategy.py

from typing import Any, Dict

from crosschain_arb.data_models import ArbitrageOpportunity, StepAction, StepPlan, Strategy
from crosschain_arb.logging_config import get_logger
from crosschain_arb.utils import NATIVE_TOKEN, to_decimal

logger = get_logger(__name__)


class StrategyBuilder:
    """Turns one opportunity into a fully-parameterized plan with fresh fee and time estimates."""

    def __init__(self, config: Dict[str, Any], swapper, bridge_router):
        self.config = config
        self.swapper = swapper
        self.bridge_router = bridge_router
        self.max_exposure = to_decimal(config["wallet"]["max_exposure_per_trade"])
        self.flash_loan_enabled = bool(config["arbitrage"].get("flash_loan_enabled", False))

    async def get_best_arbitrage_strategy(self, opportunity: ArbitrageOpportunity) -> Strategy:
        token = opportunity.token
        analysis = opportunity.profitability
        buy, sell = opportunity.buy_network, opportunity.sell_network
        logger.info(f"Building strategy for {token.symbol} between {buy} and {sell}")

        recommended = analysis.recommended_trade_size
        trade_size = min(self.max_exposure, recommended)
        use_flash_loan = self.flash_loan_enabled and recommended > self.max_exposure

        token_buy = token.address_on(buy)
        token_sell = token.address_on(sell)
        gas_buy = await self.swapper.estimate_swap_gas_cost(buy, NATIVE_TOKEN, token_buy, trade_size)
        gas_sell = await self.swapper.estimate_swap_gas_cost(sell, token_sell, NATIVE_TOKEN, analysis.expected_sell_amount)
        bridge_fee = await self.bridge_router.get_bridge_fee(buy, sell, token_buy, analysis.expected_buy_amount)
        bridge_time = self.bridge_router.get_bridging_time_estimate_minutes(buy, sell)

        steps = (
            StepPlan(1, StepAction.BUY, buy,
                     f"Buy {token.symbol} on {buy} at {opportunity.buy_quote.price_in_reference} ETH"),
            StepPlan(2, StepAction.BRIDGE_FORWARD, buy,
                     f"Bridge {token.symbol} from {buy} to {sell}. Estimated time: {bridge_time} minutes"),
            StepPlan(3, StepAction.SELL, sell,
                     f"Sell {token.symbol} on {sell} at {opportunity.sell_quote.price_in_reference} ETH"),
            StepPlan(4, StepAction.BRIDGE_BACK, sell, f"Bridge ETH from {sell} back to {buy}"),
        )

        strategy = Strategy(
            opportunity=opportunity,
            use_flash_loan=use_flash_loan,
            trade_size=trade_size,
            gas_estimate_buy=gas_buy,
            gas_estimate_sell=gas_sell,
            bridge_fee=bridge_fee,
            bridge_time_minutes=bridge_time,
            steps=steps,
        )
        logger.info(f"Strategy: size {trade_size} ETH, flash loan {use_flash_loan}, "
                    f"estimated time {strategy.estimated_time_minutes} minutes")
        return strategy
