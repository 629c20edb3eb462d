# calculator.py

from decimal import Decimal
from typing import Any, Dict, Tuple

from crosschain_arb.data_models import GasEstimate, PnLResult, PriceQuote, ProfitabilityAnalysis, Token
from crosschain_arb.logging_config import get_logger
from crosschain_arb.utils import NATIVE_TOKEN, from_base_units, to_decimal

logger = get_logger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class ProfitabilityCalculator:
    """
    Models the four legs of a cross-network trade (buy, bridge forward, sell,
    bridge back) for a given capital budget and reports expected amounts,
    itemized costs and net profit. Unprofitable outcomes are results, not errors.
    """
    def __init__(self, config: Dict[str, Any], swapper, bridge_router):
        self.config = config
        self.swapper = swapper
        self.bridge_router = bridge_router

        arb_config = config["arbitrage"]
        self.max_slippage_percent = to_decimal(arb_config["max_slippage_percent"])
        self.min_profit_threshold_usd = to_decimal(arb_config["min_profit_threshold_usd"])

        sizing = config["sizing"]
        self.min_trade_size = to_decimal(sizing["min_trade_size"])
        self.max_trade_size = to_decimal(sizing["max_trade_size"])
        # Calibration knob: fixed costs land near 1/multiplier of notional
        self.size_multiplier = to_decimal(sizing["optimal_size_multiplier"])

    async def estimate_gas_cost(self, network: str, from_token: str, to_token: str, amount: Decimal) -> GasEstimate:
        try:
            return await self.swapper.estimate_swap_gas_cost(network, from_token, to_token, amount)
        except Exception as e:
            logger.error(f"Failed to estimate gas cost on {network}: {e}")
            gas_config = self.config.get("gas", {})
            gas_limit = int(gas_config.get("gas_limit", 500000))
            max_fee_wei = int(to_decimal(gas_config.get("max_fee_per_gas_gwei", 30)) * 10 ** 9)
            return GasEstimate(gas_units=gas_limit, gas_cost=from_base_units(gas_limit * max_fee_wei), is_default=True)

    async def calculate_profitability(self, token: Token, buy_network: str, sell_network: str,
                                      buy_quote: PriceQuote, sell_quote: PriceQuote,
                                      capital_budget: Decimal) -> ProfitabilityAnalysis:
        capital = to_decimal(capital_budget)
        logger.debug(f"Calculating profitability for {token.symbol} between {buy_network} and {sell_network}")

        token_buy = token.address_on(buy_network)
        token_sell = token.address_on(sell_network)
        if not token_buy or not token_sell:
            return ProfitabilityAnalysis.not_profitable("Token not available on one of the networks", capital)

        buy_price = buy_quote.price_in_reference
        sell_price = sell_quote.price_in_reference
        if buy_price <= 0 or sell_price <= 0 or capital <= 0:
            return ProfitabilityAnalysis.not_profitable("Invalid price or capital budget", capital)

        price_diff_percentage = (sell_price - buy_price) / buy_price * HUNDRED

        try:
            gas_buy = await self.estimate_gas_cost(buy_network, NATIVE_TOKEN, token_buy, capital)

            slippage_multiplier = (HUNDRED - self.max_slippage_percent) / HUNDRED
            expected_buy_amount = capital * slippage_multiplier / buy_price

            bridge_fee = await self.bridge_router.get_bridge_fee(buy_network, sell_network, token_buy, expected_buy_amount)
            expected_sell_amount = expected_buy_amount - bridge_fee
            expected_proceeds = expected_sell_amount * sell_price

            gas_sell = await self.estimate_gas_cost(sell_network, token_sell, NATIVE_TOKEN, expected_sell_amount)
            bridge_back_fee = await self.bridge_router.get_bridge_fee(sell_network, buy_network, NATIVE_TOKEN, expected_proceeds)
        except Exception as e:
            logger.error(f"Failed to calculate profitability for {token.symbol}: {e}")
            return ProfitabilityAnalysis.not_profitable(f"Error: {e}", capital)

        total_costs = gas_buy.gas_cost + gas_sell.gas_cost + bridge_back_fee
        net_profit = expected_proceeds - capital - total_costs
        roi = net_profit / capital * HUNDRED
        net_profit_fiat = net_profit * buy_quote.fiat_per_reference

        recommended_size, sufficient_margin = self.calculate_optimal_trade_size(
            buy_price, sell_price, gas_buy.gas_cost, gas_sell.gas_cost,
            bridge_fee, bridge_back_fee, expected_buy_amount,
        )

        is_profitable = net_profit > 0 and net_profit_fiat >= self.min_profit_threshold_usd
        return ProfitabilityAnalysis(
            is_profitable=is_profitable,
            reason="Profitable" if is_profitable else "Not enough profit after costs",
            capital_in=capital,
            price_diff_percentage=price_diff_percentage,
            expected_buy_amount=expected_buy_amount,
            bridge_fee=bridge_fee,
            expected_sell_amount=expected_sell_amount,
            expected_proceeds=expected_proceeds,
            gas_cost_buy=gas_buy.gas_cost,
            gas_cost_sell=gas_sell.gas_cost,
            bridge_back_fee=bridge_back_fee,
            net_profit=net_profit,
            net_profit_fiat=net_profit_fiat,
            roi=roi,
            recommended_trade_size=recommended_size,
            sufficient_margin=sufficient_margin,
        )

    def calculate_optimal_trade_size(self, buy_price: Decimal, sell_price: Decimal, gas_cost_buy: Decimal,
                                     gas_cost_sell: Decimal, bridge_fee: Decimal, bridge_back_fee: Decimal,
                                     bridged_amount: Decimal) -> Tuple[Decimal, bool]:
        """
        Scales fixed costs (both swaps' gas plus the return bridge fee) against the
        per-unit margin left after the forward bridge fee. Returns (size, sufficient_margin);
        the floor size is returned with sufficient_margin=False when the spread does not
        exceed the bridge-fee ratio.
        """
        fixed_costs = gas_cost_buy + gas_cost_sell + bridge_back_fee
        bridge_fee_ratio = bridge_fee / bridged_amount if bridged_amount > 0 else Decimal("1")
        price_diff_ratio = sell_price / buy_price - 1

        if price_diff_ratio <= bridge_fee_ratio:
            logger.info("Price difference not enough to cover variable costs, using minimum trade size")
            return self.min_trade_size, False

        optimal = fixed_costs / (price_diff_ratio - bridge_fee_ratio) * self.size_multiplier
        size = min(max(optimal, self.min_trade_size), self.max_trade_size)
        logger.debug(f"Calculated optimal trade size: {size} ETH")
        return size, True


def calculate_pnl(starting_balance: Decimal, ending_balance: Decimal, gas_used: Decimal) -> PnLResult:
    starting_balance = to_decimal(starting_balance)
    ending_balance = to_decimal(ending_balance)
    gas_used = to_decimal(gas_used)

    gross_profit = ending_balance - starting_balance
    net_profit = gross_profit - gas_used
    roi = net_profit / starting_balance * HUNDRED if starting_balance > 0 else ZERO
    return PnLResult(
        starting_balance=starting_balance,
        ending_balance=ending_balance,
        gross_profit=gross_profit,
        gas_used=gas_used,
        net_profit=net_profit,
        roi=roi,
        is_profit=net_profit > 0,
    )
