# factory.py

from typing import Any, Dict

from crosschain_arb.bot_engine import ArbitrageBot
from crosschain_arb.bridges import BridgeRouter
from crosschain_arb.calculator import ProfitabilityCalculator
from crosschain_arb.finder import OpportunityFinder
from crosschain_arb.flash_loans import AaveFlashLoanProvider
from crosschain_arb.logging_config import get_logger
from crosschain_arb.pnl_ledger import PnLLedger
from crosschain_arb.price_oracle import DexPriceOracle, FiatRateSource
from crosschain_arb.simulation import (PaperWallet, SimulatedBridge, SimulatedFlashLoanProvider,
                                       SimulatedPriceOracle, SimulatedSwapConnector)
from crosschain_arb.strategy import StrategyBuilder
from crosschain_arb.swapper import Swapper
from crosschain_arb.trade_executor import TradeExecutor
from crosschain_arb.wallet import WalletManager

logger = get_logger(__name__)


def build_bot(config: Dict[str, Any], paper: bool = False) -> ArbitrageBot:
    """
    Wires every component. Paper mode swaps the wallet, oracle, DEX, bridge
    and flash-loan adapters for in-process simulations; the core is identical.
    """
    if paper:
        wallet = PaperWallet(config)
        price_oracle = SimulatedPriceOracle(config)
        swapper = Swapper(config, wallet, connectors=[SimulatedSwapConnector(config, wallet, price_oracle)])
        bridge_router = BridgeRouter(config, wallet, providers=[SimulatedBridge(config, wallet)])
        flash_loan_provider = SimulatedFlashLoanProvider(config)
        logger.info("Paper trading mode: using simulated adapters")
    else:
        wallet = WalletManager(config)
        swapper = Swapper(config, wallet)
        bridge_router = BridgeRouter(config, wallet)
        price_oracle = DexPriceOracle(config, swapper, FiatRateSource(config))
        flash_loan_provider = AaveFlashLoanProvider(config, wallet)

    calculator = ProfitabilityCalculator(config, swapper, bridge_router)
    finder = OpportunityFinder(config, price_oracle, calculator)
    strategy_builder = StrategyBuilder(config, swapper, bridge_router)
    executor = TradeExecutor(config, wallet, swapper, bridge_router, flash_loan_provider, simulate=paper)
    ledger = PnLLedger.from_config(config, paper=paper)

    return ArbitrageBot(config, finder, strategy_builder, executor, ledger,
                        closeables=[price_oracle, bridge_router, wallet])
