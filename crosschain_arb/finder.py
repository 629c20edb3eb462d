# finder.py

import asyncio
from decimal import Decimal
from itertools import combinations
from typing import Any, Dict, List, Optional

from crosschain_arb.data_models import ArbitrageOpportunity, PriceQuote, Token
from crosschain_arb.logging_config import get_logger
from crosschain_arb.utils import enabled_networks, load_tokens, to_decimal

logger = get_logger(__name__)


class OpportunityFinder:
    """
    Scans every cross-listed token over all network pairs. Errors never escape
    a scan: a network that cannot be priced is dropped from its token, and a
    failing scan as a whole yields an empty list.
    """
    def __init__(self, config: Dict[str, Any], price_oracle, calculator, tokens: Optional[Dict[str, Token]] = None):
        self.config = config
        self.price_oracle = price_oracle
        self.calculator = calculator
        self.tokens = tokens if tokens is not None else load_tokens(config)
        self.price_deviation_threshold = to_decimal(config["arbitrage"]["price_deviation_threshold"])
        self.max_exposure = to_decimal(config["wallet"]["max_exposure_per_trade"])
        self.networks = set(enabled_networks(config))

    def find_crosschain_tokens(self) -> List[Token]:
        """Tokens listed on at least two enabled networks."""
        crosschain = [t for t in self.tokens.values() if len(self._listed_networks(t)) > 1]
        logger.info(f"Found {len(crosschain)} tokens available on multiple networks")
        return crosschain

    def _listed_networks(self, token: Token) -> List[str]:
        return [n for n in token.networks if n in self.networks]

    async def get_prices_across_networks(self, token: Token) -> Dict[str, PriceQuote]:
        networks = self._listed_networks(token)
        results = await asyncio.gather(
            *(self.price_oracle.get_price(token.address_on(n), n) for n in networks),
            return_exceptions=True,
        )
        prices = {}
        for network, result in zip(networks, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to get price for {token.symbol} on {network}: {result}")
                continue
            prices[network] = result
            logger.debug(f"{token.symbol} price on {network}: {result.price_in_reference} ETH / ${result.price_in_fiat:.2f}")
        return prices

    async def find_arbitrage_opportunities(self) -> List[ArbitrageOpportunity]:
        """Unordered list of profitable opportunities; see rank_opportunities for ordering."""
        try:
            opportunities = []
            for token in self.find_crosschain_tokens():
                opportunities.extend(await self._scan_token(token))
            logger.info(f"Found {len(opportunities)} profitable arbitrage opportunities")
            return opportunities
        except Exception as e:
            logger.error(f"Failed to find arbitrage opportunities: {e}", exc_info=True)
            return []

    async def _scan_token(self, token: Token) -> List[ArbitrageOpportunity]:
        prices = await self.get_prices_across_networks(token)
        found = []
        for source, target in combinations(list(prices), 2):
            source_price = prices[source].price_in_reference
            target_price = prices[target].price_in_reference
            if source_price <= 0:
                continue
            price_diff = (target_price - source_price) / source_price * Decimal(100)
            if abs(price_diff) < self.price_deviation_threshold:
                continue

            buy_network, sell_network = (source, target) if source_price < target_price else (target, source)
            analysis = await self.calculator.calculate_profitability(
                token, buy_network, sell_network, prices[buy_network], prices[sell_network], self.max_exposure,
            )
            if not analysis.is_profitable:
                logger.info(f"{token.symbol} {buy_network}->{sell_network} ({price_diff:.2f}%) not profitable: {analysis.reason}")
                continue

            logger.info(f"Found profitable opportunity for {token.symbol} between {buy_network} and {sell_network}, "
                        f"estimated profit ${analysis.net_profit_fiat:.2f}")
            found.append(ArbitrageOpportunity(
                token=token,
                buy_network=buy_network,
                sell_network=sell_network,
                buy_quote=prices[buy_network],
                sell_quote=prices[sell_network],
                price_difference=price_diff,
                profitability=analysis,
            ))
        return found

    @staticmethod
    def rank_opportunities(opportunities: List[ArbitrageOpportunity]) -> List[ArbitrageOpportunity]:
        return sorted(opportunities, key=lambda o: o.estimated_profit_fiat, reverse=True)
