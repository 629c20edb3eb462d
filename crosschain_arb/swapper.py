# swapper.py

import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from web3 import AsyncWeb3

from crosschain_arb.data_models import GasEstimate, SwapQuote, SwapResult
from crosschain_arb.logging_config import get_logger
from crosschain_arb.utils import (ConfigError, NATIVE_TOKEN, QuoteUnavailable, TransactionFailure,
                                  aggregate_failures, from_base_units, to_base_units, to_decimal,
                                  token_decimals_map)

logger = get_logger(__name__)

DEFAULT_DEADLINE_S = 300
# SwapRouter02 sentinel meaning "the router itself" as recipient
ADDRESS_THIS = "0x0000000000000000000000000000000000000002"


# --- Connector registry ---
CONNECTOR_REGISTRY: Dict[str, Type["SwapConnector"]] = {}

def register_connector(name: str) -> Callable:
    """Class decorator that makes a connector constructible by its provider id."""
    def decorator(cls):
        cls.name = name
        CONNECTOR_REGISTRY[name] = cls
        return cls
    return decorator

def create_connector(name: str, config: Dict[str, Any], wallet) -> "SwapConnector":
    if name not in CONNECTOR_REGISTRY:
        raise ConfigError(f"Unknown exchange connector '{name}'. Known: {sorted(CONNECTOR_REGISTRY)}")
    return CONNECTOR_REGISTRY[name](config, wallet)


class SwapConnector(ABC):
    """
    Capability interface for one DEX. Amounts crossing this interface are integer
    base units; token arguments may be NATIVE_TOKEN, which connectors map to the
    network's wrapped-native token for pricing.
    """
    name = "base"

    def __init__(self, config: Dict[str, Any], wallet):
        self.config = config
        self.wallet = wallet
        self.settings = config.get("exchanges", {}).get(self.name, {})
        self._token_decimals = token_decimals_map(config)

    def decimals_of(self, token: str) -> int:
        return self._token_decimals.get(token.lower(), 18)

    def wrapped(self, network: str, token: str) -> str:
        if token != NATIVE_TOKEN:
            return token
        wrapped_native = self.config["networks"][network].get("wrapped_native")
        if not wrapped_native:
            raise ConfigError(f"No wrapped_native configured for network: {network}")
        return wrapped_native

    def router_address(self, network: str) -> Optional[str]:
        return self.settings.get("routers", {}).get(network) or None

    def is_supported(self, network: str) -> bool:
        return self.settings.get("enabled", True) and self.router_address(network) is not None

    @abstractmethod
    async def get_quote(self, network: str, from_token: str, to_token: str, amount_in: int) -> Tuple[int, Optional[int]]:
        """Returns (amount_out, fee_tier)."""

    @abstractmethod
    async def build_swap_tx(self, network: str, from_token: str, to_token: str, amount_in: int,
                            min_out: int, fee_tier: Optional[int], recipient: str) -> Dict[str, Any]:
        """Unsigned transaction dict for the swap."""

    async def estimate_gas(self, network: str, from_token: str, to_token: str, amount_in: int,
                           fee_tier: Optional[int] = None) -> int:
        recipient = self.wallet.get_address(network)
        tx = await self.build_swap_tx(network, from_token, to_token, amount_in, 0, fee_tier, recipient)
        tx["from"] = recipient
        return await self.wallet.get_web3(network).eth.estimate_gas(tx)

    async def execute_swap(self, network: str, from_token: str, to_token: str, amount_in: int,
                           min_out: int, fee_tier: Optional[int] = None) -> Tuple[str, int, Decimal]:
        """
        Approves the router if needed, submits the swap and waits for the receipt.
        The output amount is measured as the recipient's balance change of `to_token`.
        Returns (tx_ref, amount_out, gas_cost).
        """
        recipient = self.wallet.get_address(network)
        router = self.router_address(network)
        await self.wallet.ensure_allowance(from_token, router, amount_in, network)

        before = await self.wallet.get_token_balance(to_token, network)
        tx = await self.build_swap_tx(network, from_token, to_token, amount_in, min_out, fee_tier, recipient)
        tx_ref = await self.wallet.send_transaction(tx, network)
        receipt = await self.wallet.wait_for_transaction(tx_ref, network)
        gas_cost = self.wallet.gas_cost_of(receipt)
        after = await self.wallet.get_token_balance(to_token, network)

        received = after - before
        if to_token == NATIVE_TOKEN:
            received += gas_cost
        return tx_ref, to_base_units(received, self.decimals_of(to_token)), gas_cost

    @staticmethod
    def deadline() -> int:
        return int(time.time()) + DEFAULT_DEADLINE_S


UNISWAP_QUOTER_ABI = [
    {"name": "quoteExactInputSingle", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "params", "type": "tuple", "components": [
         {"name": "tokenIn", "type": "address"}, {"name": "tokenOut", "type": "address"},
         {"name": "amountIn", "type": "uint256"}, {"name": "fee", "type": "uint24"},
         {"name": "sqrtPriceLimitX96", "type": "uint160"}]}],
     "outputs": [{"name": "amountOut", "type": "uint256"}, {"name": "sqrtPriceX96After", "type": "uint160"},
                 {"name": "initializedTicksCrossed", "type": "uint32"}, {"name": "gasEstimate", "type": "uint256"}]},
]

UNISWAP_ROUTER_ABI = [
    {"name": "exactInputSingle", "type": "function", "stateMutability": "payable",
     "inputs": [{"name": "params", "type": "tuple", "components": [
         {"name": "tokenIn", "type": "address"}, {"name": "tokenOut", "type": "address"},
         {"name": "fee", "type": "uint24"}, {"name": "recipient", "type": "address"},
         {"name": "amountIn", "type": "uint256"}, {"name": "amountOutMinimum", "type": "uint256"},
         {"name": "sqrtPriceLimitX96", "type": "uint160"}]}],
     "outputs": [{"name": "amountOut", "type": "uint256"}]},
    {"name": "unwrapWETH9", "type": "function", "stateMutability": "payable",
     "inputs": [{"name": "amountMinimum", "type": "uint256"}, {"name": "recipient", "type": "address"}],
     "outputs": []},
    {"name": "multicall", "type": "function", "stateMutability": "payable",
     "inputs": [{"name": "deadline", "type": "uint256"}, {"name": "data", "type": "bytes[]"}],
     "outputs": [{"name": "results", "type": "bytes[]"}]},
]


@register_connector("uniswap_v3")
class UniswapV3Connector(SwapConnector):
    """QuoterV2 for pricing, SwapRouter02 for execution. Probes every configured fee tier."""

    def is_supported(self, network: str) -> bool:
        return super().is_supported(network) and bool(self.settings.get("quoters", {}).get(network))

    @property
    def fee_tiers(self) -> List[int]:
        return self.settings.get("fee_tiers", [500, 3000, 10000])

    async def get_quote(self, network, from_token, to_token, amount_in):
        quoter = self.wallet.contract(network, self.settings["quoters"][network], UNISWAP_QUOTER_ABI)
        token_in = AsyncWeb3.to_checksum_address(self.wrapped(network, from_token))
        token_out = AsyncWeb3.to_checksum_address(self.wrapped(network, to_token))

        best_out, best_fee = 0, None
        for fee in self.fee_tiers:
            try:
                result = await quoter.functions.quoteExactInputSingle((token_in, token_out, amount_in, fee, 0)).call()
            except Exception as e:
                # No pool or no liquidity at this tier
                logger.debug(f"uniswap_v3: no liquidity for fee tier {fee} on {network}: {e}")
                continue
            if result[0] > best_out:
                best_out, best_fee = result[0], fee

        if best_fee is None:
            raise QuoteUnavailable(f"uniswap_v3: no pool with liquidity on {network}")
        return best_out, best_fee

    async def build_swap_tx(self, network, from_token, to_token, amount_in, min_out, fee_tier, recipient):
        router = self.wallet.contract(network, self.router_address(network), UNISWAP_ROUTER_ABI)
        token_in = AsyncWeb3.to_checksum_address(self.wrapped(network, from_token))
        token_out = AsyncWeb3.to_checksum_address(self.wrapped(network, to_token))
        fee = fee_tier or 3000
        value = amount_in if from_token == NATIVE_TOKEN else 0

        if to_token == NATIVE_TOKEN:
            # Swap into the router, then unwrap to the recipient in the same multicall
            swap_data = router.encode_abi("exactInputSingle", args=[(token_in, token_out, fee, ADDRESS_THIS, amount_in, min_out, 0)])
            unwrap_data = router.encode_abi("unwrapWETH9", args=[min_out, AsyncWeb3.to_checksum_address(recipient)])
            call = router.functions.multicall(self.deadline(), [swap_data, unwrap_data])
        else:
            call = router.functions.exactInputSingle((token_in, token_out, fee, AsyncWeb3.to_checksum_address(recipient), amount_in, min_out, 0))
        return await call.build_transaction({"from": recipient, "value": value, "gas": self.wallet.gas_limit})


SUSHISWAP_ROUTER_ABI = [
    {"name": "getAmountsOut", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
     "outputs": [{"name": "amounts", "type": "uint256[]"}]},
    {"name": "swapExactTokensForTokens", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "amountOutMin", "type": "uint256"},
                {"name": "path", "type": "address[]"}, {"name": "to", "type": "address"},
                {"name": "deadline", "type": "uint256"}],
     "outputs": [{"name": "amounts", "type": "uint256[]"}]},
    {"name": "swapExactETHForTokens", "type": "function", "stateMutability": "payable",
     "inputs": [{"name": "amountOutMin", "type": "uint256"}, {"name": "path", "type": "address[]"},
                {"name": "to", "type": "address"}, {"name": "deadline", "type": "uint256"}],
     "outputs": [{"name": "amounts", "type": "uint256[]"}]},
    {"name": "swapExactTokensForETH", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "amountOutMin", "type": "uint256"},
                {"name": "path", "type": "address[]"}, {"name": "to", "type": "address"},
                {"name": "deadline", "type": "uint256"}],
     "outputs": [{"name": "amounts", "type": "uint256[]"}]},
]


@register_connector("sushiswap")
class SushiswapConnector(SwapConnector):
    """Uniswap-V2 style router with a flat 0.3% pool fee."""

    def _path(self, network, from_token, to_token) -> List[str]:
        return [AsyncWeb3.to_checksum_address(self.wrapped(network, t)) for t in (from_token, to_token)]

    async def get_quote(self, network, from_token, to_token, amount_in):
        router = self.wallet.contract(network, self.router_address(network), SUSHISWAP_ROUTER_ABI)
        amounts = await router.functions.getAmountsOut(amount_in, self._path(network, from_token, to_token)).call()
        if not amounts or amounts[-1] == 0:
            raise QuoteUnavailable(f"sushiswap: no liquidity on {network}")
        return amounts[-1], 30

    async def build_swap_tx(self, network, from_token, to_token, amount_in, min_out, fee_tier, recipient):
        router = self.wallet.contract(network, self.router_address(network), SUSHISWAP_ROUTER_ABI)
        path = self._path(network, from_token, to_token)
        to = AsyncWeb3.to_checksum_address(recipient)
        if from_token == NATIVE_TOKEN:
            call = router.functions.swapExactETHForTokens(min_out, path, to, self.deadline())
            value = amount_in
        elif to_token == NATIVE_TOKEN:
            call = router.functions.swapExactTokensForETH(amount_in, min_out, path, to, self.deadline())
            value = 0
        else:
            call = router.functions.swapExactTokensForTokens(amount_in, min_out, path, to, self.deadline())
            value = 0
        return await call.build_transaction({"from": recipient, "value": value, "gas": self.wallet.gas_limit})


class Swapper:
    """
    Ordered list of connectors. Quotes are collected from every connector and
    the highest output wins; execution tries the best connector first and
    then the others in configured order.
    """
    def __init__(self, config: Dict[str, Any], wallet, connectors: Optional[List[SwapConnector]] = None):
        self.config = config
        self.wallet = wallet
        if connectors is None:
            providers = config.get("exchanges", {}).get("providers", [])
            connectors = [create_connector(name, config, wallet) for name in providers]
        self.connectors = connectors
        self._decimals = token_decimals_map(config)

    def decimals_of(self, token: str) -> int:
        return self._decimals.get(token.lower(), 18)

    def _check_pair(self, network: str, from_token: str, to_token: str):
        wrapped_native = (self.config["networks"].get(network, {}).get("wrapped_native") or "").lower()
        def normalize(token):
            return wrapped_native if token == NATIVE_TOKEN else token.lower()
        if normalize(from_token) == normalize(to_token):
            raise QuoteUnavailable("Cannot swap a token for itself")

    async def _collect_quotes(self, network, from_token, to_token, amount_in: int) -> Tuple[List[Tuple[SwapConnector, int, Optional[int]]], List[str]]:
        quotes, failures = [], []
        for connector in self.connectors:
            if not connector.is_supported(network):
                continue
            try:
                amount_out, fee_tier = await connector.get_quote(network, from_token, to_token, amount_in)
                quotes.append((connector, amount_out, fee_tier))
                logger.debug(f"{connector.name} quote on {network}: {amount_out}")
            except Exception as e:
                logger.warning(f"Failed to get quote from {connector.name} on {network}: {e}")
                failures.append(f"{connector.name}: {e}")
        return quotes, failures

    async def get_best_quote(self, network: str, from_token: str, to_token: str, amount: Decimal) -> SwapQuote:
        self._check_pair(network, from_token, to_token)
        amount = to_decimal(amount)
        quotes, failures = await self._collect_quotes(network, from_token, to_token, to_base_units(amount, self.decimals_of(from_token)))
        if not quotes:
            raise QuoteUnavailable(f"No quotes available on {network}: {aggregate_failures(failures)}", failures)

        connector, amount_out, fee_tier = max(quotes, key=lambda q: q[1])
        output = from_base_units(amount_out, self.decimals_of(to_token))
        logger.info(f"Best quote on {network} from {connector.name}: {amount} -> {output}")
        return SwapQuote(exchange=connector.name, network=network, from_token=from_token, to_token=to_token,
                         input_amount=amount, output_amount=output, fee_tier=fee_tier)

    async def execute_swap(self, network: str, from_token: str, to_token: str, amount: Decimal,
                           max_slippage_pct: Decimal) -> SwapResult:
        self._check_pair(network, from_token, to_token)
        amount = to_decimal(amount)
        amount_in = to_base_units(amount, self.decimals_of(from_token))
        quotes, failures = await self._collect_quotes(network, from_token, to_token, amount_in)
        if not quotes:
            raise QuoteUnavailable(f"No quotes available on {network}: {aggregate_failures(failures)}", failures)

        slippage_bps = int(to_decimal(max_slippage_pct) * 100)
        ordered = sorted(quotes, key=lambda q: q[1], reverse=True)
        best_output = ordered[0][1]
        min_out = best_output * (10000 - slippage_bps) // 10000
        logger.info(f"Executing swap of {amount} on {network}, min output {from_base_units(min_out, self.decimals_of(to_token))} ({max_slippage_pct}% slippage)")

        errors = []
        for connector, _, fee_tier in ordered:
            try:
                tx_ref, amount_out, gas_cost = await connector.execute_swap(network, from_token, to_token, amount_in, min_out, fee_tier)
            except Exception as e:
                logger.warning(f"Swap via {connector.name} on {network} failed: {e}")
                errors.append(f"{connector.name}: {e}")
                continue
            output = from_base_units(amount_out, self.decimals_of(to_token))
            logger.info(f"Swap executed via {connector.name}: {tx_ref}, received {output}")
            return SwapResult(tx_ref=tx_ref, exchange=connector.name, input_amount=amount, output_amount=output,
                              gas_cost=gas_cost, min_output=from_base_units(min_out, self.decimals_of(to_token)))

        raise TransactionFailure(f"Swap failed on every exchange on {network}: {aggregate_failures(errors)}")

    def default_gas_estimate(self) -> GasEstimate:
        gas_config = self.config.get("gas", {})
        gas_limit = int(gas_config.get("gas_limit", 500000))
        max_fee_gwei = to_decimal(gas_config.get("max_fee_per_gas_gwei", 30))
        return GasEstimate(gas_units=gas_limit, gas_cost=from_base_units(int(gas_limit * max_fee_gwei * 10 ** 9)), is_default=True)

    async def estimate_swap_gas_cost(self, network: str, from_token: str, to_token: str, amount: Decimal) -> GasEstimate:
        """Never raises: any failure yields the conservative configured default."""
        try:
            self._check_pair(network, from_token, to_token)
            amount_in = to_base_units(amount, self.decimals_of(from_token))
            quotes, failures = await self._collect_quotes(network, from_token, to_token, amount_in)
            if not quotes:
                raise QuoteUnavailable(aggregate_failures(failures), failures)
            connector, _, fee_tier = max(quotes, key=lambda q: q[1])
            gas_units = await connector.estimate_gas(network, from_token, to_token, amount_in, fee_tier)
            max_fee = await self.wallet.max_fee_per_gas(network)
            gas_cost = from_base_units(gas_units * max_fee)
            logger.debug(f"Estimated swap gas cost on {network}: {gas_cost} ETH")
            return GasEstimate(gas_units=gas_units, gas_cost=gas_cost)
        except Exception as e:
            estimate = self.default_gas_estimate()
            logger.warning(f"Failed to estimate swap gas cost on {network}: {e}. Using default estimate {estimate.gas_cost} ETH")
            return estimate
