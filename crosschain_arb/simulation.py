# simulation.py

import secrets
from decimal import Decimal
from typing import Any, Dict, Optional

from crosschain_arb.bridges import BridgeProvider, register_bridge
from crosschain_arb.data_models import BridgeTransfer, PriceQuote, TransferStatus
from crosschain_arb.flash_loans import CallbackResult, FlashLoanProvider
from crosschain_arb.logging_config import get_logger
from crosschain_arb.price_oracle import PriceOracle
from crosschain_arb.swapper import SwapConnector, register_connector
from crosschain_arb.utils import (ConfigError, NATIVE_TOKEN, PriceNotFound, QuoteUnavailable, TransactionFailure,
                                  enabled_networks, find_token_by_address, from_base_units, to_base_units,
                                  to_decimal)

logger = get_logger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
GWEI = 10 ** 9

DEFAULT_BASE_PRICES = {
    "stETH": "0.99",
    "wstETH": "1.12",
    "rETH": "1.04",
    "cbETH": "1.02",
    "frxETH": "0.995",
    "sfrxETH": "1.03",
}

DEFAULT_NETWORK_VARIANCE = {
    "ethereum": "0",
    "arbitrum": "0.005",
    "optimism": "-0.003",
    "polygon": "0.002",
    "base": "-0.001",
}

PAPER_ADDRESS = "0x000000000000000000000000000000000000dEaD"


def new_tx_ref() -> str:
    return "0x" + secrets.token_hex(32)


def simulation_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    return config.get("simulation", {}) or {}


class PaperWallet:
    """
    In-memory balances per network and token. Exposes the subset of the
    WalletManager surface the core and the simulated adapters use. Gas is
    reported on each step, never debited from balances.
    """
    def __init__(self, config: Dict[str, Any], initial_native_balance: Optional[Decimal] = None):
        self.config = config
        settings = simulation_settings(config)
        if initial_native_balance is None:
            initial_native_balance = settings.get("initial_native_balance",
                                                  config.get("ledger", {}).get("initial_balance", 10))
        self.address = settings.get("paper_address", PAPER_ADDRESS)
        self.gas_config = config.get("gas", {})
        self._gas_price_gwei = {k: to_decimal(v) for k, v in (settings.get("gas_price_gwei") or {}).items()}
        self.balances: Dict[str, Dict[str, Decimal]] = {
            network: {NATIVE_TOKEN: to_decimal(initial_native_balance)} for network in enabled_networks(config)
        }

    def _book(self, network: str) -> Dict[str, Decimal]:
        if network not in self.balances:
            raise ConfigError(f"Provider not initialized for network: {network}")
        return self.balances[network]

    def get_address(self, network: Optional[str] = None) -> str:
        return self.address

    async def get_balance(self, network: str, address: Optional[str] = None) -> Decimal:
        return self._book(network).get(NATIVE_TOKEN, ZERO)

    async def get_token_balance(self, token_address: str, network: str, address: Optional[str] = None) -> Decimal:
        key = NATIVE_TOKEN if token_address == NATIVE_TOKEN else token_address.lower()
        return self._book(network).get(key, ZERO)

    def credit(self, network: str, token: str, amount: Decimal):
        key = NATIVE_TOKEN if token == NATIVE_TOKEN else token.lower()
        book = self._book(network)
        book[key] = book.get(key, ZERO) + to_decimal(amount)

    def debit(self, network: str, token: str, amount: Decimal):
        key = NATIVE_TOKEN if token == NATIVE_TOKEN else token.lower()
        book = self._book(network)
        available = book.get(key, ZERO)
        amount = to_decimal(amount)
        if amount > available:
            raise TransactionFailure(f"Insufficient paper balance on {network}: {available} < {amount}")
        book[key] = available - amount

    async def check_wallet_balances(self) -> Dict[str, Optional[Decimal]]:
        return {network: book.get(NATIVE_TOKEN, ZERO) for network, book in self.balances.items()}

    def gas_price_wei(self, network: str) -> int:
        gwei = self._gas_price_gwei.get(network, to_decimal(self.gas_config.get("max_fee_per_gas_gwei", 30)))
        return int(gwei * GWEI)

    async def max_fee_per_gas(self, network: str) -> int:
        return self.gas_price_wei(network)

    def gas_cost(self, network: str, gas_units: int) -> Decimal:
        return from_base_units(gas_units * self.gas_price_wei(network))

    @property
    def gas_limit(self) -> int:
        return int(self.gas_config.get("gas_limit", 500000))

    async def ensure_allowance(self, token_address: str, spender: str, amount: int, network: str):
        return None

    async def close(self):
        pass


class SimulatedPriceOracle(PriceOracle):
    """Configured base price of each token plus an additive per-network variance."""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        settings = simulation_settings(config)
        self.base_prices = {k: to_decimal(v) for k, v in (settings.get("base_prices") or DEFAULT_BASE_PRICES).items()}
        self.network_variance = {k: to_decimal(v) for k, v in
                                 (settings.get("network_variance") or DEFAULT_NETWORK_VARIANCE).items()}
        self.fiat_rate = to_decimal(settings.get("fiat_reference_price", 3000))

    def reference_price(self, symbol: str, network: str) -> Decimal:
        if symbol not in self.base_prices:
            raise PriceNotFound(f"No simulated price for {symbol}")
        return self.base_prices[symbol] + self.network_variance.get(network, ZERO)

    def price_of_address(self, token_address: str, network: str) -> Decimal:
        if token_address == NATIVE_TOKEN:
            return Decimal("1")
        return self.reference_price(self._symbol_for(token_address, network), network)

    async def get_price(self, token_address: str, network: str) -> PriceQuote:
        symbol = self._symbol_for(token_address, network)
        price = self.reference_price(symbol, network)
        return PriceQuote(token_symbol=symbol, network=network, price_in_reference=price,
                          price_in_fiat=price * self.fiat_rate)


@register_connector("simulated")
class SimulatedSwapConnector(SwapConnector):
    """Fills at the simulated oracle price less a flat pool fee, moving PaperWallet balances."""

    def __init__(self, config: Dict[str, Any], wallet, price_oracle: Optional[SimulatedPriceOracle] = None):
        super().__init__(config, wallet)
        settings = simulation_settings(config)
        self.price_oracle = price_oracle or SimulatedPriceOracle(config)
        self.pool_fee_percent = to_decimal(settings.get("pool_fee_percent", "0.05"))
        self.swap_gas_units = int(settings.get("swap_gas_units", 150000))

    def is_supported(self, network: str) -> bool:
        return network in self.wallet.balances

    def _decimals(self, network: str, token: str) -> int:
        if token == NATIVE_TOKEN:
            return 18
        listed = find_token_by_address(self.config, network, token)
        return listed.decimals if listed else 18

    def _fill(self, network: str, from_token: str, to_token: str, amount_in: int) -> int:
        amount = from_base_units(amount_in, self._decimals(network, from_token))
        value_in_reference = amount * self.price_oracle.price_of_address(from_token, network)
        amount_out = value_in_reference / self.price_oracle.price_of_address(to_token, network)
        amount_out = amount_out * (HUNDRED - self.pool_fee_percent) / HUNDRED
        return to_base_units(amount_out, self._decimals(network, to_token))

    async def get_quote(self, network, from_token, to_token, amount_in):
        try:
            amount_out = self._fill(network, from_token, to_token, amount_in)
        except PriceNotFound as e:
            raise QuoteUnavailable(f"simulated: {e}")
        return amount_out, int(self.pool_fee_percent * 100)

    async def build_swap_tx(self, network, from_token, to_token, amount_in, min_out, fee_tier, recipient):
        return {"to": network, "from": recipient, "value": amount_in if from_token == NATIVE_TOKEN else 0}

    async def estimate_gas(self, network, from_token, to_token, amount_in, fee_tier=None):
        return self.swap_gas_units

    async def execute_swap(self, network, from_token, to_token, amount_in, min_out, fee_tier=None):
        amount_out = self._fill(network, from_token, to_token, amount_in)
        if amount_out < min_out:
            raise TransactionFailure(f"simulated: output {amount_out} below minimum {min_out}")
        self.wallet.debit(network, from_token, from_base_units(amount_in, self._decimals(network, from_token)))
        self.wallet.credit(network, to_token, from_base_units(amount_out, self._decimals(network, to_token)))
        tx_ref = new_tx_ref()
        logger.debug(f"simulated swap on {network}: {tx_ref}")
        return tx_ref, amount_out, self.wallet.gas_cost(network, self.swap_gas_units)


@register_bridge("simulated")
class SimulatedBridge(BridgeProvider):
    """Flat percentage fee, instant completion."""

    def __init__(self, config: Dict[str, Any], wallet):
        super().__init__(config, wallet)
        settings = simulation_settings(config)
        self.fee_percent = to_decimal(settings.get("bridge_fee_percent", "0.05"))
        self.bridge_gas_units = int(settings.get("bridge_gas_units", 120000))

    def supports(self, source, dest):
        return super().supports(source, dest) and source in self.wallet.balances and dest in self.wallet.balances

    def time_estimate_minutes(self, source, dest):
        return super().time_estimate_minutes(source, dest) or int(simulation_settings(self.config).get("bridge_minutes", 1))

    async def estimate_fee(self, source, dest, token, amount):
        return to_decimal(amount) * self.fee_percent / HUNDRED

    async def bridge(self, source, dest, token, amount, recipient):
        amount = to_decimal(amount)
        received = amount - await self.estimate_fee(source, dest, token, amount)
        dest_token = self.counterpart(token, source, dest)
        self.wallet.debit(source, token, amount)
        self.wallet.credit(dest, dest_token, received)
        tx_ref = new_tx_ref()
        logger.info(f"simulated: bridged {amount} from {source} to {dest}, {received} received ({tx_ref})")
        return BridgeTransfer(tx_ref=tx_ref, provider=self.name, source_network=source, dest_network=dest,
                              token=token, amount=amount, recipient=recipient, expected_output=received,
                              gas_cost=self.wallet.gas_cost(source, self.bridge_gas_units))

    async def get_transfer_status(self, transfer):
        return TransferStatus(state="filled", received_amount=transfer.expected_output, fill_tx_ref=transfer.tx_ref)


class SimulatedFlashLoanProvider(FlashLoanProvider):
    """Runs the settlement check and reports a fake loan transaction."""

    async def _submit(self, network: str, token: str, amount: Decimal, callback_result: CallbackResult) -> str:
        tx_ref = new_tx_ref()
        logger.info(f"simulated: flash loan of {amount} on {network} settled ({tx_ref})")
        return tx_ref
