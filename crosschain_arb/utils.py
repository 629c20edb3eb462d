# utils.py

import asyncio
import functools
import os
from decimal import Decimal, getcontext
from logging import getLogger
from typing import Any, Dict, Iterable, List, Optional

import aiohttp
import ccxt
import yaml
from dotenv import load_dotenv

from crosschain_arb.data_models import Token

# Set precision for decimal calculations
getcontext().prec = 28

NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"


# --- Custom Exceptions ---
class ArbitrageError(Exception):
    """Base class for every error raised by the arbitrage core."""
    pass

class ConfigError(ArbitrageError):
    """Missing or invalid configuration (file, section, adapter or address)."""
    pass

class PriceNotFound(ArbitrageError):
    """The oracle has no price for a token on a network."""
    pass

class QuoteUnavailable(ArbitrageError):
    """No exchange could price (or fill) a pair."""

    def __init__(self, message: str, failures: Optional[List[str]] = None):
        super().__init__(message)
        self.failures = failures or []

class BridgeFailure(ArbitrageError):
    """Every bridge provider failed, or a transfer reported failure."""

    def __init__(self, message: str, failures: Optional[List[str]] = None, tx_ref: Optional[str] = None):
        super().__init__(message)
        self.failures = failures or []
        self.tx_ref = tx_ref

class BridgeTimeout(BridgeFailure):
    """Bridge completion polling exhausted its time budget."""
    pass

class InsufficientRepayment(ArbitrageError):
    """Flash-loan proceeds cannot cover principal plus fee."""
    pass

class TransactionFailure(ArbitrageError):
    """On-chain revert or non-success receipt."""

    def __init__(self, message: str, tx_ref: Optional[str] = None):
        super().__init__(message)
        self.tx_ref = tx_ref

class FlashLoanError(ArbitrageError):
    """Flash-loan provider could not start or settle a loan."""
    pass


def aggregate_failures(failures: Iterable[str]) -> str:
    return "; ".join(failures) or "no providers configured"


# --- Decorator for async network retries ---
TRANSIENT_ERRORS = (
    aiohttp.ClientConnectionError,
    asyncio.TimeoutError,
    ccxt.NetworkError,
    ccxt.ExchangeNotAvailable,
    ccxt.RequestTimeout,
)

def retry_async_call(func=None, *, max_retries: int = 3, delay: float = 1.0):
    """Decorator to retry async network calls with exponential backoff."""
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            wait = delay
            for i in range(max_retries):
                try:
                    return await fn(*args, **kwargs)
                except TRANSIENT_ERRORS as e:
                    getLogger(__name__).warning(f"{fn.__name__} failed (network issue): {e}. Retrying... ({i+1}/{max_retries})")
                    if i == max_retries - 1:
                        getLogger(__name__).error(f"{fn.__name__} failed after {max_retries} retries.")
                        raise
                    await asyncio.sleep(wait)
                    wait *= 2
        return wrapper
    if func is not None:
        return decorator(func)
    return decorator


# --- Unit conversion ---
def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))

def to_base_units(amount: Decimal, decimals: int = 18) -> int:
    return int(to_decimal(amount).scaleb(decimals).to_integral_value())

def from_base_units(amount: int, decimals: int = 18) -> Decimal:
    return Decimal(int(amount)).scaleb(-decimals)


# --- Configuration Loading ---
REQUIRED_SECTIONS = {
    "networks": [],
    "arbitrage": ["min_profit_threshold_usd", "max_slippage_percent", "price_deviation_threshold"],
    "sizing": ["min_trade_size", "max_trade_size", "optimal_size_multiplier"],
    "wallet": ["max_exposure_per_trade"],
    "tokens": [],
}

def validate_config(config: Dict[str, Any]) -> bool:
    """Validates the structure of the config file."""
    if not isinstance(config, dict):
        raise ConfigError("CRITICAL ERROR: config.yaml must contain a mapping at the top level.")

    for section, keys in REQUIRED_SECTIONS.items():
        if section not in config or not config[section]:
            raise ConfigError(f"CRITICAL ERROR: Missing or empty section '{section}' in config.yaml.")
        for key in keys:
            if key not in config[section]:
                raise ConfigError(f"CRITICAL ERROR: Missing required key '{key}' in '{section}'.")

    return True

def load_config(filepath: str = None) -> Dict[str, Any]:
    """Loads and validates the configuration file."""
    if filepath is None:
        base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))  # project root
        filepath = os.path.join(base_dir, "config", "config.yaml")
    try:
        with open(filepath, "r") as f:
            config = yaml.safe_load(f)
        validate_config(config)
        return config
    except FileNotFoundError:
        raise ConfigError(f"CRITICAL ERROR: Configuration file '{filepath}' not found.")
    except yaml.YAMLError as e:
        raise ConfigError(f"CRITICAL ERROR: Could not decode '{filepath}'. YAML error: {e}")

def inject_secrets(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Loads the wallet key and RPC endpoints from the .env file and injects
    them into the config dictionary.
    """
    load_dotenv()

    private_key = os.getenv("PRIVATE_KEY")
    if private_key:
        config.setdefault("wallet", {})["private_key"] = private_key

    socket_api_key = os.getenv("SOCKET_API_KEY")
    if socket_api_key:
        config.setdefault("bridges", {}).setdefault("socket", {})["api_key"] = socket_api_key

    for network, net_config in config.get("networks", {}).items():
        env_var = net_config.get("rpc_env") or f"{network.upper()}_RPC_URL"
        rpc_url = os.getenv(env_var)
        if rpc_url:
            net_config["rpc_url"] = rpc_url

    return config

def enabled_networks(config: Dict[str, Any]) -> List[str]:
    return [name for name, net in config.get("networks", {}).items() if net.get("enabled", True)]

def load_tokens(config: Dict[str, Any]) -> Dict[str, Token]:
    """Builds immutable Token objects from the `tokens` section; empty addresses mean not listed."""
    tokens = {}
    for symbol, token_config in config.get("tokens", {}).items():
        addresses = {network: address for network, address in (token_config.get("addresses") or {}).items() if address}
        tokens[symbol] = Token(symbol=symbol, decimals=int(token_config.get("decimals", 18)),
                               addresses=addresses, name=token_config.get("name", symbol))
    return tokens

def token_decimals_map(config: Dict[str, Any]) -> Dict[str, int]:
    """Lower-cased contract address (any network) -> decimals. The native asset is 18."""
    decimals = {NATIVE_TOKEN: 18}
    for token in load_tokens(config).values():
        for address in token.addresses.values():
            decimals[address.lower()] = token.decimals
    return decimals

def find_token_by_address(config: Dict[str, Any], network: str, address: str) -> Optional[Token]:
    for token in load_tokens(config).values():
        listed = token.address_on(network)
        if listed and listed.lower() == address.lower():
            return token
    return None
