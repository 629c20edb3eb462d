# bridges.py

import asyncio
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Type

import aiohttp
from web3 import AsyncWeb3

from crosschain_arb.data_models import BridgeTransfer, TransferStatus
from crosschain_arb.logging_config import get_logger
from crosschain_arb.utils import (BridgeFailure, BridgeTimeout, ConfigError, NATIVE_TOKEN, aggregate_failures,
                                  find_token_by_address, from_base_units, retry_async_call, to_base_units,
                                  to_decimal, token_decimals_map)

logger = get_logger(__name__)

DEFAULT_BRIDGE_TIME_MINUTES = 30
DEFAULT_FEE_PERCENT = Decimal("0.5")
# Aggregator APIs address the native asset with this sentinel
API_NATIVE_TOKEN = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"


# --- Provider registry ---
BRIDGE_REGISTRY: Dict[str, Type["BridgeProvider"]] = {}

def register_bridge(name: str) -> Callable:
    def decorator(cls):
        cls.name = name
        BRIDGE_REGISTRY[name] = cls
        return cls
    return decorator

def create_bridge(name: str, config: Dict[str, Any], wallet) -> "BridgeProvider":
    if name not in BRIDGE_REGISTRY:
        raise ConfigError(f"Unknown bridge provider '{name}'. Known: {sorted(BRIDGE_REGISTRY)}")
    return BRIDGE_REGISTRY[name](config, wallet)


class BridgeProvider(ABC):
    """
    Capability interface for one bridge. Amounts are whole units; the token
    argument is the token's address on the source network (or NATIVE_TOKEN).
    """
    name = "base"

    def __init__(self, config: Dict[str, Any], wallet):
        self.config = config
        self.wallet = wallet
        self.settings = config.get("bridges", {}).get(self.name, {})
        self._decimals = token_decimals_map(config)
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def enabled(self) -> bool:
        return self.settings.get("enabled", True)

    def chain_id(self, network: str) -> int:
        try:
            return int(self.config["networks"][network]["chain_id"])
        except KeyError:
            raise ConfigError(f"Unknown network: {network}")

    def decimals_of(self, token: str) -> int:
        return self._decimals.get(token.lower(), 18)

    def counterpart(self, token: str, source: str, dest: str) -> str:
        """Address of the same asset on the destination network."""
        if token == NATIVE_TOKEN:
            return NATIVE_TOKEN
        listed = find_token_by_address(self.config, source, token)
        if listed is None or not listed.is_listed_on(dest):
            raise ConfigError(f"Token {token} not supported on {dest}")
        return listed.address_on(dest)

    def supports(self, source: str, dest: str) -> bool:
        return self.enabled and source != dest

    def time_estimate_minutes(self, source: str, dest: str) -> Optional[int]:
        return self.settings.get("time_estimates", {}).get(source, {}).get(dest)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=float(self.settings.get("request_timeout_s", 15)))
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def _headers(self) -> Dict[str, str]:
        return {}

    @retry_async_call
    async def _get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        url = f"{self.settings['api_url'].rstrip('/')}/{path.lstrip('/')}"
        async with session.get(url, params=params, headers=self._headers()) as response:
            response.raise_for_status()
            return await response.json()

    @retry_async_call
    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        url = f"{self.settings['api_url'].rstrip('/')}/{path.lstrip('/')}"
        async with session.post(url, json=payload, headers=self._headers()) as response:
            response.raise_for_status()
            return await response.json()

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    @abstractmethod
    async def estimate_fee(self, source: str, dest: str, token: str, amount: Decimal) -> Decimal:
        """Fee in units of `token`."""

    @abstractmethod
    async def bridge(self, source: str, dest: str, token: str, amount: Decimal, recipient: str) -> BridgeTransfer:
        """Submits the source-side transaction; returns once it is mined."""

    @abstractmethod
    async def get_transfer_status(self, transfer: BridgeTransfer) -> TransferStatus:
        """Destination-side state of a submitted transfer."""


@register_bridge("socket")
class SocketBridge(BridgeProvider):
    """Socket (Bungee) aggregator: quote and build-tx over its REST API, status by source tx hash."""

    def _headers(self):
        api_key = self.settings.get("api_key")
        return {"API-KEY": api_key} if api_key else {}

    def _api_token(self, token: str) -> str:
        return API_NATIVE_TOKEN if token == NATIVE_TOKEN else token

    async def _best_route(self, source, dest, token, amount: Decimal, recipient: Optional[str] = None) -> Dict[str, Any]:
        dest_token = self.counterpart(token, source, dest)
        user = recipient or self.wallet.get_address(source)
        params = {
            "fromChainId": self.chain_id(source),
            "toChainId": self.chain_id(dest),
            "fromTokenAddress": self._api_token(token),
            "toTokenAddress": self._api_token(dest_token),
            "fromAmount": str(to_base_units(amount, self.decimals_of(token))),
            "userAddress": user,
            "recipient": user,
            "singleTxOnly": "true",
            "sort": "output",
        }
        data = await self._get_json("quote", params)
        routes = (data.get("result") or {}).get("routes") or []
        if not data.get("success", True) or not routes:
            raise BridgeFailure(f"socket: no route from {source} to {dest}")
        return routes[0]

    async def estimate_fee(self, source, dest, token, amount):
        route = await self._best_route(source, dest, token, amount)
        received = from_base_units(int(route["toAmount"]), self.decimals_of(token))
        return max(to_decimal(amount) - received, Decimal("0"))

    async def bridge(self, source, dest, token, amount, recipient):
        route = await self._best_route(source, dest, token, amount, recipient)
        build = (await self._post_json("build-tx", {"route": route})).get("result") or {}
        if not build.get("txTarget"):
            raise BridgeFailure("socket: build-tx returned no transaction")

        approval = build.get("approvalData")
        if approval:
            await self.wallet.ensure_allowance(approval["approvalTokenAddress"], approval["allowanceTarget"],
                                               int(approval["minimumApprovalAmount"]), source)

        value = build.get("value") or 0
        if isinstance(value, str):
            value = int(value, 16) if value.startswith("0x") else int(value)
        tx = {"to": AsyncWeb3.to_checksum_address(build["txTarget"]), "data": build["txData"], "value": value}
        tx_ref = await self.wallet.send_transaction(tx, source)
        receipt = await self.wallet.wait_for_transaction(tx_ref, source)
        logger.info(f"socket: bridge transaction mined on {source}: {tx_ref}")
        return BridgeTransfer(tx_ref=tx_ref, provider=self.name, source_network=source, dest_network=dest,
                              token=token, amount=to_decimal(amount), recipient=recipient,
                              expected_output=from_base_units(int(route["toAmount"]), self.decimals_of(token)),
                              gas_cost=self.wallet.gas_cost_of(receipt))

    async def get_transfer_status(self, transfer):
        data = await self._get_json("bridge-status", {
            "transactionHash": transfer.tx_ref,
            "fromChainId": self.chain_id(transfer.source_network),
            "toChainId": self.chain_id(transfer.dest_network),
        })
        result = data.get("result") or {}
        if result.get("sourceTxStatus") == "FAILED" or result.get("destinationTxStatus") == "FAILED":
            return TransferStatus(state="failed")
        if result.get("destinationTxStatus") == "COMPLETED":
            received = result.get("toAmount")
            return TransferStatus(
                state="filled",
                received_amount=from_base_units(int(received), self.decimals_of(transfer.token)) if received else transfer.expected_output,
                fill_tx_ref=result.get("destinationTransactionHash"),
            )
        return TransferStatus(state="pending")


ACROSS_SPOKE_POOL_ABI = [
    {"name": "depositV3", "type": "function", "stateMutability": "payable",
     "inputs": [{"name": "depositor", "type": "address"}, {"name": "recipient", "type": "address"},
                {"name": "inputToken", "type": "address"}, {"name": "outputToken", "type": "address"},
                {"name": "inputAmount", "type": "uint256"}, {"name": "outputAmount", "type": "uint256"},
                {"name": "destinationChainId", "type": "uint256"}, {"name": "exclusiveRelayer", "type": "address"},
                {"name": "quoteTimestamp", "type": "uint32"}, {"name": "fillDeadline", "type": "uint32"},
                {"name": "exclusivityDeadline", "type": "uint32"}, {"name": "message", "type": "bytes"}],
     "outputs": []},
]


@register_bridge("across")
class AcrossBridge(BridgeProvider):
    """Across intents: suggested-fees API, SpokePool depositV3, deposit status API."""

    def supports(self, source, dest):
        spoke_pools = self.settings.get("spoke_pools", {})
        return super().supports(source, dest) and bool(spoke_pools.get(source))

    def _input_token(self, network: str, token: str) -> str:
        # SpokePool wraps msg.value when inputToken is the wrapped native token
        if token == NATIVE_TOKEN:
            return self.config["networks"][network]["wrapped_native"]
        return token

    async def _suggested_fees(self, source, dest, token, amount: Decimal) -> Dict[str, Any]:
        params = {
            "inputToken": self._input_token(source, token),
            "outputToken": self._input_token(dest, self.counterpart(token, source, dest)),
            "originChainId": self.chain_id(source),
            "destinationChainId": self.chain_id(dest),
            "amount": str(to_base_units(amount, self.decimals_of(token))),
        }
        return await self._get_json("suggested-fees", params)

    async def estimate_fee(self, source, dest, token, amount):
        fees = await self._suggested_fees(source, dest, token, amount)
        return from_base_units(int(fees["totalRelayFee"]["total"]), self.decimals_of(token))

    async def bridge(self, source, dest, token, amount, recipient):
        fees = await self._suggested_fees(source, dest, token, amount)
        decimals = self.decimals_of(token)
        input_amount = to_base_units(amount, decimals)
        output_amount = input_amount - int(fees["totalRelayFee"]["total"])
        if output_amount <= 0:
            raise BridgeFailure(f"across: relay fee exceeds amount {amount}")

        spoke_pool_address = self.settings["spoke_pools"][source]
        spoke_pool = self.wallet.contract(source, spoke_pool_address, ACROSS_SPOKE_POOL_ABI)
        input_token = AsyncWeb3.to_checksum_address(self._input_token(source, token))
        output_token = AsyncWeb3.to_checksum_address(self._input_token(dest, self.counterpart(token, source, dest)))
        depositor = self.wallet.get_address(source)
        if token != NATIVE_TOKEN:
            await self.wallet.ensure_allowance(token, spoke_pool_address, input_amount, source)

        fill_deadline = int(fees.get("fillDeadline") or int(time.time()) + 6 * 3600)
        call = spoke_pool.functions.depositV3(
            depositor, AsyncWeb3.to_checksum_address(recipient), input_token, output_token,
            input_amount, output_amount, self.chain_id(dest),
            AsyncWeb3.to_checksum_address(fees.get("exclusiveRelayer") or NATIVE_TOKEN),
            int(fees["timestamp"]), fill_deadline, int(fees.get("exclusivityDeadline") or 0), b"",
        )
        value = input_amount if token == NATIVE_TOKEN else 0
        tx = await call.build_transaction({"from": depositor, "value": value, "gas": self.wallet.gas_limit})
        tx_ref = await self.wallet.send_transaction(tx, source)
        receipt = await self.wallet.wait_for_transaction(tx_ref, source)
        logger.info(f"across: deposit mined on {source}: {tx_ref}")
        return BridgeTransfer(tx_ref=tx_ref, provider=self.name, source_network=source, dest_network=dest,
                              token=token, amount=to_decimal(amount), recipient=recipient,
                              expected_output=from_base_units(output_amount, decimals),
                              gas_cost=self.wallet.gas_cost_of(receipt))

    async def get_transfer_status(self, transfer):
        data = await self._get_json("deposit/status", {
            "originChainId": self.chain_id(transfer.source_network),
            "depositTxHash": transfer.tx_ref,
        })
        status = data.get("status")
        if status == "filled":
            return TransferStatus(state="filled", received_amount=transfer.expected_output, fill_tx_ref=data.get("fillTx"))
        if status in ("expired", "refunded"):
            return TransferStatus(state="failed")
        return TransferStatus(state="pending")


class BridgeRouter:
    """
    Ordered provider list. Fee estimates and transfers try providers in order
    (first success wins); every provider failing surfaces one aggregated error.
    """
    def __init__(self, config: Dict[str, Any], wallet, providers: Optional[List[BridgeProvider]] = None):
        self.config = config
        bridge_config = config.get("bridges", {})
        if providers is None:
            providers = [create_bridge(name, config, wallet) for name in bridge_config.get("providers", [])]
        self.providers = providers
        self.default_fee_percent = to_decimal(bridge_config.get("default_fee_percent", DEFAULT_FEE_PERCENT))
        self.poll_interval_s = float(bridge_config.get("poll_interval_s", 30))
        self.completion_timeout_s = float(bridge_config.get("completion_timeout_s", 3600))

    def _candidates(self, source: str, dest: str) -> List[BridgeProvider]:
        return [p for p in self.providers if p.supports(source, dest)]

    def _provider(self, name: str) -> BridgeProvider:
        for provider in self.providers:
            if provider.name == name:
                return provider
        raise ConfigError(f"Bridge provider '{name}' is not configured")

    async def get_bridge_fee(self, source: str, dest: str, token: str, amount: Decimal) -> Decimal:
        """Never raises: falls back to a flat percentage of `amount`."""
        amount = to_decimal(amount)
        for provider in self._candidates(source, dest):
            try:
                fee = await provider.estimate_fee(source, dest, token, amount)
                logger.debug(f"{provider.name} fee {source}->{dest}: {fee}")
                return fee
            except Exception as e:
                logger.warning(f"Failed to get {provider.name} bridge fee {source}->{dest}: {e}")
        fee = amount * self.default_fee_percent / Decimal(100)
        logger.info(f"Using fallback bridge fee for {source}->{dest}: {fee} ({self.default_fee_percent}%)")
        return fee

    async def bridge_tokens(self, source: str, dest: str, token: str, amount: Decimal, recipient: str) -> BridgeTransfer:
        if source == dest:
            raise BridgeFailure(f"Source and destination network are both {source}")
        failures = []
        for provider in self._candidates(source, dest):
            try:
                logger.info(f"Bridging {amount} from {source} to {dest} via {provider.name}")
                return await provider.bridge(source, dest, token, to_decimal(amount), recipient)
            except Exception as e:
                logger.warning(f"{provider.name} bridge {source}->{dest} failed: {e}")
                failures.append(f"{provider.name}: {e}")
        raise BridgeFailure(f"All bridge providers failed for {source}->{dest}: {aggregate_failures(failures)}", failures)

    def get_bridging_time_estimate_minutes(self, source: str, dest: str) -> int:
        estimates = [p.time_estimate_minutes(source, dest) for p in self._candidates(source, dest)]
        estimates = [e for e in estimates if e]
        return min(estimates) if estimates else DEFAULT_BRIDGE_TIME_MINUTES

    async def wait_for_completion(self, transfer: BridgeTransfer, poll_interval_s: Optional[float] = None,
                                  timeout_s: Optional[float] = None) -> TransferStatus:
        """Polls the provider at a fixed interval. Raises BridgeFailure on failure, BridgeTimeout when the budget runs out."""
        interval = self.poll_interval_s if poll_interval_s is None else poll_interval_s
        timeout = self.completion_timeout_s if timeout_s is None else timeout_s
        provider = self._provider(transfer.provider)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                status = await provider.get_transfer_status(transfer)
            except Exception as e:
                logger.warning(f"Status check for {transfer.tx_ref} failed: {e}")
                status = TransferStatus(state="pending")

            if status.state == "filled":
                logger.info(f"Bridge transfer {transfer.tx_ref} completed on {transfer.dest_network}")
                return status
            if status.state == "failed":
                raise BridgeFailure(f"Bridge transfer {transfer.tx_ref} failed ({transfer.provider})", tx_ref=transfer.tx_ref)
            if loop.time() + interval >= deadline:
                raise BridgeTimeout(f"Bridge transfer {transfer.tx_ref} not completed within {timeout:.0f}s", tx_ref=transfer.tx_ref)
            await asyncio.sleep(interval)

    async def close(self):
        for provider in self.providers:
            await provider.close()
