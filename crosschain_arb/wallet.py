# wallet.py

import asyncio
from decimal import Decimal
from typing import Any, Dict, Optional

from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted

from crosschain_arb.logging_config import get_logger
from crosschain_arb.utils import (ConfigError, NATIVE_TOKEN, TransactionFailure, enabled_networks,
                                  from_base_units, to_decimal)

logger = get_logger(__name__)

GWEI = 10 ** 9

ERC20_ABI = [
    {"name": "balanceOf", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}], "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "decimals", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint8"}]},
    {"name": "allowance", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "approve", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bool"}]},
]


class WalletManager:
    """
    Owns one AsyncWeb3 provider per enabled network and the single signing
    account. Transaction submission is serialized per network so nonces never
    collide between concurrent callers.
    """
    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.gas_config = config.get("gas", {})
        self.min_native_balance = to_decimal(config["wallet"].get("min_native_balance", "0.1"))
        self.providers: Dict[str, AsyncWeb3] = {}
        self._nonce_locks: Dict[str, asyncio.Lock] = {}

        private_key = config["wallet"].get("private_key")
        self.account = Account.from_key(private_key) if private_key else None
        if self.account is None:
            logger.warning("No private key provided, wallet runs in read-only mode.")

        for network in enabled_networks(config):
            rpc_url = config["networks"][network].get("rpc_url")
            if not rpc_url:
                logger.error(f"Missing RPC endpoint for network: {network}")
                continue
            self.providers[network] = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
            self._nonce_locks[network] = asyncio.Lock()
            logger.info(f"Initialized web3 provider for network: {network}")

    def get_web3(self, network: str) -> AsyncWeb3:
        if network not in self.providers:
            raise ConfigError(f"Provider not initialized for network: {network}")
        return self.providers[network]

    def _require_account(self):
        if self.account is None:
            raise ConfigError("No private key configured; cannot sign transactions.")
        return self.account

    def get_address(self, network: Optional[str] = None) -> str:
        # Same EOA on every EVM network.
        return self._require_account().address

    def contract(self, network: str, address: str, abi):
        w3 = self.get_web3(network)
        return w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def get_balance(self, network: str, address: Optional[str] = None) -> Decimal:
        """Native balance in whole units."""
        w3 = self.get_web3(network)
        target = address or self.get_address(network)
        balance_wei = await w3.eth.get_balance(AsyncWeb3.to_checksum_address(target))
        return from_base_units(balance_wei)

    async def get_token_balance(self, token_address: str, network: str, address: Optional[str] = None) -> Decimal:
        if token_address == NATIVE_TOKEN:
            return await self.get_balance(network, address)
        token = self.contract(network, token_address, ERC20_ABI)
        owner = AsyncWeb3.to_checksum_address(address or self.get_address(network))
        balance, decimals = await asyncio.gather(
            token.functions.balanceOf(owner).call(),
            token.functions.decimals().call(),
        )
        return from_base_units(balance, decimals)

    async def check_wallet_balances(self) -> Dict[str, Optional[Decimal]]:
        """Per-network native balance snapshot. Never raises; unreadable networks map to None."""
        balances: Dict[str, Optional[Decimal]] = {}
        for network in self.providers:
            try:
                balance = await self.get_balance(network)
            except Exception as e:
                logger.error(f"Failed to check balance for {network}: {e}")
                balances[network] = None
                continue
            balances[network] = balance
            logger.info(f"Balance on {network}: {balance} ETH")
            if balance < self.min_native_balance:
                logger.warning(f"Low balance on {network}: {balance} ETH, minimum required: {self.min_native_balance} ETH")
        return balances

    def _fallback_gas_params(self) -> Dict[str, int]:
        return {
            "maxFeePerGas": int(to_decimal(self.gas_config.get("max_fee_per_gas_gwei", 30)) * GWEI),
            "maxPriorityFeePerGas": int(to_decimal(self.gas_config.get("max_priority_fee_gwei", 2)) * GWEI),
        }

    async def get_gas_params(self, network: str) -> Dict[str, int]:
        """EIP-1559 fees when the node reports a base fee, legacy gas price otherwise. Capped by config."""
        caps = self._fallback_gas_params()
        w3 = self.get_web3(network)
        try:
            block = await w3.eth.get_block("latest")
            base_fee = block.get("baseFeePerGas")
            if base_fee is not None:
                priority = min(await w3.eth.max_priority_fee, caps["maxPriorityFeePerGas"])
                max_fee = min(base_fee * 2 + priority, caps["maxFeePerGas"])
                return {"maxFeePerGas": max_fee, "maxPriorityFeePerGas": min(priority, max_fee)}
            gas_price = (await w3.eth.gas_price) * 110 // 100  # 10% buffer
            return {"gasPrice": min(gas_price, caps["maxFeePerGas"])}
        except Exception as e:
            logger.error(f"Failed to get gas params for {network}: {e}. Using configured values.")
            return caps

    async def max_fee_per_gas(self, network: str) -> int:
        params = await self.get_gas_params(network)
        return params.get("maxFeePerGas") or params["gasPrice"]

    @property
    def gas_limit(self) -> int:
        return int(self.gas_config.get("gas_limit", 500000))

    async def send_transaction(self, tx: Dict[str, Any], network: str) -> str:
        """Fills nonce, chainId, fees and gas, signs and broadcasts. Returns the tx hash."""
        w3 = self.get_web3(network)
        account = self._require_account()

        async with self._nonce_locks[network]:
            tx = dict(tx)
            tx.setdefault("from", account.address)
            tx.setdefault("chainId", self.config["networks"][network]["chain_id"])
            # build_transaction fills in node-suggested fees; replace them with the capped ones
            for key in ("gasPrice", "maxFeePerGas", "maxPriorityFeePerGas"):
                tx.pop(key, None)
            tx.update(await self.get_gas_params(network))
            if "gas" not in tx:
                try:
                    tx["gas"] = await w3.eth.estimate_gas(tx) * 12 // 10
                except Exception as e:
                    logger.warning(f"Gas estimation failed on {network}: {e}. Using configured gas limit.")
                    tx["gas"] = self.gas_limit
            tx["nonce"] = await w3.eth.get_transaction_count(account.address, "pending")

            signed = account.sign_transaction(tx)
            tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_ref = AsyncWeb3.to_hex(tx_hash)
        logger.info(f"Transaction sent on {network}: {tx_ref}")
        return tx_ref

    async def wait_for_transaction(self, tx_ref: str, network: str, confirmations: int = 1, timeout: float = 300) -> Dict[str, Any]:
        w3 = self.get_web3(network)
        logger.info(f"Waiting for transaction {tx_ref} on {network} to be confirmed...")
        try:
            receipt = await w3.eth.wait_for_transaction_receipt(tx_ref, timeout=timeout)
        except TimeExhausted as e:
            raise TransactionFailure(f"Transaction {tx_ref} not mined on {network} within {timeout}s", tx_ref) from e

        if receipt["status"] != 1:
            logger.error(f"Transaction {tx_ref} failed on {network}")
            raise TransactionFailure(f"Transaction {tx_ref} reverted on {network}", tx_ref)

        target_block = receipt["blockNumber"] + confirmations - 1
        while await w3.eth.block_number < target_block:
            await asyncio.sleep(1)

        logger.info(f"Transaction {tx_ref} confirmed on {network}")
        return dict(receipt)

    @staticmethod
    def gas_cost_of(receipt: Dict[str, Any]) -> Decimal:
        gas_price = receipt.get("effectiveGasPrice") or receipt.get("gasPrice") or 0
        return from_base_units(receipt["gasUsed"] * gas_price)

    async def ensure_allowance(self, token_address: str, spender: str, amount: int, network: str):
        """Approves `spender` for `amount` base units when the current allowance is lower."""
        if token_address == NATIVE_TOKEN:
            return
        token = self.contract(network, token_address, ERC20_ABI)
        owner = self.get_address(network)
        spender = AsyncWeb3.to_checksum_address(spender)
        allowance = await token.functions.allowance(owner, spender).call()
        if allowance >= amount:
            return
        logger.info(f"Approving {spender} to spend token {token_address} on {network}")
        tx = await token.functions.approve(spender, amount).build_transaction({"from": owner})
        tx_ref = await self.send_transaction(tx, network)
        await self.wait_for_transaction(tx_ref, network)

    async def close(self):
        """Gracefully closes all provider sessions."""
        logger.info("Closing all web3 provider connections...")
        for network, w3 in self.providers.items():
            disconnect = getattr(w3.provider, "disconnect", None)
            if disconnect is not None:
                try:
                    await disconnect()
                except Exception as e:
                    logger.warning(f"Error closing provider for {network}: {e}")
        self.providers.clear()
