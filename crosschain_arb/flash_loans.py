# flash_loans.py

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

from web3 import AsyncWeb3

from crosschain_arb.logging_config import get_logger
from crosschain_arb.utils import ConfigError, FlashLoanError, NATIVE_TOKEN, to_base_units, to_decimal

logger = get_logger(__name__)

AAVE_FEE_BPS = 9


def calculate_flash_loan_fee(amount: Decimal, fee_bps: int = AAVE_FEE_BPS) -> Decimal:
    return to_decimal(amount) * Decimal(fee_bps) / Decimal(10000)


def can_repay_flash_loan(principal: Decimal, proceeds: Decimal, fee_bps: int = AAVE_FEE_BPS) -> bool:
    principal = to_decimal(principal)
    return to_decimal(proceeds) >= principal + calculate_flash_loan_fee(principal, fee_bps)


@dataclass
class CallbackResult:
    success: bool
    proceeds: Decimal = Decimal("0")
    error: Optional[str] = None


@dataclass
class FlashLoanResult:
    tx_ref: Optional[str]
    callback_result: CallbackResult

    @property
    def success(self) -> bool:
        return self.tx_ref is not None and self.callback_result.success


FlashLoanCallback = Callable[[], Awaitable[CallbackResult]]


class FlashLoanProvider(ABC):
    """At most one loan in flight per provider; a second concurrent request is refused."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.fee_bps = int(config.get("arbitrage", {}).get("flash_loan_fee_bps", AAVE_FEE_BPS))
        self._lock = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    async def execute_flash_loan(self, network: str, token: str, amount: Decimal,
                                 callback: FlashLoanCallback) -> FlashLoanResult:
        if not self.config.get("arbitrage", {}).get("flash_loan_enabled", False):
            raise FlashLoanError("Flash loans are disabled in configuration")
        if self._lock.locked():
            raise FlashLoanError("Another flash loan is already in progress")

        async with self._lock:
            logger.info(f"Executing flash loan for {amount} of {token} on {network}")
            callback_result = await callback()
            if not callback_result.success:
                logger.warning(f"Flash loan callback reported failure, loan not drawn: {callback_result.error}")
                return FlashLoanResult(tx_ref=None, callback_result=callback_result)
            tx_ref = await self._submit(network, token, to_decimal(amount), callback_result)
            return FlashLoanResult(tx_ref=tx_ref, callback_result=callback_result)

    @abstractmethod
    async def _submit(self, network: str, token: str, amount: Decimal, callback_result: CallbackResult) -> str:
        """Sends the loan transaction once the settlement check has passed."""


AAVE_POOL_ABI = [
    {"name": "flashLoanSimple", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "receiverAddress", "type": "address"}, {"name": "asset", "type": "address"},
                {"name": "amount", "type": "uint256"}, {"name": "params", "type": "bytes"},
                {"name": "referralCode", "type": "uint16"}],
     "outputs": []},
]


class AaveFlashLoanProvider(FlashLoanProvider):
    """
    Aave V3 Pool.flashLoanSimple. The configured receiver contract performs the
    swaps on-chain; the callback here is the off-chain settlement check that
    decides whether the loan is worth drawing at all.
    """
    def __init__(self, config: Dict[str, Any], wallet):
        super().__init__(config)
        self.wallet = wallet
        self.settings = config.get("flash_loans", {}).get("aave", {})

    def _addresses(self, network: str):
        pool = self.settings.get("pools", {}).get(network)
        receiver = self.settings.get("receivers", {}).get(network)
        if not pool or not receiver:
            raise ConfigError(f"Aave pool or flash-loan receiver not configured for network: {network}")
        return pool, receiver

    async def _submit(self, network, token, amount, callback_result):
        pool_address, receiver = self._addresses(network)
        asset = self.config["networks"][network]["wrapped_native"] if token == NATIVE_TOKEN else token
        pool = self.wallet.contract(network, pool_address, AAVE_POOL_ABI)
        w3 = self.wallet.get_web3(network)
        # Receiver reverts unless it realizes at least the checked proceeds
        params = w3.codec.encode(["uint256"], [to_base_units(callback_result.proceeds)])

        call = pool.functions.flashLoanSimple(AsyncWeb3.to_checksum_address(receiver), AsyncWeb3.to_checksum_address(asset),
                                              to_base_units(amount), params, 0)
        sender = self.wallet.get_address(network)
        tx = await call.build_transaction({"from": sender, "gas": self.wallet.gas_limit})
        tx_ref = await self.wallet.send_transaction(tx, network)
        await self.wallet.wait_for_transaction(tx_ref, network)
        logger.info(f"Flash loan transaction confirmed on {network}: {tx_ref}")
        return tx_ref
