# tests/test_flash_loans.py

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from crosschain_arb.flash_loans import (AaveFlashLoanProvider, CallbackResult, calculate_flash_loan_fee,
                                        can_repay_flash_loan)
from crosschain_arb.simulation import SimulatedFlashLoanProvider
from crosschain_arb.utils import NATIVE_TOKEN, ConfigError, FlashLoanError


@pytest.fixture
def flash_config(config):
    config["arbitrage"]["flash_loan_enabled"] = True
    return config


def test_fee_is_nine_basis_points():
    assert calculate_flash_loan_fee(Decimal("100")) == Decimal("0.09")
    assert calculate_flash_loan_fee(Decimal("100"), fee_bps=5) == Decimal("0.05")


@pytest.mark.parametrize("proceeds,expected", [
    ("100.09", True),
    ("100.0899", False),
    ("101", True),
    ("99", False),
])
def test_can_repay(proceeds, expected):
    assert can_repay_flash_loan(Decimal("100"), Decimal(proceeds)) is expected


def test_loan_refused_when_disabled(config):
    provider = SimulatedFlashLoanProvider(config)
    callback = AsyncMock(return_value=CallbackResult(success=True, proceeds=Decimal("21")))

    with pytest.raises(FlashLoanError):
        asyncio.run(provider.execute_flash_loan("ethereum", NATIVE_TOKEN, Decimal("20"), callback))
    callback.assert_not_awaited()


def test_failed_callback_never_draws_loan(flash_config):
    provider = SimulatedFlashLoanProvider(flash_config)
    provider._submit = AsyncMock()
    callback = AsyncMock(return_value=CallbackResult(success=False, error="Cannot repay flash loan"))

    result = asyncio.run(provider.execute_flash_loan("ethereum", NATIVE_TOKEN, Decimal("20"), callback))

    assert result.success is False
    assert result.tx_ref is None
    provider._submit.assert_not_awaited()


def test_successful_loan_reports_tx(flash_config):
    provider = SimulatedFlashLoanProvider(flash_config)
    callback = AsyncMock(return_value=CallbackResult(success=True, proceeds=Decimal("20.5")))

    result = asyncio.run(provider.execute_flash_loan("ethereum", NATIVE_TOKEN, Decimal("20"), callback))

    assert result.success is True
    assert result.tx_ref.startswith("0x")
    assert result.callback_result.proceeds == Decimal("20.5")
    assert provider.in_progress is False


def test_second_concurrent_loan_is_refused(flash_config):
    provider = SimulatedFlashLoanProvider(flash_config)

    async def scenario():
        gate = asyncio.Event()

        async def slow_callback():
            await gate.wait()
            return CallbackResult(success=True, proceeds=Decimal("21"))

        first = asyncio.create_task(provider.execute_flash_loan("ethereum", NATIVE_TOKEN, Decimal("20"), slow_callback))
        await asyncio.sleep(0)
        assert provider.in_progress is True
        with pytest.raises(FlashLoanError):
            await provider.execute_flash_loan("ethereum", NATIVE_TOKEN, Decimal("20"), slow_callback)
        gate.set()
        return await first

    result = asyncio.run(scenario())

    assert result.success is True


def test_aave_requires_receiver_contract(flash_config):
    provider = AaveFlashLoanProvider(flash_config, MagicMock())
    callback = AsyncMock(return_value=CallbackResult(success=True, proceeds=Decimal("21")))

    with pytest.raises(ConfigError):
        asyncio.run(provider.execute_flash_loan("ethereum", NATIVE_TOKEN, Decimal("20"), callback))
