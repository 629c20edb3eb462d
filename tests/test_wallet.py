# tests/test_wallet.py

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_account import Account

from crosschain_arb.wallet import GWEI, WalletManager
from crosschain_arb.utils import ConfigError

TEST_KEY = "0x" + "11" * 32


@pytest.fixture
def wallet_config(config):
    config["networks"]["ethereum"]["rpc_url"] = "http://127.0.0.1:8545"
    config["networks"]["arbitrum"]["rpc_url"] = "http://127.0.0.1:8546"
    config["wallet"]["private_key"] = TEST_KEY
    return config


def mock_web3(wallet, network):
    """Replaces the network's provider with a mock exposing an async eth namespace."""
    w3 = MagicMock()
    w3.eth.get_balance = AsyncMock()
    w3.eth.get_block = AsyncMock()
    wallet.providers[network] = w3
    return w3


def test_providers_only_for_networks_with_rpc(wallet_config):
    wallet = WalletManager(wallet_config)

    assert set(wallet.providers) == {"ethereum", "arbitrum"}
    with pytest.raises(ConfigError):
        wallet.get_web3("optimism")


def test_address_is_same_on_every_network(wallet_config):
    wallet = WalletManager(wallet_config)

    expected = Account.from_key(TEST_KEY).address
    assert wallet.get_address("ethereum") == expected
    assert wallet.get_address("arbitrum") == expected


def test_read_only_wallet_cannot_sign(config):
    wallet = WalletManager(config)

    with pytest.raises(ConfigError):
        wallet.get_address()


def test_gas_cost_of_receipt():
    receipt = {"gasUsed": 21000, "effectiveGasPrice": 10 * GWEI}

    assert WalletManager.gas_cost_of(receipt) == Decimal("0.00021")


def test_eip1559_gas_params_are_capped(wallet_config):
    wallet = WalletManager(wallet_config)
    w3 = mock_web3(wallet, "ethereum")
    w3.eth.get_block.return_value = {"baseFeePerGas": 20 * GWEI}
    w3.eth.max_priority_fee = AsyncMock(return_value=5 * GWEI)()

    params = asyncio.run(wallet.get_gas_params("ethereum"))

    # priority capped at 2 gwei, max fee capped at 30 gwei
    assert params == {"maxFeePerGas": 30 * GWEI, "maxPriorityFeePerGas": 2 * GWEI}


def test_gas_params_fall_back_to_config(wallet_config):
    wallet = WalletManager(wallet_config)
    w3 = mock_web3(wallet, "ethereum")
    w3.eth.get_block.side_effect = ConnectionError("node unreachable")

    params = asyncio.run(wallet.get_gas_params("ethereum"))

    assert params == {"maxFeePerGas": 30 * GWEI, "maxPriorityFeePerGas": 2 * GWEI}
    assert asyncio.run(wallet.max_fee_per_gas("ethereum")) == 30 * GWEI


def test_balance_snapshot_survives_unreachable_network(wallet_config):
    wallet = WalletManager(wallet_config)
    mock_web3(wallet, "ethereum").eth.get_balance.return_value = 2 * 10 ** 18
    mock_web3(wallet, "arbitrum").eth.get_balance.side_effect = ConnectionError("timeout")

    balances = asyncio.run(wallet.check_wallet_balances())

    assert balances == {"ethereum": Decimal("2"), "arbitrum": None}


def test_send_transaction_replaces_prefilled_fees_with_capped_ones(wallet_config):
    wallet = WalletManager(wallet_config)
    w3 = mock_web3(wallet, "ethereum")
    w3.eth.get_block.return_value = {"baseFeePerGas": 100 * GWEI}
    w3.eth.max_priority_fee = AsyncMock(return_value=5 * GWEI)()
    w3.eth.get_transaction_count = AsyncMock(return_value=7)
    w3.eth.send_raw_transaction = AsyncMock(return_value=b"\x12" * 32)
    wallet.account = MagicMock(address=Account.from_key(TEST_KEY).address)
    signer = wallet.account.sign_transaction
    # fees as filled in by build_transaction, above the configured caps
    tx = {"to": "0x0000000000000000000000000000000000000001", "value": 0, "gas": 200000,
          "maxFeePerGas": 250 * GWEI, "maxPriorityFeePerGas": 5 * GWEI}

    tx_ref = asyncio.run(wallet.send_transaction(tx, "ethereum"))

    signed_tx = signer.call_args.args[0]
    assert signed_tx["maxFeePerGas"] == 30 * GWEI
    assert signed_tx["maxPriorityFeePerGas"] == 2 * GWEI
    assert signed_tx["nonce"] == 7
    assert tx_ref == "0x" + "12" * 32
    assert tx["maxFeePerGas"] == 250 * GWEI


def test_send_transaction_drops_legacy_gas_price(wallet_config):
    wallet = WalletManager(wallet_config)
    w3 = mock_web3(wallet, "ethereum")
    w3.eth.get_block.return_value = {"baseFeePerGas": 10 * GWEI}
    w3.eth.max_priority_fee = AsyncMock(return_value=1 * GWEI)()
    w3.eth.get_transaction_count = AsyncMock(return_value=0)
    w3.eth.send_raw_transaction = AsyncMock(return_value=b"\x34" * 32)
    wallet.account = MagicMock(address=Account.from_key(TEST_KEY).address)
    signer = wallet.account.sign_transaction

    asyncio.run(wallet.send_transaction({"to": "0x0000000000000000000000000000000000000001", "gas": 21000,
                                         "gasPrice": 500 * GWEI}, "ethereum"))

    signed_tx = signer.call_args.args[0]
    assert "gasPrice" not in signed_tx
    assert signed_tx["maxFeePerGas"] == 21 * GWEI
    assert signed_tx["maxPriorityFeePerGas"] == 1 * GWEI
