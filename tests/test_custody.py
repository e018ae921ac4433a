"""Tests for custody adapters."""

import os
import stat
from unittest.mock import MagicMock

import pytest
from web3 import Web3
from web3.exceptions import TimeExhausted

from bump_bot.config import Config
from bump_bot.custody import DryRunCustody, LocalSwarmCustody, create_custody
from bump_bot.models import Batch, ContractCall
from bump_bot.utils import ConfirmationTimeout, SecurityError, TransactionError

WETH = "0x4200000000000000000000000000000000000006"
ROUTER = "0x0000000000001ff3684f28c67538d4d072c22734"
PASSWORD = "keystore_password_123"


def swap_batch(sell_amount=10**15, calls=2):
    return Batch(
        calls=[ContractCall(target=ROUTER, data="0xabcdef")] * calls,
        sell_token=WETH,
        sell_amount=sell_amount,
        description="test swap",
    )


def mock_web3(balances):
    web3 = MagicMock()
    web3.to_wei = Web3.to_wei
    web3.eth.get_block.return_value = {"baseFeePerGas": Web3.to_wei(0.01, "gwei")}
    web3.eth.get_transaction_count.return_value = 7
    web3.eth.estimate_gas.return_value = 100000
    web3.eth.send_raw_transaction.side_effect = [bytes([i]) * 32 for i in range(1, 10)]
    web3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 99, "gasUsed": 90000}
    web3.eth.contract.return_value.functions.balanceOf.return_value.call.side_effect = balances
    return web3


class TestDryRunCustody:

    async def test_addresses_are_deterministic(self):
        first = await DryRunCustody().get_or_create_wallet("alice", 0)
        second = await DryRunCustody().get_or_create_wallet("alice", 0)
        other = await DryRunCustody().get_or_create_wallet("alice", 1)
        assert first == second
        assert first != other
        assert Web3.is_checksum_address(first)

    async def test_confirms_sell_amount(self):
        custody = DryRunCustody()
        tx_ref = await custody.submit("0x" + "1" * 40, swap_batch())
        confirmation = await custody.await_confirmation(tx_ref, 5)
        assert confirmation.status
        assert confirmation.spent_amount == 10**15

    async def test_unknown_transaction(self):
        with pytest.raises(TransactionError):
            await DryRunCustody().await_confirmation("0x" + "0" * 64, 5)

    async def test_empty_batch_rejected(self):
        with pytest.raises(TransactionError):
            await DryRunCustody().submit("0x" + "1" * 40, swap_batch(calls=0))

    async def test_slow_confirmation_times_out(self):
        custody = DryRunCustody(confirmation_delay=10)
        tx_ref = await custody.submit("0x" + "1" * 40, swap_batch())
        with pytest.raises(ConfirmationTimeout):
            await custody.await_confirmation(tx_ref, 1)


class TestLocalSwarmCustody:

    @pytest.fixture
    def config(self, tmp_path):
        return Config(custody_backend="local", dry_run=False, keystore_file=str(tmp_path / "keys.json"))

    async def test_keystore_persists_encrypted(self, config):
        custody = LocalSwarmCustody(config, PASSWORD, web3=MagicMock())
        address = await custody.get_or_create_wallet("alice", 0)
        assert await custody.get_or_create_wallet("alice", 0) == address

        raw = open(config.keystore_file).read()
        assert address in raw
        assert "encrypted_private_key" in raw
        if os.name != "nt":
            assert stat.S_IMODE(os.stat(config.keystore_file).st_mode) == 0o600

        reloaded = LocalSwarmCustody(config, PASSWORD, web3=MagicMock())
        assert reloaded._account_for(address).address == address

    async def test_wrong_password(self, config):
        custody = LocalSwarmCustody(config, PASSWORD, web3=MagicMock())
        address = await custody.get_or_create_wallet("alice", 0)

        other = LocalSwarmCustody(config, "another_password", web3=MagicMock())
        with pytest.raises(SecurityError):
            other._account_for(address)

    def test_short_password_rejected(self, config):
        with pytest.raises(SecurityError):
            LocalSwarmCustody(config, "short", web3=MagicMock())

    async def test_submit_and_confirm(self, config):
        web3 = mock_web3(balances=[5 * 10**15, 4 * 10**15])
        custody = LocalSwarmCustody(config, PASSWORD, web3=web3)
        address = await custody.get_or_create_wallet("alice", 0)

        tx_ref = await custody.submit(address, swap_batch())
        confirmation = await custody.await_confirmation(tx_ref, 5)

        assert web3.eth.send_raw_transaction.call_count == 2
        assert tx_ref == Web3.to_hex(bytes([2]) * 32)
        assert confirmation.status
        assert confirmation.spent_amount == 10**15
        assert confirmation.tx_refs == [Web3.to_hex(bytes([1]) * 32), tx_ref]

    async def test_confirmation_timeout(self, config):
        web3 = mock_web3(balances=[10**16])
        custody = LocalSwarmCustody(config, PASSWORD, web3=web3)
        address = await custody.get_or_create_wallet("alice", 0)
        tx_ref = await custody.submit(address, swap_batch(calls=1))

        web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("slow")
        with pytest.raises(ConfirmationTimeout):
            await custody.await_confirmation(tx_ref, 1)

    async def test_reverted_batch(self, config):
        web3 = mock_web3(balances=[10**16])
        custody = LocalSwarmCustody(config, PASSWORD, web3=web3)
        address = await custody.get_or_create_wallet("alice", 0)
        tx_ref = await custody.submit(address, swap_batch(calls=1))

        web3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 99, "gasUsed": 21000}
        confirmation = await custody.await_confirmation(tx_ref, 5)
        assert not confirmation.status
        assert confirmation.spent_amount == 0


class TestCreateCustody:

    def test_dry_run_by_default(self):
        assert isinstance(create_custody(Config()), DryRunCustody)

    def test_local_requires_password(self, tmp_path):
        config = Config(custody_backend="local", dry_run=False, keystore_file=str(tmp_path / "k.json"))
        with pytest.raises(SecurityError):
            create_custody(config)
