"""
Custody Adapters
================

One narrow interface for worker wallet custody and on-chain execution:

    get_or_create_wallet(owner, index) -> address
    submit(address, batch)             -> tx_ref
    await_confirmation(tx_ref, timeout) -> Confirmation

Adapters:
- DryRunCustody: simulated execution with deterministic addresses
- LocalSwarmCustody: web3 execution with keys in an encrypted keystore

SECURITY (LocalSwarmCustody):
- Private keys encrypted at rest using Fernet (AES-128)
- Password-derived encryption keys via PBKDF2, unique salt per wallet
- Keys are decrypted in memory only for signing
"""

import asyncio
import base64
import itertools
import json
import os
import secrets
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted

from bump_bot.config import Config
from bump_bot.erc20 import ERC20_ABI
from bump_bot.models import Batch, Confirmation
from bump_bot.utils import (
    ConfirmationTimeout,
    SecurityError,
    TransactionError,
    format_address,
    format_tx_hash,
    logger,
)


class CustodyService(ABC):
    """Wallet custody and transaction execution."""

    @abstractmethod
    async def get_or_create_wallet(self, owner: str, index: int) -> str:
        """Return the address of the owner's worker wallet ``index``."""

    @abstractmethod
    async def submit(self, address: str, batch: Batch) -> str:
        """Execute ``batch`` from ``address``; returns the reference of the final call."""

    @abstractmethod
    async def await_confirmation(self, tx_ref: str, timeout: float) -> Confirmation:
        """Wait for the batch behind ``tx_ref``; raises ConfirmationTimeout."""


class DryRunCustody(CustodyService):
    """
    Simulated custody for dry runs and tests.

    Addresses are derived from ``keccak(owner:index)`` so they are stable
    across restarts. Every submitted batch confirms and spends exactly its
    sell amount.
    """

    def __init__(self, confirmation_delay: float = 0.0):
        self.confirmation_delay = confirmation_delay
        self._counter = itertools.count(1)
        self._pending: Dict[str, Batch] = {}
        self.submitted: List[Tuple[str, Batch]] = []

    async def get_or_create_wallet(self, owner: str, index: int) -> str:
        key = Web3.keccak(text=f"{owner}:{index}")
        return Account.from_key(key).address

    async def submit(self, address: str, batch: Batch) -> str:
        if not batch.calls:
            raise TransactionError("Empty batch")
        seed = f"{address}:{next(self._counter)}:{time.time_ns()}"
        tx_ref = Web3.to_hex(Web3.keccak(text=seed))
        self._pending[tx_ref] = batch
        self.submitted.append((address, batch))
        logger.info(f"[DRY RUN] {batch.description or 'batch'} from {format_address(address)}: {format_tx_hash(tx_ref)}")
        return tx_ref

    async def await_confirmation(self, tx_ref: str, timeout: float) -> Confirmation:
        batch = self._pending.pop(tx_ref, None)
        if batch is None:
            raise TransactionError(f"Unknown transaction {format_tx_hash(tx_ref)}")
        if self.confirmation_delay:
            if self.confirmation_delay > timeout:
                raise ConfirmationTimeout(f"Transaction {format_tx_hash(tx_ref)} not confirmed in {timeout}s")
            await asyncio.sleep(self.confirmation_delay)
        return Confirmation(
            status=True,
            tx_ref=tx_ref,
            spent_amount=batch.sell_amount,
            block_number=None,
            gas_used=0,
            tx_refs=[tx_ref],
        )


class LocalSwarmCustody(CustodyService):
    """
    Worker wallets held in a local encrypted keystore, executed via web3.

    Calls in a batch are sent sequentially from the worker wallet; each call
    except the last is mined before the next is sent. The spent amount is
    the drop in the sell token balance across the batch.
    """

    KDF_ITERATIONS = 480000

    def __init__(self, config: Config, password: str, web3: Optional[Web3] = None):
        if len(password) < 8:
            raise SecurityError("Keystore password must be at least 8 characters")
        self.config = config
        self.web3 = web3 or Web3(Web3.HTTPProvider(config.rpc_url, request_kwargs={"timeout": 30}))
        self.keystore_path = Path(config.keystore_file)
        self._password = password
        self._lock = threading.Lock()
        self._wallets: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self._pending: Dict[str, Dict[str, Any]] = {}
        self._load_keystore()

    # Keystore

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.KDF_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(self._password.encode()))

    def _encrypt_private_key(self, private_key: bytes, salt: bytes) -> str:
        f = Fernet(self._derive_key(salt))
        return base64.b64encode(f.encrypt(private_key.hex().encode())).decode()

    def _decrypt_private_key(self, encrypted_key: str, salt: bytes) -> str:
        f = Fernet(self._derive_key(salt))
        try:
            decrypted = f.decrypt(base64.b64decode(encrypted_key.encode()))
        except InvalidToken:
            raise SecurityError("Wrong keystore password")
        return "0x" + decrypted.decode()

    def _load_keystore(self):
        if not self.keystore_path.exists():
            logger.info("No existing worker keystore found")
            return

        with open(self.keystore_path, 'r') as f:
            data = json.load(f)

        for record in data.get('wallets', []):
            self._wallets[(record['owner'], record['index'])] = record

        logger.info(f"Loaded {len(self._wallets)} worker wallets from keystore")

    def _save_keystore(self):
        data = {
            'version': '1.0',
            'updated_at': datetime.now().isoformat(),
            'wallets': sorted(self._wallets.values(), key=lambda r: (r['owner'], r['index'])),
        }
        self.keystore_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.keystore_path.with_suffix('.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(data, f, indent=2)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.keystore_path)

    def _account_for(self, address: str) -> Account:
        for record in self._wallets.values():
            if record['address'].lower() == address.lower():
                salt = base64.b64decode(record['salt'])
                account = Account.from_key(self._decrypt_private_key(record['encrypted_private_key'], salt))
                if account.address.lower() != address.lower():
                    raise SecurityError("Decrypted address does not match stored address!")
                return account
        raise SecurityError(f"No key held for {format_address(address)}")

    def _create_wallet(self, owner: str, index: int) -> str:
        with self._lock:
            record = self._wallets.get((owner, index))
            if record is not None:
                return record['address']

            private_key = secrets.token_bytes(32)
            account = Account.from_key(private_key)
            salt = os.urandom(16)
            self._wallets[(owner, index)] = {
                'owner': owner,
                'index': index,
                'address': account.address,
                'encrypted_private_key': self._encrypt_private_key(private_key, salt),
                'salt': base64.b64encode(salt).decode(),
                'created_at': datetime.now().isoformat(),
            }
            self._save_keystore()

        logger.info(f"Created worker wallet {index} for {owner}: {format_address(account.address)}")
        return account.address

    async def get_or_create_wallet(self, owner: str, index: int) -> str:
        return await asyncio.to_thread(self._create_wallet, owner, index)

    # Execution

    def _fee_params(self) -> Dict[str, int]:
        """EIP-1559 fees capped at max_gas_price_gwei, legacy price otherwise."""
        max_allowed = self.web3.to_wei(self.config.max_gas_price_gwei, 'gwei')
        latest_block = self.web3.eth.get_block('latest')
        if 'baseFeePerGas' in latest_block:
            priority_fee = self.web3.to_wei(0.01, 'gwei')
            max_fee = min(latest_block['baseFeePerGas'] * 2 + priority_fee, max_allowed)
            return {'maxFeePerGas': max_fee, 'maxPriorityFeePerGas': min(priority_fee, max_fee)}
        return {'gasPrice': min(self.web3.eth.gas_price, max_allowed)}

    def _token_balance(self, token: str, address: str) -> int:
        contract = self.web3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        return contract.functions.balanceOf(Web3.to_checksum_address(address)).call()

    def _send_call(self, account: Account, call, nonce: int) -> str:
        tx = {
            'from': account.address,
            'to': Web3.to_checksum_address(call.target),
            'data': call.data,
            'value': call.value,
            'nonce': nonce,
            'chainId': self.config.chain_id,
        }
        tx.update(self._fee_params())
        estimated = self.web3.eth.estimate_gas(tx)
        tx['gas'] = int(estimated * self.config.gas_limit_buffer)

        signed = account.sign_transaction(tx)
        tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    def _submit(self, address: str, batch: Batch) -> str:
        if not batch.calls:
            raise TransactionError("Empty batch")
        account = self._account_for(address)
        balance_before = self._token_balance(batch.sell_token, account.address)
        nonce = self.web3.eth.get_transaction_count(account.address, 'pending')

        tx_refs = []
        for position, call in enumerate(batch.calls):
            tx_ref = self._send_call(account, call, nonce + position)
            tx_refs.append(tx_ref)
            logger.info(f"Sent {format_tx_hash(tx_ref)} from {format_address(account.address)}")
            if position < len(batch.calls) - 1:
                receipt = self.web3.eth.wait_for_transaction_receipt(tx_ref, timeout=self.config.submit_timeout_seconds)
                if receipt['status'] != 1:
                    raise TransactionError(f"Preparatory call {format_tx_hash(tx_ref)} reverted")

        self._pending[tx_refs[-1]] = {
            'address': account.address,
            'batch': batch,
            'balance_before': balance_before,
            'tx_refs': tx_refs,
        }
        return tx_refs[-1]

    async def submit(self, address: str, batch: Batch) -> str:
        return await asyncio.to_thread(self._submit, address, batch)

    def _await_confirmation(self, tx_ref: str, timeout: float) -> Confirmation:
        pending = self._pending.get(tx_ref)
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_ref, timeout=timeout)
        except TimeExhausted:
            raise ConfirmationTimeout(f"Transaction {format_tx_hash(tx_ref)} not confirmed in {timeout}s")
        self._pending.pop(tx_ref, None)

        if receipt['status'] != 1:
            return Confirmation(
                status=False,
                tx_ref=tx_ref,
                spent_amount=0,
                block_number=receipt.get('blockNumber'),
                gas_used=receipt.get('gasUsed'),
                tx_refs=pending['tx_refs'] if pending else [tx_ref],
            )

        spent = 0
        if pending is not None:
            batch = pending['batch']
            balance_after = self._token_balance(batch.sell_token, pending['address'])
            spent = pending['balance_before'] - balance_after
            if spent <= 0:
                # An incoming transfer landed during the batch; fall back to the quoted amount
                logger.warning(f"Balance delta unusable for {format_tx_hash(tx_ref)}, using sell amount")
                spent = batch.sell_amount

        return Confirmation(
            status=True,
            tx_ref=tx_ref,
            spent_amount=spent,
            block_number=receipt.get('blockNumber'),
            gas_used=receipt.get('gasUsed'),
            tx_refs=pending['tx_refs'] if pending else [tx_ref],
        )

    async def await_confirmation(self, tx_ref: str, timeout: float) -> Confirmation:
        return await asyncio.to_thread(self._await_confirmation, tx_ref, timeout)


def create_custody(config: Config, password: Optional[str] = None) -> CustodyService:
    """Pick the custody adapter named by ``config.custody_backend``."""
    if config.custody_backend == "dry_run" or config.dry_run:
        return DryRunCustody()
    if config.custody_backend == "local":
        if not password:
            raise SecurityError("Local custody requires the keystore password")
        return LocalSwarmCustody(config, password)
    raise ValueError(f"Unknown custody backend: {config.custody_backend}")
