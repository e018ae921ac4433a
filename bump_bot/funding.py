"""
Deposit Verification

Turns a deposit transaction into a credit amount by reading its receipt and
summing ERC-20 ``Transfer`` events of the funding token to the owner.

When no matching transfer can be decoded, a caller-supplied expected amount
may be accepted as a degraded-confidence credit. That path is off unless
``allow_unverified_deposits`` is set, requires a successful transaction
sent by the owner, and is flagged ``verified=False`` in the ledger receipt
and the activity log.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound

from bump_bot.config import Config
from bump_bot.erc20 import TRANSFER_TOPIC, topic_to_address
from bump_bot.utils import ValidationError, format_tx_hash, format_wei, logger


@dataclass
class VerifiedDeposit:
    tx_hash: str
    amount: int  # funding token base units
    verified: bool
    sender: Optional[str] = None
    block_number: Optional[int] = None


class FundingVerifier:

    def __init__(self, config: Config, web3: Optional[Web3] = None):
        self.config = config
        self.web3 = web3 or Web3(Web3.HTTPProvider(config.rpc_url, request_kwargs={"timeout": 30}))
        self.funding_token = Web3.to_checksum_address(config.funding_token)

    def _transferred_to(self, receipt, recipient: str) -> int:
        total = 0
        for log in receipt.get('logs', []):
            if Web3.to_checksum_address(log['address']) != self.funding_token:
                continue
            topics = log.get('topics') or []
            if len(topics) < 3 or Web3.to_hex(topics[0]) != TRANSFER_TOPIC:
                continue
            if topic_to_address(topics[2]) != recipient:
                continue
            data = log['data']
            if isinstance(data, str):
                data = Web3.to_bytes(hexstr=data)
            total += int.from_bytes(data, 'big')
        return total

    def verify(self, tx_hash: str, owner: str, expected_amount: Optional[int] = None) -> VerifiedDeposit:
        """Blocking verification of a deposit transaction."""
        if not Web3.is_address(owner):
            raise ValidationError(f"Owner is not an address: {owner}")
        recipient = Web3.to_checksum_address(owner)

        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            raise ValidationError(f"Transaction {format_tx_hash(tx_hash)} not found or still pending")

        if receipt['status'] != 1:
            raise ValidationError(f"Transaction {format_tx_hash(tx_hash)} failed on chain")

        sender = receipt.get('from')
        amount = self._transferred_to(receipt, recipient)
        if amount > 0:
            logger.info(f"Deposit {format_tx_hash(tx_hash)} verified: {format_wei(amount)} to {recipient}")
            return VerifiedDeposit(tx_hash, amount, True, sender, receipt.get('blockNumber'))

        if expected_amount is None or expected_amount <= 0:
            raise ValidationError(f"No funding token transfer to {recipient} in {format_tx_hash(tx_hash)}")
        if not self.config.allow_unverified_deposits:
            raise ValidationError(
                f"No funding token transfer to {recipient} in {format_tx_hash(tx_hash)}; "
                "unverified deposits are disabled"
            )
        if sender is None or Web3.to_checksum_address(sender) != recipient:
            raise ValidationError("Unverified deposits must be sent by the owner")

        logger.warning(
            f"Deposit {format_tx_hash(tx_hash)}: no transfer decoded, accepting expected "
            f"{format_wei(expected_amount)} as UNVERIFIED"
        )
        return VerifiedDeposit(tx_hash, expected_amount, False, sender, receipt.get('blockNumber'))

    async def verify_async(self, tx_hash: str, owner: str, expected_amount: Optional[int] = None) -> VerifiedDeposit:
        return await asyncio.to_thread(self.verify, tx_hash, owner, expected_amount)
