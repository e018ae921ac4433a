"""ERC-20 ABI fragments and calldata helpers."""

from eth_abi import encode
from web3 import Web3

MAX_UINT256 = 2 ** 256 - 1

ERC20_ABI = [
    {"constant": True, "inputs": [{"name": "_owner", "type": "address"}], "name": "balanceOf", "outputs": [{"name": "balance", "type": "uint256"}], "type": "function"},
    {"constant": True, "inputs": [], "name": "decimals", "outputs": [{"name": "", "type": "uint8"}], "type": "function"},
    {"constant": True, "inputs": [{"name": "_owner", "type": "address"}, {"name": "_spender", "type": "address"}], "name": "allowance", "outputs": [{"name": "", "type": "uint256"}], "type": "function"},
    {"constant": False, "inputs": [{"name": "_spender", "type": "address"}, {"name": "_value", "type": "uint256"}], "name": "approve", "outputs": [{"name": "", "type": "bool"}], "type": "function"},
    {"constant": False, "inputs": [{"name": "_to", "type": "address"}, {"name": "_value", "type": "uint256"}], "name": "transfer", "outputs": [{"name": "", "type": "bool"}], "type": "function"},
    {"anonymous": False, "inputs": [{"indexed": True, "name": "from", "type": "address"}, {"indexed": True, "name": "to", "type": "address"}, {"indexed": False, "name": "value", "type": "uint256"}], "name": "Transfer", "type": "event"},
]

APPROVE_SELECTOR = Web3.keccak(text="approve(address,uint256)")[:4]
TRANSFER_SELECTOR = Web3.keccak(text="transfer(address,uint256)")[:4]
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))


def encode_approve(spender: str, amount: int = MAX_UINT256) -> str:
    """Calldata for ``approve(spender, amount)``."""
    args = encode(["address", "uint256"], [Web3.to_checksum_address(spender), amount])
    return Web3.to_hex(APPROVE_SELECTOR + args)


def encode_transfer(recipient: str, amount: int) -> str:
    """Calldata for ``transfer(recipient, amount)``."""
    args = encode(["address", "uint256"], [Web3.to_checksum_address(recipient), amount])
    return Web3.to_hex(TRANSFER_SELECTOR + args)


def topic_to_address(topic) -> str:
    """Checksummed address held in an indexed event topic."""
    raw = Web3.to_bytes(hexstr=topic) if isinstance(topic, str) else bytes(topic)
    return Web3.to_checksum_address(raw[-20:])
