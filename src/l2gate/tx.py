"""
L2 transaction types accepted by the admission pipeline.

Each transaction exposes the account that must have authorized it
(`account`) and a structural self-check (`check_correctness`) that validates
field ranges and address formats. The L2 signature over the transaction is
checked elsewhere in the pipeline.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from eth_utils import is_address

from .signatures import PackedEthSignature, SignatureRecoveryError

MAX_ACCOUNT_ID = 2**32 - 1
MAX_TOKEN_ID = 2**16 - 1
MAX_NONCE = 2**32 - 1
MAX_AMOUNT = 2**128 - 1

PUBKEY_HASH_LENGTH = 20
PUBKEY_HASH_PREFIX = "sync:"


@dataclass(frozen=True)
class PubKeyHash:
    """Hash of an L2 signing key, rendered as `sync:<40 hex chars>`."""
    data: bytes

    def __post_init__(self) -> None:
        if len(self.data) != PUBKEY_HASH_LENGTH:
            raise ValueError(
                f"PubKeyHash must be {PUBKEY_HASH_LENGTH} bytes, got {len(self.data)}"
            )

    @classmethod
    def from_hex(cls, value: str) -> "PubKeyHash":
        if value.startswith(PUBKEY_HASH_PREFIX):
            value = value[len(PUBKEY_HASH_PREFIX):]
        elif value.startswith("0x"):
            value = value[2:]
        return cls(bytes.fromhex(value))

    @classmethod
    def zero(cls) -> "PubKeyHash":
        return cls(bytes(PUBKEY_HASH_LENGTH))

    def is_zero(self) -> bool:
        return not any(self.data)

    def to_hex(self) -> str:
        return PUBKEY_HASH_PREFIX + self.data.hex()

    def __str__(self) -> str:
        return self.to_hex()


def _in_range(value: int, upper: int) -> bool:
    return isinstance(value, int) and 0 <= value <= upper


class L2Tx(ABC):
    """Common interface of all L2 transactions."""

    tx_type: str = "unknown"

    @property
    @abstractmethod
    def account(self) -> str:
        """Ethereum address of the account that authorizes this transaction."""

    @abstractmethod
    def check_correctness(self) -> bool:
        """Structural self-check of the transaction fields."""


@dataclass(frozen=True)
class Transfer(L2Tx):
    """Move tokens between two L2 accounts."""
    account_id: int
    from_address: str
    to_address: str
    token: int
    amount: int
    fee: int
    nonce: int

    tx_type = "Transfer"

    @property
    def account(self) -> str:
        return self.from_address

    def check_correctness(self) -> bool:
        return (
            _in_range(self.account_id, MAX_ACCOUNT_ID)
            and _in_range(self.token, MAX_TOKEN_ID)
            and _in_range(self.nonce, MAX_NONCE)
            and _in_range(self.amount, MAX_AMOUNT)
            and _in_range(self.fee, MAX_AMOUNT)
            and is_address(self.from_address)
            and is_address(self.to_address)
        )


@dataclass(frozen=True)
class Withdraw(L2Tx):
    """Withdraw tokens from L2 to an Ethereum address."""
    account_id: int
    from_address: str
    to_address: str
    token: int
    amount: int
    fee: int
    nonce: int

    tx_type = "Withdraw"

    @property
    def account(self) -> str:
        return self.from_address

    def check_correctness(self) -> bool:
        return (
            _in_range(self.account_id, MAX_ACCOUNT_ID)
            and _in_range(self.token, MAX_TOKEN_ID)
            and _in_range(self.nonce, MAX_NONCE)
            and _in_range(self.amount, MAX_AMOUNT)
            and _in_range(self.fee, MAX_AMOUNT)
            and self.amount > 0
            and is_address(self.from_address)
            and is_address(self.to_address)
        )


@dataclass(frozen=True)
class ChangePubKey(L2Tx):
    """
    Set the L2 signing key of an account.

    The change is authorized either by `eth_signature` (the account owner
    signing the message from `get_eth_signed_message`) or, when no signature
    is attached, by an auth fact the owner registered on-chain beforehand.
    """
    account_id: int
    account_address: str
    new_pk_hash: PubKeyHash
    nonce: int
    fee_token: int = 0
    fee: int = 0
    eth_signature: Optional[PackedEthSignature] = None

    tx_type = "ChangePubKey"

    @property
    def account(self) -> str:
        return self.account_address

    def get_eth_signed_message(self) -> bytes:
        """Message the account owner signs to authorize the key change."""
        return (
            "Register zkSync pubkey:\n\n"
            f"{self.new_pk_hash.data.hex()}\n"
            f"nonce: 0x{self.nonce:08x}\n"
            f"account id: 0x{self.account_id:08x}\n\n"
            "Only sign this message for a trusted client!"
        ).encode()

    def is_eth_auth_data_valid(self) -> bool:
        """An attached eth_signature must recover to the account itself."""
        if self.eth_signature is None:
            return True
        try:
            signer = self.eth_signature.signature_recover_signer(self.get_eth_signed_message())
        except SignatureRecoveryError:
            return False
        return signer.lower() == self.account_address.lower()

    def check_correctness(self) -> bool:
        return (
            _in_range(self.account_id, MAX_ACCOUNT_ID)
            and _in_range(self.fee_token, MAX_TOKEN_ID)
            and _in_range(self.nonce, MAX_NONCE)
            and _in_range(self.fee, MAX_AMOUNT)
            and is_address(self.account_address)
            and not self.new_pk_hash.is_zero()
            and self.is_eth_auth_data_valid()
        )
