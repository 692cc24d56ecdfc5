"""
Ethereum signatures attached to L2 transactions.

Two schemes are accepted:
- PackedEthSignature: 65-byte ECDSA signature (r || s || v) over an EIP-191
  personal message. The signer address is recovered locally.
- EIP1271Signature: opaque bytes validated by the account's own contract
  (`isValidSignature`), used by smart-contract wallets that have no key to
  recover.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from eth_account import Account
from eth_account.messages import encode_defunct
from hexbytes import HexBytes

PACKED_SIGNATURE_LENGTH = 65


class SignatureRecoveryError(ValueError):
    """The signer address could not be recovered from a packed signature."""


def _to_bytes(value: Union[bytes, str]) -> bytes:
    if isinstance(value, str):
        return bytes(HexBytes(value))
    return bytes(value)


@dataclass(frozen=True)
class PackedEthSignature:
    """ECDSA signature in packed r || s || v form."""
    data: bytes

    def __post_init__(self) -> None:
        if len(self.data) != PACKED_SIGNATURE_LENGTH:
            raise ValueError(
                f"Packed signature must be {PACKED_SIGNATURE_LENGTH} bytes, got {len(self.data)}"
            )

    @classmethod
    def from_hex(cls, value: str) -> "PackedEthSignature":
        return cls(_to_bytes(value))

    @classmethod
    def sign_message(cls, private_key: Union[bytes, str], message: bytes) -> "PackedEthSignature":
        """
        Sign a message the way wallets do for `personal_sign`.

        Args:
            private_key: Key of the signing account
            message: Raw message bytes (the EIP-191 prefix is added here)

        Returns:
            Packed signature over the prefixed message hash
        """
        signed = Account.sign_message(encode_defunct(primitive=message), private_key=private_key)
        return cls(bytes(signed.signature))

    def signature_recover_signer(self, message: bytes) -> str:
        """
        Recover the address that produced this signature over `message`.

        Raises:
            SignatureRecoveryError: If the signature bytes are malformed or
                do not correspond to any public key
        """
        try:
            return Account.recover_message(
                encode_defunct(primitive=message),
                signature=self.data,
            )
        except Exception as e:
            raise SignatureRecoveryError(f"Unable to recover signer: {e}") from e

    def hex(self) -> str:
        return "0x" + self.data.hex()


@dataclass(frozen=True)
class EIP1271Signature:
    """Contract-validated signature. Its format is defined by the wallet contract."""
    data: bytes

    @classmethod
    def from_hex(cls, value: str) -> "EIP1271Signature":
        return cls(_to_bytes(value))

    def hex(self) -> str:
        return "0x" + self.data.hex()


TxEthSignature = Union[PackedEthSignature, EIP1271Signature]


@dataclass(frozen=True)
class EthSignData:
    """An Ethereum signature and the message the user should have signed."""
    signature: TxEthSignature
    message: bytes


@dataclass(frozen=True)
class BatchSignData:
    """Single signature claimed to authorize a whole batch of transactions."""
    sign_data: EthSignData

    @property
    def signature(self) -> TxEthSignature:
        return self.sign_data.signature

    @property
    def message(self) -> bytes:
        return self.sign_data.message
