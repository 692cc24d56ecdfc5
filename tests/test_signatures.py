"""Tests for l2gate.signatures: packed ECDSA and EIP-1271 signature types."""
from __future__ import annotations

import pytest

from l2gate.signatures import (
    BatchSignData,
    EIP1271Signature,
    EthSignData,
    PackedEthSignature,
    SignatureRecoveryError,
)
from tx_helpers import ALICE, ALICE_KEY, BOB, BOB_KEY


class TestPackedEthSignature:
    def test_sign_and_recover(self):
        message = b"Register zkSync pubkey"
        signature = PackedEthSignature.sign_message(ALICE_KEY, message)
        assert len(signature.data) == 65
        assert signature.signature_recover_signer(message) == ALICE

    def test_recover_other_signer(self):
        message = b"hello"
        signature = PackedEthSignature.sign_message(BOB_KEY, message)
        assert signature.signature_recover_signer(message) == BOB

    def test_different_message_recovers_different_address(self):
        signature = PackedEthSignature.sign_message(ALICE_KEY, b"signed message")
        assert signature.signature_recover_signer(b"another message") != ALICE

    def test_wrong_length_rejected(self):
        with pytest.raises(ValueError):
            PackedEthSignature(b"\x01" * 64)

    def test_malformed_signature_raises_recovery_error(self):
        # v byte of 5 is not a valid recovery id
        signature = PackedEthSignature(b"\x11" * 64 + b"\x05")
        with pytest.raises(SignatureRecoveryError):
            signature.signature_recover_signer(b"message")

    def test_hex_roundtrip(self):
        signature = PackedEthSignature.sign_message(ALICE_KEY, b"msg")
        assert PackedEthSignature.from_hex(signature.hex()) == signature

    def test_recovery_error_is_value_error(self):
        assert issubclass(SignatureRecoveryError, ValueError)


class TestEIP1271Signature:
    def test_from_hex(self):
        signature = EIP1271Signature.from_hex("0xdeadbeef")
        assert signature.data == bytes.fromhex("deadbeef")
        assert signature.hex() == "0xdeadbeef"


class TestBatchSignData:
    def test_exposes_inner_signature_and_message(self):
        inner = EthSignData(signature=EIP1271Signature(b"\x02"), message=b"batch")
        batch = BatchSignData(inner)
        assert batch.signature == inner.signature
        assert batch.message == b"batch"
