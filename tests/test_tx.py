"""Tests for l2gate.tx: transaction structural checks."""
from __future__ import annotations

import pytest

from l2gate.signatures import PackedEthSignature
from l2gate.tx import MAX_AMOUNT, MAX_NONCE, PubKeyHash, Withdraw
from tx_helpers import (
    ALICE,
    ALICE_KEY,
    BOB_KEY,
    CAROL,
    NEW_PK_HASH,
    make_change_pubkey,
    make_transfer,
)


class TestPubKeyHash:
    def test_from_sync_hex(self):
        pk_hash = PubKeyHash.from_hex("sync:" + "01" * 20)
        assert pk_hash.data == b"\x01" * 20
        assert pk_hash.to_hex() == "sync:" + "01" * 20

    def test_from_0x_hex(self):
        assert PubKeyHash.from_hex("0x" + "02" * 20).data == b"\x02" * 20

    def test_wrong_length(self):
        with pytest.raises(ValueError):
            PubKeyHash(b"\x01" * 19)

    def test_zero(self):
        assert PubKeyHash.zero().is_zero()
        assert not NEW_PK_HASH.is_zero()


class TestTransfer:
    def test_valid(self):
        tx = make_transfer()
        assert tx.account == ALICE
        assert tx.check_correctness()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": -1},
            {"amount": MAX_AMOUNT + 1},
            {"fee": -5},
            {"nonce": MAX_NONCE + 1},
            {"token": 2**16},
            {"to_address": "0x1234"},
            {"from_address": "not-an-address"},
        ],
    )
    def test_invalid_fields(self, overrides):
        assert not make_transfer(**overrides).check_correctness()


class TestWithdraw:
    def test_valid(self):
        tx = Withdraw(
            account_id=3, from_address=ALICE, to_address=CAROL,
            token=1, amount=5, fee=1, nonce=2,
        )
        assert tx.check_correctness()

    def test_zero_amount_rejected(self):
        tx = Withdraw(
            account_id=3, from_address=ALICE, to_address=CAROL,
            token=1, amount=0, fee=1, nonce=2,
        )
        assert not tx.check_correctness()


class TestChangePubKey:
    def test_onchain_variant_is_structurally_valid(self):
        tx = make_change_pubkey()
        assert tx.eth_signature is None
        assert tx.check_correctness()

    def test_zero_pubkey_hash_rejected(self):
        assert not make_change_pubkey(new_pk_hash=PubKeyHash.zero()).check_correctness()

    def test_signed_message_format(self):
        tx = make_change_pubkey(nonce=7)
        message = tx.get_eth_signed_message().decode()
        assert message.startswith("Register zkSync pubkey:\n\n" + "ab" * 20)
        assert "nonce: 0x00000007" in message
        assert "account id: 0x00000001" in message

    def test_valid_eth_signature(self):
        unsigned_tx = make_change_pubkey()
        signature = PackedEthSignature.sign_message(ALICE_KEY, unsigned_tx.get_eth_signed_message())
        tx = make_change_pubkey(eth_signature=signature)
        assert tx.is_eth_auth_data_valid()
        assert tx.check_correctness()

    def test_eth_signature_by_other_key(self):
        unsigned_tx = make_change_pubkey()
        signature = PackedEthSignature.sign_message(BOB_KEY, unsigned_tx.get_eth_signed_message())
        tx = make_change_pubkey(eth_signature=signature)
        assert not tx.is_eth_auth_data_valid()
        assert not tx.check_correctness()
