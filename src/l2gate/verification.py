"""
Signature verification protocol for incoming L2 transactions.

A transaction (or a batch of them) is admitted only after:
1. its Ethereum authorization checks out: a packed ECDSA signature recovering
   to the transaction's account, an EIP-1271 signature accepted by the
   account's wallet contract, or, for a ChangePubKey carrying no signature of
   its own, an auth fact registered on-chain;
2. every transaction passes its own structural check.

`VerifiedTx` can only be obtained from `VerifiedTx.verify`, so holding one is
proof that both steps succeeded.
"""
from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .eth_checker import EthereumCheckerPort
from .exceptions import RejectionKind, TxRejectedError
from .logging_config import mask_address
from .signatures import (
    BatchSignData,
    EIP1271Signature,
    EthSignData,
    PackedEthSignature,
    SignatureRecoveryError,
    TxEthSignature,
)
from .tx import ChangePubKey, L2Tx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TxWithSignData:
    """
    Yet unverified transaction with its Ethereum signature and message.

    `eth_sign_data` is None when the transaction needs no Ethereum signature
    (or, for ChangePubKey, is authorized on-chain instead).
    """
    tx: L2Tx
    eth_sign_data: Optional[EthSignData] = None


class TxVariantKind(str, Enum):
    TX = "tx"
    BATCH = "batch"


@dataclass(frozen=True)
class TxVariant:
    """A verify request payload: one transaction, or a batch under one signature."""
    kind: TxVariantKind
    txs: Tuple[TxWithSignData, ...]
    batch_sign_data: Optional[BatchSignData] = None

    def __post_init__(self) -> None:
        if self.kind == TxVariantKind.TX:
            if len(self.txs) != 1 or self.batch_sign_data is not None:
                raise ValueError("single-tx variant holds exactly one tx and no batch signature")
        else:
            if not self.txs:
                raise ValueError("batch must contain at least one transaction")
            if self.batch_sign_data is None:
                raise ValueError("batch variant requires batch sign data")

    @classmethod
    def single(cls, tx: TxWithSignData) -> "TxVariant":
        return cls(TxVariantKind.TX, (tx,))

    @classmethod
    def batch(cls, txs: Sequence[TxWithSignData], batch_sign_data: BatchSignData) -> "TxVariant":
        return cls(TxVariantKind.BATCH, tuple(txs), batch_sign_data)

    @property
    def is_batch(self) -> bool:
        return self.kind == TxVariantKind.BATCH


@dataclass(frozen=True)
class SignedTx:
    """Transaction together with the Ethereum signature data that authorized it."""
    tx: L2Tx
    eth_sign_data: Optional[EthSignData] = None


@dataclass(frozen=True)
class SignedTxVariant:
    kind: TxVariantKind
    txs: Tuple[SignedTx, ...]
    batch_signature: Optional[TxEthSignature] = None


_VERIFIED_TX_TOKEN = object()


class VerifiedTx:
    """
    Wrapper on a SignedTxVariant which guarantees that the (batch of)
    transaction(s) was checked and its signatures are correct.

    Instances are only created by `VerifiedTx.verify`; calling the
    constructor directly raises TypeError.
    """

    __slots__ = ("_variant",)

    def __init__(self, variant: SignedTxVariant, _token: object = None):
        if _token is not _VERIFIED_TX_TOKEN:
            raise TypeError("VerifiedTx can only be created by VerifiedTx.verify()")
        self._variant = variant

    @classmethod
    async def verify(
        cls,
        tx_variant: TxVariant,
        eth_checker: EthereumCheckerPort,
        executor: Optional[Executor] = None,
    ) -> "VerifiedTx":
        """
        Check the Ethereum authorization, then the correctness of every tx.

        Args:
            tx_variant: Single tx or batch to verify
            eth_checker: On-chain query capability
            executor: Optional pool to run ECDSA recovery on

        Returns:
            VerifiedTx wrapping the signed form of the input

        Raises:
            TxRejectedError: The first failed check
            OnchainQueryError: The on-chain checker could not be queried
        """
        await verify_eth_signature(tx_variant, eth_checker, executor)
        verify_tx_correctness(tx_variant)

        if tx_variant.is_batch:
            batch_sign_data = tx_variant.batch_sign_data
            # Per-item signatures have served their purpose; the verified
            # batch carries the batch signature for every item.
            signed = SignedTxVariant(
                kind=TxVariantKind.BATCH,
                txs=tuple(
                    SignedTx(tx=item.tx, eth_sign_data=batch_sign_data.sign_data)
                    for item in tx_variant.txs
                ),
                batch_signature=batch_sign_data.signature,
            )
        else:
            item = tx_variant.txs[0]
            signed = SignedTxVariant(
                kind=TxVariantKind.TX,
                txs=(SignedTx(tx=item.tx, eth_sign_data=item.eth_sign_data),),
            )
        return cls(signed, _VERIFIED_TX_TOKEN)

    @property
    def is_batch(self) -> bool:
        return self._variant.kind == TxVariantKind.BATCH

    def unwrap_tx(self) -> SignedTx:
        """Take the single SignedTx out of the wrapper."""
        if self.is_batch:
            raise AssertionError("called `unwrap_tx` on a `Batch` value")
        return self._variant.txs[0]

    def unwrap_batch(self) -> Tuple[List[SignedTx], TxEthSignature]:
        """Take the batch transactions and the verified batch signature out of the wrapper."""
        if not self.is_batch:
            raise AssertionError("called `unwrap_batch` on a `Tx` value")
        return list(self._variant.txs), self._variant.batch_signature

    def __repr__(self) -> str:
        return f"VerifiedTx(kind={self._variant.kind.value}, txs={len(self._variant.txs)})"


async def _recover_signer(
    signature: PackedEthSignature,
    message: bytes,
    executor: Optional[Executor],
) -> str:
    if executor is None:
        return signature.signature_recover_signer(message)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, signature.signature_recover_signer, message)


def _same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()


async def verify_eth_signature(
    tx_variant: TxVariant,
    eth_checker: EthereumCheckerPort,
    executor: Optional[Executor] = None,
) -> None:
    """Verify the Ethereum signature(s) of a (batch of) transaction(s)."""
    if tx_variant.is_batch:
        await verify_eth_signature_txs_batch(
            tx_variant.txs, tx_variant.batch_sign_data, eth_checker, executor
        )
    # Transactions inside a batch may still carry their own signature
    # requirements, e.g. ChangePubKey, so each one is checked as well.
    for tx in tx_variant.txs:
        await verify_eth_signature_single_tx(tx, eth_checker, executor)


async def verify_eth_signature_single_tx(
    tx: TxWithSignData,
    eth_checker: EthereumCheckerPort,
    executor: Optional[Executor] = None,
) -> None:
    # ChangePubKey without an Ethereum signature must be authorized on-chain.
    if isinstance(tx.tx, ChangePubKey) and tx.tx.eth_signature is None:
        change_pk = tx.tx
        is_authorized = await eth_checker.is_new_pubkey_hash_authorized(
            change_pk.account, change_pk.nonce, change_pk.new_pk_hash
        )
        if not is_authorized:
            logger.info(
                f"ChangePubKey for {mask_address(change_pk.account)} "
                f"nonce={change_pk.nonce} has no on-chain authorization"
            )
            raise TxRejectedError(RejectionKind.UNAUTHORIZED_KEY_CHANGE)

    if tx.eth_sign_data is None:
        return

    sign_data = tx.eth_sign_data
    signature = sign_data.signature
    if isinstance(signature, PackedEthSignature):
        try:
            signer = await _recover_signer(signature, sign_data.message, executor)
        except SignatureRecoveryError as e:
            raise TxRejectedError(RejectionKind.INVALID_OFFCHAIN_SIGNATURE) from e
        if not _same_address(signer, tx.tx.account):
            raise TxRejectedError(
                RejectionKind.INVALID_OFFCHAIN_SIGNATURE,
                details={"account": tx.tx.account, "signer": signer},
            )
    elif isinstance(signature, EIP1271Signature):
        correct = await eth_checker.is_eip1271_signature_correct(
            tx.tx.account, sign_data.message, signature
        )
        if not correct:
            raise TxRejectedError(RejectionKind.INVALID_TRANSACTION)
    else:
        raise TypeError(f"Unsupported signature type: {type(signature).__name__}")


async def verify_eth_signature_txs_batch(
    txs: Sequence[TxWithSignData],
    batch_sign_data: BatchSignData,
    eth_checker: EthereumCheckerPort,
    executor: Optional[Executor] = None,
) -> None:
    signature = batch_sign_data.signature
    message = batch_sign_data.message

    if isinstance(signature, PackedEthSignature):
        try:
            signer = await _recover_signer(signature, message, executor)
        except SignatureRecoveryError as e:
            raise TxRejectedError(RejectionKind.INVALID_OFFCHAIN_SIGNATURE) from e
        if any(not _same_address(tx.tx.account, signer) for tx in txs):
            raise TxRejectedError(
                RejectionKind.INVALID_OFFCHAIN_SIGNATURE,
                details={"signer": signer},
            )
    elif isinstance(signature, EIP1271Signature):
        # No single signer to recover: every distinct account's wallet
        # contract has to accept the batch signature.
        accounts = {}
        for tx in txs:
            accounts.setdefault(tx.tx.account.lower(), tx.tx.account)
        for account in accounts.values():
            correct = await eth_checker.is_eip1271_signature_correct(account, message, signature)
            if not correct:
                raise TxRejectedError(RejectionKind.INVALID_TRANSACTION)
    else:
        raise TypeError(f"Unsupported signature type: {type(signature).__name__}")


def verify_tx_correctness(tx_variant: TxVariant) -> None:
    """Run every transaction's structural self-check."""
    for tx in tx_variant.txs:
        if not tx.tx.check_correctness():
            logger.info(f"{tx.tx.tx_type} from {mask_address(tx.tx.account)} failed correctness check")
            raise TxRejectedError(RejectionKind.INVALID_TRANSACTION)
