"""Signature checker for L2 transaction admission."""

from .checker import (
    CheckerStats,
    SignatureChecker,
    ThreadPanicNotify,
    VerifyRequestQueue,
    VerifyTxSignatureRequest,
    request_verification,
    start_sign_checker_detached,
)
from .config import OnchainFailurePolicy, SignatureCheckerSettings, load_settings
from .eth_checker import (
    EthereumChecker,
    EthereumCheckerPort,
    SimulatedEthereumChecker,
    build_eth_checker,
)
from .exceptions import (
    L2GateException,
    OnchainQueryError,
    QueueClosedError,
    RejectionKind,
    ResponseChannelClosed,
    SignatureCheckerStartupError,
    TxRejectedError,
)
from .signatures import (
    BatchSignData,
    EIP1271Signature,
    EthSignData,
    PackedEthSignature,
    TxEthSignature,
)
from .tx import ChangePubKey, L2Tx, PubKeyHash, Transfer, Withdraw
from .verification import (
    SignedTx,
    TxVariant,
    TxVariantKind,
    TxWithSignData,
    VerifiedTx,
)

__all__ = [
    "CheckerStats",
    "SignatureChecker",
    "ThreadPanicNotify",
    "VerifyRequestQueue",
    "VerifyTxSignatureRequest",
    "request_verification",
    "start_sign_checker_detached",
    "OnchainFailurePolicy",
    "SignatureCheckerSettings",
    "load_settings",
    "EthereumChecker",
    "EthereumCheckerPort",
    "SimulatedEthereumChecker",
    "build_eth_checker",
    "L2GateException",
    "OnchainQueryError",
    "QueueClosedError",
    "RejectionKind",
    "ResponseChannelClosed",
    "SignatureCheckerStartupError",
    "TxRejectedError",
    "BatchSignData",
    "EIP1271Signature",
    "EthSignData",
    "PackedEthSignature",
    "TxEthSignature",
    "ChangePubKey",
    "L2Tx",
    "PubKeyHash",
    "Transfer",
    "Withdraw",
    "SignedTx",
    "TxVariant",
    "TxVariantKind",
    "TxWithSignData",
    "VerifiedTx",
]
