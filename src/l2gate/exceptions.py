"""Exception hierarchy for the l2gate signature checker.

All l2gate-specific exceptions inherit from L2GateException, so callers can
tell a typed rejection of their transaction apart from an operational fault:

    from l2gate.exceptions import TxRejectedError, ResponseChannelClosed

    try:
        verified = await request_verification(queue, variant)
    except TxRejectedError as e:
        reply_to_user(e.kind)            # the transaction was refused
    except ResponseChannelClosed:
        retry_later()                    # the checker failed mid-flight

All exceptions have:
- error_code: Machine-readable error code
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class RejectionKind(str, Enum):
    """Reasons a transaction (or batch) is refused by the signature checker."""
    UNAUTHORIZED_KEY_CHANGE = "unauthorized_key_change"
    INVALID_OFFCHAIN_SIGNATURE = "invalid_offchain_signature"
    INVALID_TRANSACTION = "invalid_transaction"
    # Only produced when onchain_failure_policy is "reject".
    ONCHAIN_CHECK_UNAVAILABLE = "onchain_check_unavailable"

    @property
    def description(self) -> str:
        return _REJECTION_DESCRIPTIONS[self]


_REJECTION_DESCRIPTIONS = {
    RejectionKind.UNAUTHORIZED_KEY_CHANGE: "ChangePubKey operation is not authorized",
    RejectionKind.INVALID_OFFCHAIN_SIGNATURE: "Eth signature is incorrect",
    RejectionKind.INVALID_TRANSACTION: "Tx is incorrect",
    RejectionKind.ONCHAIN_CHECK_UNAVAILABLE: "Unable to perform on-chain authorization check",
}


class L2GateException(Exception):
    """Base exception for all l2gate errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "L2GATE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Rejections (delivered to the submitter)
# =============================================================================

class TxRejectedError(L2GateException):
    """The transaction or batch failed signature or correctness checks."""

    def __init__(
        self,
        kind: RejectionKind,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.kind = kind
        super().__init__(kind.description, error_code=kind.value, details=details)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TxRejectedError):
            return self.kind == other.kind
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.kind)

    def __repr__(self) -> str:
        return f"TxRejectedError({self.kind.name})"


# =============================================================================
# Operational faults
# =============================================================================

class OnchainQueryError(L2GateException):
    """The on-chain checker could not reach the node or decode its answer."""

    error_code = "ONCHAIN_QUERY_FAILED"

    def __init__(
        self,
        method: str,
        cause: Optional[BaseException] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.method = method
        self.cause = cause
        details = details or {}
        details["method"] = method
        message = f"On-chain query {method} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, details=details)


class ResponseChannelClosed(L2GateException):
    """The reply slot was closed without a verification result."""

    error_code = "RESPONSE_CHANNEL_CLOSED"


class QueueClosedError(L2GateException):
    """A request was submitted to a closed request queue."""

    error_code = "QUEUE_CLOSED"

    def __init__(self) -> None:
        super().__init__("Signature check request queue is closed")


class SignatureCheckerStartupError(L2GateException):
    """The signature checker worker could not be started."""

    error_code = "STARTUP_FAILED"
