"""Configuration surface for the signature checker."""
from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Literal

from eth_utils import is_address, to_checksum_address
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class OnchainFailurePolicy(str, Enum):
    """What to do when an on-chain authorization query cannot be answered.

    FATAL aborts the verification task and closes its reply slot, which the
    submitter observes as ResponseChannelClosed. REJECT turns the failure into
    a TxRejectedError(ONCHAIN_CHECK_UNAVAILABLE) for that request only.
    """
    FATAL = "fatal"
    REJECT = "reject"


class SignatureCheckerSettings(BaseSettings):
    """Settings for the signature checker worker."""

    # Ethereum node and the rollup contract holding auth facts
    web3_url: str = "http://127.0.0.1:8545"
    contract_eth_addr: str = "0x" + "0" * 40
    rpc_timeout_seconds: float = Field(default=30.0, gt=0)

    # "simulated" answers on-chain queries from memory (dev/test only)
    chain_mode: Literal["simulated", "live"] = "live"

    # Worker sizing
    max_verify_workers: int = Field(default=4, ge=1)
    request_queue_size: int = Field(default=0, ge=0)  # 0 = unbounded

    # Failure handling
    onchain_failure_policy: OnchainFailurePolicy = OnchainFailurePolicy.FATAL
    verify_endpoint_on_startup: bool = False

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_json: bool = True

    class Config:
        env_prefix = "L2GATE_"
        env_file = ".env"
        extra = "ignore"

    @field_validator("contract_eth_addr")
    @classmethod
    def validate_contract_addr(cls, v: str) -> str:
        if not is_address(v):
            raise ValueError(f"contract_eth_addr is not a valid address: {v!r}")
        return to_checksum_address(v)

    @field_validator("web3_url")
    @classmethod
    def validate_web3_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("web3_url must be an http(s) endpoint")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v


@lru_cache
def load_settings(env_file: str | None = None) -> SignatureCheckerSettings:
    """Load settings once per process so every component sees the same values."""
    env_path = Path(env_file) if env_file else None
    return SignatureCheckerSettings(_env_file=env_path)
