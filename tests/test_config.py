"""Tests for settings loading and validation."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from l2gate.config import OnchainFailurePolicy, SignatureCheckerSettings, load_settings
from l2gate.eth_checker import EthereumChecker, SimulatedEthereumChecker, build_eth_checker


def test_defaults():
    settings = SignatureCheckerSettings(_env_file=None, chain_mode="live")
    assert settings.web3_url == "http://127.0.0.1:8545"
    assert settings.max_verify_workers == 4
    assert settings.request_queue_size == 0
    assert settings.onchain_failure_policy == OnchainFailurePolicy.FATAL
    assert not settings.verify_endpoint_on_startup


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("L2GATE_MAX_VERIFY_WORKERS", "8")
    monkeypatch.setenv("L2GATE_ONCHAIN_FAILURE_POLICY", "reject")
    monkeypatch.setenv("L2GATE_LOG_LEVEL", "debug")
    settings = SignatureCheckerSettings(_env_file=None)
    assert settings.max_verify_workers == 8
    assert settings.onchain_failure_policy == OnchainFailurePolicy.REJECT
    assert settings.log_level == "DEBUG"


def test_contract_address_is_checksummed():
    settings = SignatureCheckerSettings(
        _env_file=None,
        contract_eth_addr="0x5fbdb2315678afecb367f032d93f642f64180aa3",
    )
    assert settings.contract_eth_addr == "0x5FbDB2315678afecb367f032d93F642f64180aa3"


@pytest.mark.parametrize(
    "overrides",
    [
        {"contract_eth_addr": "0x1234"},
        {"web3_url": "ws://localhost:8546"},
        {"max_verify_workers": 0},
        {"request_queue_size": -1},
        {"rpc_timeout_seconds": 0},
        {"chain_mode": "mainnet"},
    ],
)
def test_invalid_settings(overrides):
    with pytest.raises(ValidationError):
        SignatureCheckerSettings(_env_file=None, **overrides)


def test_build_eth_checker_follows_chain_mode():
    simulated = SignatureCheckerSettings(_env_file=None, chain_mode="simulated")
    live = SignatureCheckerSettings(_env_file=None, chain_mode="live")
    assert isinstance(build_eth_checker(simulated), SimulatedEthereumChecker)
    assert isinstance(build_eth_checker(live), EthereumChecker)


def test_load_settings_reads_env_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("L2GATE_REQUEST_QUEUE_SIZE=128\nL2GATE_CHAIN_MODE=simulated\n")
    settings = load_settings(str(env_file))
    assert settings.request_queue_size == 128
    assert load_settings(str(env_file)) is settings
