"""
Pytest configuration for l2gate tests.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

os.environ.setdefault("L2GATE_CHAIN_MODE", "simulated")

from l2gate.config import SignatureCheckerSettings  # noqa: E402
from l2gate.eth_checker import SimulatedEthereumChecker  # noqa: E402


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def eth_checker():
    """Fresh in-memory on-chain checker."""
    return SimulatedEthereumChecker()


@pytest.fixture
def settings():
    """Checker settings for tests (no network)."""
    return SignatureCheckerSettings(
        chain_mode="simulated",
        max_verify_workers=2,
        log_json=False,
        _env_file=None,
    )
