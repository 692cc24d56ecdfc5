"""
On-chain authorization queries used by the signature checker.

Two questions are asked of the Ethereum node:
- Has the account registered an auth fact for this ChangePubKey on the rollup
  contract (`authFacts(address, uint32) -> bytes32`)?
- Does the account's wallet contract accept this signature for this message
  (EIP-1271 `isValidSignature(bytes, bytes) -> bytes4`)?

Transport or decoding failures raise OnchainQueryError; they are never
reported as a negative answer.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set, Tuple

from aiohttp import ClientTimeout
from eth_utils import keccak, to_checksum_address
from web3 import AsyncHTTPProvider, AsyncWeb3

from .config import SignatureCheckerSettings
from .exceptions import OnchainQueryError
from .logging_config import mask_address
from .signatures import EIP1271Signature
from .tx import PubKeyHash

logger = logging.getLogger(__name__)

# Magic value returned by `isValidSignature(bytes,bytes)` on success.
EIP1271_SUCCESS_RETURN_VALUE = bytes.fromhex("20c13b0b")

ZKSYNC_AUTH_FACTS_ABI = [
    {
        "inputs": [
            {"name": "", "type": "address"},
            {"name": "", "type": "uint32"},
        ],
        "name": "authFacts",
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function",
    }
]

EIP1271_ABI = [
    {
        "inputs": [
            {"name": "_data", "type": "bytes"},
            {"name": "_signature", "type": "bytes"},
        ],
        "name": "isValidSignature",
        "outputs": [{"name": "magicValue", "type": "bytes4"}],
        "stateMutability": "view",
        "type": "function",
    }
]


class EthereumCheckerPort(ABC):
    """Read-only on-chain queries needed to authorize transactions.

    Implementations are shared by every concurrently running verification
    task and must be safe to call concurrently from them.
    """

    @abstractmethod
    async def is_new_pubkey_hash_authorized(
        self,
        address: str,
        nonce: int,
        pub_key_hash: PubKeyHash,
    ) -> bool:
        """Check that `address` registered `pub_key_hash` for `nonce` on-chain."""

    @abstractmethod
    async def is_eip1271_signature_correct(
        self,
        address: str,
        message: bytes,
        signature: EIP1271Signature,
    ) -> bool:
        """Ask the wallet contract at `address` whether it accepts the signature."""

    async def ensure_connected(self) -> None:
        """Fail fast if the node cannot be reached."""

    async def close(self) -> None:
        """Release network resources."""


class EthereumChecker(EthereumCheckerPort):
    """EthereumCheckerPort backed by a JSON-RPC node through web3."""

    def __init__(self, web3: AsyncWeb3, zksync_contract_addr: str):
        self._web3 = web3
        self._zksync_contract = web3.eth.contract(
            address=to_checksum_address(zksync_contract_addr),
            abi=ZKSYNC_AUTH_FACTS_ABI,
        )

    @classmethod
    def from_settings(cls, settings: SignatureCheckerSettings) -> "EthereumChecker":
        provider = AsyncHTTPProvider(
            settings.web3_url,
            request_kwargs={"timeout": ClientTimeout(total=settings.rpc_timeout_seconds)},
        )
        logger.info(
            f"Ethereum checker configured: endpoint={settings.web3_url} "
            f"contract={settings.contract_eth_addr}"
        )
        return cls(AsyncWeb3(provider), settings.contract_eth_addr)

    def _eip1271_contract(self, address: str):
        return self._web3.eth.contract(
            address=to_checksum_address(address),
            abi=EIP1271_ABI,
        )

    async def is_new_pubkey_hash_authorized(
        self,
        address: str,
        nonce: int,
        pub_key_hash: PubKeyHash,
    ) -> bool:
        try:
            auth_fact = await self._zksync_contract.functions.authFacts(
                to_checksum_address(address), nonce
            ).call()
        except Exception as e:
            raise OnchainQueryError(
                "authFacts", e, details={"address": address, "nonce": nonce}
            ) from e

        authorized = bytes(auth_fact) == keccak(pub_key_hash.data)
        logger.debug(
            f"authFacts({mask_address(address)}, {nonce}) -> authorized={authorized}"
        )
        return authorized

    async def is_eip1271_signature_correct(
        self,
        address: str,
        message: bytes,
        signature: EIP1271Signature,
    ) -> bool:
        try:
            received = await self._eip1271_contract(address).functions.isValidSignature(
                message, signature.data
            ).call()
        except Exception as e:
            raise OnchainQueryError(
                "isValidSignature", e, details={"address": address}
            ) from e

        correct = bytes(received) == EIP1271_SUCCESS_RETURN_VALUE
        logger.debug(
            f"isValidSignature at {mask_address(address)} -> correct={correct}"
        )
        return correct

    async def ensure_connected(self) -> None:
        try:
            chain_id = await self._web3.eth.chain_id
        except Exception as e:
            raise OnchainQueryError("eth_chainId", e) from e
        logger.info(f"Connected to Ethereum node, chain_id={chain_id}")

    async def close(self) -> None:
        await self._web3.provider.disconnect()


class SimulatedEthereumChecker(EthereumCheckerPort):
    """In-memory checker for development and tests.

    Auth facts and accepted EIP-1271 signatures are registered explicitly;
    everything else is answered negatively. Queries can be delayed per account
    or made to fail as a transport error would. `calls` records every query as
    (method, lowercased address) for tests to inspect; it is never trimmed.
    """

    def __init__(self) -> None:
        self._auth_facts: Set[Tuple[str, int, bytes]] = set()
        self._eip1271_approvals: Set[Tuple[str, bytes, bytes]] = set()
        self._latency: Dict[str, float] = {}
        self._unavailable = False
        self.calls: List[Tuple[str, str]] = []

    def authorize_pubkey_hash(self, address: str, nonce: int, pub_key_hash: PubKeyHash) -> None:
        self._auth_facts.add((address.lower(), nonce, pub_key_hash.data))

    def approve_eip1271(self, address: str, message: bytes, signature: EIP1271Signature) -> None:
        self._eip1271_approvals.add((address.lower(), message, signature.data))

    def set_latency(self, address: str, seconds: float) -> None:
        self._latency[address.lower()] = seconds

    def set_unavailable(self, unavailable: bool = True) -> None:
        self._unavailable = unavailable

    async def _query(self, method: str, address: str) -> None:
        self.calls.append((method, address.lower()))
        delay: Optional[float] = self._latency.get(address.lower())
        if delay:
            await asyncio.sleep(delay)
        if self._unavailable:
            raise OnchainQueryError(method, ConnectionError("simulated node unavailable"))

    async def is_new_pubkey_hash_authorized(
        self,
        address: str,
        nonce: int,
        pub_key_hash: PubKeyHash,
    ) -> bool:
        await self._query("authFacts", address)
        return (address.lower(), nonce, pub_key_hash.data) in self._auth_facts

    async def is_eip1271_signature_correct(
        self,
        address: str,
        message: bytes,
        signature: EIP1271Signature,
    ) -> bool:
        await self._query("isValidSignature", address)
        return (address.lower(), message, signature.data) in self._eip1271_approvals

    async def ensure_connected(self) -> None:
        if self._unavailable:
            raise OnchainQueryError("eth_chainId", ConnectionError("simulated node unavailable"))


def build_eth_checker(settings: SignatureCheckerSettings) -> EthereumCheckerPort:
    """Create the checker selected by `settings.chain_mode`."""
    if settings.chain_mode == "simulated":
        logger.warning("Using simulated Ethereum checker: on-chain queries are answered from memory")
        return SimulatedEthereumChecker()
    return EthereumChecker.from_settings(settings)
