from __future__ import annotations

import threading
import time

import pytest

from abis import MARKETPLACE_ABI, VOICE_NFT_ABI
from contract_gateway import TRANSFER_TOPIC, ContractGateway
from errors import TransactionRejected
from eth_client import ContractHandle
from metadata_store import InMemoryMetadataStore
from models import AssetMetadata, MintResult, TransactionReceipt
from publication import AssetPublicationWorkflow
from wallet import WalletAccount

NFT_ADDRESS = "0x" + "11" * 20
MARKET_ADDRESS = "0x" + "22" * 20
ZERO_TOPIC = "0x" + "00" * 32


def _topic(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


class FakeChain:
    """
    ChainClient の代わり。nonce は submit ごとに1つずつ進み、
    期待と違う nonce が来たら nonce_errors に記録して TransactionRejected にする。
    """

    def __init__(self, submit_delay: float = 0.0):
        self.submit_delay = submit_delay
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.submitted_nonces: list[int] = []
        self.nonce_errors: list[tuple[int, int]] = []
        self.get_contract_calls = 0
        self.earnings: dict[str, int] = {}
        self._nonce = 0
        self._next_token = 1
        self._prepared: dict[tuple[str, int], tuple[str, str, list]] = {}
        self._lock = threading.Lock()

    def get_contract(self, address, abi):
        self.get_contract_calls += 1
        return ContractHandle.offline(address, abi)

    def next_nonce(self, address):
        return self._nonce

    def call(self, handle, method, args=()):
        self.calls.append(method)
        if method in self.failures:
            raise self.failures[method]
        return self.earnings.get(args[0].lower(), 0)

    def prepare_call(self, handle, method, args, sender, nonce, value=0):
        self.calls.append(method)
        self._prepared[(sender.lower(), nonce)] = (method, handle.address, list(args))
        return {
            "from": sender,
            "to": handle.address,
            "nonce": nonce,
            "value": value,
            "data": handle.encode(method, args),
            "gas": 300_000,
            "gasPrice": 1_000_000_000,
            "chainId": 1337,
        }

    def submit(self, signed):
        method, to, args = self._prepared.pop((signed.sender.lower(), signed.nonce))
        if method in self.failures:
            raise self.failures[method]

        expected = self._nonce
        if self.submit_delay:
            time.sleep(self.submit_delay)
        if signed.nonce != expected:
            with self._lock:
                self.nonce_errors.append((expected, signed.nonce))
            raise TransactionRejected("nonce too low", signed.tx_hash)
        self._nonce = expected + 1
        self.submitted_nonces.append(signed.nonce)

        logs = ()
        if method == ContractGateway.MINT:
            with self._lock:
                token_id = self._next_token
                self._next_token += 1
            logs = (
                {
                    "address": to,
                    "topics": [TRANSFER_TOPIC, ZERO_TOPIC, "0x" + "00" * 12 + signed.sender[2:].lower(), _topic(token_id)],
                    "data": "0x",
                },
            )
        return TransactionReceipt(tx_hash=signed.tx_hash, block_number=len(self.submitted_nonces), status=1, logs=logs)


class FakeGateway:
    """呼び出し回数を数えるだけの ContractGateway。"""

    def __init__(self):
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self._counter = 0

    def _receipt(self, name):
        self.calls.append(name)
        if name in self.failures:
            raise self.failures.pop(name)
        self._counter += 1
        return TransactionReceipt(tx_hash=f"0x{name}{self._counter:04d}", block_number=self._counter, status=1)

    def mint(self, metadata_reference, account=None):
        receipt = self._receipt("mint")
        return MintResult(token_id=42, receipt=receipt)

    def set_royalty(self, token_id, basis_points, account=None):
        return self._receipt("set_royalty")

    def list(self, token_id, price_in_smallest_unit, currency_reference, account=None):
        return self._receipt("list")

    def earnings(self, address):
        self.calls.append("earnings")
        return 1500000000000000000


@pytest.fixture
def wallet():
    w = WalletAccount(kdf="pbkdf2", iterations=1000)
    w.create("correct horse battery staple")
    return w


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def gateway(chain, wallet):
    return ContractGateway(chain, wallet, NFT_ADDRESS, MARKET_ADDRESS, VOICE_NFT_ABI, MARKETPLACE_ABI)


@pytest.fixture
def store():
    return InMemoryMetadataStore()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def workflow(store, fake_gateway, wallet):
    return AssetPublicationWorkflow(store, fake_gateway, wallet)


@pytest.fixture
def recording():
    return AssetMetadata(
        title="Morning Narration",
        description="Professional morning voice recording",
        duration_seconds=120.0,
        language="en",
        cultural_tags={"American", "Professional"},
        characteristics={"tone": "warm", "pace": "moderate", "clarity": "high"},
        audio_reference="ipfs://audio-hash",
    )
