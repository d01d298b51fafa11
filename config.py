# config.py
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from errors import ConfigError
from models import NATIVE_CURRENCY

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_RPC_SCHEMES = {"http", "https", "ws", "wss"}
METADATA_STORES = {"ipfs", "memory"}


def looks_like_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(value or ""))


def load_abi(path: Optional[str], fallback: list) -> list:
    """ABI JSON（素のリスト or {"abi": [...]} 形式）を読む。path が空なら同梱の最小ABI。"""
    if not path:
        return fallback
    try:
        obj = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as ex:
        raise ConfigError([f"cannot read ABI file {path}: {ex}"]) from ex
    abi = obj["abi"] if isinstance(obj, dict) and "abi" in obj else obj
    if not isinstance(abi, list):
        raise ConfigError([f'ABI file {path} holds neither a list nor {{"abi": [...]}}'])
    return abi


@dataclass(frozen=True)
class MarketConfig:
    """
    外部から与える設定値。起動時に全項目を検証し、おかしければ即 ConfigError。

    環境変数（.env でもOK）:
      - ETH_RPC_URL
      - VOICE_NFT_CONTRACT_ADDRESS
      - VOICE_MARKETPLACE_ADDRESS
      - VOICE_METADATA_STORE        (ipfs | memory, default: ipfs)
      - IPFS_API_URL                (default: http://127.0.0.1:5001)
      - VOICE_CURRENCY_ADDRESS      (default: ネイティブ通貨 = zero address)
      - VOICE_KEYSTORE_PATH
      - VOICE_NFT_ABI_PATH / VOICE_MARKETPLACE_ABI_PATH
      - ETH_RECEIPT_TIMEOUT / ETH_GAS_LIMIT_MIN / ETH_GAS_MULTIPLIER / ETH_PRIORITY_GWEI
    """

    rpc_url: str
    nft_contract_address: str
    marketplace_address: str
    metadata_store: str = "ipfs"
    ipfs_api_url: str = "http://127.0.0.1:5001"
    currency_reference: str = NATIVE_CURRENCY
    keystore_path: Optional[str] = None
    nft_abi_path: Optional[str] = None
    marketplace_abi_path: Optional[str] = None
    receipt_timeout: float = 120.0
    gas_limit_min: int = 300_000
    gas_multiplier: float = 1.2
    priority_fee_gwei: float = 1.5

    def __post_init__(self):
        problems = self.problems()
        if problems:
            raise ConfigError(problems)

    def problems(self) -> list[str]:
        out = []
        if not self.rpc_url:
            out.append("ETH_RPC_URL is not set")
        elif urlparse(self.rpc_url).scheme not in _RPC_SCHEMES or not urlparse(self.rpc_url).netloc:
            out.append(f"ETH_RPC_URL is not an http(s)/ws(s) URL: {self.rpc_url!r}")
        for name, value in (
            ("VOICE_NFT_CONTRACT_ADDRESS", self.nft_contract_address),
            ("VOICE_MARKETPLACE_ADDRESS", self.marketplace_address),
            ("VOICE_CURRENCY_ADDRESS", self.currency_reference),
        ):
            if not value:
                out.append(f"{name} is not set")
            elif not looks_like_address(value):
                out.append(f"{name} is not a 0x-prefixed 20-byte hex address: {value!r}")
        if self.metadata_store not in METADATA_STORES:
            out.append(f"VOICE_METADATA_STORE must be one of {sorted(METADATA_STORES)}")
        elif self.metadata_store == "ipfs" and urlparse(self.ipfs_api_url).scheme not in {"http", "https"}:
            out.append(f"IPFS_API_URL is not an http(s) URL: {self.ipfs_api_url!r}")
        for path in (self.nft_abi_path, self.marketplace_abi_path):
            if path and not Path(path).is_file():
                out.append(f"ABI file not found: {path}")
        if self.receipt_timeout <= 0:
            out.append("ETH_RECEIPT_TIMEOUT must be positive")
        if self.gas_limit_min <= 0:
            out.append("ETH_GAS_LIMIT_MIN must be positive")
        if self.gas_multiplier < 1.0:
            out.append("ETH_GAS_MULTIPLIER must be >= 1.0")
        if self.priority_fee_gwei < 0:
            out.append("ETH_PRIORITY_GWEI must not be negative")
        return out

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "MarketConfig":
        if env is None:
            load_dotenv()
            env = os.environ

        def get(name: str, default: str = "") -> str:
            return (env.get(name) or default).strip()

        problems = []

        def number(name: str, default: str, kind):
            raw = get(name, default)
            try:
                return kind(raw)
            except ValueError:
                problems.append(f"{name} is not a number: {raw!r}")
                return kind(default)

        receipt_timeout = number("ETH_RECEIPT_TIMEOUT", "120", float)
        gas_limit_min = number("ETH_GAS_LIMIT_MIN", "300000", int)
        gas_multiplier = number("ETH_GAS_MULTIPLIER", "1.2", float)
        priority_fee_gwei = number("ETH_PRIORITY_GWEI", "1.5", float)
        if problems:
            raise ConfigError(problems)

        return cls(
            rpc_url=get("ETH_RPC_URL"),
            nft_contract_address=get("VOICE_NFT_CONTRACT_ADDRESS"),
            marketplace_address=get("VOICE_MARKETPLACE_ADDRESS"),
            metadata_store=get("VOICE_METADATA_STORE", "ipfs").lower(),
            ipfs_api_url=get("IPFS_API_URL", "http://127.0.0.1:5001"),
            currency_reference=get("VOICE_CURRENCY_ADDRESS", NATIVE_CURRENCY),
            keystore_path=get("VOICE_KEYSTORE_PATH") or None,
            nft_abi_path=get("VOICE_NFT_ABI_PATH") or None,
            marketplace_abi_path=get("VOICE_MARKETPLACE_ABI_PATH") or None,
            receipt_timeout=receipt_timeout,
            gas_limit_min=gas_limit_min,
            gas_multiplier=gas_multiplier,
            priority_fee_gwei=priority_fee_gwei,
        )
