# models.py
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from enum import Enum
from typing import Any, Mapping, Optional

from errors import OutOfRange

NATIVE_CURRENCY = "0x0000000000000000000000000000000000000000"
WEI_SCALE = 10 ** 18
MAX_BASIS_POINTS = 10_000
MAX_UINT256 = 2 ** 256 - 1

TokenId = int


class Step(str, Enum):
    UPLOAD_METADATA = "upload_metadata"
    MINT = "mint"
    SET_ROYALTY = "set_royalty"
    LIST = "list"
    BUY = "buy"
    EARNINGS = "earnings"


class PublicationStage(str, Enum):
    NOT_STARTED = "not_started"
    METADATA_UPLOADED = "metadata_uploaded"
    MINTED = "minted"
    ROYALTY_SET = "royalty_set"
    LISTED = "listed"
    FAILED = "failed"


@dataclass(frozen=True)
class Account:
    """
    アクティブなウォレットアカウント。
    handle は WalletAccount 内部の鍵を指す不透明な値で、鍵そのものは持たない。
    """
    address: str
    handle: int = field(repr=False, compare=False)


@dataclass(frozen=True)
class SignedTransaction:
    raw_transaction: bytes = field(repr=False)
    tx_hash: str
    sender: str
    nonce: int


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    block_number: Optional[int]
    status: int
    logs: tuple = field(default=(), repr=False)


@dataclass(frozen=True)
class AssetMetadata:
    title: str
    description: str
    duration_seconds: float
    language: str
    cultural_tags: frozenset = frozenset()
    characteristics: Mapping[str, str] = field(default_factory=dict)
    audio_reference: str = ""

    def __post_init__(self):
        object.__setattr__(self, "cultural_tags", frozenset(self.cultural_tags))
        # frozen でも dict は書き換えられるのでコピーして閉じ込める
        object.__setattr__(self, "characteristics", dict(self.characteristics))
        # 120 と 120.0 で別のバイト列・別の参照にならないようにそろえる
        object.__setattr__(self, "duration_seconds", _to_seconds(self.duration_seconds))
        if not self.title:
            raise OutOfRange("title", self.title, "title must not be empty")
        if self.duration_seconds < 0:
            raise OutOfRange("duration_seconds", self.duration_seconds)

    def __hash__(self) -> int:
        return hash(self.to_json())

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "duration": self.duration_seconds,
            "language": self.language,
            "cultural_tags": sorted(self.cultural_tags),
            "voice_characteristics": dict(sorted(self.characteristics.items())),
            "audio_url": self.audio_reference,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True, separators=(",", ":"))

    def to_bytes(self) -> bytes:
        """同じ内容なら必ず同じバイト列になる（content address の前提）。"""
        return self.to_json().encode("utf-8")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AssetMetadata":
        return cls(
            title=str(data["title"]),
            description=str(data.get("description", "")),
            duration_seconds=data.get("duration", data.get("duration_seconds", 0)),
            language=str(data.get("language", "")),
            cultural_tags=frozenset(data.get("cultural_tags", ())),
            characteristics=dict(data.get("voice_characteristics", data.get("characteristics", {}))),
            audio_reference=str(data.get("audio_url", data.get("audio_reference", ""))),
        )


@dataclass(frozen=True)
class MetadataReference:
    uri: str

    def __str__(self) -> str:
        return self.uri


@dataclass(frozen=True)
class RoyaltyTerms:
    token_id: TokenId
    basis_points: int

    def __post_init__(self):
        check_basis_points(self.basis_points)


@dataclass(frozen=True)
class Listing:
    token_id: TokenId
    price_in_smallest_unit: int
    currency_reference: str = NATIVE_CURRENCY

    def __post_init__(self):
        if not 0 <= self.price_in_smallest_unit <= MAX_UINT256:
            raise OutOfRange("price_in_smallest_unit", self.price_in_smallest_unit)


@dataclass(frozen=True)
class StepHash:
    step: Step
    tx_hash: str


@dataclass(frozen=True)
class MintResult:
    token_id: TokenId
    receipt: TransactionReceipt


@dataclass(frozen=True)
class PublicationResult:
    """
    on-chain トランザクションのハッシュをステップ順に記録する。
    failed_step が None なら mint → set_royalty → list が全て完了している。
    """
    token_id: Optional[TokenId]
    transaction_hashes: tuple = ()
    failed_step: Optional[Step] = None

    @property
    def complete(self) -> bool:
        return self.failed_step is None and self.token_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "transactionHashes": [{"step": h.step.value, "hash": h.tx_hash} for h in self.transaction_hashes],
            "failedStep": self.failed_step.value if self.failed_step else None,
        }


def hex_str(value) -> str:
    """HexBytes / bytes / str を 0x 付きの hex 文字列にそろえる（hexbytes のバージョン差対策）。"""
    h = value if isinstance(value, str) else value.hex()
    if not h.startswith("0x"):
        h = "0x" + h
    return h.lower()


def _to_seconds(value) -> float:
    if isinstance(value, bool):
        raise OutOfRange("duration_seconds", value, "duration must be a number")
    try:
        seconds = float(value)
    except (TypeError, ValueError) as ex:
        raise OutOfRange("duration_seconds", value, "duration must be a number") from ex
    if not math.isfinite(seconds):
        raise OutOfRange("duration_seconds", value, "duration must be finite")
    return seconds


def _to_decimal(field_name: str, value) -> Decimal:
    if isinstance(value, bool):
        raise OutOfRange(field_name, value, f"{field_name} must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise OutOfRange(field_name, value, f"{field_name} must be finite")
    try:
        # float は str 経由にして 0.1 を 0.1000000000000000055... にしない
        d = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as ex:
        raise OutOfRange(field_name, value, f"{field_name} must be a number") from ex
    if not d.is_finite():
        raise OutOfRange(field_name, value, f"{field_name} must be finite")
    return d


def check_basis_points(basis_points: int) -> int:
    if isinstance(basis_points, bool) or not isinstance(basis_points, int):
        raise OutOfRange("basis_points", basis_points, "basis_points must be an integer")
    if not 0 <= basis_points <= MAX_BASIS_POINTS:
        raise OutOfRange("basis_points", basis_points)
    return basis_points


def royalty_percent_to_basis_points(percent) -> int:
    """
    0〜100 の percent を basis points に変換する（×100、四捨五入）。
    2.5 -> 250
    """
    d = _to_decimal("royalty_percent", percent)
    if d < 0 or d > 100:
        raise OutOfRange("royalty_percent", percent)
    with localcontext() as ctx:
        ctx.prec = 80
        return int((d * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_smallest_unit(amount_major, scale: int = WEI_SCALE) -> int:
    """
    10進の金額を最小単位の整数に変換する。
    最小単位未満の端数は切り捨て（丸めない）。0.1 -> 100000000000000000
    """
    d = _to_decimal("price_major_units", amount_major)
    if d < 0:
        raise OutOfRange("price_major_units", amount_major)
    with localcontext() as ctx:
        # 既定の28桁だと大きな金額で丸めが入る
        ctx.prec = 80
        try:
            scaled = (d * scale).to_integral_value(rounding=ROUND_DOWN)
        except ArithmeticError as ex:
            raise OutOfRange("price_major_units", amount_major, "price does not fit in uint256") from ex
    # on-chain は uint256
    if scaled > MAX_UINT256:
        raise OutOfRange("price_major_units", amount_major, "price does not fit in uint256")
    return int(scaled)


def to_major_units(amount_smallest: int, scale: int = WEI_SCALE) -> Decimal:
    """最小単位の整数を10進の金額に戻す（表示用）。10**17 -> Decimal("0.1")"""
    with localcontext() as ctx:
        ctx.prec = 80
        return Decimal(int(amount_smallest)) / scale
