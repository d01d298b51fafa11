# publication.py
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from abis import MARKETPLACE_ABI, VOICE_NFT_ABI
from config import MarketConfig, load_abi, looks_like_address
from contract_gateway import ContractGateway
from errors import (
    OutOfRange,
    PublicationCancelled,
    PublicationError,
    ValidationError,
    VoiceMarketError,
)
from models import (
    NATIVE_CURRENCY,
    Account,
    AssetMetadata,
    MetadataReference,
    PublicationResult,
    PublicationStage,
    Step,
    StepHash,
    TokenId,
    royalty_percent_to_basis_points,
    to_smallest_unit,
)

logger = logging.getLogger(__name__)

_ORDER = [
    PublicationStage.NOT_STARTED,
    PublicationStage.METADATA_UPLOADED,
    PublicationStage.MINTED,
    PublicationStage.ROYALTY_SET,
    PublicationStage.LISTED,
]


@dataclass(frozen=True)
class PublicationRequest:
    """検証・変換済みの publish 入力。"""
    metadata: AssetMetadata
    basis_points: int
    price_in_smallest_unit: int
    currency_reference: str


@dataclass
class PublicationState:
    """
    1件の publish の進行状況。失敗してもこれを渡せば完了済みステップを飛ばして再開できる。
    stage は「最後に成功したステップ」、failed_step は直近の失敗。
    """
    request: PublicationRequest
    publication_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stage: PublicationStage = PublicationStage.NOT_STARTED
    metadata_reference: Optional[MetadataReference] = None
    token_id: Optional[TokenId] = None
    transaction_hashes: list = field(default_factory=list)
    history: list = field(default_factory=lambda: [PublicationStage.NOT_STARTED])
    failed_step: Optional[Step] = None
    error: Optional[str] = None
    _running: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def status(self) -> PublicationStage:
        return PublicationStage.FAILED if self.failed_step is not None else self.stage

    @property
    def completed(self) -> bool:
        return self.stage is PublicationStage.LISTED

    def reached(self, stage: PublicationStage) -> bool:
        return _ORDER.index(self.stage) >= _ORDER.index(stage)

    def advance(self, stage: PublicationStage, step: Optional[Step] = None, tx_hash: Optional[str] = None) -> None:
        if _ORDER.index(stage) != _ORDER.index(self.stage) + 1:
            raise RuntimeError(f"cannot move from {self.stage.value} to {stage.value}")
        if tx_hash is not None:
            self.transaction_hashes.append(StepHash(step, tx_hash))
        self.stage = stage
        self.history.append(stage)

    def fail(self, step: Step, cause: BaseException) -> None:
        self.failed_step = step
        self.error = f"{type(cause).__name__}: {cause}"
        self.history.append(PublicationStage.FAILED)

    def result(self) -> PublicationResult:
        return PublicationResult(
            token_id=self.token_id,
            transaction_hashes=tuple(self.transaction_hashes),
            failed_step=self.failed_step,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "publicationId": self.publication_id,
            "status": self.status.value,
            "stage": self.stage.value,
            "metadataReference": str(self.metadata_reference) if self.metadata_reference else None,
            "error": self.error,
            **self.result().to_dict(),
        }


class AssetPublicationWorkflow:
    """
    1. メタデータをストアにアップロード
    2. NFT を mint
    3. ロイヤリティを設定
    4. マーケットプレイスに出品

    を順番に実行する “ユースケース” クラス。
    ステップ内で自動リトライはしない。失敗時は PublicationError に再開用の state を載せて返す。
    """

    def __init__(self, metadata_store, gateway: ContractGateway, wallet):
        self._store = metadata_store
        self._gateway = gateway
        self._wallet = wallet

    @property
    def gateway(self) -> ContractGateway:
        return self._gateway

    @classmethod
    def from_config(cls, cfg: MarketConfig, wallet, metadata_store=None, chain=None) -> "AssetPublicationWorkflow":
        if metadata_store is None:
            metadata_store = build_metadata_store(cfg)
        return cls(metadata_store, build_gateway(cfg, wallet, chain), wallet)

    @staticmethod
    def prepare(
        recording: AssetMetadata,
        royalty_percent,
        price_major_units,
        currency_reference: str = NATIVE_CURRENCY,
    ) -> PublicationRequest:
        """ネットワークに触る前の検証。ここで落ちたら何も変更されない。"""
        if not isinstance(recording, AssetMetadata):
            raise ValidationError("recording must be AssetMetadata")
        basis_points = royalty_percent_to_basis_points(royalty_percent)
        price = to_smallest_unit(price_major_units)
        if not looks_like_address(currency_reference):
            raise OutOfRange("currency_reference", currency_reference, "currency_reference must be a 0x address")
        return PublicationRequest(recording, basis_points, price, currency_reference)

    def publish(
        self,
        recording: AssetMetadata,
        royalty_percent,
        price_major_units,
        currency_reference: str = NATIVE_CURRENCY,
        account: Optional[Account] = None,
        state: Optional[PublicationState] = None,
        cancel: Optional[threading.Event] = None,
    ) -> PublicationResult:
        request = self.prepare(recording, royalty_percent, price_major_units, currency_reference)
        if state is None:
            state = PublicationState(request)
        elif state.request != request:
            raise ValidationError(f"publication {state.publication_id} was started with different inputs")
        return self._run(state, account, cancel)

    def resume(
        self,
        state: PublicationState,
        account: Optional[Account] = None,
        cancel: Optional[threading.Event] = None,
    ) -> PublicationResult:
        return self._run(state, account, cancel)

    def _run(self, state: PublicationState, account: Optional[Account], cancel: Optional[threading.Event]):
        if state.completed:
            return state.result()
        self._wallet.require_active(account)
        if not state._running.acquire(blocking=False):
            raise ValidationError(f"publication {state.publication_id} is already running")
        try:
            state.failed_step = None
            state.error = None
            self._advance_all(state, account, cancel)
        finally:
            state._running.release()
        logger.info("publication %s listed: token=%s", state.publication_id, state.token_id)
        return state.result()

    def _advance_all(self, state: PublicationState, account: Optional[Account], cancel) -> None:
        req = state.request

        if not state.reached(PublicationStage.METADATA_UPLOADED):
            ref = self._step(state, Step.UPLOAD_METADATA, cancel, lambda: self._store.upload(req.metadata))
            state.metadata_reference = ref
            state.advance(PublicationStage.METADATA_UPLOADED)

        if not state.reached(PublicationStage.MINTED):
            minted = self._step(state, Step.MINT, cancel, lambda: self._gateway.mint(state.metadata_reference, account))
            state.token_id = minted.token_id
            state.advance(PublicationStage.MINTED, Step.MINT, minted.receipt.tx_hash)

        if not state.reached(PublicationStage.ROYALTY_SET):
            receipt = self._step(
                state,
                Step.SET_ROYALTY,
                cancel,
                lambda: self._gateway.set_royalty(state.token_id, req.basis_points, account),
            )
            state.advance(PublicationStage.ROYALTY_SET, Step.SET_ROYALTY, receipt.tx_hash)

        if not state.reached(PublicationStage.LISTED):
            receipt = self._step(
                state,
                Step.LIST,
                cancel,
                lambda: self._gateway.list(state.token_id, req.price_in_smallest_unit, req.currency_reference, account),
            )
            state.advance(PublicationStage.LISTED, Step.LIST, receipt.tx_hash)

    def _step(self, state: PublicationState, step: Step, cancel, action: Callable[[], Any]):
        if cancel is not None and cancel.is_set():
            raise PublicationCancelled(step, state, self._partial(state))

        logger.info("publication %s: %s", state.publication_id, step.value)
        try:
            outcome = action()
        except VoiceMarketError as ex:
            state.fail(step, ex)
            logger.warning("publication %s failed at %s: %s", state.publication_id, step.value, ex)
            raise PublicationError(step, ex, state, self._partial(state)) from ex

        # 中断後に返ってきた結果は state に反映しない
        if cancel is not None and cancel.is_set():
            logger.warning("publication %s cancelled during %s; result discarded", state.publication_id, step.value)
            raise PublicationCancelled(step, state, self._partial(state))
        return outcome

    @staticmethod
    def _partial(state: PublicationState) -> Optional[PublicationResult]:
        return state.result() if state.token_id is not None else None


def build_gateway(cfg: MarketConfig, wallet=None, chain=None) -> ContractGateway:
    """wallet なしでも読み出し (earnings) には使える。"""
    if chain is None:
        from eth_client import ChainClient
        chain = ChainClient.from_config(cfg)
    return ContractGateway(
        chain,
        wallet,
        nft_address=cfg.nft_contract_address,
        marketplace_address=cfg.marketplace_address,
        nft_abi=load_abi(cfg.nft_abi_path, VOICE_NFT_ABI),
        marketplace_abi=load_abi(cfg.marketplace_abi_path, MARKETPLACE_ABI),
    )


def build_metadata_store(cfg: MarketConfig):
    if cfg.metadata_store == "memory":
        from metadata_store import InMemoryMetadataStore
        return InMemoryMetadataStore()
    from ipfs_client import IpfsMetadataStore
    return IpfsMetadataStore(cfg.ipfs_api_url)
