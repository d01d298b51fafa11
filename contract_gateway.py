# contract_gateway.py
from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Sequence

from web3 import Web3
from web3.exceptions import Web3Exception

from abis import MARKETPLACE_ABI, VOICE_NFT_ABI
from config import looks_like_address
from errors import ChainError, ConfigError, ContractCallFailed, InvalidAddress, OutOfRange, TransactionRejected
from models import (
    NATIVE_CURRENCY,
    Account,
    Listing,
    MetadataReference,
    MintResult,
    RoyaltyTerms,
    Step,
    TokenId,
    TransactionReceipt,
    hex_str,
)

logger = logging.getLogger(__name__)

TRANSFER_TOPIC = hex_str(Web3.keccak(text="Transfer(address,address,uint256)"))
_ZERO_TOPIC = "0x" + "00" * 32


def _require_functions(abi: list, names: Sequence[str], label: str) -> None:
    present = {x.get("name") for x in abi if x.get("type") == "function"}
    missing = [n for n in names if n not in present]
    if missing:
        raise ConfigError([f"{label} ABI is missing function(s): {', '.join(missing)}"])


def token_id_from_receipt(receipt: TransactionReceipt, nft_address: str) -> Optional[TokenId]:
    """
    ERC-721 の Transfer(from=0x0) イベントから発行された tokenId を取り出す。
    Transfer(address indexed from, address indexed to, uint256 indexed tokenId)
      topics[0] = keccak("Transfer(address,address,uint256)")
      topics[1] = from, topics[2] = to, topics[3] = tokenId
    """
    for log in receipt.logs:
        if str(log.get("address", "")).lower() != nft_address.lower():
            continue
        topics = [hex_str(t) for t in log.get("topics", ())]
        if len(topics) != 4 or topics[0] != TRANSFER_TOPIC:
            continue
        if topics[1] != _ZERO_TOPIC:
            continue
        return int(topics[3], 16)
    return None


class ContractGateway:
    """
    NFT / マーケットプレイスのコントラクト呼び出しを型付きでまとめたもの。
    各呼び出しは「ABIエンコード → 署名 → 送信 → レシート」で、失敗は ContractCallFailed(step, 元の例外)。
    """

    MINT = "mintNFT"
    SET_ROYALTY = "setRoyalty"
    LIST = "listItem"
    BUY = "buyItem"
    EARNINGS = "earnings"

    def __init__(
        self,
        chain,
        wallet,
        nft_address: str,
        marketplace_address: str,
        nft_abi: list = VOICE_NFT_ABI,
        marketplace_abi: list = MARKETPLACE_ABI,
    ):
        _require_functions(nft_abi, (self.MINT, self.SET_ROYALTY), "NFT")
        _require_functions(marketplace_abi, (self.LIST, self.BUY), "marketplace")
        self._chain = chain
        self._wallet = wallet
        self._nft_address = nft_address
        self._marketplace_address = marketplace_address
        self._nft_abi = nft_abi
        self._marketplace_abi = marketplace_abi
        self._handles: dict[str, Any] = {}
        self._handles_lock = threading.Lock()

    @property
    def nft_address(self) -> str:
        return self._nft_address

    def _handle(self, address: str, abi: list):
        with self._handles_lock:
            handle = self._handles.get(address)
            if handle is None:
                handle = self._chain.get_contract(address, abi)
                self._handles[address] = handle
            return handle

    def _call(
        self,
        step: Step,
        address: str,
        abi: list,
        method: str,
        args: Sequence[Any],
        account: Optional[Account] = None,
        value: int = 0,
    ) -> TransactionReceipt:
        try:
            handle = self._handle(address, abi)
            with self._wallet.signing_session(account) as active:
                nonce = self._chain.next_nonce(active.address)
                tx = self._chain.prepare_call(handle, method, args, active.address, nonce, value)
                signed = self._wallet.sign(tx, active)
                receipt = self._chain.submit(signed)
        except ChainError as ex:
            logger.warning("%s (%s) failed: %s", step.value, method, ex)
            raise ContractCallFailed(step, ex) from ex
        except (Web3Exception, ValueError, TypeError) as ex:
            # 引数が ABI に合わずエンコードできない。何も送信していない
            logger.warning("%s (%s) could not be encoded: %s", step.value, method, ex)
            raise ContractCallFailed(step, ex) from ex
        logger.info("%s ok: tx=%s", step.value, receipt.tx_hash)
        return receipt

    def mint(self, metadata_reference: MetadataReference, account: Optional[Account] = None) -> MintResult:
        receipt = self._call(Step.MINT, self._nft_address, self._nft_abi, self.MINT, [str(metadata_reference)], account)
        token_id = token_id_from_receipt(receipt, self._nft_address)
        if token_id is None:
            cause = TransactionRejected(f"mint {receipt.tx_hash} emitted no Transfer event", receipt.tx_hash)
            raise ContractCallFailed(Step.MINT, cause)
        return MintResult(token_id=token_id, receipt=receipt)

    def set_royalty(self, token_id: TokenId, basis_points: int, account: Optional[Account] = None) -> TransactionReceipt:
        terms = RoyaltyTerms(int(token_id), basis_points)
        return self._call(
            Step.SET_ROYALTY,
            self._nft_address,
            self._nft_abi,
            self.SET_ROYALTY,
            [terms.token_id, terms.basis_points],
            account,
        )

    def list(
        self,
        token_id: TokenId,
        price_in_smallest_unit: int,
        currency_reference: str = NATIVE_CURRENCY,
        account: Optional[Account] = None,
    ) -> TransactionReceipt:
        if isinstance(price_in_smallest_unit, bool) or not isinstance(price_in_smallest_unit, int):
            raise OutOfRange("price_in_smallest_unit", price_in_smallest_unit, "price must be an integer amount")
        if not looks_like_address(currency_reference):
            raise InvalidAddress(currency_reference)
        listing = Listing(int(token_id), price_in_smallest_unit, Web3.to_checksum_address(currency_reference))
        return self._call(
            Step.LIST,
            self._marketplace_address,
            self._marketplace_abi,
            self.LIST,
            [listing.token_id, listing.price_in_smallest_unit, listing.currency_reference],
            account,
        )

    def buy(self, listing_id: int, value_in_smallest_unit: int = 0, account: Optional[Account] = None) -> TransactionReceipt:
        if value_in_smallest_unit < 0:
            raise OutOfRange("value_in_smallest_unit", value_in_smallest_unit)
        return self._call(
            Step.BUY,
            self._marketplace_address,
            self._marketplace_abi,
            self.BUY,
            [int(listing_id)],
            account,
            value=value_in_smallest_unit,
        )

    def earnings(self, address: str) -> int:
        """
        マーケットプレイスに貯まっている address の売上（最小単位）。
        読み出しだけなのでウォレットは不要。
        """
        if not looks_like_address(address):
            raise InvalidAddress(address)
        _require_functions(self._marketplace_abi, (self.EARNINGS,), "marketplace")
        try:
            handle = self._handle(self._marketplace_address, self._marketplace_abi)
            amount = self._chain.call(handle, self.EARNINGS, [Web3.to_checksum_address(address)])
        except ChainError as ex:
            logger.warning("earnings lookup failed: %s", ex)
            raise ContractCallFailed(Step.EARNINGS, ex) from ex
        return int(amount)
