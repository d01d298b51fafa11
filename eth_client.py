# eth_client.py
from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from web3 import Web3
from web3.exceptions import ProviderConnectionError, TimeExhausted, Web3Exception

from config import looks_like_address
from errors import ContractNotFound, InvalidAddress, NetworkError, TransactionRejected
from models import SignedTransaction, TransactionReceipt, hex_str

logger = logging.getLogger(__name__)


class ContractHandle:
    """アドレス + ABI + web3 の Contract。エンコードだけならプロバイダ不要。"""

    def __init__(self, address: str, abi: list, contract):
        self.address = address
        self.abi = abi
        self._contract = contract

    @classmethod
    def offline(cls, address: str, abi: list) -> "ContractHandle":
        w3 = Web3()  # provider不要（エンコードだけ）
        checksum = Web3.to_checksum_address(address)
        return cls(checksum, abi, w3.eth.contract(address=checksum, abi=abi))

    def encode(self, method: str, args: Sequence[Any]) -> str:
        return self._contract.encode_abi(method, args=list(args))

    def function(self, method: str, args: Sequence[Any]):
        return self._contract.functions[method](*args)


class ChainClient:
    """
    ネットワークプロバイダの薄いラッパ。
    - get_contract: アドレス形式をネットワークに触る前に検証する
    - submit: レシートが取れるまでブロックする。内部でリトライはしない
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        w3: Optional[Web3] = None,
        receipt_timeout: float = 120.0,
        gas_limit_min: int = 300_000,
        gas_multiplier: float = 1.2,
        priority_fee_gwei: float = 1.5,
    ):
        if w3 is None:
            if not rpc_url:
                raise NetworkError("rpc_url is not set")
            w3 = Web3(Web3.HTTPProvider(rpc_url))
            if not w3.is_connected():
                raise NetworkError(f"Failed to connect RPC: {rpc_url}")
        self._w3 = w3
        self._receipt_timeout = receipt_timeout
        self._gas_limit_min = gas_limit_min
        self._gas_multiplier = gas_multiplier
        self._priority_fee_gwei = priority_fee_gwei

    @classmethod
    def from_config(cls, cfg) -> "ChainClient":
        return cls(
            rpc_url=cfg.rpc_url,
            receipt_timeout=cfg.receipt_timeout,
            gas_limit_min=cfg.gas_limit_min,
            gas_multiplier=cfg.gas_multiplier,
            priority_fee_gwei=cfg.priority_fee_gwei,
        )

    def get_contract(self, address: str, abi: list) -> ContractHandle:
        if not looks_like_address(address):
            raise InvalidAddress(address)
        checksum = Web3.to_checksum_address(address)
        try:
            code = self._w3.eth.get_code(checksum)
        except (OSError, Web3Exception) as ex:
            raise NetworkError(f"get_code failed for {checksum}: {ex}") from ex
        if not code:
            raise ContractNotFound(checksum)
        return ContractHandle(checksum, abi, self._w3.eth.contract(address=checksum, abi=abi))

    def call(self, handle: ContractHandle, method: str, args: Sequence[Any] = ()) -> Any:
        """view 関数の読み出し。署名も送信もしない。"""
        try:
            return handle.function(method, args).call()
        except (OSError, ProviderConnectionError) as ex:
            raise NetworkError(f"{method} call failed: {ex}") from ex
        except (ValueError, Web3Exception) as ex:
            # revert した view 呼び出しもここ
            raise TransactionRejected(f"{method} call rejected: {ex}") from ex

    def next_nonce(self, address: str) -> int:
        try:
            return self._w3.eth.get_transaction_count(address, "pending")
        except (OSError, Web3Exception) as ex:
            raise NetworkError(f"nonce lookup failed: {ex}") from ex

    def prepare_call(
        self,
        handle: ContractHandle,
        method: str,
        args: Sequence[Any],
        sender: str,
        nonce: int,
        value: int = 0,
    ) -> dict:
        tx = {
            "from": sender,
            "to": handle.address,
            "nonce": nonce,
            "value": value,
            "data": handle.encode(method, args),
        }
        try:
            tx["chainId"] = self._w3.eth.chain_id
        except (OSError, Web3Exception) as ex:
            raise NetworkError(f"chain_id lookup failed: {ex}") from ex

        try:
            estimated = self._w3.eth.estimate_gas(tx)
            tx["gas"] = max(int(estimated * self._gas_multiplier), self._gas_limit_min)
        except (OSError, ProviderConnectionError) as ex:
            raise NetworkError(f"estimate_gas failed: {ex}") from ex
        except (ValueError, Web3Exception) as ex:
            # revert するなら submit 側で TransactionRejected になる
            logger.warning("estimate_gas failed for %s (%s); using %d", method, ex, self._gas_limit_min)
            tx["gas"] = self._gas_limit_min

        # EIP-1559 料金が使える環境ならそれを使う（無理なら legacy）
        try:
            latest = self._w3.eth.get_block("latest")
            base_fee = latest.get("baseFeePerGas")
            if base_fee is not None:
                priority = self._w3.to_wei(self._priority_fee_gwei, "gwei")
                tx["maxPriorityFeePerGas"] = priority
                tx["maxFeePerGas"] = int(base_fee * 2 + priority)
            else:
                tx["gasPrice"] = self._w3.eth.gas_price
        except (OSError, Web3Exception) as ex:
            raise NetworkError(f"fee lookup failed: {ex}") from ex
        return tx

    def submit(self, signed: SignedTransaction) -> TransactionReceipt:
        try:
            tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except (OSError, ProviderConnectionError) as ex:
            raise NetworkError(f"send_raw_transaction failed: {ex}") from ex
        except (ValueError, Web3Exception) as ex:
            # nonce too low / insufficient funds などノードが受け付けなかったもの
            raise TransactionRejected(f"node rejected transaction: {ex}", signed.tx_hash) from ex
        logger.debug("submitted %s (nonce=%d)", hex_str(tx_hash), signed.nonce)

        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        except TimeExhausted as ex:
            raise NetworkError(f"no receipt for {hex_str(tx_hash)} within {self._receipt_timeout}s") from ex
        except (OSError, Web3Exception) as ex:
            raise NetworkError(f"receipt lookup failed: {ex}") from ex

        txh = hex_str(receipt["transactionHash"])
        if receipt.get("status", 1) == 0:
            raise TransactionRejected(f"transaction {txh} reverted", txh)
        logger.info("confirmed %s in block %s", txh, receipt.get("blockNumber"))
        return TransactionReceipt(
            tx_hash=txh,
            block_number=receipt.get("blockNumber"),
            status=int(receipt.get("status", 1)),
            logs=tuple(receipt.get("logs", ())),
        )
