# wallet.py
from __future__ import annotations

import itertools
import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from eth_account import Account as EthAccount

from errors import (
    InvalidPassphrase,
    NotInitialized,
    SigningUnavailable,
    WalletCreationFailed,
)
from models import Account, SignedTransaction, hex_str

logger = logging.getLogger(__name__)

_HANDLES = itertools.count(1)


class WalletAccount:
    """
    1プロセスにつき1つのアクティブアカウントを保持するウォレット。

    - 秘密鍵は暗号化キーストア（標準の keystore JSON）としてのみ保持・保存する
    - unlock 中の鍵はメモリ上の bytearray に置き、lock / 置き換え時にゼロ埋めする
    - 同じアカウントの nonce を取り合わないよう、署名〜送信は signing_session() で直列化する
    """

    def __init__(self, keystore: Optional[dict] = None, kdf: str = "scrypt", iterations: Optional[int] = None):
        self._keystore = keystore
        self._kdf = kdf
        self._iterations = iterations
        self._key: Optional[bytearray] = None
        self._active: Optional[Account] = None
        self._lock = threading.RLock()

    @classmethod
    def from_keystore_file(cls, path: str, **kwargs) -> "WalletAccount":
        keystore = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(keystore=keystore, **kwargs)

    @property
    def active_account(self) -> Optional[Account]:
        return self._active

    @property
    def keystore(self) -> Optional[dict]:
        return self._keystore

    def save_keystore(self, path: str) -> None:
        if self._keystore is None:
            raise NotInitialized("no keystore to save")
        Path(path).write_text(json.dumps(self._keystore), encoding="utf-8")

    def create(self, passphrase: str) -> Account:
        """新しい鍵を生成し、アクティブアカウントとして差し替える。"""
        if not passphrase:
            raise WalletCreationFailed("passphrase must not be empty")
        try:
            # eth_account は os.urandom を使って鍵を生成する
            local = EthAccount.create()
        except Exception as ex:
            raise WalletCreationFailed(f"key generation failed: {ex}") from ex
        return self._install(bytes(local.key), passphrase, local.address)

    def import_key(self, private_key: str, passphrase: str) -> Account:
        """既存の秘密鍵（ETH_PRIVATE_KEY 等）を取り込み、暗号化キーストアを作る。"""
        if not passphrase:
            raise WalletCreationFailed("passphrase must not be empty")
        try:
            local = EthAccount.from_key(private_key)
        except (ValueError, TypeError) as ex:
            raise WalletCreationFailed("private key is malformed") from ex
        return self._install(bytes(local.key), passphrase, local.address)

    def _install(self, key: bytes, passphrase: str, address: str) -> Account:
        try:
            keystore = EthAccount.encrypt(key, passphrase, kdf=self._kdf, iterations=self._iterations)
        except Exception as ex:
            raise WalletCreationFailed(f"keystore encryption failed: {ex}") from ex

        with self._lock:
            self._wipe()
            self._keystore = keystore
            self._key = bytearray(key)
            self._active = Account(address=address, handle=next(_HANDLES))
        logger.info("wallet account active: %s", address)
        return self._active

    def unlock(self, passphrase: str) -> Account:
        if self._keystore is None:
            raise NotInitialized("no keystore; create or import a key first")
        try:
            key = EthAccount.decrypt(self._keystore, passphrase)
        except ValueError as ex:
            # MAC mismatch
            raise InvalidPassphrase() from ex
        address = EthAccount.from_key(key).address

        with self._lock:
            self._wipe()
            self._key = bytearray(key)
            self._active = Account(address=address, handle=next(_HANDLES))
        logger.info("wallet unlocked: %s", address)
        return self._active

    def lock(self) -> None:
        with self._lock:
            self._wipe()
        logger.info("wallet locked")

    def _wipe(self) -> None:
        if self._key is not None:
            for i in range(len(self._key)):
                self._key[i] = 0
        self._key = None
        self._active = None

    def require_active(self, account: Optional[Account] = None) -> Account:
        active = self._active
        if active is None:
            raise NotInitialized()
        if account is not None and account.handle != active.handle:
            raise NotInitialized(f"account {account.address} is not the active wallet account")
        return active

    @contextmanager
    def signing_session(self, account: Optional[Account] = None) -> Iterator[Account]:
        """nonce 取得 → 署名 → 送信 を他スレッドと重ならないようにする。"""
        with self._lock:
            yield self.require_active(account)

    def sign(self, transaction: dict, account: Optional[Account] = None) -> SignedTransaction:
        with self._lock:
            active = self.require_active(account)
            try:
                signed = EthAccount.sign_transaction(transaction, bytes(self._key))
            except (TypeError, ValueError, KeyError) as ex:
                raise SigningUnavailable(f"cannot sign transaction: {ex}") from ex

        # eth-account のバージョンで属性名が違う
        raw = getattr(signed, "raw_transaction", None)
        if raw is None:
            raw = signed.rawTransaction
        return SignedTransaction(
            raw_transaction=bytes(raw),
            tx_hash=hex_str(signed.hash),
            sender=active.address,
            nonce=int(transaction["nonce"]),
        )
