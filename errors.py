# errors.py
from __future__ import annotations

from typing import Any, Optional


class VoiceMarketError(Exception):
    pass


# --- wallet -------------------------------------------------------------

class WalletError(VoiceMarketError):
    pass


class NotInitialized(WalletError):
    def __init__(self, message: str = "no active wallet account"):
        super().__init__(message)


class InvalidPassphrase(WalletError):
    def __init__(self, message: str = "passphrase does not unlock the keystore"):
        super().__init__(message)


class WalletCreationFailed(WalletError):
    pass


class SigningUnavailable(WalletError):
    pass


# --- chain --------------------------------------------------------------

class ChainError(VoiceMarketError):
    pass


class InvalidAddress(ChainError):
    def __init__(self, address: Any):
        super().__init__(f"invalid address: {address!r}")
        self.address = address


class ContractNotFound(ChainError):
    def __init__(self, address: str):
        super().__init__(f"no contract code at {address}")
        self.address = address


class NetworkError(ChainError):
    pass


class TransactionRejected(ChainError):
    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class ContractCallFailed(ChainError):
    """
    ContractGateway の 1 呼び出しが失敗したことを表す。
    step にどの呼び出しか、underlying に元の例外を保持する。
    """

    def __init__(self, step, underlying: BaseException):
        super().__init__(f"{getattr(step, 'value', step)} failed: {type(underlying).__name__}: {underlying}")
        self.step = step
        self.underlying = underlying


# --- validation / storage / config ---------------------------------------

class ValidationError(VoiceMarketError, ValueError):
    pass


class OutOfRange(ValidationError):
    def __init__(self, field: str, value: Any, message: Optional[str] = None):
        super().__init__(message or f"{field} out of range: {value!r}")
        self.field = field
        self.value = value


class UploadFailed(VoiceMarketError):
    pass


class ConfigError(VoiceMarketError):
    def __init__(self, problems: list[str]):
        super().__init__("invalid configuration: " + "; ".join(problems))
        self.problems = list(problems)


# --- workflow -----------------------------------------------------------

class PublicationError(VoiceMarketError):
    """
    publish / resume の失敗。

    state  : 再開に使える PublicationState（最後に成功したステップ・生成済みID）
    result : tokenId が発行済みなら部分的な PublicationResult、未発行なら None
    """

    def __init__(self, at_step, cause: BaseException, state=None, result=None):
        super().__init__(f"publication failed at {getattr(at_step, 'value', at_step)}: {cause}")
        self.at_step = at_step
        self.cause = cause
        self.state = state
        self.result = result


class PublicationCancelled(PublicationError):
    """呼び出し側が中断した。中断後に返ってきた結果は state に反映されていない。"""

    def __init__(self, at_step, state=None, result=None):
        VoiceMarketError.__init__(self, f"publication cancelled at {getattr(at_step, 'value', at_step)}")
        self.at_step = at_step
        self.cause = None
        self.state = state
        self.result = result
