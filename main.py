# main.py
from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from config import MarketConfig
from errors import PublicationError, ValidationError, VoiceMarketError
from models import AssetMetadata, to_major_units
from publication import AssetPublicationWorkflow, build_gateway
from wallet import WalletAccount

logger = logging.getLogger(__name__)


def _passphrase(prompt: str = "Wallet passphrase: ") -> str:
    value = os.getenv("VOICE_WALLET_PASSPHRASE")
    if value:
        return value
    return getpass.getpass(prompt)


def _keystore_path(args, cfg_path) -> str:
    path = args.keystore or cfg_path
    if not path:
        raise SystemExit("keystore path is required (--keystore or VOICE_KEYSTORE_PATH)")
    return path


def cmd_create_wallet(args) -> int:
    wallet = WalletAccount()
    private_key = os.getenv("ETH_PRIVATE_KEY") if args.import_env_key else None
    if private_key:
        account = wallet.import_key(private_key, _passphrase())
    else:
        account = wallet.create(_passphrase())
    path = _keystore_path(args, os.getenv("VOICE_KEYSTORE_PATH"))
    wallet.save_keystore(path)

    print("=== Wallet ===")
    print("  Address  :", account.address)
    print("  Keystore :", path)
    return 0


def _load_metadata(path: str) -> AssetMetadata:
    try:
        return AssetMetadata.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))
    except ValidationError:
        raise
    except (OSError, ValueError, KeyError, TypeError) as ex:
        raise ValidationError(f"cannot read metadata {path}: {ex}") from ex


def cmd_publish(args) -> int:
    cfg = MarketConfig.from_env()
    wallet = WalletAccount.from_keystore_file(_keystore_path(args, cfg.keystore_path))
    metadata = _load_metadata(args.metadata)
    account = wallet.unlock(_passphrase())

    # unlock した後はどこで失敗しても鍵を消す
    try:
        workflow = AssetPublicationWorkflow.from_config(cfg, wallet)
        result = workflow.publish(
            metadata,
            royalty_percent=args.royalty,
            price_major_units=args.price,
            currency_reference=args.currency or cfg.currency_reference,
            account=account,
        )
    except PublicationError as ex:
        print(f"publication failed at {ex.at_step.value}: {ex.cause}", file=sys.stderr)
        if ex.state is not None:
            print(json.dumps(ex.state.to_dict(), ensure_ascii=False, indent=2), file=sys.stderr)
        return 1
    finally:
        wallet.lock()

    print("=== Publication ===")
    print("  Title    :", metadata.title)
    print("  Token ID :", result.token_id)
    for h in result.transaction_hashes:
        print(f"  {h.step.value:<12}: {h.tx_hash}")
    return 0


def cmd_earnings(args) -> int:
    cfg = MarketConfig.from_env()
    amount = build_gateway(cfg).earnings(args.address)

    print("=== Earnings ===")
    print("  Address  :", args.address)
    print("  Amount   :", to_major_units(amount))
    print("  Wei      :", amount)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Publish voice recordings as NFTs")
    ap.add_argument("-v", "--verbose", action="store_true")
    sub = ap.add_subparsers(dest="command", required=True)

    cw = sub.add_parser("create-wallet", help="create an encrypted keystore")
    cw.add_argument("--keystore", default=None, help="keystore json path")
    cw.add_argument("--import-env-key", action="store_true", help="use ETH_PRIVATE_KEY instead of a new key")
    cw.set_defaults(func=cmd_create_wallet)

    pub = sub.add_parser("publish", help="upload metadata, mint, set royalty and list")
    pub.add_argument("metadata", help="metadata json path")
    pub.add_argument("--royalty", required=True, help="royalty percent (0-100), e.g. 2.5")
    pub.add_argument("--price", required=True, help="price in major units, e.g. 0.1 (truncated to wei)")
    pub.add_argument("--currency", default=None, help="currency contract address (default: native)")
    pub.add_argument("--keystore", default=None, help="keystore json path")
    pub.set_defaults(func=cmd_publish)

    ea = sub.add_parser("earnings", help="show marketplace earnings of an address")
    ea.add_argument("address", help="seller address (0x...)")
    ea.set_defaults(func=cmd_earnings)
    return ap


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        return args.func(args)
    except VoiceMarketError as ex:
        print(f"{type(ex).__name__}: {ex}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
