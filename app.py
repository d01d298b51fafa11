from __future__ import annotations

import logging
import os
import threading
from collections import OrderedDict

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from config import MarketConfig
from errors import ChainError, InvalidAddress, InvalidPassphrase, PublicationError, ValidationError, WalletError
from models import NATIVE_CURRENCY, AssetMetadata, to_major_units
from publication import AssetPublicationWorkflow, PublicationState
from wallet import WalletAccount

logger = logging.getLogger(__name__)


def _body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def create_app(
    workflow: AssetPublicationWorkflow | None = None,
    wallet: WalletAccount | None = None,
    max_publications: int = 1000,
) -> Flask:
    """
    workflow / wallet を渡さなければ .env の設定から組み立てる（プロセスに1つ）。

    publication はプロセス内にだけ保持する。max_publications を超えたら
    完了済みのものから古い順に捨てる。失敗・実行中のものは resume 用に残す。
    """
    load_dotenv()
    if wallet is None:
        keystore_path = os.getenv("VOICE_KEYSTORE_PATH")
        if keystore_path and os.path.isfile(keystore_path):
            wallet = WalletAccount.from_keystore_file(keystore_path)
        else:
            wallet = WalletAccount()
    if workflow is None:
        workflow = AssetPublicationWorkflow.from_config(MarketConfig.from_env(), wallet)

    app = Flask(__name__)
    publications: "OrderedDict[str, PublicationState]" = OrderedDict()
    publications_lock = threading.Lock()

    def remember(state: PublicationState) -> None:
        with publications_lock:
            publications[state.publication_id] = state
            for pid in [pid for pid, s in publications.items() if s.completed]:
                if len(publications) <= max_publications:
                    break
                del publications[pid]

    @app.errorhandler(ValidationError)
    def on_validation_error(ex):
        return jsonify({"error": str(ex), "field": getattr(ex, "field", None)}), 400

    @app.errorhandler(InvalidPassphrase)
    def on_invalid_passphrase(ex):
        return jsonify({"error": str(ex)}), 401

    @app.errorhandler(WalletError)
    def on_wallet_error(ex):
        return jsonify({"error": f"{type(ex).__name__}: {ex}"}), 409

    @app.errorhandler(PublicationError)
    def on_publication_error(ex):
        body = {"error": str(ex), "atStep": ex.at_step.value}
        if ex.state is not None:
            body["publication"] = ex.state.to_dict()
        return jsonify(body), 502

    @app.errorhandler(InvalidAddress)
    def on_invalid_address(ex):
        return jsonify({"error": str(ex), "field": "address"}), 400

    @app.errorhandler(ChainError)
    def on_chain_error(ex):
        return jsonify({"error": str(ex)}), 502

    @app.route("/wallet", methods=["POST"])
    def create_wallet():
        account = wallet.create(str(_body().get("passphrase") or ""))
        return jsonify({"address": account.address}), 201

    @app.route("/wallet/unlock", methods=["POST"])
    def unlock_wallet():
        account = wallet.unlock(str(_body().get("passphrase") or ""))
        return jsonify({"address": account.address})

    @app.route("/wallet/lock", methods=["POST"])
    def lock_wallet():
        wallet.lock()
        return "", 204

    @app.route("/publications", methods=["POST"])
    def create_publication():
        data = _body()
        try:
            metadata = AssetMetadata.from_dict(data["metadata"])
            royalty = data["royaltyPercent"]
            price = data["price"]
        except ValidationError:
            raise
        except (KeyError, TypeError, ValueError) as ex:
            raise ValidationError(f"missing or malformed field: {ex}") from ex

        req = workflow.prepare(metadata, royalty, price, data.get("currency") or NATIVE_CURRENCY)
        state = PublicationState(req)
        remember(state)

        workflow.resume(state)
        return jsonify(state.to_dict()), 201

    @app.route("/publications/<publication_id>", methods=["GET"])
    def get_publication(publication_id):
        state = publications.get(publication_id)
        if state is None:
            return jsonify({"error": "no such publication"}), 404
        return jsonify(state.to_dict())

    @app.route("/publications/<publication_id>/resume", methods=["POST"])
    def resume_publication(publication_id):
        state = publications.get(publication_id)
        if state is None:
            return jsonify({"error": "no such publication"}), 404
        workflow.resume(state)
        return jsonify(state.to_dict())

    @app.route("/earnings/<address>", methods=["GET"])
    def get_earnings(address):
        amount = workflow.gateway.earnings(address)
        return jsonify({"address": address, "amount": str(to_major_units(amount)), "amountInSmallestUnit": str(amount)})

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    create_app().run(debug=os.getenv("FLASK_DEBUG") == "1")
