import json

import pytest

import main
from errors import NetworkError
from publication import AssetPublicationWorkflow
from wallet import WalletAccount

from conftest import FakeGateway

PASSPHRASE = "cli passphrase"
KNOWN_KEY = "0x" + "4c" * 32


class FastWallet(WalletAccount):
    def __init__(self, keystore=None, kdf="pbkdf2", iterations=1000):
        super().__init__(keystore, kdf, iterations)


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.setattr("main.load_dotenv", lambda: None)
    monkeypatch.setattr("config.load_dotenv", lambda: None)
    monkeypatch.setattr("main.WalletAccount", FastWallet)
    monkeypatch.setenv("VOICE_WALLET_PASSPHRASE", PASSPHRASE)
    monkeypatch.setenv("ETH_RPC_URL", "http://127.0.0.1:8545")
    monkeypatch.setenv("VOICE_NFT_CONTRACT_ADDRESS", "0x" + "11" * 20)
    monkeypatch.setenv("VOICE_MARKETPLACE_ADDRESS", "0x" + "22" * 20)
    monkeypatch.setenv("VOICE_METADATA_STORE", "memory")
    return tmp_path


def test_create_wallet_writes_encrypted_keystore(cli_env, monkeypatch, capsys):
    monkeypatch.setenv("ETH_PRIVATE_KEY", KNOWN_KEY)
    path = cli_env / "keystore.json"

    assert main.main(["create-wallet", "--keystore", str(path), "--import-env-key"]) == 0

    keystore = json.loads(path.read_text(encoding="utf-8"))
    assert "4c" * 32 not in json.dumps(keystore)
    restored = WalletAccount(keystore).unlock(PASSPHRASE)
    assert restored.address in capsys.readouterr().out


def test_publish_prints_token_and_hashes(cli_env, monkeypatch, capsys, store, recording):
    keystore = cli_env / "keystore.json"
    assert main.main(["create-wallet", "--keystore", str(keystore)]) == 0

    metadata = cli_env / "metadata.json"
    metadata.write_text(recording.to_json(), encoding="utf-8")

    gateway = FakeGateway()
    opened = []

    def fake_from_config(cfg, wallet):
        opened.append(wallet)
        return AssetPublicationWorkflow(store, gateway, wallet)

    monkeypatch.setattr("main.AssetPublicationWorkflow.from_config", fake_from_config)

    code = main.main(["publish", str(metadata), "--royalty", "2.5", "--price", "0.1", "--keystore", str(keystore)])

    assert code == 0
    out = capsys.readouterr().out
    assert "Token ID : 42" in out
    assert "0xlist0003" in out
    assert gateway.calls == ["mint", "set_royalty", "list"]
    assert opened[0].active_account is None


def test_publish_failure_exits_non_zero(cli_env, monkeypatch, capsys, store, recording):
    keystore = cli_env / "keystore.json"
    main.main(["create-wallet", "--keystore", str(keystore)])
    metadata = cli_env / "metadata.json"
    metadata.write_text(recording.to_json(), encoding="utf-8")
    monkeypatch.setattr(
        "main.AssetPublicationWorkflow.from_config",
        lambda cfg, wallet: AssetPublicationWorkflow(store, FakeGateway(), wallet),
    )

    code = main.main(["publish", str(metadata), "--royalty", "150", "--price", "0.1", "--keystore", str(keystore)])

    assert code == 1
    assert "OutOfRange" in capsys.readouterr().err


def test_key_is_wiped_when_workflow_cannot_be_built(cli_env, monkeypatch, capsys, recording):
    keystore = cli_env / "keystore.json"
    main.main(["create-wallet", "--keystore", str(keystore)])
    metadata = cli_env / "metadata.json"
    metadata.write_text(recording.to_json(), encoding="utf-8")
    unlocked = []

    def unreachable(cfg, wallet):
        unlocked.append(wallet)
        raise NetworkError("Failed to connect RPC: http://127.0.0.1:8545")

    monkeypatch.setattr("main.AssetPublicationWorkflow.from_config", unreachable)

    code = main.main(["publish", str(metadata), "--royalty", "2.5", "--price", "0.1", "--keystore", str(keystore)])

    assert code == 1
    assert unlocked[0].active_account is None
    assert "NetworkError" in capsys.readouterr().err


def test_unreadable_metadata_file_is_reported(cli_env, capsys):
    keystore = cli_env / "keystore.json"
    main.main(["create-wallet", "--keystore", str(keystore)])
    metadata = cli_env / "metadata.json"
    metadata.write_text("{not json", encoding="utf-8")

    code = main.main(["publish", str(metadata), "--royalty", "2.5", "--price", "0.1", "--keystore", str(keystore)])

    assert code == 1
    assert "cannot read metadata" in capsys.readouterr().err


def test_earnings_prints_major_units(cli_env, monkeypatch, capsys):
    class Gateway:
        def earnings(self, address):
            return 1500000000000000000

    monkeypatch.setattr("main.build_gateway", lambda cfg: Gateway())

    assert main.main(["earnings", "0x" + "33" * 20]) == 0
    out = capsys.readouterr().out
    assert "Amount   : 1.5" in out
    assert "Wei      : 1500000000000000000" in out
