import json

import pytest

from abis import VOICE_NFT_ABI
from config import MarketConfig, load_abi, looks_like_address
from errors import ConfigError
from models import NATIVE_CURRENCY

VALID_ENV = {
    "ETH_RPC_URL": "http://127.0.0.1:8545",
    "VOICE_NFT_CONTRACT_ADDRESS": "0x" + "ab" * 20,
    "VOICE_MARKETPLACE_ADDRESS": "0x" + "cd" * 20,
    "VOICE_METADATA_STORE": "memory",
}


def test_from_env_reads_values_and_defaults():
    cfg = MarketConfig.from_env(dict(VALID_ENV, ETH_RECEIPT_TIMEOUT="30"))

    assert cfg.rpc_url == "http://127.0.0.1:8545"
    assert cfg.metadata_store == "memory"
    assert cfg.currency_reference == NATIVE_CURRENCY
    assert cfg.ipfs_api_url == "http://127.0.0.1:5001"
    assert cfg.receipt_timeout == 30.0
    assert cfg.gas_limit_min == 300_000


def test_from_env_reports_every_problem_at_once():
    env = {
        "ETH_RPC_URL": "not a url",
        "VOICE_NFT_CONTRACT_ADDRESS": "YOUR_NFT_CONTRACT_ADDRESS",
        "VOICE_METADATA_STORE": "ipfs",
        "IPFS_API_URL": "ftp://127.0.0.1:5001",
    }
    with pytest.raises(ConfigError) as ei:
        MarketConfig.from_env(env)

    problems = "\n".join(ei.value.problems)
    assert "ETH_RPC_URL is not an http(s)/ws(s) URL" in problems
    assert "VOICE_NFT_CONTRACT_ADDRESS is not a 0x-prefixed" in problems
    assert "VOICE_MARKETPLACE_ADDRESS is not set" in problems
    assert "IPFS_API_URL is not an http(s) URL" in problems


def test_from_env_rejects_non_numeric_values():
    with pytest.raises(ConfigError) as ei:
        MarketConfig.from_env(dict(VALID_ENV, ETH_GAS_LIMIT_MIN="lots"))
    assert ei.value.problems == ["ETH_GAS_LIMIT_MIN is not a number: 'lots'"]


def test_from_env_loads_dotenv_when_no_mapping_given(monkeypatch):
    calls = []
    monkeypatch.setattr("config.load_dotenv", lambda: calls.append(True))
    for k, v in VALID_ENV.items():
        monkeypatch.setenv(k, v)

    cfg = MarketConfig.from_env()

    assert calls == [True]
    assert cfg.marketplace_address == VALID_ENV["VOICE_MARKETPLACE_ADDRESS"]


def test_missing_abi_file_is_a_config_problem(tmp_path):
    with pytest.raises(ConfigError):
        MarketConfig.from_env(dict(VALID_ENV, VOICE_NFT_ABI_PATH=str(tmp_path / "missing.json")))


def test_load_abi_accepts_bare_list_and_artifact(tmp_path):
    bare = tmp_path / "bare.json"
    bare.write_text(json.dumps(VOICE_NFT_ABI), encoding="utf-8")
    artifact = tmp_path / "artifact.json"
    artifact.write_text(json.dumps({"contractName": "VoiceNFT", "abi": VOICE_NFT_ABI}), encoding="utf-8")

    assert load_abi(str(bare), []) == VOICE_NFT_ABI
    assert load_abi(str(artifact), []) == VOICE_NFT_ABI
    assert load_abi(None, VOICE_NFT_ABI) is VOICE_NFT_ABI


@pytest.mark.parametrize(
    "value, ok",
    [
        ("0x" + "a" * 40, True),
        ("0x" + "A" * 40, True),
        ("0x" + "a" * 39, False),
        ("a" * 42, False),
        ("0x" + "g" * 40, False),
        ("", False),
    ],
)
def test_looks_like_address(value, ok):
    assert looks_like_address(value) is ok


def test_unreadable_abi_file_is_a_config_error(tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    wrong_shape = tmp_path / "shape.json"
    wrong_shape.write_text(json.dumps({"contractName": "VoiceNFT"}), encoding="utf-8")

    with pytest.raises(ConfigError, match="cannot read ABI file"):
        load_abi(str(broken), [])
    with pytest.raises(ConfigError, match="neither a list"):
        load_abi(str(wrong_shape), [])
