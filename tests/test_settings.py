import json

import pytest

from app.config import load_settings

ENV_KEYS = (
    "OPENAI_BASE_URL",
    "OPENAI_API_KEY",
    "OPENAI_MAX_OUTPUT_TOKENS",
    "TOOL_GATEWAY_API_KEY",
    "AGENT_API_KEYS",
    "MOCK_MODE",
    "PORT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("SCM_ENV_OVERRIDES_CONFIG", raising=False)


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"openai_base_url": "http://config"}))
    monkeypatch.setenv("OPENAI_BASE_URL", "http://env")
    settings = load_settings(config_path=config_path)
    assert settings.openai_base_url == "http://config"


def test_env_override_when_enabled(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"openai_base_url": "http://config"}))
    monkeypatch.setenv("OPENAI_BASE_URL", "http://env")
    monkeypatch.setenv("SCM_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.openai_base_url == "http://env"


def test_secrets_backfilled_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"gateway_api_key": ""}))
    monkeypatch.setenv("TOOL_GATEWAY_API_KEY", "gw-secret")
    settings = load_settings(config_path=config_path)
    assert settings.gateway_api_key == "gw-secret"


def test_env_types_are_coerced(tmp_path, monkeypatch):
    monkeypatch.setenv("AGENT_API_KEYS", "key-a, key-b,,")
    monkeypatch.setenv("MOCK_MODE", "true")
    monkeypatch.setenv("PORT", "9000")
    monkeypatch.setenv("OPENAI_MAX_OUTPUT_TOKENS", "512")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.agent_api_keys == ["key-a", "key-b"]
    assert settings.mock_mode is True
    assert settings.port == 9000
    assert settings.openai_max_output_tokens == 512


def test_csv_keys_in_config_file(tmp_path):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"cors_allowed_origins": "http://a.test,http://b.test"}))
    settings = load_settings(config_path=config_path)
    assert settings.cors_allowed_origins == ["http://a.test", "http://b.test"]


def test_safe_dict_masks_secrets(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
    monkeypatch.setenv("AGENT_API_KEYS", "key-a")
    data = load_settings(config_path=tmp_path / "missing.json").to_safe_dict()
    assert data["openai_api_key"] == "********"
    assert data["agent_api_keys"] == ["********"]
    assert "sk-secret" not in json.dumps(data)
