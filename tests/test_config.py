import json

from conduit.config import AppSettings, load_settings, save_settings


def clear_env(monkeypatch):
    for key in ("OLLAMA_URL", "OPENAI_API_KEY", "CONDUIT_API_KEY", "CONDUIT_ENV_OVERRIDES_CONFIG", "MAX_RETRIES"):
        monkeypatch.delenv(key, raising=False)


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    clear_env(monkeypatch)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"ollama_url": "http://config"}))
    monkeypatch.setenv("OLLAMA_URL", "http://env")
    settings = load_settings(config_path=config_path)
    assert settings.ollama_url == "http://config"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    clear_env(monkeypatch)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"ollama_url": "http://config"}))
    monkeypatch.setenv("OLLAMA_URL", "http://env")
    monkeypatch.setenv("CONDUIT_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.ollama_url == "http://env"


def test_env_secret_fills_blank_config_key(tmp_path, monkeypatch):
    clear_env(monkeypatch)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"openai_api_key": ""}))
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("MAX_RETRIES", "4")
    settings = load_settings(config_path=config_path)
    assert settings.openai_api_key == "sk-env"
    assert settings.max_retries == 4


def test_tools_enabled_merges_with_defaults(tmp_path, monkeypatch):
    clear_env(monkeypatch)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"tools_enabled": {"github": False}}))
    settings = load_settings(config_path=config_path)
    assert settings.tools_enabled["github"] is False
    assert settings.tools_enabled["web_search"] is True


def test_api_key_falls_back_to_shared_key():
    settings = AppSettings(api_key="shared", anthropic_api_key="anthropic-only")
    assert settings.api_key_for("anthropic") == "anthropic-only"
    assert settings.api_key_for("google") == "shared"
    assert settings.api_key_for("ollama") == "shared"


def test_safe_dict_masks_only_set_secrets():
    data = AppSettings(openai_api_key="sk").to_safe_dict()
    assert data["openai_api_key"] == "********"
    assert data["google_api_key"] is None


def test_save_then_load_round_trips(tmp_path, monkeypatch):
    clear_env(monkeypatch)
    config_path = tmp_path / "config.json"
    save_settings(AppSettings(preferred_model_id="gemini-2.5-flash", port=9000), config_path=config_path)
    settings = load_settings(config_path=config_path)
    assert settings.preferred_model_id == "gemini-2.5-flash"
    assert settings.port == 9000
