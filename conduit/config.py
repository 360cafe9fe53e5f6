import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "CONDUIT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("api_key", "openai_api_key", "anthropic_api_key", "google_api_key")


def _default_tools_enabled() -> Dict[str, bool]:
    return {
        "web_search": True,
        "url_reader": True,
        "file_system": True,
        "execute_code": True,
        "google_calendar": True,
        "notion": True,
        "github": True,
    }


class AppSettings(BaseModel):
    # Local inference
    ollama_url: str = "http://localhost:11434"
    local_image_max_side: int = 1024
    local_image_quality: int = 85

    # Cloud endpoints
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_base_url: str = "https://api.anthropic.com"
    google_base_url: str = "https://generativelanguage.googleapis.com"
    anthropic_version: str = "2023-06-01"
    anthropic_max_tokens: int = 4096

    # Credentials; api_key is the shared fallback
    api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    google_api_key: Optional[str] = None

    preferred_model_id: str = "gpt-3.5-turbo"
    request_timeout_s: float = 120.0
    stream_connect_timeout_s: float = 30.0
    max_retries: int = 2
    retry_base_delay_s: float = 1.0

    tools_enabled: Dict[str, bool] = Field(default_factory=_default_tools_enabled)
    stream_max_iterations: int = 3
    send_max_iterations: int = 5

    vault_path: Optional[str] = None
    database_path: str = "conduit.db"
    host: str = "0.0.0.0"
    port: int = 8000

    def api_key_for(self, provider: str) -> Optional[str]:
        specific = {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.google_api_key,
        }.get(provider)
        return specific or self.api_key

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "ollama_url": os.getenv("OLLAMA_URL"),
        "openai_base_url": os.getenv("OPENAI_BASE_URL"),
        "anthropic_base_url": os.getenv("ANTHROPIC_BASE_URL"),
        "google_base_url": os.getenv("GOOGLE_BASE_URL"),
        "api_key": os.getenv("CONDUIT_API_KEY"),
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "anthropic_api_key": os.getenv("ANTHROPIC_API_KEY"),
        "google_api_key": os.getenv("GOOGLE_API_KEY"),
        "preferred_model_id": os.getenv("PREFERRED_MODEL_ID"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "max_retries": os.getenv("MAX_RETRIES"),
        "retry_base_delay_s": os.getenv("RETRY_BASE_DELAY_S"),
        "local_image_max_side": os.getenv("LOCAL_IMAGE_MAX_SIDE"),
        "local_image_quality": os.getenv("LOCAL_IMAGE_QUALITY"),
        "vault_path": os.getenv("VAULT_PATH"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("max_retries", "local_image_max_side", "local_image_quality", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("request_timeout_s", "retry_base_delay_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    tools_enabled = _default_tools_enabled()
    tools_enabled.update(merged.get("tools_enabled") or {})
    merged["tools_enabled"] = tools_enabled
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
