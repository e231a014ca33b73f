import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "SCM_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

_INT_KEYS = (
    "port",
    "openai_max_output_tokens",
    "max_tool_calls",
    "max_tool_bytes",
    "catalog_ttl_s",
    "entity_cache_ttl_s",
)
_BOOL_KEYS = ("mock_mode", "gateway_debug")
_CSV_KEYS = ("agent_api_keys", "cors_allowed_origins")
_SECRET_KEYS = ("openai_api_key", "gateway_api_key")


class AppSettings(BaseModel):
    # LLM provider (OpenAI-compatible chat completions)
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_max_output_tokens: Optional[int] = None
    mock_mode: bool = False

    # Tool gateway
    gateway_base_url: str = "https://tool-gateway.citypost.us"
    gateway_api_key: Optional[str] = None
    gateway_timeout_s: float = 30.0
    gateway_debug: bool = False

    # Orchestration budgets and cache lifetimes
    max_tool_calls: int = 6
    max_tool_bytes: int = 1_000_000
    catalog_ttl_s: int = 120
    entity_cache_ttl_s: int = 600

    database_path: str = "chat_data.db"
    host: str = "0.0.0.0"
    port: int = 8091
    agent_api_keys: List[str] = Field(default_factory=list)
    cors_allowed_origins: List[str] = Field(default_factory=list)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in _SECRET_KEYS:
            if data.get(key):
                data[key] = "********"
        if data.get("agent_api_keys"):
            data["agent_api_keys"] = ["********" for _ in data["agent_api_keys"]]
        return data

    model_config = {"protected_namespaces": ()}


def _split_csv(value: str) -> List[str]:
    return [part.strip() for part in str(value).split(",") if part.strip()]


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "openai_base_url": os.getenv("OPENAI_BASE_URL"),
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "openai_model": os.getenv("OPENAI_MODEL"),
        "openai_max_output_tokens": os.getenv("OPENAI_MAX_OUTPUT_TOKENS"),
        "mock_mode": os.getenv("MOCK_MODE"),
        "gateway_base_url": os.getenv("TOOL_GATEWAY_BASE_URL"),
        "gateway_api_key": os.getenv("TOOL_GATEWAY_API_KEY"),
        "gateway_debug": os.getenv("GATEWAY_DEBUG"),
        "max_tool_calls": os.getenv("MAX_TOOL_CALLS"),
        "max_tool_bytes": os.getenv("MAX_TOOL_BYTES"),
        "catalog_ttl_s": os.getenv("CATALOG_TTL_S"),
        "entity_cache_ttl_s": os.getenv("ENTITY_CACHE_TTL_S"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "agent_api_keys": os.getenv("AGENT_API_KEYS"),
        "cors_allowed_origins": os.getenv("CORS_ALLOWED_ORIGINS"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_KEYS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _BOOL_KEYS:
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
    for key in _CSV_KEYS:
        if key in cleaned:
            cleaned[key] = _split_csv(cleaned[key])
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
    # Secrets are usually only in the environment; backfill them when config.json leaves them empty.
    for key in _SECRET_KEYS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    for key in _CSV_KEYS:
        if isinstance(merged.get(key), str):
            merged[key] = _split_csv(merged[key])
    return AppSettings(**merged)
