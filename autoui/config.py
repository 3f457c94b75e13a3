# autoui/config.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import commentjson
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

load_dotenv()

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DIRECT_API_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_RELAY_URL = "http://localhost:3001/api/chat"

ApiMode = Literal["none", "direct", "relay"]


class ConfigError(ValueError):
    pass


class RuntimeConfig(BaseModel):
    """
    How the runtime reaches the model and where it keeps its durable rows.

    api_mode:
    - "none":   transport short-circuits with a fixed error, no network call
    - "direct": POST to the provider endpoint with the api key headers
    - "relay":  POST the same body to relay_url, credentials held server side
    """

    api_mode: ApiMode = "none"
    api_key: str = ""
    relay_url: str = DEFAULT_RELAY_URL
    direct_url: str = DIRECT_API_URL
    model: str = DEFAULT_MODEL
    max_tokens: int = Field(default=8192, gt=0)
    timeout: float = Field(default=120.0, gt=0)
    database_url: str = ""


#! ENV

_ENV_KEYS: Dict[str, str] = {
    "api_mode": "AUTOUI_API_MODE",
    "api_key": "ANTHROPIC_API_KEY",
    "relay_url": "AUTOUI_RELAY_URL",
    "model": "AUTOUI_MODEL",
    "max_tokens": "AUTOUI_MAX_TOKENS",
    "timeout": "AUTOUI_TIMEOUT",
    "database_url": "DATABASE_URL",
}


def _env_overrides() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for field_name, env_name in _ENV_KEYS.items():
        value = os.getenv(env_name)
        if value is not None and value.strip() != "":
            out[field_name] = value.strip()
    return out


#! FILE

def _load_config_file(cfg_path: Path) -> Dict[str, Any]:
    """
    Load overrides from a JSON-with-comments file.
    Fails fast if the file is missing or carries keys we do not know.
    """
    if not cfg_path.exists():
        raise ConfigError(f"Runtime config file not found at '{cfg_path}'.")

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    if not isinstance(data, dict):
        raise ConfigError(f"Runtime config file '{cfg_path}' must contain a JSON object")

    unknown = sorted(set(data.keys()) - set(RuntimeConfig.model_fields.keys()))
    if unknown:
        raise ConfigError(f"Runtime config file '{cfg_path}' has unknown keys: {unknown}")
    return data


def load_runtime_config(config_path: Optional[str] = None, **overrides: Any) -> RuntimeConfig:
    """
    Precedence (lowest to highest): defaults, environment, config file
    (config_path or AUTOUI_CONFIG_PATH), explicit keyword overrides.
    """
    values: Dict[str, Any] = _env_overrides()

    path = config_path or os.getenv("AUTOUI_CONFIG_PATH")
    if path:
        values.update(_load_config_file(Path(path)))

    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return RuntimeConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid runtime configuration: {e}") from e
