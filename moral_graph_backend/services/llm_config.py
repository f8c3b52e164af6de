"""LLM backend settings: environment defaults plus per-run overrides."""

import os
from typing import Any, Callable, Dict, Optional

from moral_graph_backend.config import ONLINE_CHAT_MODEL

DEFAULT_LOCAL_LLM_BASE_URL = "http://localhost:1234"
LLM_MODES = ("online", "local")
MIN_TIMEOUT_SECONDS = 30.0

_TRUTHY = {"1", "true", "yes", "on"}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


_COERCE: Dict[str, Callable[[Any], Any]] = {
    "json_mode": _as_bool,
    "timeout_seconds": float,
    "temperature": float,
    "max_tokens": int,
}


def get_env_llm_defaults() -> Dict[str, Any]:
    return {
        "mode": os.getenv("DEFAULT_LLM_MODE", "online"),
        "base_url": os.getenv("LOCAL_LLM_BASE_URL", DEFAULT_LOCAL_LLM_BASE_URL),
        "chat_model": os.getenv("LOCAL_LLM_CHAT_MODEL", "qwen2.5-14b-instruct"),
        "online_model": ONLINE_CHAT_MODEL,
        "json_mode": _as_bool(os.getenv("LOCAL_LLM_JSON_MODE", "true")),
        "timeout_seconds": float(os.getenv("LLM_TIMEOUT_SECONDS", "120")),
        "temperature": float(os.getenv("LLM_TEMPERATURE", "0.2")),
        "max_tokens": int(os.getenv("LLM_MAX_TOKENS", "4000")),
    }


def merge_llm_config(overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Layer `overrides` over the environment defaults.

    An unknown mode falls back to the default mode; the timeout never drops
    below MIN_TIMEOUT_SECONDS.
    """
    config = get_env_llm_defaults()
    for key, value in (overrides or {}).items():
        if key == "mode":
            mode = str(value).strip().lower()
            config["mode"] = mode if mode in LLM_MODES else config["mode"]
        elif key in _COERCE:
            config[key] = _COERCE[key](value)
        else:
            config[key] = value

    if overrides:
        config["timeout_seconds"] = max(float(config["timeout_seconds"]), MIN_TIMEOUT_SECONDS)
    return config
