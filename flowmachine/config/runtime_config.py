"""Runtime configuration registry.

Provides centralized configuration for storage, the AI provider, directives,
tools, the job queue and the scheduler. Environment variables take precedence
over YAML config, which takes precedence over built-in defaults.

Usage:
    from flowmachine.config.runtime_config import get_setting, get_ai_settings

    max_turns = get_ai_settings().max_turns
    disabled = get_setting("tools.disabled", [])

Environment overrides:
    FLOWMACHINE_CONFIG          Path to an alternative runtime.yaml
    FLOWMACHINE_DB_PATH         storage.db_path
    FLOWMACHINE_FILES_DIR       storage.files_dir
    FLOWMACHINE_AI_PROVIDER     ai.provider
    FLOWMACHINE_AI_MODEL        ai.model
    FLOWMACHINE_AI_MAX_TURNS    ai.max_turns
    FLOWMACHINE_QUEUE_WORKERS   queue.workers
    FLOWMACHINE_LOG_LEVEL       logging.level
    FLOWMACHINE_<PROVIDER>_API_KEY or <PROVIDER>_API_KEY
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

# Hard bounds for the conversation loop
MAX_TURNS_MIN = 1
MAX_TURNS_MAX = 50
DEFAULT_MAX_TURNS = 10

# Env var name per dotted setting path
_ENV_OVERRIDES = {
    "storage.db_path": "FLOWMACHINE_DB_PATH",
    "storage.files_dir": "FLOWMACHINE_FILES_DIR",
    "ai.provider": "FLOWMACHINE_AI_PROVIDER",
    "ai.model": "FLOWMACHINE_AI_MODEL",
    "ai.max_turns": "FLOWMACHINE_AI_MAX_TURNS",
    "queue.workers": "FLOWMACHINE_QUEUE_WORKERS",
    "logging.level": "FLOWMACHINE_LOG_LEVEL",
}


def _config_path() -> Path:
    override = os.environ.get("FLOWMACHINE_CONFIG")
    return Path(override) if override else _DEFAULT_CONFIG_PATH


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    path = _config_path()
    if path.exists():
        with open(path) as f:
            _cached_config = yaml.safe_load(f) or {}
    else:
        _cached_config = _default_config()

    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "storage": {
            "db_path": None,
            "files_dir": "data/files",
            "inline_threshold_bytes": 8192,
        },
        "ai": {
            "provider": "openai",
            "model": "gpt-4o-mini",
            "temperature": 0.2,
            "max_tokens": 1024,
            "max_turns": DEFAULT_MAX_TURNS,
            "timeout_seconds": 60,
            "providers": {
                "openai": {"base_url": "https://api.openai.com/v1"},
                "anthropic": {"base_url": "https://api.anthropic.com/v1", "api_version": "2023-06-01"},
            },
        },
        "directives": {
            "global_system_prompt": "",
            "site_context_enabled": True,
            "site_context": {"site_name": "flowmachine"},
        },
        "tools": {"disabled": []},
        "queue": {
            "workers": 2,
            "poll_interval_seconds": 1.0,
            "visibility_timeout_seconds": 600,
            "max_attempts": 5,
            "retry_backoff_seconds": 30,
            "step_lease_seconds": 3600,
        },
        "scheduler": {"poll_interval_seconds": 30},
        "logging": {"level": "INFO"},
    }


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def _lookup(config: Dict[str, Any], path: str) -> Any:
    node: Any = config
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def get_setting(path: str, fallback: Any = None) -> Any:
    """Get a setting by dotted path, respecting environment overrides.

    Args:
        path: Dotted key such as "queue.workers" or "tools.disabled".
        fallback: Value returned when neither env nor config define it.

    Returns:
        Setting value (env values are returned as strings).
    """
    env_var = _ENV_OVERRIDES.get(path)
    if env_var:
        env_value = os.environ.get(env_var)
        if env_value:
            return env_value

    value = _lookup(_load_config(), path)
    if value is None:
        value = _lookup(_default_config(), path)
    return fallback if value is None else value


def _as_int(value: Any, name: str, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid integer for '%s': %r. Using %d.", name, value, default)
        return default


def _as_float(value: Any, name: str, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid number for '%s': %r. Using %s.", name, value, default)
        return default


def _clamp_max_turns(value: int) -> int:
    """Clamp max_turns to sanity bounds with logging."""
    if value < MAX_TURNS_MIN:
        logger.warning("ai.max_turns %d is below minimum %d. Clamping.", value, MAX_TURNS_MIN)
        return MAX_TURNS_MIN
    if value > MAX_TURNS_MAX:
        logger.warning("ai.max_turns %d exceeds maximum %d. Clamping.", value, MAX_TURNS_MAX)
        return MAX_TURNS_MAX
    return value


# =============================================================================
# Typed views
# =============================================================================


@dataclass
class StorageSettings:
    db_path: Optional[str]
    files_dir: Path
    inline_threshold_bytes: int


@dataclass
class AISettings:
    """Resolved AI provider settings."""

    provider: str
    model: str
    temperature: float
    max_tokens: int
    max_turns: int
    timeout_seconds: float
    base_url: Optional[str]
    api_version: Optional[str]


@dataclass
class QueueSettings:
    workers: int
    poll_interval_seconds: float
    visibility_timeout_seconds: float
    max_attempts: int
    retry_backoff_seconds: float
    step_lease_seconds: float


def get_storage_settings() -> StorageSettings:
    db_path = get_setting("storage.db_path")
    return StorageSettings(
        db_path=str(db_path) if db_path else None,
        files_dir=Path(get_setting("storage.files_dir", "data/files")),
        inline_threshold_bytes=_as_int(
            get_setting("storage.inline_threshold_bytes", 8192), "storage.inline_threshold_bytes", 8192
        ),
    )


def get_ai_settings() -> AISettings:
    provider = str(get_setting("ai.provider", "openai")).lower()
    provider_cfg = get_setting(f"ai.providers.{provider}", {}) or {}
    return AISettings(
        provider=provider,
        model=str(get_setting("ai.model", "gpt-4o-mini")),
        temperature=_as_float(get_setting("ai.temperature", 0.2), "ai.temperature", 0.2),
        max_tokens=_as_int(get_setting("ai.max_tokens", 1024), "ai.max_tokens", 1024),
        max_turns=_clamp_max_turns(
            _as_int(get_setting("ai.max_turns", DEFAULT_MAX_TURNS), "ai.max_turns", DEFAULT_MAX_TURNS)
        ),
        timeout_seconds=_as_float(get_setting("ai.timeout_seconds", 60), "ai.timeout_seconds", 60.0),
        base_url=provider_cfg.get("base_url"),
        api_version=provider_cfg.get("api_version"),
    )


def get_queue_settings() -> QueueSettings:
    return QueueSettings(
        workers=max(1, _as_int(get_setting("queue.workers", 2), "queue.workers", 2)),
        poll_interval_seconds=_as_float(
            get_setting("queue.poll_interval_seconds", 1.0), "queue.poll_interval_seconds", 1.0
        ),
        visibility_timeout_seconds=_as_float(
            get_setting("queue.visibility_timeout_seconds", 600), "queue.visibility_timeout_seconds", 600.0
        ),
        max_attempts=_as_int(get_setting("queue.max_attempts", 5), "queue.max_attempts", 5),
        retry_backoff_seconds=_as_float(
            get_setting("queue.retry_backoff_seconds", 30), "queue.retry_backoff_seconds", 30.0
        ),
        step_lease_seconds=_as_float(
            get_setting("queue.step_lease_seconds", 3600), "queue.step_lease_seconds", 3600.0
        ),
    )


def get_provider_api_key(provider: str) -> Optional[str]:
    """Get the API key for a provider from the environment.

    Environment variable precedence:
    1. FLOWMACHINE_<PROVIDER>_API_KEY
    2. <PROVIDER>_API_KEY (e.g., OPENAI_API_KEY)
    """
    upper = provider.upper()
    return os.environ.get(f"FLOWMACHINE_{upper}_API_KEY") or os.environ.get(f"{upper}_API_KEY")


def get_tool_settings(tool_name: str) -> Dict[str, Any]:
    settings = get_setting(f"tools.{tool_name}", {}) or {}
    return dict(settings) if isinstance(settings, dict) else {}


def get_disabled_tools() -> list:
    return list(get_setting("tools.disabled", []) or [])


def get_log_level() -> int:
    level_name = str(get_setting("logging.level", "INFO")).upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.INFO
