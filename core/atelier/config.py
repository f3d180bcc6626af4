"""Shared atelier configuration utilities.

Centralises reading of ~/.atelier/configuration.json so the runtime, the
webhook server and the CLI share one implementation. Secrets come from the
environment first and the file second.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

ATELIER_CONFIG_FILE = Path.home() / ".atelier" / "configuration.json"

DEFAULT_NODE_TIMEOUT_MS = 30_000
DEFAULT_CALLBACK_MAX_SKEW_MS = 5 * 60 * 1000
DEFAULT_CALLBACK_PATH = "/api/callbacks/steps"


def get_config_path() -> Path:
    """Return the config file path, honouring the ATELIER_CONFIG override."""
    override = os.environ.get("ATELIER_CONFIG")
    return Path(override) if override else ATELIER_CONFIG_FILE


def get_atelier_config() -> dict[str, Any]:
    """Load atelier configuration from disk. Missing or invalid files yield {}."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_callback_secret() -> str | None:
    """Return the HMAC secret shared with external workers."""
    for env_var in ("ATELIER_CALLBACK_SECRET", "INTERNAL_CALLBACK_SECRET"):
        value = os.environ.get(env_var)
        if value:
            return value
    return get_atelier_config().get("callback", {}).get("secret") or None


def get_callback_max_skew_ms() -> int:
    return int(
        get_atelier_config().get("callback", {}).get("max_skew_ms", DEFAULT_CALLBACK_MAX_SKEW_MS)
    )


def get_default_timeout_ms() -> int:
    engine = get_atelier_config().get("engine", {})
    return int(engine.get("default_timeout_ms", DEFAULT_NODE_TIMEOUT_MS))


def get_provider_endpoints() -> dict[str, str]:
    """Return the providerRef -> URL map used by the HTTP provider client."""
    endpoints = get_atelier_config().get("providers", {})
    return {str(k): str(v) for k, v in endpoints.items()} if isinstance(endpoints, dict) else {}


def get_knowledge_endpoint() -> str | None:
    return get_atelier_config().get("knowledge", {}).get("endpoint") or None


def get_tool_endpoints() -> dict[str, Any]:
    """Return the endpointRef -> tool server map (a URL, or an object with url and authToken)."""
    endpoints = get_atelier_config().get("tools", {})
    return dict(endpoints) if isinstance(endpoints, dict) else {}


# ---------------------------------------------------------------------------
# Typed configs
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Execution engine defaults. Per-pipeline settings override these."""

    default_timeout_ms: int = field(default_factory=get_default_timeout_ms)
    allow_cycles: bool = False
    max_loop_iterations: int = 100
    default_error_handling: str = "stop"
    default_join_strategy: str = "ALL"


@dataclass
class CallbackConfig:
    """Settings for verifying completion callbacks from external workers."""

    secret: str | None = field(default_factory=get_callback_secret)
    max_skew_ms: int = field(default_factory=get_callback_max_skew_ms)
    path: str = DEFAULT_CALLBACK_PATH


@dataclass
class WebhookServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080
