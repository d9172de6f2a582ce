# backend/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from errors import ConfigurationError


@dataclass(frozen=True)
class Settings:
    timeout: float = 10.0
    default_port: str = "443"
    expiry_warning_days: int = 30
    log_level: str = "INFO"
    api_key: str = ""
    max_targets: int = 20


def _get(env: Mapping[str, str], name: str) -> str:
    return str(env.get(name, "") or "").strip()


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(env, name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Read scanner settings from the environment (or the given mapping).

      TLSCAP_TIMEOUT               per-probe timeout in seconds (<= 0 disables it)
      TLSCAP_DEFAULT_PORT          port used when a target has none
      TLSCAP_EXPIRY_WARNING_DAYS   certificate "expiring soon" window
      TLSCAP_LOG_LEVEL             logging level for the API process
      TLSCAP_API_KEY               x-api-key required by the API when set
      TLSCAP_MAX_TARGETS           batch scan size limit
    """
    env = os.environ if env is None else env

    port = _get(env, "TLSCAP_DEFAULT_PORT") or "443"
    if not port.isdigit() or not (0 < int(port) < 65536):
        raise ConfigurationError(f"TLSCAP_DEFAULT_PORT must be a port number, got {port!r}")

    return Settings(
        timeout=_env_float(env, "TLSCAP_TIMEOUT", 10.0),
        default_port=port,
        expiry_warning_days=_env_int(env, "TLSCAP_EXPIRY_WARNING_DAYS", 30),
        log_level=(_get(env, "TLSCAP_LOG_LEVEL") or "INFO").upper(),
        api_key=_get(env, "TLSCAP_API_KEY"),
        max_targets=_env_int(env, "TLSCAP_MAX_TARGETS", 20),
    )


settings = load_settings()
