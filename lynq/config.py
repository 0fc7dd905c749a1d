"""Configuration loading from environment variables."""

from __future__ import annotations

import os
import re

from lynq.models.config import APIConfig, ControllerConfig, LogConfig, LynqConfig


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"LYNQ_{key}", default)


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_field_manager(value: str) -> str:
    if not re.match(r"^[a-zA-Z0-9][a-zA-Z0-9._-]{0,127}$", value):
        raise ValueError(f"Invalid field manager name: {value}")
    return value


def _validate_namespace(value: str) -> str:
    if value and not re.match(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$", value):
        raise ValueError(f"Invalid namespace: {value}")
    return value


def load_config() -> LynqConfig:
    """Load configuration from LYNQ_* environment variables."""
    return LynqConfig(
        controller=ControllerConfig(
            watch_namespace=_validate_namespace(_env("WATCH_NAMESPACE", "")),
            node_concurrency=_env_int("NODE_CONCURRENCY", 10, min_val=1, max_val=100),
            form_concurrency=_env_int("FORM_CONCURRENCY", 2, min_val=1, max_val=20),
            hub_concurrency=_env_int("HUB_CONCURRENCY", 2, min_val=1, max_val=20),
            resync_seconds=_env_int("RESYNC_SECONDS", 30, min_val=5, max_val=3600),
            readiness_poll_seconds=_env_int("READINESS_POLL_SECONDS", 5, min_val=1, max_val=60),
            status_update_retries=_env_int("STATUS_UPDATE_RETRIES", 5, min_val=1, max_val=20),
            field_manager=_validate_field_manager(_env("FIELD_MANAGER", "lynq")),
            default_timeout_seconds=_env_int("DEFAULT_TIMEOUT_SECONDS", 300, min_val=1, max_val=3600),
        ),
        api=APIConfig(
            port=_env_int("API_PORT", 8080, min_val=1024, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
