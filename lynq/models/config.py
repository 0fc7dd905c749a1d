"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ControllerConfig:
    """Reconciler and work-queue configuration."""

    watch_namespace: str = ""  # empty = all namespaces
    node_concurrency: int = 10
    form_concurrency: int = 2
    hub_concurrency: int = 2
    resync_seconds: int = 30
    readiness_poll_seconds: int = 5
    status_update_retries: int = 5
    field_manager: str = "lynq"
    default_timeout_seconds: int = 300


@dataclass
class APIConfig:
    """Probe / metrics / webhook HTTP server configuration."""

    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class LynqConfig:
    """Top-level Lynq configuration."""

    controller: ControllerConfig = field(default_factory=ControllerConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
