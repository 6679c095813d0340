from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from controller.src.refs import MIN_SYNC_PERIOD_SECONDS


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:    Namespace to watch, or ``None`` to watch all namespaces.
        worker_count: Number of reconcile worker threads.
        health_port:  Port for ``/healthz``, ``/readyz`` and ``/metrics``.
        default_sync_period_seconds: Requeue period for Apps without ``spec.syncPeriod``.
        log_level:    Root logger level name.
    """

    namespace: str | None
    worker_count: int
    health_port: int
    default_sync_period_seconds: int
    log_level: str


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``: namespace to watch (empty: all namespaces).
        ``WORKER_COUNT``: reconcile worker threads (``4``).
        ``HEALTH_PORT``: health/metrics port (``8080``).
        ``DEFAULT_SYNC_PERIOD_SECONDS``: periodic requeue (``30``).
        ``LOG_LEVEL``: root log level (``INFO``).
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "").strip() or None

    log_level = values.get("LOG_LEVEL", "INFO").strip().upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"LOG_LEVEL must be a standard logging level, got: {log_level!r}")

    return ControllerConfig(
        namespace=namespace,
        worker_count=env_int("WORKER_COUNT", 4, minimum=1, maximum=64, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        default_sync_period_seconds=env_int(
            "DEFAULT_SYNC_PERIOD_SECONDS", 30, minimum=MIN_SYNC_PERIOD_SECONDS, env=values
        ),
        log_level=log_level,
    )
