from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_PROTECTED_PREFIXES = "kubernetes.io"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        protected_prefixes: Substrings that make a label key unmanageable.
        health_port: Port for ``/healthz``, ``/readyz`` and ``/metrics``.
        max_retry_backoff_seconds: Cap on the per-key retry delay.
        watch_timeout_seconds: Server-side timeout of each watch request.
    """

    protected_prefixes: tuple[str, ...]
    health_port: int = 8080
    max_retry_backoff_seconds: int = 30
    watch_timeout_seconds: int = 30


def parse_prefixes(value: str) -> tuple[str, ...]:
    """Split a comma-separated prefix list, dropping blanks.

    A blank entry would otherwise be a substring of every key and block all
    labels.
    """
    return tuple(part.strip() for part in value.split(",") if part.strip())


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
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
        ``PROTECTED_PREFIXES``        comma-separated substrings (``kubernetes.io``).
        ``HEALTH_PORT``               health server port (``8080``).
        ``MAX_RETRY_BACKOFF_SECONDS`` retry delay cap (``30``).
        ``WATCH_TIMEOUT_SECONDS``     watch request timeout (``30``).
    """
    values = env if env is not None else os.environ

    protected_prefixes = parse_prefixes(
        values.get("PROTECTED_PREFIXES", DEFAULT_PROTECTED_PREFIXES)
    )

    return ControllerConfig(
        protected_prefixes=protected_prefixes,
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        max_retry_backoff_seconds=env_int(values, "MAX_RETRY_BACKOFF_SECONDS", 30, minimum=1),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
    )
