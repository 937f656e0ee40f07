from __future__ import annotations

import dataclasses

import pytest

from labeler.src.config import ConfigError, env_int, load_config, parse_prefixes


def test_defaults() -> None:
    config = load_config({})

    assert config.protected_prefixes == ("kubernetes.io",)
    assert config.health_port == 8080
    assert config.max_retry_backoff_seconds == 30
    assert config.watch_timeout_seconds == 30


def test_reads_values_from_environment() -> None:
    config = load_config(
        {
            "PROTECTED_PREFIXES": "kubernetes.io, k8s.io ,openshift.io",
            "HEALTH_PORT": "9090",
            "MAX_RETRY_BACKOFF_SECONDS": "60",
            "WATCH_TIMEOUT_SECONDS": "120",
        }
    )

    assert config.protected_prefixes == ("kubernetes.io", "k8s.io", "openshift.io")
    assert config.health_port == 9090
    assert config.max_retry_backoff_seconds == 60
    assert config.watch_timeout_seconds == 120


def test_empty_prefix_list_protects_nothing() -> None:
    assert load_config({"PROTECTED_PREFIXES": ""}).protected_prefixes == ()


@pytest.mark.parametrize("value", ["a,,b", " a , ,b ", ",a,b,"])
def test_parse_prefixes_drops_blank_entries(value: str) -> None:
    assert parse_prefixes(value) == ("a", "b")


def test_finalizer_is_not_read_from_environment() -> None:
    config = load_config({"FINALIZER_NAME": "labels.example.io/cleanup"})

    assert "finalizer" not in {field.name for field in dataclasses.fields(config)}


def test_rejects_out_of_range_health_port() -> None:
    with pytest.raises(ConfigError, match="HEALTH_PORT must be <= 65535, got: 70000"):
        load_config({"HEALTH_PORT": "70000"})


def test_rejects_non_integer_values() -> None:
    with pytest.raises(ConfigError, match="WATCH_TIMEOUT_SECONDS must be an integer"):
        load_config({"WATCH_TIMEOUT_SECONDS": "soon"})


def test_env_int_bounds() -> None:
    assert env_int({}, "X", 5, minimum=1) == 5
    assert env_int({"X": "7"}, "X", 5, minimum=1, maximum=10) == 7
    with pytest.raises(ConfigError, match="X must be >= 1, got: 0"):
        env_int({"X": "0"}, "X", 5, minimum=1)
