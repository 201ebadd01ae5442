"""Tests for Settings and environment overrides."""

import pytest

from pytaxis.config import Settings


def test_defaults():
    settings = Settings()
    assert settings.worker_parallelism == 8
    assert settings.heartbeat_grace == 30.0
    assert settings.max_deliveries == 5


def test_from_env_converts_types_and_ignores_unknown():
    settings = Settings.from_env(
        {
            "PYTAXIS_WORKER_PARALLELISM": "32",
            "PYTAXIS_HEARTBEAT_GRACE": "45.5",
            "PYTAXIS_UNKNOWN": "x",
            "WORKER_PARALLELISM": "1",
        }
    )

    assert settings.worker_parallelism == 32
    assert settings.heartbeat_grace == 45.5
    assert settings.executor_parallelism == Settings().executor_parallelism


def test_from_env_rejects_bad_values():
    with pytest.raises(ValueError, match="PYTAXIS_MAX_DELIVERIES"):
        Settings.from_env({"PYTAXIS_MAX_DELIVERIES": "many"})


def test_from_env_reads_process_environment(monkeypatch):
    monkeypatch.setenv("PYTAXIS_LEASE_TTL", "12")
    assert Settings.from_env().lease_ttl == 12.0


def test_with_overrides_returns_a_copy():
    base = Settings()
    tuned = base.with_overrides(poll_interval=0.1)

    assert tuned.poll_interval == 0.1
    assert base.poll_interval == 1.0
