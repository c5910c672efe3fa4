"""
Shared test fixtures for collector tests.

Provides environment variable fixtures for CollectorSettings configuration
tests. All collector env vars are cleaned before each test to ensure
isolation.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import pytest

# All CollectorSettings environment variable names, used for cleanup.
_ALL_COLLECTOR_ENV_VARS = (
    "ANALYZER_HOST",
    "POWER_ANALYZER_IP",
    "ANALYZER_PORT",
    "ANALYZER_UNIT_ID",
    "REGISTER_TABLE",
    "POLL_INTERVAL_S",
    "CONNECT_TIMEOUT_S",
    "REQUEST_TIMEOUT_S",
    "INTER_REQUEST_DELAY_MS",
    "MAX_WORDS_PER_REQUEST",
    "MAX_GAP_WORDS",
    "REGISTER_MAP_PATH",
    "MAX_DELTA_WH",
    "REBASELINE_AFTER",
    "BASE_BACKOFF_S",
    "MAX_BACKOFF_S",
    "DB_PATH",
    "STORE_RETRIES",
    "HEALTH_PATH",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_collector_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all collector env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_COLLECTOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all environment variables for CollectorSettings except the map path.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "ANALYZER_HOST": "192.168.1.50",
        "ANALYZER_PORT": "5020",
        "ANALYZER_UNIT_ID": "3",
        "REGISTER_TABLE": "input",
        "POLL_INTERVAL_S": "15",
        "CONNECT_TIMEOUT_S": "4",
        "REQUEST_TIMEOUT_S": "2",
        "INTER_REQUEST_DELAY_MS": "50",
        "MAX_WORDS_PER_REQUEST": "64",
        "MAX_GAP_WORDS": "8",
        "MAX_DELTA_WH": "2500",
        "REBASELINE_AFTER": "5",
        "BASE_BACKOFF_S": "2",
        "MAX_BACKOFF_S": "120",
        "DB_PATH": "/tmp/test-energy.db",
        "STORE_RETRIES": "1",
        "HEALTH_PATH": "/tmp/test-health.json",
        "LOG_LEVEL": "DEBUG",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones).

    Optional variables should fall back to their defaults.
    """
    env = {"ANALYZER_HOST": "10.0.0.50"}
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
