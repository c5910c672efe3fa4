"""
Collector daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded IPs or paths beyond container defaults.

CHANGELOG:
- 2026-10-09: Add REGISTER_MAP_PATH (STORY-011)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from typing import Literal

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from collector.src.registers import (
    DEFAULT_REGISTER_MAP,
    MAX_WORDS_PER_REQUEST,
    RegisterMap,
    load_register_map,
)


class CollectorSettings(BaseSettings):
    """Collector configuration for the three-phase power analyzer.

    All values are loaded from environment variables. Required variables
    must be set; optional variables have sensible defaults.

    Attributes:
        analyzer_host: Analyzer IP address / hostname.  ``POWER_ANALYZER_IP``
            is accepted as an alternative variable name.
        analyzer_port: Modbus TCP port (default 502).
        analyzer_unit_id: Modbus unit / slave ID (default 1).
        register_table: ``"holding"`` (FC 0x03) or ``"input"`` (FC 0x04).
        poll_interval_s: Seconds between poll cycle starts.
        connect_timeout_s: Timeout for establishing the TCP connection.
        request_timeout_s: Timeout for each read request.
        inter_request_delay_ms: Milliseconds between the block reads of one
            poll cycle.
        max_words_per_request: Upper bound on words per read request.
        max_gap_words: Unused words a read block may bridge.
        register_map_path: Optional JSON register map replacing the built-in.
        max_delta_wh: Largest plausible energy increment per poll interval.
        rebaseline_after: Consecutive rejected readings before re-seeding the
            counter baseline.
        base_backoff_s: First backoff delay after a transport failure.
        max_backoff_s: Cap for the exponential backoff.
        db_path: SQLite file for the time-series store.
        store_retries: Retries for a transiently failing store write.
        health_path: Health JSON file path.
        log_level: Root log level.
    """

    analyzer_host: str = Field(
        validation_alias=AliasChoices("analyzer_host", "power_analyzer_ip"),
    )
    analyzer_port: int = 502
    analyzer_unit_id: int = 1
    register_table: Literal["holding", "input"] = "holding"
    poll_interval_s: float = 10.0
    connect_timeout_s: float = 5.0
    request_timeout_s: float = 3.0
    inter_request_delay_ms: int = 20
    max_words_per_request: int = MAX_WORDS_PER_REQUEST
    max_gap_words: int = 0
    register_map_path: str | None = None
    max_delta_wh: float = 10_000.0
    rebaseline_after: int = 3
    base_backoff_s: float = 1.0
    max_backoff_s: float = 60.0
    db_path: str = "/data/energy.db"
    store_retries: int = 3
    health_path: str = "/data/health.json"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("analyzer_host")
    @classmethod
    def analyzer_host_must_be_set(cls, v: str) -> str:
        """Reject an empty host."""
        v = v.strip()
        if not v:
            raise ValueError("ANALYZER_HOST must not be empty")
        return v

    @field_validator("analyzer_port")
    @classmethod
    def analyzer_port_must_be_valid(cls, v: int) -> int:
        """Validate Modbus TCP port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("ANALYZER_PORT must be between 1 and 65535")
        return v

    @field_validator("analyzer_unit_id")
    @classmethod
    def analyzer_unit_id_must_be_valid(cls, v: int) -> int:
        """Validate Modbus unit ID is in valid range (1-247)."""
        if v < 1 or v > 247:
            raise ValueError("ANALYZER_UNIT_ID must be between 1 and 247")
        return v

    @field_validator("poll_interval_s")
    @classmethod
    def poll_interval_must_be_at_least_one_second(cls, v: float) -> float:
        """Sub-second polling is not supported."""
        if v < 1:
            raise ValueError("POLL_INTERVAL_S must be >= 1")
        return v

    @field_validator("connect_timeout_s", "request_timeout_s", "max_delta_wh", "base_backoff_s")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        """Timeouts, the delta limit and backoff must be > 0."""
        if v <= 0:
            raise ValueError("value must be > 0")
        return v

    @field_validator("inter_request_delay_ms", "max_gap_words", "store_retries")
    @classmethod
    def must_be_non_negative(cls, v: int) -> int:
        """Delays, gaps and retry counts must be >= 0."""
        if v < 0:
            raise ValueError("value must be >= 0")
        return v

    @field_validator("max_words_per_request")
    @classmethod
    def max_words_must_fit_modbus(cls, v: int) -> int:
        """Validate the per-request word limit against the Modbus maximum."""
        if v < 1 or v > MAX_WORDS_PER_REQUEST:
            raise ValueError(
                f"MAX_WORDS_PER_REQUEST must be between 1 and {MAX_WORDS_PER_REQUEST}"
            )
        return v

    @field_validator("rebaseline_after")
    @classmethod
    def rebaseline_after_must_be_positive(cls, v: int) -> int:
        """At least one rejection must precede a rebaseline."""
        if v < 1:
            raise ValueError("REBASELINE_AFTER must be >= 1")
        return v

    @model_validator(mode="after")
    def _backoff_cap_not_below_base(self) -> "CollectorSettings":
        """The backoff cap cannot be lower than the first delay."""
        if self.max_backoff_s < self.base_backoff_s:
            raise ValueError("MAX_BACKOFF_S must be >= BASE_BACKOFF_S")
        return self

    def register_map(self) -> RegisterMap:
        """Return the configured register map (JSON file or built-in)."""
        if self.register_map_path:
            return load_register_map(self.register_map_path)
        return DEFAULT_REGISTER_MAP

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "populate_by_name": True,
    }
