"""
Pydantic models for raw, decoded and persisted analyzer samples.

- RawSample: one poll's register words keyed by semantic field name.
- Measurement: decoded physical quantities plus the raw energy counters.
- CumulativeEnergySample: the monotonic energy totals written to the store.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_TOTAL_WH: int = 2**64 - 1
"""Upper bound of a persisted cumulative total (unsigned 64-bit)."""


class RawSample(BaseModel):
    """Unprocessed outcome of one poll cycle.

    Attributes:
        ts: Timestamp taken when the poll started.
        words: Mapping of field name to its raw 16-bit register words.
    """

    model_config = ConfigDict(frozen=True)

    ts: datetime
    words: dict[str, list[int]]


class CounterReading(BaseModel):
    """A raw unsigned energy counter as read from the analyzer.

    Attributes:
        raw: Counter value in device counts.
        width_bits: Register width; the counter wraps at ``2**width_bits``.
        wh_per_count: Energy in Wh represented by one count.
    """

    model_config = ConfigDict(frozen=True)

    raw: int = Field(ge=0)
    width_bits: int = Field(gt=0, le=64)
    wh_per_count: float = Field(gt=0)

    @model_validator(mode="after")
    def _raw_fits_width(self) -> CounterReading:
        if self.raw >= 2**self.width_bits:
            raise ValueError(
                f"raw counter {self.raw} does not fit in {self.width_bits} bits"
            )
        return self


class Measurement(BaseModel):
    """A decoded sample from the three-phase analyzer.

    All values are in engineering units after scaling and type conversion.
    The timestamp is injected by the caller, keeping the decoder pure.

    Attributes:
        ts: Timestamp of the poll.
        voltage_l1_v: Phase 1 to neutral voltage in volts.
        voltage_l2_v: Phase 2 to neutral voltage in volts.
        voltage_l3_v: Phase 3 to neutral voltage in volts.
        current_l1_a: Phase 1 current in amperes.
        current_l2_a: Phase 2 current in amperes.
        current_l3_a: Phase 3 current in amperes.
        active_power_w: Total active power in watts.
            Positive = consumption, negative = production.
        reactive_power_var: Total reactive power in var.
        energy_imported: Raw imported energy counter.
        energy_exported: Raw exported energy counter.
    """

    model_config = ConfigDict(frozen=True)

    ts: datetime
    voltage_l1_v: float = Field(ge=0)
    voltage_l2_v: float = Field(ge=0)
    voltage_l3_v: float = Field(ge=0)
    current_l1_a: float = Field(ge=0)
    current_l2_a: float = Field(ge=0)
    current_l3_a: float = Field(ge=0)
    active_power_w: float
    reactive_power_var: float
    energy_imported: CounterReading
    energy_exported: CounterReading


class CumulativeEnergySample(BaseModel):
    """A persisted point of the monotonic energy series.

    Attributes:
        ts: Timestamp of the poll that produced the sample.
        imported_wh: Total imported energy in Wh since the series baseline.
        exported_wh: Total exported energy in Wh since the series baseline.
    """

    model_config = ConfigDict(frozen=True)

    ts: datetime
    imported_wh: int = Field(ge=0, le=MAX_TOTAL_WH)
    exported_wh: int = Field(ge=0, le=MAX_TOTAL_WH)
