"""
Pure decoder that converts raw analyzer register words into a Measurement.

Takes a RawSample (register words keyed by semantic field name, as assembled
by the transport), applies word order, type conversion (U16/U32/S16/S32),
scaling and range validation, and returns a validated Measurement.

Energy counters are not scaled here: they are handed to the reconciler as raw
unsigned counts together with their register width and Wh-per-count factor,
because wraparound can only be detected on the raw value.

This is a pure function: no side effects, no I/O, no clock.

CHANGELOG:
- 2026-10-03: Honour per-register word order
- 2026-10-02: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

from pydantic import ValidationError

from collector.src.errors import DecodeError, IncompleteError, OutOfRangeError
from collector.src.models import CounterReading, Measurement, RawSample
from collector.src.registers import REQUIRED_FIELDS, RegisterDef, RegisterMap

# ---------------------------------------------------------------------------
# Mapping from Measurement field names to register names.
# ---------------------------------------------------------------------------

_FIELD_MAP: dict[str, str] = {
    "voltage_l1_v": "voltage_l1",
    "voltage_l2_v": "voltage_l2",
    "voltage_l3_v": "voltage_l3",
    "current_l1_a": "current_l1",
    "current_l2_a": "current_l2",
    "current_l3_a": "current_l3",
    "active_power_w": "active_power",
    "reactive_power_var": "reactive_power",
}
"""Maps scaled Measurement field name -> register name."""

_COUNTER_MAP: dict[str, str] = {
    "energy_imported": "energy_imported",
    "energy_exported": "energy_exported",
}
"""Maps counter Measurement field name -> register name."""


# ---------------------------------------------------------------------------
# Type conversion helpers
# ---------------------------------------------------------------------------


def _combine_words(words: list[int], word_order: str) -> int:
    """Assemble 16-bit words into one unsigned integer.

    ``"big"`` means the most-significant word comes first; ``"little"``
    means the least-significant word comes first.
    """
    ordered = words if word_order == "big" else list(reversed(words))
    value = 0
    for word in ordered:
        value = (value << 16) | (word & 0xFFFF)
    return value


def _to_signed(value: int, bits: int) -> int:
    """Interpret an unsigned *bits*-wide value as two's complement."""
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def raw_value(reg_def: RegisterDef, words: list[int]) -> int:
    """Convert a register's words into its integer value (unscaled).

    Raises:
        IncompleteError: If the word count does not match the register type.
    """
    if len(words) != reg_def.word_count:
        raise IncompleteError(
            f"Register '{reg_def.name}': expected {reg_def.word_count} words "
            f"for {reg_def.reg_type}, got {len(words)}",
            field=reg_def.name,
        )
    value = _combine_words(words, reg_def.word_order)
    if reg_def.signed:
        value = _to_signed(value, 16 * reg_def.word_count)
    return value


def _scaled_value(reg_def: RegisterDef, words: list[int]) -> float:
    """Extract, type-convert, scale and range-check one register."""
    scaled = raw_value(reg_def, words) * reg_def.scale

    if reg_def.valid_range is not None:
        lo, hi = reg_def.valid_range
        if not lo <= scaled <= hi:
            raise OutOfRangeError(
                f"Register '{reg_def.name}': scaled value {scaled:.4g} "
                f"(raw words={words}) outside valid range ({lo}, {hi})",
                field=reg_def.name,
                value=scaled,
                valid_range=reg_def.valid_range,
            )
    return scaled


def _counter_value(reg_def: RegisterDef, words: list[int]) -> CounterReading:
    """Extract a raw unsigned energy counter."""
    if reg_def.signed:
        raise DecodeError(
            f"Register '{reg_def.name}': energy counter must be unsigned",
            field=reg_def.name,
        )
    return CounterReading(
        raw=raw_value(reg_def, words),
        width_bits=16 * reg_def.word_count,
        wh_per_count=reg_def.scale,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def decode(raw: RawSample, register_map: RegisterMap) -> Measurement:
    """Convert a RawSample into a validated Measurement.

    This is a **pure function**: it performs no I/O, has no side effects,
    and does not access the system clock.  The timestamp comes from *raw*.

    Args:
        raw: Register words keyed by field name, as read by the transport.
        register_map: The register definitions the words were read with.

    Returns:
        A validated :class:`Measurement`.

    Raises:
        IncompleteError: If a required field is missing from *raw* or the
            map, or any field has the wrong number of words.
        OutOfRangeError: If a scaled value falls outside its valid range.
        DecodeError: If the decoded values violate the Measurement model.
    """
    by_name = {reg.name: reg for reg in register_map}

    missing_defs = sorted(REQUIRED_FIELDS - by_name.keys())
    if missing_defs:
        raise IncompleteError(f"Register map lacks required fields {missing_defs}")
    missing_words = sorted(REQUIRED_FIELDS - raw.words.keys())
    if missing_words:
        raise IncompleteError(
            f"Raw sample lacks required fields {missing_words}",
            field=missing_words[0],
        )

    fields: dict[str, object] = {}
    for field_name, reg_name in _FIELD_MAP.items():
        fields[field_name] = _scaled_value(by_name[reg_name], raw.words[reg_name])
    for field_name, reg_name in _COUNTER_MAP.items():
        fields[field_name] = _counter_value(by_name[reg_name], raw.words[reg_name])

    try:
        return Measurement(ts=raw.ts, **fields)
    except ValidationError as exc:
        raise DecodeError(f"Decoded sample failed validation: {exc}") from exc
