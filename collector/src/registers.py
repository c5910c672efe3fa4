"""
Three-phase power analyzer Modbus register map -- single source of truth.

Defines register addresses, data types, word order, scaling factors, units and
valid value ranges for a Carlo Gavazzi EM24-class three-phase analyzer accessed
over Modbus TCP (port 502, unit ID 1, function code 0x03 holding registers).
All quantities are 32-bit values transmitted least-significant word first.

Registers are planned into contiguous read blocks so the transport can issue
one request per block, never exceeding the Modbus limit of 125 words per
request.  A map can also be loaded from a JSON file to adapt addresses or
word order to a specific firmware without touching code.

References:
    - Carlo Gavazzi EM24 Modbus communication protocol, "Instantaneous
      variables and meters" table (0x0000-0x004F)

CHANGELOG:
- 2026-10-09: Add JSON register map loading (STORY-011)
- 2026-10-03: Per-register word order; plan_reads replaces fixed groups
- 2026-10-02: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, TypeAdapter, ValidationError

MAX_WORDS_PER_REQUEST: int = 125
"""Modbus limit on registers per read request (FC 0x03 / 0x04)."""

WordOrder = Literal["big", "little"]

# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RegisterDef:
    """Definition of a single analyzer register.

    Attributes:
        address: Modbus register start address (0-based).
        name: Semantic field name, used as the dict key in raw samples.
        reg_type: Data type -- one of ``"U16"``, ``"S16"``, ``"U32"``,
            ``"S32"``.
        unit: Engineering unit string (e.g. ``"V"``, ``"W"``, ``"Wh"``).
        scale: Multiplicative scaling factor applied to the raw integer to
            obtain the engineering value.  For energy counters this is the
            number of Wh represented by one raw count.
        valid_range: Optional ``(min, max)`` tuple for the *scaled* value.
        word_order: ``"big"`` when the most-significant word comes first,
            ``"little"`` when the least-significant word comes first.
            Ignored for single-word types.
        description: Free-text description of the register.
        word_count: Number of 16-bit words, derived from *reg_type*.
    """

    address: int
    name: str
    reg_type: str
    unit: str
    scale: float = 1.0
    valid_range: tuple[float, float] | None = None
    word_order: WordOrder = "big"
    description: str = ""
    word_count: int = field(default=0, repr=False)

    def __post_init__(self) -> None:  # noqa: D105
        wc = _DEFAULT_WORD_COUNTS.get(self.reg_type)
        if wc is None:
            msg = f"Register '{self.name}': unsupported type '{self.reg_type}'"
            raise ValueError(msg)
        if self.word_order not in ("big", "little"):
            msg = f"Register '{self.name}': invalid word order '{self.word_order}'"
            raise ValueError(msg)
        if self.address < 0 or self.address + wc > 0x10000:
            msg = f"Register '{self.name}': address {self.address} out of range"
            raise ValueError(msg)
        # frozen=True requires object.__setattr__
        object.__setattr__(self, "word_count", wc)

    @property
    def signed(self) -> bool:
        """True for two's complement types."""
        return self.reg_type.startswith("S")

    @property
    def end_address(self) -> int:
        """First address after this register (exclusive)."""
        return self.address + self.word_count


_DEFAULT_WORD_COUNTS: dict[str, int] = {
    "U16": 1,
    "S16": 1,
    "U32": 2,
    "S32": 2,
}

RegisterMap = tuple[RegisterDef, ...]


@dataclass(frozen=True, slots=True)
class ReadBlock:
    """A contiguous range of registers read with a single request.

    Attributes:
        start_address: First register address in the request.
        count: Total number of 16-bit words to read.
        registers: Registers covered by this request, in address order.
    """

    start_address: int
    count: int
    registers: tuple[RegisterDef, ...]

    def split(self, raw_words: list[int]) -> dict[str, list[int]]:
        """Slice the block's words into per-register word lists.

        Each register's words are determined by its address offset within
        the block and its ``word_count``.
        """
        out: dict[str, list[int]] = {}
        for reg in self.registers:
            offset = reg.address - self.start_address
            out[reg.name] = list(raw_words[offset : offset + reg.word_count])
        return out


# ---------------------------------------------------------------------------
# Built-in analyzer map (EM24-class, holding registers, LSW first)
# ---------------------------------------------------------------------------

_VOLTAGE_RANGE = (0.0, 300.0)
_CURRENT_RANGE = (0.0, 200.0)
_POWER_RANGE = (-180_000.0, 180_000.0)

DEFAULT_REGISTER_MAP: RegisterMap = (
    RegisterDef(
        address=0x0000,
        name="voltage_l1",
        reg_type="S32",
        unit="V",
        scale=0.1,
        valid_range=_VOLTAGE_RANGE,
        word_order="little",
        description="Phase 1 to neutral voltage",
    ),
    RegisterDef(
        address=0x0002,
        name="voltage_l2",
        reg_type="S32",
        unit="V",
        scale=0.1,
        valid_range=_VOLTAGE_RANGE,
        word_order="little",
        description="Phase 2 to neutral voltage",
    ),
    RegisterDef(
        address=0x0004,
        name="voltage_l3",
        reg_type="S32",
        unit="V",
        scale=0.1,
        valid_range=_VOLTAGE_RANGE,
        word_order="little",
        description="Phase 3 to neutral voltage",
    ),
    RegisterDef(
        address=0x000C,
        name="current_l1",
        reg_type="S32",
        unit="A",
        scale=0.001,
        valid_range=_CURRENT_RANGE,
        word_order="little",
        description="Phase 1 current",
    ),
    RegisterDef(
        address=0x000E,
        name="current_l2",
        reg_type="S32",
        unit="A",
        scale=0.001,
        valid_range=_CURRENT_RANGE,
        word_order="little",
        description="Phase 2 current",
    ),
    RegisterDef(
        address=0x0010,
        name="current_l3",
        reg_type="S32",
        unit="A",
        scale=0.001,
        valid_range=_CURRENT_RANGE,
        word_order="little",
        description="Phase 3 current",
    ),
    RegisterDef(
        address=0x0028,
        name="active_power",
        reg_type="S32",
        unit="W",
        scale=0.1,
        valid_range=_POWER_RANGE,
        word_order="little",
        description=(
            "System active power. Positive = consumption (import), "
            "negative = production (export)."
        ),
    ),
    RegisterDef(
        address=0x002C,
        name="reactive_power",
        reg_type="S32",
        unit="var",
        scale=0.1,
        valid_range=_POWER_RANGE,
        word_order="little",
        description="System reactive power",
    ),
    RegisterDef(
        address=0x0034,
        name="energy_imported",
        reg_type="U32",
        unit="Wh",
        scale=100,
        valid_range=None,
        word_order="little",
        description="Total imported active energy (kWh x10 counter, wraps at 2^32)",
    ),
    RegisterDef(
        address=0x004E,
        name="energy_exported",
        reg_type="U32",
        unit="Wh",
        scale=100,
        valid_range=None,
        word_order="little",
        description="Total exported active energy (kWh x10 counter, wraps at 2^32)",
    ),
)
"""Built-in register map, in address order."""

REQUIRED_FIELDS: frozenset[str] = frozenset(reg.name for reg in DEFAULT_REGISTER_MAP)
"""Semantic fields every register map must define."""

COUNTER_FIELDS: frozenset[str] = frozenset({"energy_imported", "energy_exported"})


# ---------------------------------------------------------------------------
# Read planning
# ---------------------------------------------------------------------------


def plan_reads(
    register_map: RegisterMap,
    *,
    max_words: int = MAX_WORDS_PER_REQUEST,
    max_gap_words: int = 0,
) -> list[ReadBlock]:
    """Group registers into the fewest contiguous read requests.

    Registers are sorted by address and merged into one block while the next
    register starts at most *max_gap_words* after the current block ends and
    the block stays within *max_words*.  Words inside a bridged gap are read
    and discarded.

    Raises:
        ValueError: On overlapping registers, a register wider than
            *max_words*, or a *max_words* outside 1..125.
    """
    if not 1 <= max_words <= MAX_WORDS_PER_REQUEST:
        raise ValueError(f"max_words must be between 1 and {MAX_WORDS_PER_REQUEST}")
    if max_gap_words < 0:
        raise ValueError("max_gap_words must be >= 0")

    blocks: list[ReadBlock] = []
    current: list[RegisterDef] = []
    start = end = 0

    for reg in sorted(register_map, key=lambda r: r.address):
        if reg.word_count > max_words:
            raise ValueError(
                f"Register '{reg.name}' ({reg.word_count} words) "
                f"exceeds max_words={max_words}"
            )
        if current:
            if reg.address < end:
                raise ValueError(
                    f"Register '{reg.name}' at {reg.address} overlaps "
                    f"'{current[-1].name}'"
                )
            gap = reg.address - end
            if gap <= max_gap_words and reg.end_address - start <= max_words:
                current.append(reg)
                end = reg.end_address
                continue
            blocks.append(ReadBlock(start, end - start, tuple(current)))
        current = [reg]
        start, end = reg.address, reg.end_address

    if current:
        blocks.append(ReadBlock(start, end - start, tuple(current)))
    return blocks


# ---------------------------------------------------------------------------
# Loading a map from JSON
# ---------------------------------------------------------------------------


class RegisterSpec(BaseModel):
    """JSON shape of one register map entry."""

    address: int
    name: str
    reg_type: Literal["U16", "S16", "U32", "S32"]
    unit: str = ""
    scale: float = 1.0
    valid_range: tuple[float, float] | None = None
    word_order: WordOrder = "big"
    description: str = ""

    def to_def(self) -> RegisterDef:
        return RegisterDef(**self.model_dump())


_SPEC_LIST = TypeAdapter(list[RegisterSpec])


def load_register_map(path: str | Path) -> RegisterMap:
    """Load and validate a register map from a JSON file.

    The file holds a JSON array of objects with the :class:`RegisterDef`
    fields (``word_count`` is derived).  Every field in
    :data:`REQUIRED_FIELDS` must be present exactly once.

    Raises:
        ValueError: If the file is not valid JSON, an entry fails validation,
            names are duplicated or a required field is missing.
    """
    text = Path(path).read_text(encoding="utf-8")
    try:
        specs = _SPEC_LIST.validate_python(json.loads(text))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ValueError(f"Invalid register map {path}: {exc}") from exc

    defs = tuple(spec.to_def() for spec in specs)
    names = [d.name for d in defs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Register map {path}: duplicate names {duplicates}")
    missing = sorted(REQUIRED_FIELDS - set(names))
    if missing:
        raise ValueError(f"Register map {path}: missing required fields {missing}")
    for d in defs:
        if d.name in COUNTER_FIELDS and d.signed:
            raise ValueError(f"Register map {path}: counter '{d.name}' must be unsigned")
    return tuple(sorted(defs, key=lambda d: d.address))
