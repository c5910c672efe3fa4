"""
Counter reconciler: raw wrapping energy counters -> monotonic cumulative totals.

The analyzer exposes imported and exported energy as unsigned counters of a
fixed register width that wrap at ``2**width`` and restart from zero when the
device is reset.  The reconciler turns successive raw readings into totals
that never decrease and never jump by more than a plausible amount per poll
interval.

Per counter, with raw reading ``r`` and previous raw reading ``r_prev``:

- no previous reading (first poll after start): ``r_prev = r``, delta 0, and
  the total starts at the baseline (0, or the store's latest total).
- ``r >= r_prev``: delta = ``r - r_prev``.
- ``r < r_prev``: wraparound delta = ``(2**W - r_prev) + r``; when that
  exceeds the allowance the device is assumed to have reset, delta = ``r``
  and a :class:`ReconcileWarning` is emitted.
- any delta above the allowance is rejected with
  :class:`~collector.src.errors.ReconcileError` (suspected corrupt decode).

The allowance is ``max_delta_wh`` per poll interval, scaled by the number of
intervals elapsed since the previous reading.

Totals are whole Wh.  When a count is worth less than 1 Wh the fraction is
carried in the counter state, so no energy is lost between polls.

Everything here is pure: states are immutable and ``reconcile`` returns a new
state, so a failed cycle simply keeps the old one.

CHANGELOG:
- 2026-10-10: Carry sub-Wh remainders; rebaseline only the rejected counter
- 2026-10-08: Scale allowance by elapsed intervals; add rebaseline (STORY-010)
- 2026-10-04: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from fractions import Fraction
from typing import Literal

from collector.src.errors import ReconcileError
from collector.src.models import MAX_TOTAL_WH, CounterReading, CumulativeEnergySample, Measurement

logger = logging.getLogger(__name__)

CounterName = Literal["imported", "exported"]


# ---------------------------------------------------------------------------
# State and result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CounterState:
    """Reconciliation state of one energy counter.

    Attributes:
        last_raw: Previous raw reading, or ``None`` before the first poll.
        total_wh: Monotonic total in whole Wh.
        remainder_wh: Energy below 1 Wh not yet credited to *total_wh*.
    """

    last_raw: int | None = None
    total_wh: int = 0
    remainder_wh: Fraction = Fraction(0)


@dataclass(frozen=True, slots=True)
class ReconcilerState:
    """Process-lifetime reconciliation state for both counters.

    Never persisted.  After a restart it is rebuilt from the store's latest
    sample (:meth:`from_sample`) or starts from an unknown baseline
    (:meth:`unknown`); either way the first poll seeds the raw values.
    """

    imported: CounterState = field(default_factory=CounterState)
    exported: CounterState = field(default_factory=CounterState)
    last_ts: datetime | None = None

    @property
    def seeded(self) -> bool:
        """True once a raw reading has been observed for both counters."""
        return self.imported.last_raw is not None and self.exported.last_raw is not None

    @classmethod
    def unknown(cls) -> ReconcilerState:
        """Empty store: totals start at zero."""
        return cls()

    @classmethod
    def from_sample(cls, sample: CumulativeEnergySample | None) -> ReconcilerState:
        """Recover the baseline totals from the latest persisted sample."""
        if sample is None:
            return cls.unknown()
        return cls(
            imported=CounterState(total_wh=sample.imported_wh),
            exported=CounterState(total_wh=sample.exported_wh),
            last_ts=sample.ts,
        )


@dataclass(frozen=True, slots=True)
class ReconcileLimits:
    """Plausibility limits for counter deltas.

    Attributes:
        max_delta_wh: Largest plausible energy increment per poll interval.
        poll_interval_s: Nominal poll interval the limit refers to.
    """

    max_delta_wh: float
    poll_interval_s: float

    def __post_init__(self) -> None:  # noqa: D105
        if self.max_delta_wh <= 0:
            raise ValueError("max_delta_wh must be > 0")
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")

    def allowance_wh(self, elapsed_s: float | None) -> float:
        """Allowed increment for a gap of *elapsed_s* seconds."""
        if elapsed_s is None:
            return self.max_delta_wh
        return self.max_delta_wh * max(1.0, elapsed_s / self.poll_interval_s)


@dataclass(frozen=True, slots=True)
class ReconcileWarning:
    """Non-fatal reconciliation event surfaced to operators.

    Attributes:
        counter: ``"imported"`` or ``"exported"``.
        kind: ``"reset"`` for a detected device reset, ``"rebaseline"`` when
            the raw baseline was re-seeded after repeated rejections.
        previous_raw: Raw reading before the event.
        raw: Raw reading that triggered the event.
        message: Human-readable description.
    """

    counter: CounterName
    kind: Literal["reset", "rebaseline"]
    previous_raw: int | None
    raw: int
    message: str


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Outcome of one successful reconciliation."""

    sample: CumulativeEnergySample
    state: ReconcilerState
    warnings: tuple[ReconcileWarning, ...] = ()


# ---------------------------------------------------------------------------
# Core
# ---------------------------------------------------------------------------


def _counter_delta(
    name: CounterName,
    reading: CounterReading,
    state: CounterState,
    allowance_wh: float,
) -> tuple[int, ReconcileWarning | None]:
    """Return the delta in counts for one counter, plus an optional warning."""
    r = reading.raw
    r_prev = state.last_raw
    if r_prev is None:
        return 0, None

    warning = None
    if r >= r_prev:
        delta = r - r_prev
    else:
        wrapped = (2**reading.width_bits - r_prev) + r
        if wrapped * reading.wh_per_count <= allowance_wh:
            delta = wrapped
        else:
            delta = r
            warning = ReconcileWarning(
                counter=name,
                kind="reset",
                previous_raw=r_prev,
                raw=r,
                message=(
                    f"{name} counter went from {r_prev} to {r}; wraparound delta "
                    f"{wrapped} is implausible, treating as device reset"
                ),
            )

    if delta * reading.wh_per_count > allowance_wh:
        raise ReconcileError(
            f"{name} counter jumped from {r_prev} to {r} "
            f"({delta * reading.wh_per_count:.0f} Wh > allowance {allowance_wh:.0f} Wh)",
            counter=name,
        )
    return delta, warning


def _advance(
    name: CounterName,
    reading: CounterReading,
    state: CounterState,
    delta: int,
) -> CounterState:
    """Credit *delta* counts, carrying the sub-Wh fraction to the next poll."""
    # Decimal string -> exact rational, so 0.1 Wh/count adds up without drift.
    exact = state.remainder_wh + delta * Fraction(str(reading.wh_per_count))
    whole = math.floor(exact)
    total = state.total_wh + whole
    if total > MAX_TOTAL_WH:
        raise ReconcileError(f"{name} total overflows 64 bits", counter=name)
    return CounterState(last_raw=reading.raw, total_wh=total, remainder_wh=exact - whole)


def _reseed(
    name: CounterName,
    reading: CounterReading,
    state: CounterState,
) -> tuple[CounterState, ReconcileWarning | None]:
    """Adopt *reading* as the new raw baseline without counting the jump."""
    warning = None
    if state.last_raw != reading.raw:
        warning = ReconcileWarning(
            counter=name,
            kind="rebaseline",
            previous_raw=state.last_raw,
            raw=reading.raw,
            message=(
                f"{name} counter re-seeded from {state.last_raw} to "
                f"{reading.raw}; jump not counted"
            ),
        )
    return replace(state, last_raw=reading.raw), warning


def _fold(
    measurement: Measurement,
    state: ReconcilerState,
    limits: ReconcileLimits,
    reseed: frozenset[str],
) -> ReconcileResult:
    elapsed_s = None
    if state.last_ts is not None:
        elapsed_s = (measurement.ts - state.last_ts).total_seconds()
        if elapsed_s <= 0:
            raise ReconcileError(
                f"Sample timestamp {measurement.ts.isoformat()} does not advance "
                f"past {state.last_ts.isoformat()}"
            )
    # A baseline recovered from the store has a timestamp but no raw values;
    # the first delta is 0 regardless of the gap.
    allowance = limits.allowance_wh(elapsed_s if state.seeded else None)

    counters: dict[str, CounterState] = {}
    warnings: list[ReconcileWarning] = []
    rejected: list[ReconcileError] = []
    name: CounterName
    for name, reading, counter in (
        ("imported", measurement.energy_imported, state.imported),
        ("exported", measurement.energy_exported, state.exported),
    ):
        if name in reseed:
            counters[name], warning = _reseed(name, reading, counter)
        else:
            try:
                delta, warning = _counter_delta(name, reading, counter, allowance)
            except ReconcileError as exc:
                rejected.append(exc)
                continue
            counters[name] = _advance(name, reading, counter, delta)
        if warning is not None:
            warnings.append(warning)

    if rejected:
        raise ReconcileError(
            "; ".join(str(exc) for exc in rejected),
            counter=rejected[0].counter,
            counters=tuple(exc.counter for exc in rejected if exc.counter is not None),
        )

    new_state = ReconcilerState(
        imported=counters["imported"],
        exported=counters["exported"],
        last_ts=measurement.ts,
    )
    for w in warnings:
        logger.warning("Reconcile warning: %s", w.message)

    if not state.seeded:
        logger.info(
            "Reconciler seeded: imported raw=%d total=%d Wh, exported raw=%d total=%d Wh",
            measurement.energy_imported.raw,
            new_state.imported.total_wh,
            measurement.energy_exported.raw,
            new_state.exported.total_wh,
        )

    sample = CumulativeEnergySample(
        ts=measurement.ts,
        imported_wh=new_state.imported.total_wh,
        exported_wh=new_state.exported.total_wh,
    )
    return ReconcileResult(sample=sample, state=new_state, warnings=tuple(warnings))


def reconcile(
    measurement: Measurement,
    state: ReconcilerState,
    limits: ReconcileLimits,
) -> ReconcileResult:
    """Fold one measurement into the reconciler state.

    Args:
        measurement: Decoded sample carrying the raw counters.
        state: Current state; never mutated.
        limits: Plausibility limits.

    Returns:
        The cumulative sample to persist, the new state and any warnings.

    Raises:
        ReconcileError: If the timestamp does not advance or a counter delta
            exceeds the allowance.  ``counters`` names every rejected counter.
            *state* remains the valid state.
    """
    return _fold(measurement, state, limits, frozenset())


def rebaseline(
    measurement: Measurement,
    state: ReconcilerState,
    limits: ReconcileLimits,
    counters: Iterable[CounterName],
) -> ReconcileResult:
    """Re-seed the raw baseline of *counters* from *measurement*.

    Used after repeated rejections, when a counter has genuinely moved by an
    amount the allowance refuses.  The jump itself is not counted and the
    totals of the re-seeded counters are kept.  Any other counter is
    reconciled normally, so its increments since the last accepted reading
    are still credited.

    Raises:
        ReconcileError: If the timestamp does not advance or a counter not
            being re-seeded exceeds the allowance.
    """
    return _fold(measurement, state, limits, frozenset(counters))
