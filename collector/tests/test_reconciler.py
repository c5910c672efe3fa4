"""
Tests for the energy counter reconciler.

Verifies seeding, plain increments, 32-bit wraparound, device reset
detection, rejection of implausible jumps, the elapsed-time allowance,
baseline recovery from the store and rebaselining.

CHANGELOG:
- 2026-10-10: Sub-Wh carry, per-counter rebaseline and monotonic table
- 2026-10-08: Elapsed allowance and rebaseline tests (STORY-010)
- 2026-10-04: Initial creation -- TDD tests written first (STORY-007)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from fractions import Fraction

import pytest
from collector.src.errors import ReconcileError
from collector.src.models import CounterReading, CumulativeEnergySample, Measurement
from collector.src.reconciler import (
    ReconcileLimits,
    ReconcilerState,
    rebaseline,
    reconcile,
)

_T0 = datetime(2026, 10, 4, 8, 0, 0, tzinfo=UTC)
_LIMITS = ReconcileLimits(max_delta_wh=10_000, poll_interval_s=10)


def _measurement(
    imported: int,
    exported: int = 0,
    *,
    at: int = 0,
    wh_per_count: float = 1,
    width_bits: int = 32,
) -> Measurement:
    """Measurement whose timestamp is *at* seconds after _T0."""
    return Measurement(
        ts=_T0 + timedelta(seconds=at),
        voltage_l1_v=230.0,
        voltage_l2_v=230.0,
        voltage_l3_v=230.0,
        current_l1_a=1.0,
        current_l2_a=1.0,
        current_l3_a=1.0,
        active_power_w=690.0,
        reactive_power_var=0.0,
        energy_imported=CounterReading(
            raw=imported, width_bits=width_bits, wh_per_count=wh_per_count
        ),
        energy_exported=CounterReading(
            raw=exported, width_bits=width_bits, wh_per_count=wh_per_count
        ),
    )


def _run(readings: list[int], *, step_s: int = 10) -> list[int]:
    """Reconcile successive imported readings and return the imported totals."""
    state = ReconcilerState.unknown()
    totals = []
    for i, raw in enumerate(readings):
        result = reconcile(_measurement(raw, at=i * step_s), state, _LIMITS)
        state = result.state
        totals.append(result.sample.imported_wh)
    return totals


# ===========================================================================
# Seeding and plain increments
# ===========================================================================


class TestSeeding:
    def test_first_sample_seeds_with_zero_delta(self) -> None:
        result = reconcile(_measurement(1_000_000, 500), ReconcilerState.unknown(), _LIMITS)

        assert result.sample.imported_wh == 0
        assert result.sample.exported_wh == 0
        assert result.state.imported.last_raw == 1_000_000
        assert result.state.exported.last_raw == 500
        assert result.state.seeded
        assert result.warnings == ()

    def test_input_state_not_mutated(self) -> None:
        state = ReconcilerState.unknown()
        reconcile(_measurement(42), state, _LIMITS)
        assert state == ReconcilerState.unknown()
        assert not state.seeded


class TestIncrements:
    def test_sequence_from_raw_100(self) -> None:
        assert _run([100, 150, 225]) == [0, 50, 125]

    def test_unchanged_counter_keeps_total(self) -> None:
        assert _run([100, 100, 100]) == [0, 0, 0]

    def test_wh_per_count_applied(self) -> None:
        state = ReconcilerState.unknown()
        state = reconcile(_measurement(10, wh_per_count=100), state, _LIMITS).state
        result = reconcile(_measurement(13, at=10, wh_per_count=100), state, _LIMITS)
        assert result.sample.imported_wh == 300

    def test_counters_tracked_independently(self) -> None:
        state = reconcile(_measurement(100, 1000), ReconcilerState.unknown(), _LIMITS).state
        result = reconcile(_measurement(110, 1500, at=10), state, _LIMITS)

        assert result.sample.imported_wh == 10
        assert result.sample.exported_wh == 500

    @pytest.mark.parametrize(
        ("readings", "expected"),
        [
            ([0, 10, 250, 5, 5, 9_000], [0, 10, 250, 255, 255, 9_250]),
            ([7, 7, 7, 8, 8], [0, 0, 0, 1, 1]),
            ([4_294_967_290, 4_294_967_295, 3, 3, 100], [0, 5, 9, 9, 106]),
            ([1_000_000, 1_000_500, 50, 60], [0, 500, 550, 560]),
            (
                [4_294_967_000, 4_294_967_290, 10, 10, 3, 3, 500],
                [0, 290, 306, 306, 309, 309, 806],
            ),
        ],
        ids=["increments-and-reset", "repeated", "wrap", "large-reset", "wrap-then-reset"],
    )
    def test_totals_never_decrease(self, readings: list[int], expected: list[int]) -> None:
        totals = _run(readings)
        assert totals == expected
        assert all(b >= a for a, b in zip(totals, totals[1:], strict=False))


class TestFractionalCounts:
    def test_sub_wh_increments_accumulate(self) -> None:
        state = ReconcilerState.unknown()
        for i in range(1001):
            result = reconcile(_measurement(i * 4, at=i * 10, wh_per_count=0.1), state, _LIMITS)
            state = result.state
        assert result.sample.imported_wh == 400

    def test_remainder_carried_between_polls(self) -> None:
        state = ReconcilerState.unknown()
        totals = []
        for i, raw in enumerate([0, 3, 6, 9, 12]):
            result = reconcile(_measurement(raw, at=i * 10, wh_per_count=0.1), state, _LIMITS)
            state = result.state
            totals.append(result.sample.imported_wh)

        assert totals == [0, 0, 0, 0, 1]
        assert state.imported.remainder_wh == Fraction(1, 5)

    def test_remainder_carried_across_wrap(self) -> None:
        state = reconcile(
            _measurement(4_294_967_291, wh_per_count=0.5), ReconcilerState.unknown(), _LIMITS
        ).state
        result = reconcile(_measurement(2, at=10, wh_per_count=0.5), state, _LIMITS)

        assert result.sample.imported_wh == 3
        assert result.state.imported.remainder_wh == Fraction(1, 2)


# ===========================================================================
# Wraparound and reset
# ===========================================================================


class TestWraparound:
    def test_32_bit_wrap(self) -> None:
        state = reconcile(_measurement(4_294_967_290), ReconcilerState.unknown(), _LIMITS).state
        result = reconcile(_measurement(5, at=10), state, _LIMITS)

        assert result.sample.imported_wh == 11
        assert result.warnings == ()

    def test_16_bit_wrap(self) -> None:
        state = reconcile(
            _measurement(65_530, width_bits=16), ReconcilerState.unknown(), _LIMITS
        ).state
        result = reconcile(_measurement(4, at=10, width_bits=16), state, _LIMITS)
        assert result.sample.imported_wh == 10


class TestReset:
    def test_reset_counts_new_reading_and_warns(self) -> None:
        state = reconcile(_measurement(1_000_000), ReconcilerState.unknown(), _LIMITS).state
        result = reconcile(_measurement(50, at=10), state, _LIMITS)

        assert result.sample.imported_wh == 50
        assert len(result.warnings) == 1
        warning = result.warnings[0]
        assert warning.counter == "imported"
        assert warning.kind == "reset"
        assert warning.previous_raw == 1_000_000
        assert warning.raw == 50

    def test_reset_to_implausible_value_rejected(self) -> None:
        state = reconcile(_measurement(1_000_000), ReconcilerState.unknown(), _LIMITS).state
        with pytest.raises(ReconcileError):
            reconcile(_measurement(500_000, at=10), state, _LIMITS)


# ===========================================================================
# Rejections
# ===========================================================================


class TestRejections:
    def test_forward_jump_rejected(self) -> None:
        state = reconcile(_measurement(100), ReconcilerState.unknown(), _LIMITS).state

        with pytest.raises(ReconcileError) as exc_info:
            reconcile(_measurement(100 + 10_001, at=10), state, _LIMITS)

        assert exc_info.value.counter == "imported"

    def test_jump_at_allowance_accepted(self) -> None:
        state = reconcile(_measurement(100), ReconcilerState.unknown(), _LIMITS).state
        result = reconcile(_measurement(100 + 10_000, at=10), state, _LIMITS)
        assert result.sample.imported_wh == 10_000

    def test_exported_jump_rejected(self) -> None:
        state = reconcile(_measurement(0, 0), ReconcilerState.unknown(), _LIMITS).state
        with pytest.raises(ReconcileError) as exc_info:
            reconcile(_measurement(0, 50_000, at=10), state, _LIMITS)
        assert exc_info.value.counter == "exported"

    @pytest.mark.parametrize("at", [0, -5])
    def test_timestamp_must_advance(self, at: int) -> None:
        state = reconcile(_measurement(100), ReconcilerState.unknown(), _LIMITS).state
        with pytest.raises(ReconcileError) as exc_info:
            reconcile(_measurement(110, at=at), state, _LIMITS)
        assert exc_info.value.counter is None

    def test_allowance_scales_with_elapsed_time(self) -> None:
        state = reconcile(_measurement(0), ReconcilerState.unknown(), _LIMITS).state
        # Three intervals missed: 40 s elapsed allows 4x the per-interval limit.
        result = reconcile(_measurement(35_000, at=40), state, _LIMITS)
        assert result.sample.imported_wh == 35_000

    def test_allowance_never_below_one_interval(self) -> None:
        assert _LIMITS.allowance_wh(2.0) == 10_000
        assert _LIMITS.allowance_wh(None) == 10_000
        assert _LIMITS.allowance_wh(25.0) == 25_000

    @pytest.mark.parametrize(
        ("max_delta_wh", "poll_interval_s"), [(0, 10), (-1, 10), (100, 0)]
    )
    def test_invalid_limits_rejected(self, max_delta_wh: float, poll_interval_s: float) -> None:
        with pytest.raises(ValueError):
            ReconcileLimits(max_delta_wh=max_delta_wh, poll_interval_s=poll_interval_s)


# ===========================================================================
# Baseline recovery
# ===========================================================================


class TestBaselineRecovery:
    def test_from_none_is_unknown(self) -> None:
        assert ReconcilerState.from_sample(None) == ReconcilerState.unknown()

    def test_resume_from_stored_totals(self) -> None:
        stored = CumulativeEnergySample(ts=_T0, imported_wh=5_000, exported_wh=700)
        state = ReconcilerState.from_sample(stored)
        assert not state.seeded

        # Hours later, with a raw value far from anything seen before.
        first = reconcile(_measurement(9_999_999, 42, at=7200), state, _LIMITS)
        assert first.sample.imported_wh == 5_000
        assert first.sample.exported_wh == 700

        second = reconcile(_measurement(10_000_020, 42, at=7210), first.state, _LIMITS)
        assert second.sample.imported_wh == 5_021

    def test_resume_rejects_sample_older_than_store(self) -> None:
        stored = CumulativeEnergySample(ts=_T0, imported_wh=5_000, exported_wh=700)
        state = ReconcilerState.from_sample(stored)
        with pytest.raises(ReconcileError):
            reconcile(_measurement(1, at=-60), state, _LIMITS)


# ===========================================================================
# Rebaseline
# ===========================================================================


class TestRebaseline:
    def test_keeps_totals_and_reseeds_raw(self) -> None:
        state = ReconcilerState.unknown()
        for i, raw in enumerate([100, 200]):
            state = reconcile(_measurement(raw, at=i * 10), state, _LIMITS).state

        result = rebaseline(_measurement(900_000, at=20), state, _LIMITS, ["imported"])

        assert result.sample.imported_wh == 100
        assert result.state.imported.last_raw == 900_000
        assert result.state.last_ts == _T0 + timedelta(seconds=20)
        assert [w.kind for w in result.warnings] == ["rebaseline"]
        assert result.warnings[0].previous_raw == 200

        after = reconcile(_measurement(900_010, at=30), result.state, _LIMITS)
        assert after.sample.imported_wh == 110

    def test_no_warning_for_unchanged_counter(self) -> None:
        state = reconcile(_measurement(100, 7), ReconcilerState.unknown(), _LIMITS).state
        result = rebaseline(_measurement(100, 7, at=10), state, _LIMITS, ["imported"])
        assert result.warnings == ()

    def test_other_counter_delta_still_credited(self) -> None:
        state = ReconcilerState.unknown()
        for i, (imported, exported) in enumerate([(100, 1000), (200, 1100)]):
            state = reconcile(_measurement(imported, exported, at=i * 10), state, _LIMITS).state

        result = rebaseline(_measurement(900_000, 1200, at=20), state, _LIMITS, ["imported"])

        assert result.sample.imported_wh == 100
        assert result.sample.exported_wh == 200
        assert [(w.counter, w.kind) for w in result.warnings] == [("imported", "rebaseline")]

    def test_counter_not_reseeded_is_still_checked(self) -> None:
        state = reconcile(_measurement(100, 1000), ReconcilerState.unknown(), _LIMITS).state

        with pytest.raises(ReconcileError) as exc_info:
            rebaseline(_measurement(900_000, 900_000, at=10), state, _LIMITS, ["imported"])

        assert exc_info.value.counters == ("exported",)

    def test_both_counters_reseeded(self) -> None:
        state = reconcile(_measurement(100, 1000), ReconcilerState.unknown(), _LIMITS).state
        result = rebaseline(
            _measurement(900_000, 800_000, at=10), state, _LIMITS, ["imported", "exported"]
        )

        assert (result.sample.imported_wh, result.sample.exported_wh) == (0, 0)
        assert result.state.exported.last_raw == 800_000
        assert len(result.warnings) == 2

    def test_both_rejected_counters_reported(self) -> None:
        state = reconcile(_measurement(100, 1000), ReconcilerState.unknown(), _LIMITS).state

        with pytest.raises(ReconcileError) as exc_info:
            reconcile(_measurement(900_000, 900_000, at=10), state, _LIMITS)

        assert exc_info.value.counter == "imported"
        assert exc_info.value.counters == ("imported", "exported")
