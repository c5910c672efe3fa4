"""
Poll scheduler: drives read -> decode -> reconcile -> store at a fixed cadence.

State machine::

    IDLE -> CONNECTING -> POLLING -> DECODING -> RECONCILING -> STORING -> IDLE
                 \\___________\\__________\\___________\\
                                                      -> ERROR_BACKOFF -> CONNECTING

Designed to run forever and self-heal:

- One cycle at a time; the next cycle starts ``poll_interval_s`` after the
  previous one started, or immediately if a cycle overran.
- Transport failures (connect, read, connection lost) drop the connection and
  back off exponentially (capped at ``max_backoff_s``); one fully successful
  cycle resets the backoff.
- Decode and reconcile failures discard the cycle (no store write, reconciler
  state untouched) and retry at the normal interval.
- A failed store write is logged as data loss; the reconciler state stays
  advanced and polling continues.
- Shutdown is honoured between cycles and always disconnects the analyzer.

The scheduler is the single owner of the analyzer connection and of the
reconciler state.  The state is rebuilt from ``store.latest()`` before the
first reconciliation after start.

CHANGELOG:
- 2026-10-10: Track rejections per counter; re-seed only the rejected one
- 2026-10-08: Rebaseline after repeated rejections (STORY-010)
- 2026-10-06: Persistent connection, reconnect on ConnectionLost (STORY-008)
- 2026-10-05: Initial creation from the edge poll loop (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from collector.src.decoder import decode
from collector.src.errors import (
    AnalyzerConnectionError,
    CollectorError,
    DecodeError,
    ReconcileError,
    StoreError,
    TransportError,
)
from collector.src.reconciler import (
    ReconcileLimits,
    ReconcileResult,
    ReconcilerState,
    ReconcileWarning,
    rebaseline,
    reconcile,
)
from collector.src.registers import MAX_WORDS_PER_REQUEST, plan_reads

if TYPE_CHECKING:
    from collections.abc import Callable

    from collector.src.health import HealthWriter
    from collector.src.models import CumulativeEnergySample, Measurement
    from collector.src.registers import RegisterMap
    from collector.src.store import TimeSeriesStore
    from collector.src.transport import AnalyzerClient

logger = logging.getLogger(__name__)


class SchedulerState(StrEnum):
    """States of the poll scheduler."""

    IDLE = "idle"
    CONNECTING = "connecting"
    POLLING = "polling"
    DECODING = "decoding"
    RECONCILING = "reconciling"
    STORING = "storing"
    ERROR_BACKOFF = "error_backoff"


@dataclass(frozen=True, slots=True)
class CycleResult:
    """Outcome of one poll cycle.

    Attributes:
        ok: True when a sample was reconciled (even if storing failed).
        stage: State the cycle finished or failed in.
        next_delay_s: Seconds to wait before the next cycle.
        error: The failure that aborted the cycle, if any.
        sample: The reconciled sample, if any.
        stored: True when the sample was appended to the store.
        warnings: Reconcile warnings raised during the cycle.
    """

    ok: bool
    stage: SchedulerState
    next_delay_s: float
    error: Exception | None = None
    sample: CumulativeEnergySample | None = None
    stored: bool = False
    warnings: tuple[ReconcileWarning, ...] = ()


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class PollScheduler:
    """Fixed-cadence poll loop with exponential backoff on transport errors.

    Args:
        client: The analyzer transport; owned exclusively by the scheduler.
        store: Time-series store receiving cumulative samples.
        register_map: Register definitions to read and decode.
        limits: Reconciler plausibility limits; ``limits.poll_interval_s``
            is also the poll cadence.
        max_words: Upper bound on words per read request.
        max_gap_words: Unused words a read block may bridge.
        base_backoff_s: First backoff delay after a transport failure.
        max_backoff_s: Backoff cap.
        rebaseline_after: Consecutive rejected readings of one counter before
            that counter alone is re-seeded.
        health: Optional HealthWriter updated after every cycle.
        clock: Returns the sample timestamp; defaults to UTC now.
    """

    def __init__(
        self,
        *,
        client: AnalyzerClient,
        store: TimeSeriesStore,
        register_map: RegisterMap,
        limits: ReconcileLimits,
        max_words: int = MAX_WORDS_PER_REQUEST,
        max_gap_words: int = 0,
        base_backoff_s: float = 1.0,
        max_backoff_s: float = 60.0,
        rebaseline_after: int = 3,
        health: HealthWriter | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._client = client
        self._store = store
        self._register_map = register_map
        self._blocks = plan_reads(
            register_map, max_words=max_words, max_gap_words=max_gap_words
        )
        self._limits = limits
        self._base_backoff_s = base_backoff_s
        self._max_backoff_s = max_backoff_s
        self._rebaseline_after = rebaseline_after
        self._health = health
        self._clock = clock

        self._state = SchedulerState.IDLE
        self._reconciler_state: ReconcilerState | None = None
        self._consecutive_failures: int = 0
        self._rejections: dict[str, int] = {"imported": 0, "exported": 0}

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        """Current state machine state."""
        return self._state

    @property
    def reconciler_state(self) -> ReconcilerState | None:
        """Reconciler state, or ``None`` before the baseline is loaded."""
        return self._reconciler_state

    @property
    def consecutive_failures(self) -> int:
        """Transport failures since the last successful cycle."""
        return self._consecutive_failures

    @property
    def poll_interval_s(self) -> float:
        return self._limits.poll_interval_s

    def backoff_delay(self) -> float:
        """Backoff for the current number of consecutive failures."""
        if self._consecutive_failures == 0:
            return 0.0
        return min(
            self._base_backoff_s * (2 ** (self._consecutive_failures - 1)),
            self._max_backoff_s,
        )

    def _set_state(self, state: SchedulerState) -> None:
        if state != self._state:
            logger.debug("Scheduler state %s -> %s", self._state, state)
        self._state = state

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleResult:
        """Run one complete poll cycle.

        Never raises for collector errors; the outcome is described by the
        returned :class:`CycleResult`.  Unexpected exceptions propagate to
        :meth:`run`.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            if not self._client.connected:
                self._set_state(SchedulerState.CONNECTING)
                await self._client.connect()

            self._set_state(SchedulerState.POLLING)
            raw = await self._client.read_sample(self._blocks, ts=self._clock())

            self._set_state(SchedulerState.DECODING)
            measurement = decode(raw, self._register_map)

            self._set_state(SchedulerState.RECONCILING)
            result = await self._reconcile(measurement)
        except (AnalyzerConnectionError, TransportError) as exc:
            return await self._transport_failure(exc)
        except (DecodeError, ReconcileError, StoreError) as exc:
            return self._data_failure(exc, started)

        self._reconciler_state = result.state

        self._set_state(SchedulerState.STORING)
        stored = await self._append(result.sample)

        self._consecutive_failures = 0
        self._set_state(SchedulerState.IDLE)
        self._record_success(result, stored)
        return CycleResult(
            ok=True,
            stage=SchedulerState.STORING,
            next_delay_s=self._cadence_delay(started),
            sample=result.sample,
            stored=stored,
            warnings=result.warnings,
        )

    async def _reconcile(self, measurement: Measurement) -> ReconcileResult:
        """Reconcile *measurement*, loading the baseline on first use."""
        if self._reconciler_state is None:
            latest = await self._store.latest()
            self._reconciler_state = ReconcilerState.from_sample(latest)
            if latest is None:
                logger.info("Store is empty; energy totals start at 0 Wh")
            else:
                logger.info(
                    "Recovered baseline from store: imported=%d Wh exported=%d Wh at %s",
                    latest.imported_wh,
                    latest.exported_wh,
                    latest.ts.isoformat(),
                )

        try:
            result = reconcile(measurement, self._reconciler_state, self._limits)
        except ReconcileError as exc:
            if not exc.counters:
                raise
            for name in self._rejections:
                if name in exc.counters:
                    self._rejections[name] += 1
                else:
                    self._rejections[name] = 0
            due = [
                name
                for name in exc.counters
                if self._rejections[name] >= self._rebaseline_after
            ]
            if not due:
                raise
            logger.warning(
                "Counter(s) %s rejected %d times in a row, re-seeding baseline",
                ", ".join(due),
                self._rebaseline_after,
            )
            result = rebaseline(measurement, self._reconciler_state, self._limits, due)
        self._rejections = dict.fromkeys(self._rejections, 0)
        return result

    async def _append(self, sample: CumulativeEnergySample) -> bool:
        try:
            await self._store.append(sample)
        except Exception:
            logger.error(
                "Data loss: failed to store sample at %s (imported=%d Wh exported=%d Wh)",
                sample.ts.isoformat(),
                sample.imported_wh,
                sample.exported_wh,
                exc_info=True,
            )
            return False
        logger.info(
            "Stored sample: imported=%d Wh exported=%d Wh",
            sample.imported_wh,
            sample.exported_wh,
        )
        return True

    def _cadence_delay(self, started: float) -> float:
        elapsed = asyncio.get_running_loop().time() - started
        return max(0.0, self._limits.poll_interval_s - elapsed)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _transport_failure(self, exc: Exception) -> CycleResult:
        """Abort the cycle, drop the connection and back off."""
        stage = self._state
        await self._client.disconnect()
        self._consecutive_failures += 1
        delay = self.backoff_delay()
        self._set_state(SchedulerState.ERROR_BACKOFF)
        logger.warning(
            "Poll cycle failed in %s: %s. Backoff %.1fs (consecutive failures: %d)",
            stage,
            exc,
            delay,
            self._consecutive_failures,
        )
        self._record_failure(exc)
        return CycleResult(ok=False, stage=stage, next_delay_s=delay, error=exc)

    def _data_failure(self, exc: CollectorError, started: float) -> CycleResult:
        """Discard the cycle and retry at the normal cadence."""
        stage = self._state
        logger.warning("Poll cycle discarded in %s: %s", stage, exc)
        self._set_state(SchedulerState.IDLE)
        self._record_failure(exc)
        return CycleResult(
            ok=False,
            stage=stage,
            next_delay_s=self._cadence_delay(started),
            error=exc,
        )

    # ------------------------------------------------------------------
    # Health reporting
    # ------------------------------------------------------------------

    def _record_success(self, result: ReconcileResult, stored: bool) -> None:
        if self._health is None:
            return
        try:
            self._health.record_success(
                state=str(self._state),
                imported_wh=result.sample.imported_wh,
                exported_wh=result.sample.exported_wh,
            )
            self._health.add_warnings(len(result.warnings) + (0 if stored else 1))
        except OSError:
            logger.warning("Failed to write health file", exc_info=True)

    def _record_failure(self, exc: Exception) -> None:
        if self._health is None:
            return
        try:
            self._health.record_failure(state=str(self._state), error=str(exc))
        except OSError:
            logger.warning("Failed to write health file", exc_info=True)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Run poll cycles until *shutdown_event* is set.

        The event is checked between cycles; a running cycle is allowed to
        finish.  The analyzer connection is closed on every exit path.
        """
        logger.info(
            "Poll scheduler started (interval=%ss, %d read blocks)",
            self._limits.poll_interval_s,
            len(self._blocks),
        )
        try:
            while not shutdown_event.is_set():
                try:
                    result = await self.run_cycle()
                    delay = result.next_delay_s
                except Exception as exc:
                    logger.error("Unexpected poll cycle error", exc_info=True)
                    result = await self._transport_failure(exc)
                    delay = result.next_delay_s

                # Use wait with timeout so we can check shutdown between sleeps
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
        finally:
            await self._client.disconnect()
            self._set_state(SchedulerState.IDLE)
            logger.info("Poll scheduler stopped")
