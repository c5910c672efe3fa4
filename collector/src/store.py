"""
Append-only time-series store for cumulative energy samples.

The poll scheduler depends only on the :class:`TimeSeriesStore` protocol:

- append(sample): persist one sample; timestamps strictly increase.
- latest(): most recent sample, used to recover the reconciler baseline.
- range(start, end): samples with ``start <= ts < end``, oldest first
  (for readers such as a web API; the collector itself does not call it).

:class:`SqliteStore` implements it on an async SQLite database in WAL mode so
readers in other processes never block the collector.  Transient SQLite
failures (``database is locked``) are retried here with exponential backoff;
only after the retries are exhausted does ``append`` raise
:class:`~collector.src.errors.StoreError`.

CHANGELOG:
- 2026-10-07: Retry transient write failures inside the store (STORY-009)
- 2026-10-05: Initial creation from the upload spool (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import aiosqlite

from collector.src.errors import StoreError
from collector.src.models import CumulativeEnergySample

logger = logging.getLogger(__name__)

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS energy_samples (
    ts TEXT PRIMARY KEY,
    imported_wh INTEGER NOT NULL,
    exported_wh INTEGER NOT NULL
);
"""

_INSERT_SQL = """\
INSERT INTO energy_samples (ts, imported_wh, exported_wh) VALUES (?, ?, ?);
"""

_LATEST_SQL = """\
SELECT ts, imported_wh, exported_wh
FROM energy_samples
ORDER BY ts DESC
LIMIT 1;
"""

_RANGE_SQL = """\
SELECT ts, imported_wh, exported_wh
FROM energy_samples
WHERE ts >= ? AND ts < ?
ORDER BY ts ASC;
"""

_SQLITE_MAX_INTEGER = 2**63 - 1


class TimeSeriesStore(Protocol):
    """Interface the collector needs from persistent storage."""

    async def append(self, sample: CumulativeEnergySample) -> None: ...

    async def latest(self) -> CumulativeEnergySample | None: ...

    async def range(
        self, start: datetime, end: datetime
    ) -> list[CumulativeEnergySample]: ...


def _ts_key(ts: datetime) -> str:
    """Normalise a timestamp to a sortable UTC ISO-8601 string."""
    if ts.tzinfo is None:
        raise StoreError(f"Timestamp {ts!r} must be timezone-aware")
    return ts.astimezone(UTC).isoformat(timespec="microseconds")


def _row_to_sample(row: tuple[str, int, int]) -> CumulativeEnergySample:
    return CumulativeEnergySample(
        ts=datetime.fromisoformat(row[0]),
        imported_wh=row[1],
        exported_wh=row[2],
    )


class SqliteStore:
    """Time-series store backed by a SQLite database file.

    Timestamps are stored as UTC ISO-8601 text with fixed precision, so
    lexical order equals chronological order.  Totals are stored as SQLite
    INTEGER (signed 64-bit); values above ``2**63 - 1`` are rejected.

    Args:
        path: Filesystem path for the SQLite database file.
        retries: Extra attempts for a write that fails transiently.
        retry_delay_s: Delay before the first retry; doubles per attempt.

    Usage::

        async with SqliteStore("/data/energy.db") as store:
            await store.append(sample)
            last = await store.latest()
    """

    def __init__(
        self,
        path: str | Path,
        *,
        retries: int = 3,
        retry_delay_s: float = 0.5,
    ) -> None:
        self._path = Path(path)
        self._retries = retries
        self._retry_delay_s = retry_delay_s
        self._db: aiosqlite.Connection | None = None
        self._last_key: str | None = None

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()
        latest = await self.latest()
        self._last_key = _ts_key(latest.ts) if latest is not None else None

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteStore:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("Store not opened. Call open() or use async with.")
        return self._db

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def append(self, sample: CumulativeEnergySample) -> None:
        """Persist *sample* after the current latest sample.

        Raises:
            StoreError: If the store is closed, the timestamp does not advance,
                a total exceeds SQLite's INTEGER range, or the write still
                fails after all retries.
        """
        db = self._conn()
        key = _ts_key(sample.ts)
        if self._last_key is not None and key <= self._last_key:
            raise StoreError(
                f"Out-of-order append: {key} is not after latest {self._last_key}"
            )
        if max(sample.imported_wh, sample.exported_wh) > _SQLITE_MAX_INTEGER:
            raise StoreError("Cumulative total exceeds SQLite INTEGER range")

        params = (key, sample.imported_wh, sample.exported_wh)
        for attempt in range(self._retries + 1):
            try:
                await db.execute(_INSERT_SQL, params)
                await db.commit()
            except aiosqlite.IntegrityError as exc:
                raise StoreError(f"Duplicate sample at {key}") from exc
            except aiosqlite.OperationalError as exc:
                try:
                    await db.rollback()
                except aiosqlite.Error:
                    logger.debug("Rollback after failed append also failed", exc_info=True)
                if attempt >= self._retries:
                    raise StoreError(
                        f"Failed to append sample at {key} after "
                        f"{self._retries + 1} attempts: {exc}"
                    ) from exc
                delay = self._retry_delay_s * (2**attempt)
                logger.warning(
                    "Append failed (%s), retry %d/%d in %.1fs",
                    exc,
                    attempt + 1,
                    self._retries,
                    delay,
                )
                await asyncio.sleep(delay)
            else:
                self._last_key = key
                return

    async def latest(self) -> CumulativeEnergySample | None:
        """Return the most recent sample, or ``None`` for an empty store."""
        db = self._conn()
        try:
            cursor = await db.execute(_LATEST_SQL)
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to read latest sample: {exc}") from exc
        return _row_to_sample(row) if row is not None else None

    async def range(
        self, start: datetime, end: datetime
    ) -> list[CumulativeEnergySample]:
        """Return samples with ``start <= ts < end``, oldest first."""
        db = self._conn()
        try:
            cursor = await db.execute(_RANGE_SQL, (_ts_key(start), _ts_key(end)))
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to read range: {exc}") from exc
        return [_row_to_sample(row) for row in rows]
