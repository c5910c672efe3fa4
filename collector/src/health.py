"""
Health file writer for the collector daemon.

Writes a JSON health file after every poll cycle with:
- state: scheduler state when the file was written.
- last_poll_ts: ISO timestamp of the most recent poll attempt.
- last_success_ts: ISO timestamp of the most recent fully successful cycle.
- consecutive_failures: failed cycles since the last success.
- last_error: message of the most recent failure (None after a success).
- warning_count: reconcile warnings and data-loss events since start.
- imported_wh / exported_wh: latest cumulative totals.

The file is replaced atomically (write to a temp file, then rename), giving a
liveness signal that a container HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-08: Track failures, warnings and totals (STORY-012)
- 2026-10-02: Initial creation (STORY-012)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes collector health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._state: str = "idle"
        self._last_poll_ts: str | None = None
        self._last_success_ts: str | None = None
        self._consecutive_failures: int = 0
        self._last_error: str | None = None
        self._warning_count: int = 0
        self._imported_wh: int | None = None
        self._exported_wh: int | None = None

    def record_success(
        self,
        *,
        state: str,
        imported_wh: int | None,
        exported_wh: int | None,
    ) -> None:
        """Record a fully successful cycle and write health file."""
        now = datetime.now(tz=UTC).isoformat()
        self._state = state
        self._last_poll_ts = now
        self._last_success_ts = now
        self._consecutive_failures = 0
        self._last_error = None
        if imported_wh is not None:
            self._imported_wh = imported_wh
        if exported_wh is not None:
            self._exported_wh = exported_wh
        self._write()

    def record_failure(self, *, state: str, error: str) -> None:
        """Record a failed cycle and write health file."""
        self._state = state
        self._last_poll_ts = datetime.now(tz=UTC).isoformat()
        self._consecutive_failures += 1
        self._last_error = error
        self._write()

    def add_warnings(self, count: int) -> None:
        """Increase the warning counter and write health file."""
        if count <= 0:
            return
        self._warning_count += count
        self._write()

    def snapshot(self) -> dict[str, object]:
        """Return the current health data."""
        return {
            "state": self._state,
            "last_poll_ts": self._last_poll_ts,
            "last_success_ts": self._last_success_ts,
            "consecutive_failures": self._consecutive_failures,
            "last_error": self._last_error,
            "warning_count": self._warning_count,
            "imported_wh": self._imported_wh,
            "exported_wh": self._exported_wh,
        }

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(self.snapshot()))
        tmp.replace(self.path)
