"""
Exception taxonomy for the collector.

Every failure raised by the transport, decoder, reconciler and store derives
from :class:`CollectorError`, so the scheduler can isolate a failed poll cycle
with a single ``except CollectorError`` and decide on backoff by subclass.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations


class CollectorError(Exception):
    """Base exception for the collector."""

    pass


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class AnalyzerConnectionError(CollectorError):
    """The Modbus TCP connection to the analyzer could not be established."""

    def __init__(self, message: str, *, host: str, port: int) -> None:
        self.host = host
        self.port = port
        super().__init__(message)


class TransportError(CollectorError):
    """A register read failed (timeout, exception response, malformed reply)."""

    def __init__(
        self,
        message: str,
        *,
        address: int | None = None,
        count: int | None = None,
    ) -> None:
        self.address = address
        self.count = count
        super().__init__(message)


class ConnectionLost(TransportError):
    """The connection dropped mid-operation; a full reconnect is required."""

    pass


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class DecodeError(CollectorError):
    """Raw register words could not be turned into a Measurement."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class IncompleteError(DecodeError):
    """A required field is missing or has the wrong number of words."""

    pass


class OutOfRangeError(DecodeError):
    """A decoded value falls outside the register's plausible range."""

    def __init__(
        self,
        message: str,
        *,
        field: str,
        value: float,
        valid_range: tuple[float, float],
    ) -> None:
        self.value = value
        self.valid_range = valid_range
        super().__init__(message, field=field)


# ---------------------------------------------------------------------------
# Reconciliation and storage
# ---------------------------------------------------------------------------


class ReconcileError(CollectorError):
    """A counter reading is inconsistent with the reconciler state.

    ``counters`` lists every counter rejected by the same reading; ``counter``
    is the first of them, or ``None`` when the sample as a whole was rejected
    (e.g. a timestamp that does not advance).
    """

    def __init__(
        self,
        message: str,
        *,
        counter: str | None = None,
        counters: tuple[str, ...] | None = None,
    ) -> None:
        if counters is None:
            counters = (counter,) if counter is not None else ()
        self.counter = counter
        self.counters = counters
        super().__init__(message)


class StoreError(CollectorError):
    """The time-series store failed to read or persist a sample."""

    pass
