"""
Async Modbus TCP transport for the three-phase power analyzer.

Wraps a single long-lived :class:`pymodbus.client.AsyncModbusTcpClient` and
exposes the three operations the poll scheduler needs:

- connect(): open the connection, bounded by a connect timeout.
- read_registers(start, count): one read request, bounded by a request
  timeout, returning exactly ``count`` 16-bit words.
- disconnect(): close the socket (idempotent).

pymodbus failures are translated into the collector's exception taxonomy so
the scheduler can tell a dropped connection (reconnect) from a failed read.
Request/response transaction ids are matched by pymodbus' transaction manager;
a stale or mismatched reply surfaces as ``ModbusIOException`` and is reported
as :class:`~collector.src.errors.TransportError`.

Reads are strictly sequential on one connection.  No write function code is
ever issued.

CHANGELOG:
- 2026-10-06: Persistent connection instead of connect-per-poll (STORY-008)
- 2026-10-02: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Literal

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException

from collector.src.errors import AnalyzerConnectionError, ConnectionLost, TransportError
from collector.src.models import RawSample
from collector.src.registers import MAX_WORDS_PER_REQUEST

if TYPE_CHECKING:
    from types import TracebackType

    from collector.src.registers import ReadBlock

logger = logging.getLogger(__name__)

RegisterTable = Literal["holding", "input"]


class AnalyzerClient:
    """Exclusive Modbus TCP connection to the analyzer.

    Only the poll scheduler owns an instance; the analyzer accepts very few
    simultaneous clients, so no second connection is ever opened.

    Args:
        host: Analyzer IP address or hostname.
        port: Modbus TCP port (default 502).
        unit_id: Modbus unit / slave ID (default 1).
        table: ``"holding"`` (FC 0x03) or ``"input"`` (FC 0x04).
        connect_timeout_s: Upper bound for establishing the connection.
        request_timeout_s: Upper bound for each read request.
        inter_request_delay_ms: Pause between the block reads of one sample.

    Usage::

        async with AnalyzerClient(host="192.168.1.50") as client:
            words = await client.read_registers(0x0034, 2)
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 502,
        unit_id: int = 1,
        table: RegisterTable = "holding",
        connect_timeout_s: float = 5.0,
        request_timeout_s: float = 3.0,
        inter_request_delay_ms: int = 20,
    ) -> None:
        if table not in ("holding", "input"):
            raise ValueError(f"Unknown register table '{table}'")
        self._host = host
        self._port = port
        self._unit_id = unit_id
        self._table = table
        self._connect_timeout_s = connect_timeout_s
        self._request_timeout_s = request_timeout_s
        self._inter_request_delay_ms = inter_request_delay_ms
        self._client: AsyncModbusTcpClient | None = None

    @property
    def connected(self) -> bool:
        """True while the underlying socket is open."""
        return self._client is not None and bool(self._client.connected)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection to the analyzer.

        A no-op when already connected.  A stale client object left over
        from a dropped connection is closed first.

        Raises:
            AnalyzerConnectionError: On refusal, timeout, or when pymodbus
                reports the connection could not be established.
        """
        if self.connected:
            return
        await self.disconnect()

        client = AsyncModbusTcpClient(
            self._host,
            port=self._port,
            timeout=self._request_timeout_s,
            retries=0,
        )
        target = f"{self._host}:{self._port}"
        try:
            ok = await asyncio.wait_for(client.connect(), timeout=self._connect_timeout_s)
        except TimeoutError as exc:
            client.close()
            raise AnalyzerConnectionError(
                f"Timed out after {self._connect_timeout_s}s connecting to {target}",
                host=self._host,
                port=self._port,
            ) from exc
        except (OSError, ModbusException) as exc:
            client.close()
            raise AnalyzerConnectionError(
                f"Failed to connect to {target}: {exc}",
                host=self._host,
                port=self._port,
            ) from exc

        if not ok:
            client.close()
            raise AnalyzerConnectionError(
                f"Failed to connect to {target} (connect returned False)",
                host=self._host,
                port=self._port,
            )

        self._client = client
        logger.info("Connected to analyzer at %s", target)

    async def disconnect(self) -> None:
        """Close the connection.  Safe to call when not connected."""
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            client.close()
        except Exception:
            logger.warning("Error while closing analyzer connection", exc_info=True)
        logger.info("Disconnected from analyzer at %s:%d", self._host, self._port)

    async def __aenter__(self) -> AnalyzerClient:
        """Enter async context manager: connect."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit async context manager: always disconnect."""
        await self.disconnect()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_registers(self, start_address: int, count: int) -> list[int]:
        """Read *count* contiguous registers starting at *start_address*.

        Returns:
            The 16-bit register words, in address order, exactly *count* long.

        Raises:
            ValueError: If *count* is outside 1..125.
            ConnectionLost: If not connected or the connection dropped.
            TransportError: On timeout, a Modbus exception response or a
                malformed reply.
        """
        if not 1 <= count <= MAX_WORDS_PER_REQUEST:
            raise ValueError(f"count must be between 1 and {MAX_WORDS_PER_REQUEST}")
        if self._client is None or not self._client.connected:
            raise ConnectionLost(
                "Not connected to analyzer", address=start_address, count=count
            )

        read_fn = (
            self._client.read_holding_registers
            if self._table == "holding"
            else self._client.read_input_registers
        )
        try:
            response = await asyncio.wait_for(
                read_fn(start_address, count=count, device_id=self._unit_id),
                timeout=self._request_timeout_s,
            )
        except TimeoutError as exc:
            raise TransportError(
                f"Timed out after {self._request_timeout_s}s reading "
                f"{count} registers at {start_address}",
                address=start_address,
                count=count,
            ) from exc
        except ConnectionException as exc:
            raise ConnectionLost(
                f"Connection lost reading registers at {start_address}: {exc}",
                address=start_address,
                count=count,
            ) from exc
        except ModbusIOException as exc:
            if not self.connected:
                raise ConnectionLost(
                    f"Connection lost reading registers at {start_address}: {exc}",
                    address=start_address,
                    count=count,
                ) from exc
            raise TransportError(
                f"I/O error reading registers at {start_address}: {exc}",
                address=start_address,
                count=count,
            ) from exc
        except ModbusException as exc:
            raise TransportError(
                f"Modbus error reading registers at {start_address}: {exc}",
                address=start_address,
                count=count,
            ) from exc
        except OSError as exc:
            raise ConnectionLost(
                f"Socket error reading registers at {start_address}: {exc}",
                address=start_address,
                count=count,
            ) from exc

        if response.isError():
            raise TransportError(
                f"Exception response reading {count} registers at "
                f"{start_address}: {response}",
                address=start_address,
                count=count,
            )

        registers = getattr(response, "registers", None)
        if registers is None or len(registers) != count:
            got = "none" if registers is None else len(registers)
            raise TransportError(
                f"Malformed response at {start_address}: expected {count} "
                f"registers, got {got}",
                address=start_address,
                count=count,
            )
        words = [int(w) for w in registers]
        if any(not 0 <= w <= 0xFFFF for w in words):
            raise TransportError(
                f"Malformed response at {start_address}: word outside 16 bits",
                address=start_address,
                count=count,
            )
        return words

    async def read_sample(self, blocks: list[ReadBlock], *, ts: datetime) -> RawSample:
        """Read every block sequentially and assemble a RawSample.

        Blocks are issued one after another on the same connection with
        ``inter_request_delay_ms`` between them (not before the first).
        Any failure propagates; partial results are discarded.
        """
        delay_s = self._inter_request_delay_ms / 1000.0
        words: dict[str, list[int]] = {}
        for idx, block in enumerate(blocks):
            if idx > 0 and delay_s > 0:
                await asyncio.sleep(delay_s)
            raw_words = await self.read_registers(block.start_address, block.count)
            words.update(block.split(raw_words))
        return RawSample(ts=ts, words=words)
