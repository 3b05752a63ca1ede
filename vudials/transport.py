"""
VU Hub Serial Transport

Owns the serial line to the hub and runs one request/response exchange at a
time:

- Writes a request frame (CRLF terminated)
- Reads until the length-driven FrameReceiver yields the matching response
- Skips malformed frames; raises a parse error only when nothing valid follows
- Enforces a per-call timeout and counts consecutive timeouts
- Serializes all callers on one lock; bulk callers (image chunks) step aside
  while normal callers are queued
- Fails fast once the line is closed or broke mid-session
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Optional

import anyio
from anyio import to_thread
import serial

from .config import DEFAULT_BAUD
from .errors import DisconnectedError, ExchangeTimeoutError, FrameParseError, NotConnectedError
from .protocol import TERMINATOR, Frame, FrameReceiver, encode_frame

logger = logging.getLogger(__name__)

WRITE_TIMEOUT = 2.0


@dataclass
class TransportStats:
    """Transport statistics."""
    frames_sent: int = 0
    frames_received: int = 0
    timeouts: int = 0
    consecutive_timeouts: int = 0
    parse_errors: int = 0
    stale_frames: int = 0
    discarded_bytes: int = 0


class HubTransport:
    """
    Async serial transport for the VU hub.

    Exactly one exchange is in flight at any time, regardless of how many tasks
    call exchange() concurrently.
    """

    def __init__(
        self,
        port: str,
        baud: int = DEFAULT_BAUD,
        serial_factory: Optional[Callable[..., serial.Serial]] = None,
        poll_interval: float = 0.005,
    ):
        """
        Initialize the transport (does not open the port).

        Args:
            port: Serial port (e.g., 'COM3', '/dev/ttyUSB0')
            baud: Baud rate (default: 115200)
            serial_factory: Callable returning an open pyserial-compatible object
            poll_interval: Sleep between polls of an idle input buffer
        """
        self.port = port
        self.baud = baud
        self.poll_interval = poll_interval
        self._serial_factory = serial_factory or serial.Serial

        self.serial = None
        self.disconnected = False
        self.stats = TransportStats()

        self._lock = anyio.Lock()
        self._normal_waiters = 0
        self._receiver = FrameReceiver()
        self._parse_error: Optional[FrameParseError] = None

    @property
    def is_open(self) -> bool:
        return self.serial is not None and not self.disconnected

    async def open(self):
        """Open the serial port at 8N1."""
        try:
            self.serial = self._serial_factory(
                port=self.port,
                baudrate=self.baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=0,
                write_timeout=WRITE_TIMEOUT,
            )
        except (serial.SerialException, OSError) as e:
            logger.error(f"Failed to open {self.port}: {e}")
            self.serial = None
            raise NotConnectedError(f"Could not open {self.port}: {e}") from e

        self.disconnected = False
        self._receiver.reset()
        logger.info(f"Opened {self.port} at {self.baud} baud")

    async def close(self):
        """Close the port. Pending and later exchanges fail with NotConnectedError."""
        ser, self.serial = self.serial, None
        if ser is not None:
            try:
                ser.close()
            except (serial.SerialException, OSError) as e:
                logger.debug(f"Error while closing {self.port}: {e}")
            logger.info(f"Closed {self.port}")

    def _mark_disconnected(self, error: Exception):
        if not self.disconnected:
            logger.error(f"Serial line {self.port} failed: {error}")
        self.disconnected = True

    def _check_open(self):
        if self.serial is None:
            raise NotConnectedError("Serial port is not connected")
        if self.disconnected:
            raise DisconnectedError(f"Serial line {self.port} was lost")

    @asynccontextmanager
    async def _claim(self, bulk: bool):
        if bulk:
            # Let queued value/color requests go first
            while self._normal_waiters:
                await anyio.sleep(self.poll_interval)
            await self._lock.acquire()
        else:
            self._normal_waiters += 1
            try:
                await self._lock.acquire()
            finally:
                self._normal_waiters -= 1
        try:
            yield
        finally:
            self._lock.release()

    async def exchange(self, request: Frame, timeout: float, bulk: bool = False) -> Frame:
        """
        Send one request and wait for its response.

        Args:
            request: Request frame built by the command catalog
            timeout: Seconds to wait for a complete response
            bulk: True for low-priority traffic (image chunks)

        Returns:
            The response frame (status or data)

        Raises:
            NotConnectedError / DisconnectedError: port closed or lost
            ExchangeTimeoutError: no complete response in time
            FrameParseError: only malformed or truncated responses arrived in time
        """
        self._check_open()
        async with self._claim(bulk):
            self._check_open()
            data = encode_frame(request) + TERMINATOR

            ser = self.serial
            try:
                ser.reset_input_buffer()
                self._receiver.reset()
                # Runs to completion even if the caller is cancelled, so a frame is never cut short
                await to_thread.run_sync(self._write, ser, data)
            except (serial.SerialException, OSError) as e:
                self._mark_disconnected(e)
                raise DisconnectedError(f"Write to {self.port} failed: {e}") from e

            self.stats.frames_sent += 1
            logger.debug(f"TX {data[:64]!r}{'...' if len(data) > 64 else ''}")

            self._parse_error = None
            try:
                with anyio.fail_after(timeout):
                    response = await self._read_response(request.command)
            except TimeoutError:
                if self._parse_error is not None:
                    # The hub answered, but only with frames that could not be decoded
                    raise self._parse_error from None
                self.stats.timeouts += 1
                self.stats.consecutive_timeouts += 1
                logger.warning(
                    f"No response to command 0x{request.command:02X} within {timeout:.2f}s "
                    f"({self.stats.consecutive_timeouts} consecutive)"
                )
                raise ExchangeTimeoutError(
                    f"No response to command 0x{request.command:02X} within {timeout:.2f}s",
                    consecutive=self.stats.consecutive_timeouts,
                ) from None

            self.stats.consecutive_timeouts = 0
            self.stats.frames_received += 1
            logger.debug(f"RX {response}")
            return response

    @staticmethod
    def _write(ser, data: bytes):
        ser.write(data)
        ser.flush()

    async def _read_response(self, command: int) -> Frame:
        while True:
            ser = self.serial
            if ser is None:
                raise NotConnectedError("Serial port was closed while waiting for a response")
            try:
                waiting = ser.in_waiting
                chunk = ser.read(waiting) if waiting > 0 else b""
            except (serial.SerialException, OSError) as e:
                self._mark_disconnected(e)
                raise DisconnectedError(f"Read from {self.port} failed: {e}") from e

            if not chunk:
                await anyio.sleep(self.poll_interval)
                continue

            for item in self._receiver.feed(chunk):
                if isinstance(item, FrameParseError):
                    self.stats.parse_errors += 1
                    logger.debug(f"Skipping malformed response: {item}")
                    self._parse_error = item
                    continue
                if item.command != command:
                    self.stats.stale_frames += 1
                    logger.debug(f"Discarding stale response {item}")
                    continue
                self.stats.discarded_bytes = self._receiver.discarded_bytes
                return item

    def get_stats(self) -> Dict[str, int]:
        """Get transport statistics."""
        self.stats.discarded_bytes = self._receiver.discarded_bytes
        return asdict(self.stats)

    def clear_stats(self):
        """Clear transport statistics."""
        self.stats = TransportStats()
        self._receiver.discarded_bytes = 0
