"""
VU Hub Protocol Implementation

Codec for the hub's line-framed ASCII-hex protocol:

    request:   >CCDDLLLL[DATA]
    response:  <CCDDLLLL[DATA]

CC is the command byte, DD the data-type (payload shape) tag, LLLL the payload
length in bytes and DATA the payload, two hex characters per byte. All fields
are fixed width so encoded frames are deterministic and their length is known
up front.

This module provides:
- Frame encoding/decoding with strict length validation
- Status code decoding for STATUS_CODE frames
- A length-driven receive state machine (FrameReceiver)
"""

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import List, Optional, Union

from .errors import FrameParseError

logger = logging.getLogger(__name__)

REQUEST_MARKER = ">"
RESPONSE_MARKER = "<"
HEADER_LENGTH = 9  # marker + CC + DD + LLLL
MAX_PAYLOAD_LENGTH = 0xFFFF
TERMINATOR = b"\r\n"

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


class Direction(str, Enum):
    """Frame direction, identified by its start marker."""
    REQUEST = REQUEST_MARKER
    RESPONSE = RESPONSE_MARKER


class DataType(IntEnum):
    """Payload shape tags."""
    NONE = 0x01
    SINGLE_VALUE = 0x02
    MULTIPLE_VALUE = 0x03
    KEY_VALUE_PAIR = 0x04
    STATUS_CODE = 0x05


class Status(IntEnum):
    """Outcome codes carried by STATUS_CODE frames (16-bit, big-endian)."""
    OK = 0x0000
    FAIL = 0x0001
    BUSY = 0x0002
    TIMEOUT = 0x0003
    BAD_DATA = 0x0004
    PROTOCOL_ERROR = 0x0005
    NO_MEMORY = 0x0006
    INVALID_ARGUMENT = 0x0007
    BAD_ADDRESS = 0x0008
    FORBIDDEN = 0x0009
    ALREADY_EXISTS = 0x000B
    UNSUPPORTED = 0x000C
    NOT_IMPLEMENTED = 0x000D
    MALFORMED_PACKAGE = 0x000E
    RECURSIVE_CALL = 0x0010
    DATA_MISMATCH = 0x0011
    DEVICE_OFFLINE = 0x0012
    MODULE_NOT_INIT = 0x0013
    I2C_ERROR = 0x0014
    USART_ERROR = 0x0015
    SPI_ERROR = 0x0016
    BTL_NO_DEVICE = 0xE001
    BTL_INVALID_STATE = 0xE002
    BTL_INVALID_REQUEST = 0xE003
    # Not a wire value: any code missing from the table above
    UNKNOWN = -1

    @classmethod
    def from_code(cls, code: int) -> "Status":
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class Frame:
    """One protocol message (header plus optional payload)."""
    command: int
    data_type: DataType
    payload: bytes = b""
    direction: Direction = Direction.REQUEST

    @property
    def length(self) -> int:
        return len(self.payload)

    @property
    def is_status(self) -> bool:
        return self.data_type == DataType.STATUS_CODE

    @property
    def status_code(self) -> Optional[int]:
        if not self.is_status or len(self.payload) < 2:
            return None
        return int.from_bytes(self.payload[:2], "big")

    @property
    def status(self) -> Optional[Status]:
        """Decoded outcome for status frames, None for data frames."""
        code = self.status_code
        if code is None:
            return None
        return Status.from_code(code)

    @property
    def ok(self) -> bool:
        """True for an OK status frame or any data frame."""
        return not self.is_status or self.status == Status.OK

    def __str__(self) -> str:
        kind = self.status.name if self.is_status else f"{self.length} bytes"
        return f"Frame({self.direction.value}0x{self.command:02X}, {self.data_type.name}, {kind})"


def encode_frame(frame: Frame) -> bytes:
    """
    Encode a frame to its ASCII wire form (without line terminator).

    Args:
        frame: Frame to encode

    Returns:
        ASCII bytes, e.g. b">030400020A32"
    """
    if not 0 <= frame.command <= 0xFF:
        raise FrameParseError(f"Command 0x{frame.command:X} does not fit in one byte")
    if len(frame.payload) > MAX_PAYLOAD_LENGTH:
        raise FrameParseError(f"Payload of {len(frame.payload)} bytes exceeds {MAX_PAYLOAD_LENGTH}")

    text = (
        f"{frame.direction.value}"
        f"{frame.command:02X}"
        f"{int(frame.data_type):02X}"
        f"{len(frame.payload):04X}"
        f"{frame.payload.hex().upper()}"
    )
    return text.encode("ascii")


def _parse_hex_field(text: str, name: str) -> int:
    if not text or any(c not in _HEX_DIGITS for c in text):
        raise FrameParseError(f"Invalid {name} field: {text!r}")
    return int(text, 16)


def decode_frame(raw: Union[bytes, str]) -> Frame:
    """
    Decode and validate one frame.

    Args:
        raw: Wire text of a single frame; surrounding CR/LF is ignored

    Returns:
        The decoded Frame

    Raises:
        FrameParseError: bad marker, non-hex fields, unknown data type, a
            declared length that does not match the payload, or a status frame
            too short to hold a status code
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("ascii")
        except UnicodeDecodeError as e:
            raise FrameParseError(f"Non-ASCII frame: {bytes(raw)!r}") from e
    else:
        text = raw
    text = text.strip("\r\n")

    if len(text) < HEADER_LENGTH:
        raise FrameParseError(f"Frame shorter than header: {text!r}")

    try:
        direction = Direction(text[0])
    except ValueError as e:
        raise FrameParseError(f"Frame does not start with a marker: {text!r}") from e

    command = _parse_hex_field(text[1:3], "command")
    type_code = _parse_hex_field(text[3:5], "data type")
    length = _parse_hex_field(text[5:9], "length")

    try:
        data_type = DataType(type_code)
    except ValueError as e:
        raise FrameParseError(f"Unknown data type 0x{type_code:02X}") from e

    payload_hex = text[HEADER_LENGTH:]
    if len(payload_hex) != length * 2:
        raise FrameParseError(
            f"Declared length {length} but frame carries {len(payload_hex) / 2:g} bytes: {text!r}"
        )
    if payload_hex and any(c not in _HEX_DIGITS for c in payload_hex):
        raise FrameParseError(f"Non-hex payload: {text!r}")

    if data_type == DataType.STATUS_CODE and length < 2:
        raise FrameParseError(f"Status frame without status code: {text!r}")

    return Frame(command, data_type, bytes.fromhex(payload_hex), direction)


def decode_ascii(payload: bytes) -> str:
    """Decode an ASCII info payload (firmware version etc.), dropping NUL padding."""
    return payload.decode("ascii", errors="replace").rstrip("\x00").strip()


class ReceiverState(Enum):
    AWAITING_START = "awaiting-start"
    HEADER = "accumulating-header"
    PAYLOAD = "accumulating-payload"
    COMPLETE = "complete"


class FrameReceiver:
    """
    Incremental receive state machine.

    awaiting-start -> accumulating-header -> accumulating-payload -> complete

    Frame completion is decided by the header's length field only; CR/LF are
    ignored between frames. A terminator or a new start marker that shows up
    before the declared payload is complete produces a FrameParseError for the
    truncated frame instead of passing it on.
    """

    def __init__(self, markers: str = RESPONSE_MARKER):
        self.markers = frozenset(ord(m) for m in markers)
        self.discarded_bytes = 0
        self.reset()

    def reset(self):
        self.state = ReceiverState.AWAITING_START
        self._buffer = bytearray()
        self._expected = 0

    def feed(self, data: bytes) -> List[Union[Frame, FrameParseError]]:
        """
        Consume received bytes.

        Args:
            data: Raw bytes read from the serial port

        Returns:
            Completed frames and parse errors, in arrival order
        """
        results: List[Union[Frame, FrameParseError]] = []
        for byte in data:
            if self.state in (ReceiverState.AWAITING_START, ReceiverState.COMPLETE):
                if byte in self.markers:
                    self._start(byte)
                elif byte not in TERMINATOR:
                    self.discarded_bytes += 1
                continue

            if byte in self.markers or byte in TERMINATOR:
                results.append(self._truncated())
                if byte in self.markers:
                    self._start(byte)
                continue

            self._buffer.append(byte)

            if self.state == ReceiverState.HEADER and len(self._buffer) == HEADER_LENGTH:
                try:
                    self._expected = _parse_hex_field(self._buffer[5:9].decode("ascii", "replace"), "length") * 2
                except FrameParseError as e:
                    results.append(e)
                    self.reset()
                    continue
                self.state = ReceiverState.PAYLOAD

            if self.state == ReceiverState.PAYLOAD and len(self._buffer) - HEADER_LENGTH == self._expected:
                results.append(self._complete())

        return results

    def _start(self, byte: int):
        self.reset()
        self._buffer.append(byte)
        self.state = ReceiverState.HEADER

    def _truncated(self) -> FrameParseError:
        if self.state == ReceiverState.HEADER:
            error = FrameParseError(f"Incomplete header: {bytes(self._buffer)!r}")
        else:
            got = (len(self._buffer) - HEADER_LENGTH) // 2
            error = FrameParseError(
                f"Frame declared {self._expected // 2} payload bytes but ended after {got}: "
                f"{bytes(self._buffer)!r}"
            )
        logger.warning(str(error))
        self.reset()
        return error

    def _complete(self) -> Union[Frame, FrameParseError]:
        raw = bytes(self._buffer)
        self.reset()
        self.state = ReceiverState.COMPLETE
        try:
            return decode_frame(raw)
        except FrameParseError as e:
            logger.warning(f"Dropping malformed frame: {e}")
            return e
