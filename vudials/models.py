"""
Shared data types: dial snapshots, colors, easing, command results and events.

Snapshots handed to callers are frozen dataclasses; the registry replaces them
instead of mutating them, so a reader never sees a half-updated dial.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from .protocol import Status


@dataclass(frozen=True)
class BacklightColor:
    """RGBW backlight, 0-100 percent per channel."""
    red: int = 0
    green: int = 0
    blue: int = 0
    white: int = 0

    def __str__(self) -> str:
        return f"RGBW({self.red}, {self.green}, {self.blue}, {self.white})"


@dataclass(frozen=True)
class EasingConfig:
    """Device-side smoothing of dial and backlight transitions."""
    dial_step: int = 2
    dial_period: int = 50
    backlight_step: int = 5
    backlight_period: int = 100

    def __str__(self) -> str:
        return (f"Easing(dial {self.dial_step}%/{self.dial_period}ms, "
                f"backlight {self.backlight_step}%/{self.backlight_period}ms)")


@dataclass(frozen=True)
class Calibration:
    """Raw calibration points; None means the firmware default is kept."""
    max_value: Optional[int] = None
    half_value: Optional[int] = None


class DialPhase(Enum):
    IDENTIFIED = "identified"
    CONFIGURED = "configured"


@dataclass(frozen=True)
class DialState:
    """Immutable snapshot of one dial."""
    uid: str
    index: int
    name: str
    value: int = 0
    backlight: BacklightColor = field(default_factory=BacklightColor)
    easing: EasingConfig = field(default_factory=EasingConfig)
    calibration: Calibration = field(default_factory=Calibration)
    firmware_version: str = "?"
    hardware_version: str = "?"
    protocol_version: str = "?"
    build_hash: str = "?"
    phase: DialPhase = DialPhase.IDENTIFIED
    last_communication: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        return (f"DialState(uid={self.uid}, name={self.name}, value={self.value}%, "
                f"fw={self.firmware_version})")


@dataclass(frozen=True)
class NamedColor:
    name: str
    red: int
    green: int
    blue: int
    white: int = 0

    @property
    def backlight(self) -> BacklightColor:
        return BacklightColor(self.red, self.green, self.blue, self.white)


COLORS: Dict[str, NamedColor] = {
    c.name.lower(): c
    for c in (
        NamedColor("Off", 0, 0, 0, 0),
        NamedColor("Red", 100, 0, 0),
        NamedColor("Green", 0, 100, 0),
        NamedColor("Blue", 0, 0, 100),
        NamedColor("White", 100, 100, 100),
        NamedColor("Yellow", 100, 100, 0),
        NamedColor("Cyan", 0, 100, 100),
        NamedColor("Magenta", 100, 0, 100),
        NamedColor("Orange", 100, 50, 0),
        NamedColor("Purple", 50, 0, 100),
        NamedColor("Pink", 100, 25, 50),
    )
}


class ResultCode(Enum):
    OK = "ok"
    FAIL = "fail"
    NOT_CONNECTED = "not-connected"
    UNKNOWN_DEVICE = "unknown-device"
    TIMED_OUT = "timed-out"
    PARSE_ERROR = "parse-error"
    DEVICE_OFFLINE = "device-offline"
    I2C_ERROR = "i2c-error"
    CANCELLED = "cancelled"

    @classmethod
    def from_status(cls, status: Optional[Status]) -> "ResultCode":
        return {
            None: cls.OK,
            Status.OK: cls.OK,
            Status.TIMEOUT: cls.TIMED_OUT,
            Status.DEVICE_OFFLINE: cls.DEVICE_OFFLINE,
            Status.I2C_ERROR: cls.I2C_ERROR,
        }.get(status, cls.FAIL)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a controller operation. Truthy only when OK."""
    code: ResultCode
    status: Optional[Status] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.code == ResultCode.OK

    @property
    def retryable(self) -> bool:
        return self.code in (ResultCode.NOT_CONNECTED, ResultCode.TIMED_OUT,
                             ResultCode.DEVICE_OFFLINE, ResultCode.I2C_ERROR)

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, detail: str = "") -> "CommandResult":
        return cls(ResultCode.OK, Status.OK, detail)


class EventKind(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CONNECT_FAILED = "connect-failed"
    DIAL_DISCOVERED = "dial-discovered"
    DIAL_LOST = "dial-lost"
    DIAL_UNRESPONSIVE = "dial-unresponsive"
    IMAGE_SENT = "image-sent"
    IMAGE_FAILED = "image-failed"
    RECONCILED = "reconciled"


@dataclass(frozen=True)
class HubEvent:
    kind: EventKind
    uid: Optional[str] = None
    detail: str = ""
