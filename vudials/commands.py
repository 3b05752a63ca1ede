"""
VU Hub Command Catalog

One builder per hub operation. Every builder returns a request Frame whose
data-type tag comes from SHAPE_TAGS. The hub silently ignores frames whose tag
does not match the shape it expects for a command, which shows up as a write
that times out while queries keep working, so tags are looked up here and
never chosen at the call site.
"""

import struct
from enum import Enum, IntEnum
from typing import Dict, Iterable, Tuple

from .errors import InvalidArgumentError
from .protocol import DataType, Direction, Frame

MAX_DIALS = 100
MAX_IMAGE_CHUNK = 1000

# I2C addressing on the hub side
BROADCAST_ADDRESS = 0x00
BOOTLOADER_ADDRESS = 0x08
DEFAULT_DIAL_ADDRESS = 0x09
FIRST_RUNTIME_ADDRESS = 0x0A


class Command(IntEnum):
    SET_DIAL_RAW_SINGLE = 0x01
    SET_DIAL_PERC_SINGLE = 0x03
    SET_DIAL_PERC_MULTIPLE = 0x04
    SET_DIAL_CALIBRATE_MAX = 0x05
    SET_DIAL_CALIBRATE_HALF = 0x06
    GET_DEVICES_MAP = 0x07
    PROVISION_DEVICE = 0x08
    RESET_ALL_DEVICES = 0x09
    DIAL_POWER = 0x0A
    GET_DEVICE_UID = 0x0B
    RESCAN_BUS = 0x0C
    DISPLAY_CLEAR = 0x0D
    DISPLAY_GOTO_XY = 0x0E
    DISPLAY_IMG_DATA = 0x0F
    DISPLAY_SHOW_IMG = 0x10
    RX_BUFFER_SIZE = 0x11
    SET_RGB_BACKLIGHT = 0x13
    SET_DIAL_EASING_STEP = 0x14
    SET_DIAL_EASING_PERIOD = 0x15
    SET_BACKLIGHT_EASING_STEP = 0x16
    SET_BACKLIGHT_EASING_PERIOD = 0x17
    GET_EASING_CONFIG = 0x18
    GET_BUILD_INFO = 0x19
    GET_FW_INFO = 0x20
    GET_HW_INFO = 0x21
    GET_PROTOCOL_INFO = 0x22


class LatencyClass(Enum):
    """Timeout class of a command; mapped to seconds by HubConfig.timeout_for()."""
    READ = "read"
    WRITE = "write"
    DISCOVERY = "discovery"
    DISPLAY_CHUNK = "display-chunk"
    DISPLAY_REFRESH = "display-refresh"


SHAPE_TAGS: Dict[Command, DataType] = {
    Command.SET_DIAL_RAW_SINGLE: DataType.KEY_VALUE_PAIR,
    Command.SET_DIAL_PERC_SINGLE: DataType.KEY_VALUE_PAIR,
    Command.SET_DIAL_PERC_MULTIPLE: DataType.MULTIPLE_VALUE,
    Command.SET_DIAL_CALIBRATE_MAX: DataType.SINGLE_VALUE,
    Command.SET_DIAL_CALIBRATE_HALF: DataType.SINGLE_VALUE,
    Command.GET_DEVICES_MAP: DataType.NONE,
    Command.PROVISION_DEVICE: DataType.NONE,
    Command.RESET_ALL_DEVICES: DataType.NONE,
    Command.DIAL_POWER: DataType.SINGLE_VALUE,
    Command.GET_DEVICE_UID: DataType.SINGLE_VALUE,
    Command.RESCAN_BUS: DataType.NONE,
    Command.DISPLAY_CLEAR: DataType.SINGLE_VALUE,
    Command.DISPLAY_GOTO_XY: DataType.SINGLE_VALUE,
    Command.DISPLAY_IMG_DATA: DataType.SINGLE_VALUE,
    Command.DISPLAY_SHOW_IMG: DataType.SINGLE_VALUE,
    Command.RX_BUFFER_SIZE: DataType.SINGLE_VALUE,
    Command.SET_RGB_BACKLIGHT: DataType.MULTIPLE_VALUE,
    Command.SET_DIAL_EASING_STEP: DataType.SINGLE_VALUE,
    Command.SET_DIAL_EASING_PERIOD: DataType.SINGLE_VALUE,
    Command.SET_BACKLIGHT_EASING_STEP: DataType.SINGLE_VALUE,
    Command.SET_BACKLIGHT_EASING_PERIOD: DataType.SINGLE_VALUE,
    Command.GET_EASING_CONFIG: DataType.SINGLE_VALUE,
    Command.GET_BUILD_INFO: DataType.SINGLE_VALUE,
    Command.GET_FW_INFO: DataType.SINGLE_VALUE,
    Command.GET_HW_INFO: DataType.SINGLE_VALUE,
    Command.GET_PROTOCOL_INFO: DataType.SINGLE_VALUE,
}

LATENCY: Dict[Command, LatencyClass] = {
    Command.SET_DIAL_RAW_SINGLE: LatencyClass.WRITE,
    Command.SET_DIAL_PERC_SINGLE: LatencyClass.WRITE,
    Command.SET_DIAL_PERC_MULTIPLE: LatencyClass.WRITE,
    Command.SET_DIAL_CALIBRATE_MAX: LatencyClass.WRITE,
    Command.SET_DIAL_CALIBRATE_HALF: LatencyClass.WRITE,
    Command.GET_DEVICES_MAP: LatencyClass.DISCOVERY,
    Command.PROVISION_DEVICE: LatencyClass.DISCOVERY,
    Command.RESET_ALL_DEVICES: LatencyClass.DISCOVERY,
    Command.DIAL_POWER: LatencyClass.WRITE,
    Command.GET_DEVICE_UID: LatencyClass.READ,
    Command.RESCAN_BUS: LatencyClass.DISCOVERY,
    Command.DISPLAY_CLEAR: LatencyClass.WRITE,
    Command.DISPLAY_GOTO_XY: LatencyClass.WRITE,
    Command.DISPLAY_IMG_DATA: LatencyClass.DISPLAY_CHUNK,
    Command.DISPLAY_SHOW_IMG: LatencyClass.DISPLAY_REFRESH,
    Command.RX_BUFFER_SIZE: LatencyClass.READ,
    Command.SET_RGB_BACKLIGHT: LatencyClass.WRITE,
    Command.SET_DIAL_EASING_STEP: LatencyClass.WRITE,
    Command.SET_DIAL_EASING_PERIOD: LatencyClass.WRITE,
    Command.SET_BACKLIGHT_EASING_STEP: LatencyClass.WRITE,
    Command.SET_BACKLIGHT_EASING_PERIOD: LatencyClass.WRITE,
    Command.GET_EASING_CONFIG: LatencyClass.READ,
    Command.GET_BUILD_INFO: LatencyClass.READ,
    Command.GET_FW_INFO: LatencyClass.READ,
    Command.GET_HW_INFO: LatencyClass.READ,
    Command.GET_PROTOCOL_INFO: LatencyClass.READ,
}


def latency_of(frame: Frame) -> LatencyClass:
    return LATENCY[Command(frame.command)]


def _build(command: Command, payload: bytes = b"") -> Frame:
    return Frame(int(command), SHAPE_TAGS[command], payload, Direction.REQUEST)


def _check_index(index: int):
    if not isinstance(index, int) or not 0 <= index < MAX_DIALS:
        raise InvalidArgumentError(f"Dial index must be 0-{MAX_DIALS - 1}, got {index!r}")


def _check_percent(value: int, name: str = "percent"):
    if not isinstance(value, int) or not 0 <= value <= 100:
        raise InvalidArgumentError(f"{name} must be 0-100, got {value!r}")


def _check_u32(value: int, name: str):
    if not isinstance(value, int) or not 0 <= value <= 0xFFFFFFFF:
        raise InvalidArgumentError(f"{name} must fit in 32 bits, got {value!r}")


def _indexed_u32(command: Command, index: int, value: int, name: str) -> Frame:
    _check_index(index)
    _check_u32(value, name)
    return _build(command, struct.pack(">BI", index, value))


def _indexed(command: Command, index: int) -> Frame:
    _check_index(index)
    return _build(command, bytes([index]))


# Bus management

def rescan_bus() -> Frame:
    return _build(Command.RESCAN_BUS)


def get_devices_map() -> Frame:
    """Bitmap of online dials, one flag byte per index."""
    return _build(Command.GET_DEVICES_MAP)


def provision_device() -> Frame:
    """Move one dial from the shared default address to a fresh runtime index."""
    return _build(Command.PROVISION_DEVICE)


def reset_all_devices() -> Frame:
    return _build(Command.RESET_ALL_DEVICES)


def dial_power(on: bool) -> Frame:
    return _build(Command.DIAL_POWER, bytes([0x01 if on else 0x00]))


# Per-dial queries

def get_device_uid(index: int) -> Frame:
    return _indexed(Command.GET_DEVICE_UID, index)


def get_firmware_info(index: int) -> Frame:
    return _indexed(Command.GET_FW_INFO, index)


def get_hardware_info(index: int) -> Frame:
    return _indexed(Command.GET_HW_INFO, index)


def get_protocol_info(index: int) -> Frame:
    return _indexed(Command.GET_PROTOCOL_INFO, index)


def get_build_info(index: int) -> Frame:
    return _indexed(Command.GET_BUILD_INFO, index)


def get_easing_config(index: int) -> Frame:
    return _indexed(Command.GET_EASING_CONFIG, index)


def get_rx_buffer_size(index: int) -> Frame:
    return _indexed(Command.RX_BUFFER_SIZE, index)


# Per-dial writes

def set_dial_percent(index: int, percent: int) -> Frame:
    _check_index(index)
    _check_percent(percent)
    return _build(Command.SET_DIAL_PERC_SINGLE, bytes([index, percent]))


def set_dial_raw(index: int, value: int) -> Frame:
    _check_index(index)
    if not isinstance(value, int) or not 0 <= value <= 0xFFFF:
        raise InvalidArgumentError(f"Raw dial value must be 0-65535, got {value!r}")
    return _build(Command.SET_DIAL_RAW_SINGLE, struct.pack(">BH", index, value))


def set_dial_percent_multiple(values: Iterable[Tuple[int, int]]) -> Frame:
    """Set several dials in one frame; values are (index, percent) pairs."""
    payload = bytearray()
    for index, percent in values:
        _check_index(index)
        _check_percent(percent)
        payload += bytes([index, percent])
    if not payload:
        raise InvalidArgumentError("At least one dial value is required")
    return _build(Command.SET_DIAL_PERC_MULTIPLE, bytes(payload))


def set_backlight(index: int, red: int, green: int, blue: int, white: int = 0) -> Frame:
    _check_index(index)
    for name, channel in (("red", red), ("green", green), ("blue", blue), ("white", white)):
        _check_percent(channel, name)
    return _build(Command.SET_RGB_BACKLIGHT, bytes([index, red, green, blue, white]))


def set_dial_easing_step(index: int, step: int) -> Frame:
    return _indexed_u32(Command.SET_DIAL_EASING_STEP, index, step, "dial easing step")


def set_dial_easing_period(index: int, period_ms: int) -> Frame:
    return _indexed_u32(Command.SET_DIAL_EASING_PERIOD, index, period_ms, "dial easing period")


def set_backlight_easing_step(index: int, step: int) -> Frame:
    return _indexed_u32(Command.SET_BACKLIGHT_EASING_STEP, index, step, "backlight easing step")


def set_backlight_easing_period(index: int, period_ms: int) -> Frame:
    return _indexed_u32(Command.SET_BACKLIGHT_EASING_PERIOD, index, period_ms, "backlight easing period")


def calibrate_max(index: int, value: int) -> Frame:
    return _indexed_u32(Command.SET_DIAL_CALIBRATE_MAX, index, value, "calibration max")


def calibrate_half(index: int, value: int) -> Frame:
    return _indexed_u32(Command.SET_DIAL_CALIBRATE_HALF, index, value, "calibration half")


# E-paper display

def display_clear(index: int, black: bool = False) -> Frame:
    _check_index(index)
    return _build(Command.DISPLAY_CLEAR, bytes([index, 0x01 if black else 0x00]))


def display_goto_xy(index: int, x: int = 0, y: int = 0) -> Frame:
    _check_index(index)
    if not (0 <= x <= 0xFFFF and 0 <= y <= 0xFFFF):
        raise InvalidArgumentError(f"Cursor position out of range: ({x}, {y})")
    return _build(Command.DISPLAY_GOTO_XY, struct.pack(">BHH", index, x, y))


def display_image_data(index: int, chunk: bytes) -> Frame:
    _check_index(index)
    if not chunk:
        raise InvalidArgumentError("Image chunk cannot be empty")
    if len(chunk) > MAX_IMAGE_CHUNK:
        raise InvalidArgumentError(f"Image chunk must be <= {MAX_IMAGE_CHUNK} bytes (got {len(chunk)})")
    return _build(Command.DISPLAY_IMG_DATA, bytes([index]) + bytes(chunk))


def display_show_image(index: int) -> Frame:
    return _indexed(Command.DISPLAY_SHOW_IMG, index)
