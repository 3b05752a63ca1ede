"""
VU Dials Connection Library

Host-side control of VU1 e-paper dials through their USB serial hub.

This library provides:
- Serial transport with one exchange in flight (ASCII-hex framed protocol)
- Command catalog for bus, dial, easing, calibration and display commands
- UID-keyed device registry (provisioning, identification, rescans)
- 1-bit image packing for the 200x144 e-paper panel
- An async controller with a background image queue and status events
"""

from .config import HubConfig
from .connection import connect_hub, find_hub_ports, get_port_info
from .controller import HubController
from .errors import (
    DeviceOfflineError,
    DisconnectedError,
    ExchangeTimeoutError,
    FrameParseError,
    HandshakeFailedError,
    HubStatusError,
    I2CError,
    InvalidArgumentError,
    NotConnectedError,
    PortNotFoundError,
    UnknownDeviceError,
    VUDialsError,
)
from .image import ImageBuffer, blank_image, load_image, pack, pack_pixels
from .models import (
    COLORS,
    BacklightColor,
    Calibration,
    CommandResult,
    DialState,
    EasingConfig,
    EventKind,
    HubEvent,
    ResultCode,
)
from .protocol import DataType, Frame, FrameReceiver, Status, decode_frame, encode_frame
from .reconcile import Reconciler
from .registry import DeviceRegistry
from .store import DialMetadata, MetadataStore
from .transport import HubTransport

__version__ = "1.0.0"
__all__ = [
    "HubController", "HubConfig", "HubTransport", "DeviceRegistry", "Reconciler",
    "MetadataStore", "DialMetadata", "connect_hub", "find_hub_ports", "get_port_info",
    "Frame", "FrameReceiver", "DataType", "Status", "encode_frame", "decode_frame",
    "ImageBuffer", "pack", "pack_pixels", "load_image", "blank_image",
    "DialState", "BacklightColor", "EasingConfig", "Calibration", "COLORS",
    "CommandResult", "ResultCode", "HubEvent", "EventKind",
    "VUDialsError", "InvalidArgumentError", "NotConnectedError", "DisconnectedError",
    "PortNotFoundError", "HandshakeFailedError", "ExchangeTimeoutError", "FrameParseError",
    "UnknownDeviceError", "HubStatusError", "DeviceOfflineError", "I2CError",
]
