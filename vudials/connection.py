"""
VU Hub Connection Utilities

Utilities for finding and connecting to the VU dials hub.
"""

import logging
from typing import Callable, List, Optional

import serial
import serial.tools.list_ports

from . import commands
from .config import DEFAULT_BAUD
from .errors import (
    ExchangeTimeoutError,
    FrameParseError,
    HandshakeFailedError,
    NotConnectedError,
    PortNotFoundError,
)
from .transport import HubTransport

logger = logging.getLogger(__name__)

# USB VID/PID pairs for known hub bridges
HUB_USB_IDS = [
    (0x0403, 0x6015),  # FTDI FT231X used on the VU1 hub
]

# Keywords to exclude (likely not a hub)
EXCLUDE_KEYWORDS = [
    "bluetooth", "hid", "mouse", "keyboard", "audio", "webcam",
    "camera", "printer", "scanner", "modem", "fax", "virtual", "loopback"
]

DESCRIPTION_KEYWORDS = ["ft231x", "ftdi", "vu1", "usb serial", "usb uart"]


def find_hub_ports() -> List[str]:
    """
    Find candidate hub serial ports.

    USB VID/PID matches are returned when present; otherwise ports whose
    description looks like a USB-serial bridge.

    Returns:
        List of port names, most likely first
    """
    logger.info("Searching for VU hub...")

    available_ports = serial.tools.list_ports.comports()
    logger.debug(f"Found {len(available_ports)} total serial ports")

    candidates = []

    for port in available_ports:
        if port.vid is not None and port.pid is not None and (port.vid, port.pid) in HUB_USB_IDS:
            candidates.append(port.device)
            logger.info(f"✅ USB VID/PID match: {port.device} - {port.description} "
                        f"(VID:0x{port.vid:04x}, PID:0x{port.pid:04x})")

    if not candidates:
        logger.info("No USB VID/PID matches, trying description-based detection...")

        for port in available_ports:
            description = (port.description or "").lower()
            manufacturer = (port.manufacturer or "").lower()

            if any(keyword in description or keyword in manufacturer for keyword in EXCLUDE_KEYWORDS):
                logger.debug(f"Excluding {port.device}: {port.description}")
                continue

            if any(keyword in description or keyword in manufacturer for keyword in DESCRIPTION_KEYWORDS):
                candidates.append(port.device)
                logger.info(f"📝 Description match: {port.device} - {port.description}")

    logger.info(f"Final candidates: {candidates}")
    return candidates


def get_port_info(port: str) -> dict:
    """
    Get detailed information about a serial port.

    Args:
        port: Serial port name

    Returns:
        Dictionary with port information
    """
    for p in serial.tools.list_ports.comports():
        if p.device == port:
            return {
                'device': p.device,
                'description': p.description,
                'manufacturer': p.manufacturer,
                'vid': f"0x{p.vid:04x}" if p.vid else None,
                'pid': f"0x{p.pid:04x}" if p.pid else None,
                'serial_number': p.serial_number,
                'location': p.location,
            }

    return {'device': port, 'description': 'Port not found'}


async def handshake(transport: HubTransport, timeout: float = 0.5) -> bool:
    """
    Check that an open transport answers like a hub.

    Sends RESCAN_BUS and expects a response for the same command.
    """
    try:
        response = await transport.exchange(commands.rescan_bus(), timeout)
    except (ExchangeTimeoutError, FrameParseError, NotConnectedError) as e:
        logger.debug(f"Handshake failed on {transport.port}: {e}")
        return False
    return response.command == commands.Command.RESCAN_BUS


async def connect_hub(
    port: Optional[str] = None,
    baud: int = DEFAULT_BAUD,
    handshake_timeout: float = 0.5,
    serial_factory: Optional[Callable[..., serial.Serial]] = None,
    poll_interval: float = 0.005,
) -> HubTransport:
    """
    Connect to the VU hub.

    Args:
        port: Specific port to connect to, or None to auto-detect
        baud: Baud rate (default: 115200)
        handshake_timeout: Seconds to wait for the handshake response
        serial_factory: Serial constructor override (tests, custom bridges)
        poll_interval: Transport input polling interval

    Returns:
        An open, handshaken HubTransport

    Raises:
        PortNotFoundError: no candidate port, or none could be opened
        HandshakeFailedError: ports opened but none answered like a hub
    """
    ports_to_try = [port] if port else find_hub_ports()
    if not ports_to_try:
        raise PortNotFoundError("No VU hub serial port found")

    opened_any = False
    for port_name in ports_to_try:
        logger.info(f"Attempting to connect to {port_name}")
        transport = HubTransport(port_name, baud, serial_factory=serial_factory, poll_interval=poll_interval)

        try:
            await transport.open()
        except NotConnectedError as e:
            logger.debug(f"Failed to open {port_name}: {e}")
            continue

        opened_any = True
        if await handshake(transport, handshake_timeout):
            transport.clear_stats()
            logger.info(f"Successfully connected to VU hub on {port_name}")
            return transport

        await transport.close()

    if not opened_any:
        logger.error(f"Could not open any of {ports_to_try}")
        raise PortNotFoundError(f"Could not open any of {ports_to_try}")

    logger.error("Failed to connect to any VU hub")
    raise HandshakeFailedError(f"No hub answered on {ports_to_try}")
