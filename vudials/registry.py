"""
Dial discovery, provisioning and identity tracking.

Every dial leaves the factory answering on the same default I2C address. The
hub moves them one at a time onto a runtime index (0-99) during provisioning;
that index is volatile and changes across power cycles. The 12-byte UID is the
only stable identity, so the registry is keyed by UID and resolves UID -> index
on every call.

State machine:
    UNKNOWN -> SCANNING -> PROVISIONING -> ENUMERATED
    per dial: IDENTIFIED -> CONFIGURED (version info and easing read back)

No background re-verification happens here: a dial that lost power
mid-session is noticed through a failed command. See vudials.reconcile for the
optional periodic check.
"""

import logging
import struct
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

import anyio

from . import commands
from .commands import MAX_DIALS, latency_of
from .config import HubConfig
from .errors import (
    DeviceOfflineError,
    ExchangeTimeoutError,
    FrameParseError,
    HubStatusError,
    I2CError,
    NotConnectedError,
    UnknownDeviceError,
)
from .models import DialPhase, DialState, EasingConfig
from .protocol import Frame, Status, decode_ascii
from .store import MetadataStore
from .transport import HubTransport

logger = logging.getLogger(__name__)

UID_LENGTH = 12
EASING_PAYLOAD_LENGTH = 16


class RegistryState(Enum):
    UNKNOWN = "unknown"
    SCANNING = "scanning"
    PROVISIONING = "provisioning"
    ENUMERATED = "enumerated"


def raise_for_status(frame: Frame) -> Frame:
    """Return data frames and OK status frames; raise for any other status."""
    status = frame.status
    if status is None or status == Status.OK:
        return frame
    message = f"Command 0x{frame.command:02X} failed with status {status.name}"
    if status == Status.DEVICE_OFFLINE:
        raise DeviceOfflineError(message, status)
    if status == Status.I2C_ERROR:
        raise I2CError(message, status)
    if status == Status.TIMEOUT:
        raise ExchangeTimeoutError(message)
    raise HubStatusError(message, status)


class DeviceRegistry:
    """UID-keyed table of dials, rebuilt on every full rescan."""

    def __init__(
        self,
        transport: Optional[HubTransport] = None,
        store: Optional[MetadataStore] = None,
        config: Optional[HubConfig] = None,
    ):
        self.transport = transport
        self.store = store if store is not None else MetadataStore()
        self.config = config or HubConfig()
        self.state = RegistryState.UNKNOWN
        self.online: List[int] = []
        self._dials: Dict[str, DialState] = {}

    # ----- Wire helpers ---------------------------------------------------

    async def exchange(self, frame: Frame, bulk: bool = False) -> Frame:
        """Send a catalog frame with the timeout of its latency class."""
        if self.transport is None:
            raise NotConnectedError("No transport attached")
        timeout = self.config.timeout_for(latency_of(frame))
        return await self.transport.exchange(frame, timeout, bulk=bulk)

    async def _query(self, frame: Frame) -> Frame:
        return raise_for_status(await self.exchange(frame))

    # ----- Discovery ------------------------------------------------------

    async def rescan(self) -> List[int]:
        """
        Rescan the bus and replace the working set with the reported map.

        All cached dials are dropped; nothing from before the rescan is carried
        over, so indices that went away cannot linger as ghost entries.

        Returns:
            Online runtime indices
        """
        self.state = RegistryState.SCANNING
        logger.info("Rescanning I2C bus")
        await self._query(commands.rescan_bus())
        self._dials = {}
        self.online = await self.read_online_map()
        logger.info(f"Bus rescan reports {len(self.online)} online dial(s)")
        return list(self.online)

    async def read_online_map(self) -> List[int]:
        """Read the online bitmap (one flag byte per index)."""
        response = await self._query(commands.get_devices_map())
        if response.is_status:
            return []
        flags = response.payload[:MAX_DIALS]
        return [index for index, flag in enumerate(flags) if flag]

    async def provision(self, attempts: Optional[int] = None, delay: Optional[float] = None) -> int:
        """
        Move waiting dials off the default address.

        Each PROVISION exchange lets at most one dial still on the default
        address win arbitration, report its UID and receive a runtime index, so
        this loops while UIDs keep coming back, pausing `delay` seconds between
        exchanges. The loop ends early as soon as nothing answers at the default
        address with a UID (DEVICE_OFFLINE, a bare OK, or no response at all).
        An error status or a malformed response uses up one of `attempts`.

        Args:
            attempts: Exchanges without a UID allowed (default: config.provision_attempts)
            delay: Seconds between exchanges (default: config.provision_delay)

        Returns:
            Number of dials that reported a UID
        """
        attempts = self.config.provision_attempts if attempts is None else attempts
        delay = self.config.provision_delay if delay is None else delay

        self.state = RegistryState.PROVISIONING
        provisioned = 0
        unproductive = 0

        for exchange in range(MAX_DIALS):
            if exchange:
                await anyio.sleep(delay)
            try:
                response = raise_for_status(await self.exchange(commands.provision_device()))
            except DeviceOfflineError:
                logger.debug("No dial left on the default address")
                break
            except ExchangeTimeoutError:
                logger.debug("No answer at the default address")
                break
            except (FrameParseError, HubStatusError) as e:
                response = None
                logger.warning(f"Provisioning exchange failed: {e}")

            if response is not None and not response.is_status and len(response.payload) == UID_LENGTH:
                provisioned += 1
                logger.debug(f"Provisioned dial {response.payload.hex().upper()}")
                continue
            if response is not None and response.is_status:
                logger.debug("Default address acknowledged without a UID")
                break

            unproductive += 1
            if response is not None:
                logger.debug(f"Provisioning attempt {unproductive}/{attempts} returned a malformed UID")
            if unproductive >= attempts:
                break

        logger.info(f"Provisioned {provisioned} new dial(s)")
        return provisioned

    async def identify(self, index: int) -> DialState:
        """
        Read identity and details of the dial at `index`.

        The UID read must succeed; version strings and easing are best effort
        and leave the dial in the IDENTIFIED phase when any of them fails.
        Persisted metadata (name, easing, calibration) is merged in by UID,
        defaults are created for unseen dials.
        """
        response = await self._query(commands.get_device_uid(index))
        if len(response.payload) != UID_LENGTH:
            raise FrameParseError(
                f"UID at index {index} has {len(response.payload)} bytes, expected {UID_LENGTH}"
            )
        uid = response.payload.hex().upper()
        metadata = self.store.get_or_create(uid)

        details = {}
        complete = True
        for attr, builder in (
            ("firmware_version", commands.get_firmware_info),
            ("hardware_version", commands.get_hardware_info),
            ("protocol_version", commands.get_protocol_info),
            ("build_hash", commands.get_build_info),
        ):
            try:
                details[attr] = decode_ascii((await self._query(builder(index))).payload)
            except (ExchangeTimeoutError, FrameParseError, HubStatusError) as e:
                complete = False
                logger.debug(f"Could not read {attr} of {uid}: {e}")

        easing = metadata.easing
        try:
            easing = await self._read_easing(index)
        except (ExchangeTimeoutError, FrameParseError, HubStatusError) as e:
            complete = False
            logger.debug(f"Could not read easing of {uid}: {e}")

        dial = DialState(
            uid=uid,
            index=index,
            name=metadata.name,
            easing=easing,
            calibration=metadata.calibration,
            phase=DialPhase.CONFIGURED if complete else DialPhase.IDENTIFIED,
            **details,
        )
        logger.info(f"Identified {dial.name} ({uid}) at index {index}")
        return dial

    async def _read_easing(self, index: int) -> EasingConfig:
        payload = (await self._query(commands.get_easing_config(index))).payload
        if len(payload) < EASING_PAYLOAD_LENGTH:
            raise FrameParseError(f"Easing config has {len(payload)} bytes, expected {EASING_PAYLOAD_LENGTH}")
        return EasingConfig(*struct.unpack(">4I", payload[:EASING_PAYLOAD_LENGTH]))

    async def identify_all(self) -> List[DialState]:
        """Identify every online index and rebuild the UID table from the results."""
        dials: Dict[str, DialState] = {}
        for index in self.online:
            try:
                dial = await self.identify(index)
            except (ExchangeTimeoutError, FrameParseError, HubStatusError) as e:
                logger.warning(f"Skipping dial at index {index}: {e}")
                continue
            if dial.uid in dials:
                logger.warning(f"UID {dial.uid} reported at indices {dials[dial.uid].index} and {index}")
            dials[dial.uid] = dial
        self._dials = dials
        self.state = RegistryState.ENUMERATED
        return list(dials.values())

    async def discover(self) -> List[DialState]:
        """Full discovery: rescan -> provision -> re-read map -> identify."""
        await self.rescan()
        await self.provision()
        self.online = await self.read_online_map()
        dials = await self.identify_all()
        logger.info(f"Discovery complete: {len(dials)} dial(s)")
        return dials

    async def verify(self, uid: str) -> bool:
        """Check that the dial answering at the cached index still has `uid`."""
        index = self.resolve(uid)
        try:
            response = await self._query(commands.get_device_uid(index))
        except (ExchangeTimeoutError, FrameParseError, HubStatusError) as e:
            logger.info(f"Verification of {uid} at index {index} failed: {e}")
            return False
        return response.payload.hex().upper() == uid

    # ----- Lookup ---------------------------------------------------------

    def resolve(self, uid: str) -> int:
        """Current runtime index for `uid`."""
        try:
            return self._dials[uid].index
        except KeyError:
            raise UnknownDeviceError(f"Dial with UID '{uid}' not found") from None

    def __contains__(self, uid: str) -> bool:
        return uid in self._dials

    def __len__(self) -> int:
        return len(self._dials)

    def uids(self) -> List[str]:
        return list(self._dials)

    def snapshot(self, uid: str) -> DialState:
        try:
            return self._dials[uid]
        except KeyError:
            raise UnknownDeviceError(f"Dial with UID '{uid}' not found") from None

    def snapshots(self) -> Dict[str, DialState]:
        return dict(self._dials)

    def update(self, uid: str, **changes) -> DialState:
        """Replace the cached snapshot after a confirmed OK round trip."""
        dial = replace(self.snapshot(uid), last_communication=datetime.now(timezone.utc), **changes)
        self._dials[uid] = dial
        return dial

    def clear(self):
        self._dials = {}
        self.online = []
        self.state = RegistryState.UNKNOWN
