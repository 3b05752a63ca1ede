"""
High-level update dispatcher for the VU hub.

Usage:
    from vudials import HubController, load_image
    import anyio

    async def main():
        async with HubController() as hub:
            if not await hub.connect():
                print("No hub found")
                return
            await hub.discover()
            for uid in hub.uids():
                await hub.set_value(uid, 66)
                await hub.set_color(uid, 0, 0, 100)
            hub.queue_image(uid, load_image("cpu.png"))
            await anyio.sleep(10)

    anyio.run(main)

Responsibilities:
- Connection lifecycle and discovery (delegated to DeviceRegistry)
- Value / color / easing writes with write-class timeouts; the cached dial
  state only changes after the hub answers OK
- A background drain loop for image transfers, one pending image per dial
- Status and connectivity events for subscribers

Expected failures come back as CommandResult values; invalid arguments raise
InvalidArgumentError before anything is sent.
"""

import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Union

import anyio

from . import commands
from .config import HubConfig
from .connection import connect_hub
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
)
from .image import ImageBuffer
from .models import (
    COLORS,
    BacklightColor,
    CommandResult,
    DialState,
    EasingConfig,
    EventKind,
    HubEvent,
    ResultCode,
)
from .protocol import Frame
from .reconcile import Reconciler
from .registry import DeviceRegistry
from .store import MetadataStore
from .transport import HubTransport

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[HubTransport]]

# Image failures that are reported at once instead of retried
_FINAL_IMAGE_CODES = (ResultCode.UNKNOWN_DEVICE, ResultCode.NOT_CONNECTED)


@dataclass
class PendingImage:
    """Image waiting for transfer; at most one per UID."""
    uid: str
    buffer: ImageBuffer
    attempts: int = 0


def _check_percent(value: int, name: str):
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= 100:
        raise InvalidArgumentError(f"{name} must be 0-100, got {value!r}")


class HubController:
    """
    Public facade over transport, registry and image pipeline.

    Use as an async context manager so the image drain loop (and the optional
    reconciler) run in a task group that is cancelled on exit.
    """

    # ----- Lifecycle -----------------------------------------------------

    def __init__(
        self,
        config: Optional[HubConfig] = None,
        store: Optional[MetadataStore] = None,
        connector: Optional[Connector] = None,
    ):
        """
        Args:
            config: Timeouts and retry settings
            store: Per-UID metadata (names, easing, calibration)
            connector: Async callable returning an open HubTransport
                (default: connection.connect_hub)
        """
        self.config = config or HubConfig()
        self.registry = DeviceRegistry(None, store, self.config)
        self.transport: Optional[HubTransport] = None
        self._connector = connector or connect_hub

        self._subscribers: List[Callable[[HubEvent], None]] = []
        self._pending: Dict[str, PendingImage] = {}
        self._image_wakeup = anyio.Event()
        self._discovery_lock = anyio.Lock()
        self._tg = None
        self.reconciler: Optional[Reconciler] = None

    async def __aenter__(self) -> "HubController":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self):
        """Launch the image drain loop (and reconciler when configured)."""
        if self._tg is not None:
            return
        self._tg = await anyio.create_task_group().__aenter__()
        try:
            self._tg.start_soon(self._drain_loop)
            if self.config.reconcile_interval:
                self.reconciler = Reconciler(
                    self,
                    interval=self.config.reconcile_interval,
                    silence=self.config.reconcile_silence,
                )
                self._tg.start_soon(self.reconciler.run)
        except BaseException:
            await self._cancel_task_group_safely()
            raise

    async def stop(self):
        """Cancel background work between frames and close the port."""
        await self._cancel_task_group_safely()
        await self.disconnect()

    async def _cancel_task_group_safely(self):
        if self._tg is not None:
            try:
                self._tg.cancel_scope.cancel()
                await self._tg.__aexit__(None, None, None)
            finally:
                self._tg = None

    @property
    def connected(self) -> bool:
        return self.transport is not None and self.transport.is_open

    async def connect(self, port: Optional[str] = None) -> CommandResult:
        """
        Connect to the hub (auto-detect when `port` is None).

        Returns:
            OK, or NOT_CONNECTED (retryable) with the reason in `detail`
        """
        if self.transport is not None:
            await self.disconnect()

        try:
            transport = await self._connector(
                port,
                baud=self.config.baud,
                handshake_timeout=self.config.handshake_timeout,
                poll_interval=self.config.poll_interval,
            )
        except (PortNotFoundError, HandshakeFailedError) as e:
            logger.error(f"Connect failed: {e}")
            self._emit(EventKind.CONNECT_FAILED, detail=str(e))
            return CommandResult(ResultCode.NOT_CONNECTED, detail=str(e))

        self.transport = transport
        self.registry.transport = transport
        self._emit(EventKind.CONNECTED, detail=transport.port)
        logger.info(f"Connected to hub on {transport.port}")
        return CommandResult.success(transport.port)

    async def disconnect(self):
        transport, self.transport = self.transport, None
        self.registry.transport = None
        self.registry.clear()
        self._pending.clear()
        if transport is not None:
            await transport.close()
            self._emit(EventKind.DISCONNECTED, detail=transport.port)

    # ----- Events --------------------------------------------------------

    def subscribe(self, callback: Callable[[HubEvent], None]) -> Callable[[], None]:
        """Register an event callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, kind: EventKind, uid: Optional[str] = None, detail: str = ""):
        event = HubEvent(kind, uid, detail)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Event callback error ({kind.value}): {e}")

    # ----- Discovery -----------------------------------------------------

    async def discover(self) -> CommandResult:
        """Rescan, provision and identify all dials."""
        return await self._run_discovery(self.registry.discover)

    async def rescan(self) -> CommandResult:
        """Rescan and re-identify without provisioning new dials."""

        async def rescan_and_identify():
            await self.registry.rescan()
            return await self.registry.identify_all()

        return await self._run_discovery(rescan_and_identify)

    async def _run_discovery(self, procedure: Callable[[], Awaitable[List[DialState]]]) -> CommandResult:
        if not self.connected:
            return CommandResult(ResultCode.NOT_CONNECTED, detail="Not connected to hub")

        async with self._discovery_lock:
            before = set(self.registry.uids())
            try:
                dials = await procedure()
            except (NotConnectedError, ExchangeTimeoutError, FrameParseError, HubStatusError) as e:
                logger.error(f"Discovery failed: {e}")
                return self._failure(e)

        found = {dial.uid for dial in dials}
        for dial in dials:
            if dial.uid not in before:
                self._emit(EventKind.DIAL_DISCOVERED, dial.uid, dial.name)
        for uid in before - found:
            self._emit(EventKind.DIAL_LOST, uid)
        for uid in list(self._pending):
            if uid not in found:
                del self._pending[uid]

        return CommandResult.success(f"{len(dials)} dial(s)")

    # ----- Snapshots -----------------------------------------------------

    def uids(self) -> List[str]:
        return self.registry.uids()

    def dials(self) -> Dict[str, DialState]:
        """Immutable snapshots of all known dials, keyed by UID."""
        return self.registry.snapshots()

    def dial(self, uid: str) -> Optional[DialState]:
        try:
            return self.registry.snapshot(uid)
        except UnknownDeviceError:
            return None

    # ----- Writes --------------------------------------------------------

    async def set_value(self, uid: str, percent: int) -> CommandResult:
        """Move a dial's needle to `percent` (0-100)."""
        _check_percent(percent, "percent")
        return await self._write(
            uid,
            lambda index: commands.set_dial_percent(index, percent),
            value=percent,
        )

    async def set_values(self, values: Mapping[str, int]) -> CommandResult:
        """Set several dials with one frame. All UIDs must be known."""
        for percent in values.values():
            _check_percent(percent, "percent")
        if not values:
            raise InvalidArgumentError("At least one dial value is required")
        if not self.connected:
            return CommandResult(ResultCode.NOT_CONNECTED, detail="Not connected to hub")
        try:
            pairs = [(self.registry.resolve(uid), percent) for uid, percent in values.items()]
        except UnknownDeviceError as e:
            return CommandResult(ResultCode.UNKNOWN_DEVICE, detail=str(e))

        result = await self._send(commands.set_dial_percent_multiple(pairs))
        if result.ok:
            for uid, percent in values.items():
                self.registry.update(uid, value=percent)
        return result

    async def set_color(self, uid: str, red: int, green: int, blue: int, white: int = 0) -> CommandResult:
        """Set the RGBW backlight (0-100 per channel)."""
        for name, channel in (("red", red), ("green", green), ("blue", blue), ("white", white)):
            _check_percent(channel, name)
        return await self._write(
            uid,
            lambda index: commands.set_backlight(index, red, green, blue, white),
            backlight=BacklightColor(red, green, blue, white),
        )

    async def set_named_color(self, uid: str, name: str) -> CommandResult:
        try:
            color = COLORS[name.lower()]
        except KeyError:
            raise InvalidArgumentError(f"Unknown color '{name}'. Known: {', '.join(COLORS)}") from None
        return await self.set_color(uid, color.red, color.green, color.blue, color.white)

    async def set_easing(self, uid: str, config: EasingConfig) -> CommandResult:
        """
        Push all four easing values. The cached easing changes only when every
        write was acknowledged.
        """
        for name in ("dial_step", "dial_period", "backlight_step", "backlight_period"):
            value = getattr(config, name)
            if not isinstance(value, int) or not 0 <= value <= 0xFFFFFFFF:
                raise InvalidArgumentError(f"{name} must fit in 32 bits, got {value!r}")

        builders = (
            lambda index: commands.set_dial_easing_step(index, config.dial_step),
            lambda index: commands.set_dial_easing_period(index, config.dial_period),
            lambda index: commands.set_backlight_easing_step(index, config.backlight_step),
            lambda index: commands.set_backlight_easing_period(index, config.backlight_period),
        )
        for build in builders[:-1]:
            result = await self._write(uid, build)
            if not result.ok:
                return result
        result = await self._write(uid, builders[-1], easing=config)
        if result.ok:
            self.registry.store.update(uid, easing=config)
        return result

    async def calibrate(self, uid: str, max_value: Optional[int] = None,
                        half_value: Optional[int] = None) -> CommandResult:
        """Send raw calibration points; stored in the UID's metadata once acknowledged."""
        if max_value is None and half_value is None:
            raise InvalidArgumentError("Nothing to calibrate")
        for name, value in (("max_value", max_value), ("half_value", half_value)):
            if value is not None and (not isinstance(value, int) or not 0 <= value <= 0xFFFFFFFF):
                raise InvalidArgumentError(f"{name} must fit in 32 bits, got {value!r}")

        result = CommandResult.success()
        current = self.dial(uid)
        calibration = current.calibration if current else None
        if max_value is not None:
            result = await self._write(uid, lambda index: commands.calibrate_max(index, max_value))
            if not result.ok:
                return result
            calibration = replace(calibration, max_value=max_value)
            self.registry.update(uid, calibration=calibration)
        if half_value is not None:
            result = await self._write(uid, lambda index: commands.calibrate_half(index, half_value))
            if not result.ok:
                return result
            calibration = replace(calibration, half_value=half_value)
            self.registry.update(uid, calibration=calibration)
        self.registry.store.update(uid, calibration=calibration)
        return result

    async def set_power(self, on: bool) -> CommandResult:
        """Switch power to all dials."""
        return await self._send(commands.dial_power(on))

    async def reset_all(self) -> CommandResult:
        """
        Reset every dial's configuration. Runtime indices are lost, so the
        registry is cleared; call discover() afterwards.
        """
        result = await self._send(commands.reset_all_devices())
        if result.ok:
            self.registry.clear()
            self._pending.clear()
        return result

    async def _write(self, uid: str, build: Callable[[int], Frame], **changes) -> CommandResult:
        """Resolve, send, and apply `changes` to the cached dial on OK only."""
        if not self.connected:
            return CommandResult(ResultCode.NOT_CONNECTED, detail="Not connected to hub")
        try:
            index = self.registry.resolve(uid)
        except UnknownDeviceError as e:
            return CommandResult(ResultCode.UNKNOWN_DEVICE, detail=str(e))

        result = await self._send(build(index), uid=uid)
        if result.ok and uid in self.registry:
            self.registry.update(uid, **changes)
        return result

    async def _send(self, frame: Frame, uid: Optional[str] = None, bulk: bool = False) -> CommandResult:
        """One exchange, never retried. Maps every expected failure to a result."""
        if not self.connected:
            return CommandResult(ResultCode.NOT_CONNECTED, detail="Not connected to hub")
        try:
            response = await self.registry.exchange(frame, bulk=bulk)
        except (NotConnectedError, ExchangeTimeoutError, FrameParseError) as e:
            return self._failure(e, uid)

        code = ResultCode.from_status(response.status)
        if code != ResultCode.OK:
            detail = f"Command 0x{frame.command:02X} returned {response.status.name}"
            logger.warning(detail + (f" for {uid}" if uid else ""))
            if code in (ResultCode.DEVICE_OFFLINE, ResultCode.TIMED_OUT) and uid:
                self._emit(EventKind.DIAL_UNRESPONSIVE, uid, detail)
            return CommandResult(code, response.status, detail)
        return CommandResult(ResultCode.OK, response.status)

    def _failure(self, error: Exception, uid: Optional[str] = None) -> CommandResult:
        if isinstance(error, DisconnectedError):
            self._emit(EventKind.DISCONNECTED, detail=str(error))
            return CommandResult(ResultCode.NOT_CONNECTED, detail=str(error))
        if isinstance(error, NotConnectedError):
            return CommandResult(ResultCode.NOT_CONNECTED, detail=str(error))
        if isinstance(error, ExchangeTimeoutError):
            if uid:
                self._emit(EventKind.DIAL_UNRESPONSIVE, uid, str(error))
            return CommandResult(ResultCode.TIMED_OUT, detail=str(error))
        if isinstance(error, FrameParseError):
            return CommandResult(ResultCode.PARSE_ERROR, detail=str(error))
        if isinstance(error, DeviceOfflineError):
            return CommandResult(ResultCode.DEVICE_OFFLINE, error.status, str(error))
        if isinstance(error, I2CError):
            return CommandResult(ResultCode.I2C_ERROR, error.status, str(error))
        if isinstance(error, HubStatusError):
            return CommandResult(ResultCode.FAIL, error.status, str(error))
        raise error

    # ----- Images --------------------------------------------------------

    def queue_image(self, uid: str, buffer: Union[ImageBuffer, bytes]) -> CommandResult:
        """
        Queue an image for background transfer.

        Replaces any image still pending for the same dial. Returns at once;
        IMAGE_SENT / IMAGE_FAILED events report the outcome.
        """
        if not isinstance(buffer, ImageBuffer):
            buffer = ImageBuffer(bytes(buffer))
        if uid not in self.registry:
            return CommandResult(ResultCode.UNKNOWN_DEVICE, detail=f"Dial with UID '{uid}' not found")

        if uid in self._pending:
            logger.debug(f"Replacing pending image for {uid}")
            del self._pending[uid]
        self._pending[uid] = PendingImage(uid, buffer)
        self._image_wakeup.set()
        return CommandResult.success("queued")

    @property
    def pending_images(self) -> int:
        return len(self._pending)

    async def _drain_loop(self):
        """Transfer pending images one at a time until cancelled."""
        logger.debug("Image drain loop started")
        try:
            while True:
                if not self._pending:
                    self._image_wakeup = anyio.Event()
                    with anyio.move_on_after(self.config.drain_idle_interval):
                        await self._image_wakeup.wait()
                    continue
                result = await self.drain_once()
                if result is not None and not result.ok and result.code != ResultCode.CANCELLED:
                    # A failed transfer waits one idle interval before its retry
                    await anyio.sleep(self.config.drain_idle_interval)
        finally:
            logger.debug("Image drain loop stopped")

    async def drain_once(self) -> Optional[CommandResult]:
        """Transfer the oldest pending image; None when nothing is pending."""
        if not self._pending:
            return None

        uid = next(iter(self._pending))
        entry = self._pending.pop(uid)
        entry.attempts += 1
        result = await self.send_image(uid, entry.buffer, abort_if_replaced=True)

        if result.ok:
            self._emit(EventKind.IMAGE_SENT, uid)
        elif uid in self._pending:
            logger.info(f"Image transfer to {uid} failed ({result.code.value}); a newer image is queued")
        elif entry.attempts < self.config.image_max_attempts and result.code not in _FINAL_IMAGE_CODES:
            logger.warning(
                f"Image transfer to {uid} failed ({result.code.value}), "
                f"retrying next cycle ({entry.attempts}/{self.config.image_max_attempts})"
            )
            self._pending[uid] = entry
        else:
            logger.error(f"Giving up on image for {uid} after {entry.attempts} attempt(s): {result.detail}")
            self._emit(EventKind.IMAGE_FAILED, uid, result.detail)
        return result

    async def send_image(self, uid: str, buffer: ImageBuffer, abort_if_replaced: bool = False) -> CommandResult:
        """
        Run the full display transfer now: clear -> goto origin -> chunks -> show.

        Chunks go out as bulk traffic with a pause after each one, so queued
        value/color writes get the transport in between. Slow is expected here;
        only a failed or missing response counts as failure.

        With `abort_if_replaced`, the transfer stops between chunks (CANCELLED)
        as soon as a newer image for the same dial is queued.
        """
        if not self.connected:
            return CommandResult(ResultCode.NOT_CONNECTED, detail="Not connected to hub")
        try:
            index = self.registry.resolve(uid)
        except UnknownDeviceError as e:
            return CommandResult(ResultCode.UNKNOWN_DEVICE, detail=str(e))

        chunks = buffer.chunks()
        logger.info(f"Sending image to {uid} ({len(chunks)} chunks)")

        result = await self._send(commands.display_clear(index), uid=uid)
        if not result.ok:
            return result
        result = await self._send(commands.display_goto_xy(index, 0, 0), uid=uid)
        if not result.ok:
            return result

        for number, data in enumerate(chunks, 1):
            if abort_if_replaced and uid in self._pending:
                logger.info(f"Image for {uid} superseded after {number - 1}/{len(chunks)} chunks")
                return CommandResult(ResultCode.CANCELLED, detail="Superseded by a newer image")
            result = await self._send(commands.display_image_data(index, data), uid=uid, bulk=True)
            if not result.ok:
                logger.warning(f"Image chunk {number}/{len(chunks)} for {uid} failed: {result.detail}")
                return result
            await anyio.sleep(self.config.chunk_delay)

        await anyio.sleep(self.config.display_settle_delay)
        result = await self._send(commands.display_show_image(index), uid=uid)
        if result.ok:
            self.registry.update(uid)
        return result
