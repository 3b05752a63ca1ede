import functools
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import anyio
import pytest

from vudials import HubController
from vudials.connection import connect_hub
from vudials.errors import InvalidArgumentError
from vudials.image import BYTES_PER_IMAGE, ImageBuffer, blank_image, stripe_pattern
from vudials.models import BacklightColor, EasingConfig, EventKind, ResultCode
from vudials.protocol import Status
from vudials.reconcile import Reconciler

from .conftest import UIDS

pytestmark = pytest.mark.anyio

UID_STRINGS = [uid.hex().upper() for uid in UIDS]


def record_events(controller):
    events = []
    controller.subscribe(events.append)
    return events


async def wait_for(events, kind, timeout=3.0):
    with anyio.fail_after(timeout):
        while not any(e.kind == kind for e in events):
            await anyio.sleep(0.01)
    return [e for e in events if e.kind == kind]


def fake_dial(hub, uid):
    return next(d for d in hub.dials if d.uid.hex().upper() == uid)


# ----- Connection --------------------------------------------------------

async def test_connect_failure_is_retryable(config):
    def refuse(**kwargs):
        raise OSError("Permission denied")

    controller = HubController(config, connector=functools.partial(connect_hub, serial_factory=refuse))
    events = record_events(controller)
    result = await controller.connect("/dev/ttyUSB9")

    assert result.code == ResultCode.NOT_CONNECTED
    assert result.retryable
    assert not controller.connected
    assert events[0].kind == EventKind.CONNECT_FAILED


async def test_commands_without_connection(config):
    controller = HubController(config)
    assert (await controller.set_value(UID_STRINGS[0], 10)).code == ResultCode.NOT_CONNECTED
    assert (await controller.discover()).code == ResultCode.NOT_CONNECTED


async def test_discover_emits_events(controller, hub):
    events = record_events(controller)
    result = await controller.discover()

    assert result.ok
    assert sorted(controller.uids()) == sorted(UID_STRINGS)
    discovered = [e.uid for e in events if e.kind == EventKind.DIAL_DISCOVERED]
    assert sorted(discovered) == sorted(UID_STRINGS)

    hub.dials.pop()
    await controller.rescan()
    lost = [e.uid for e in events if e.kind == EventKind.DIAL_LOST]
    assert lost == [UIDS[2].hex().upper()]


async def test_rescan_does_not_provision(controller, hub):
    await controller.discover()
    hub.power_cycle(shuffle=False)
    hub.clear_requests()

    result = await controller.rescan()
    assert result.ok
    assert controller.uids() == []
    assert 0x08 not in hub.commands_sent()


async def test_disconnect_clears_dials(discovered):
    events = record_events(discovered)
    await discovered.disconnect()
    assert not discovered.connected
    assert discovered.dials() == {}
    assert events[-1].kind == EventKind.DISCONNECTED


async def test_serial_failure_reports_disconnect(discovered, hub):
    events = record_events(discovered)
    hub.fail_writes = True
    result = await discovered.set_value(UID_STRINGS[0], 20)

    assert result.code == ResultCode.NOT_CONNECTED
    assert not discovered.connected
    assert events[0].kind == EventKind.DISCONNECTED


# ----- Writes ------------------------------------------------------------

async def test_set_value_updates_dial_and_snapshot(discovered, hub):
    uid = UID_STRINGS[0]
    result = await discovered.set_value(uid, 66)

    assert result.ok
    assert result.status == Status.OK
    assert fake_dial(hub, uid).value == 66
    assert discovered.dial(uid).value == 66


async def test_set_value_twice_is_idempotent(discovered, hub):
    uid = UID_STRINGS[1]
    first = await discovered.set_value(uid, 50)
    state = discovered.dial(uid)
    second = await discovered.set_value(uid, 50)

    assert first.ok and second.ok
    assert replace(discovered.dial(uid), last_communication=state.last_communication) == state
    assert fake_dial(hub, uid).value == 50


async def test_value_boundaries(discovered, hub):
    uid = UID_STRINGS[0]
    assert (await discovered.set_value(uid, 0)).ok
    assert (await discovered.set_value(uid, 100)).ok

    hub.clear_requests()
    with pytest.raises(InvalidArgumentError):
        await discovered.set_value(uid, 101)
    with pytest.raises(InvalidArgumentError):
        await discovered.set_value(uid, -1)
    assert hub.requests == []


async def test_unknown_uid(discovered, hub):
    hub.clear_requests()
    result = await discovered.set_value("000000000000000000000000", 10)
    assert result.code == ResultCode.UNKNOWN_DEVICE
    assert hub.requests == []


async def test_set_color_only_applies_on_ok(discovered, hub):
    uid = UID_STRINGS[0]
    result = await discovered.set_color(uid, 100, 0, 0, 0)
    assert result.ok
    assert discovered.dial(uid).backlight == BacklightColor(100, 0, 0, 0)

    events = record_events(discovered)
    hub.silent.add(0x13)
    result = await discovered.set_color(uid, 0, 100, 0, 0)
    assert result.code == ResultCode.TIMED_OUT
    assert result.retryable
    assert discovered.dial(uid).backlight == BacklightColor(100, 0, 0, 0)
    assert events[0].kind == EventKind.DIAL_UNRESPONSIVE


async def test_timeout_status_leaves_snapshot(discovered, hub):
    uid = UID_STRINGS[0]
    hub.forced_status[0x13] = 0x0003
    result = await discovered.set_color(uid, 0, 0, 100)
    assert result.code == ResultCode.TIMED_OUT
    assert result.status == Status.TIMEOUT
    assert discovered.dial(uid).backlight == BacklightColor()


async def test_failure_status_is_not_retried(discovered, hub):
    uid = UID_STRINGS[0]
    hub.forced_status[0x03] = 0x0014
    hub.clear_requests()
    result = await discovered.set_value(uid, 30)
    assert result.code == ResultCode.I2C_ERROR
    assert hub.commands_sent() == [0x03]
    assert discovered.dial(uid).value == 0


async def test_named_color(discovered, hub):
    uid = UID_STRINGS[2]
    assert (await discovered.set_named_color(uid, "Orange")).ok
    assert fake_dial(hub, uid).backlight == (100, 50, 0, 0)
    with pytest.raises(InvalidArgumentError):
        await discovered.set_named_color(uid, "chartreuse")


async def test_set_values_single_frame(discovered, hub):
    values = {UID_STRINGS[0]: 10, UID_STRINGS[1]: 20, UID_STRINGS[2]: 30}
    hub.clear_requests()
    result = await discovered.set_values(values)

    assert result.ok
    assert hub.commands_sent() == [0x04]
    for uid, percent in values.items():
        assert fake_dial(hub, uid).value == percent
        assert discovered.dial(uid).value == percent


async def test_set_easing(discovered, hub):
    uid = UID_STRINGS[0]
    easing = EasingConfig(dial_step=4, dial_period=20, backlight_step=10, backlight_period=200)
    result = await discovered.set_easing(uid, easing)

    assert result.ok
    assert fake_dial(hub, uid).easing == (4, 20, 10, 200)
    assert discovered.dial(uid).easing == easing
    assert discovered.registry.store.get(uid).easing == easing


async def test_set_easing_stops_on_first_failure(discovered, hub):
    uid = UID_STRINGS[0]
    hub.forced_status[0x15] = 0x0001
    result = await discovered.set_easing(uid, EasingConfig(9, 9, 9, 9))
    assert result.code == ResultCode.FAIL
    assert discovered.dial(uid).easing == EasingConfig()
    assert fake_dial(hub, uid).easing == (9, 50, 5, 100)


async def test_calibrate_persists_by_uid(discovered, hub):
    uid = UID_STRINGS[1]
    result = await discovered.calibrate(uid, max_value=1000, half_value=480)
    assert result.ok
    assert fake_dial(hub, uid).calibration == {"max": 1000, "half": 480}
    assert discovered.registry.store.get(uid).calibration.half_value == 480
    with pytest.raises(InvalidArgumentError):
        await discovered.calibrate(uid)


async def test_power_and_reset(discovered, hub):
    assert (await discovered.set_power(False)).ok
    assert (await discovered.reset_all()).ok
    assert discovered.uids() == []
    assert hub.online_indices() == []

    await discovered.discover()
    assert sorted(discovered.uids()) == sorted(UID_STRINGS)


# ----- Images ------------------------------------------------------------

async def test_image_transfer_sequence(discovered, hub):
    uid = UID_STRINGS[0]
    hub.clear_requests()
    result = await discovered.send_image(uid, stripe_pattern())

    assert result.ok
    assert hub.commands_sent() == [0x0D, 0x0E, 0x0F, 0x0F, 0x0F, 0x0F, 0x10]
    assert fake_dial(hub, uid).images_shown == [stripe_pattern().data]


async def test_second_queued_image_replaces_first(discovered, hub):
    uid = UID_STRINGS[0]
    events = record_events(discovered)
    first = ImageBuffer(b"\xaa" * BYTES_PER_IMAGE)
    second = ImageBuffer(b"\x55" * BYTES_PER_IMAGE)

    assert discovered.queue_image(uid, first).ok
    assert discovered.queue_image(uid, second).ok
    assert discovered.pending_images == 1

    await wait_for(events, EventKind.IMAGE_SENT)
    assert fake_dial(hub, uid).images_shown == [second.data]
    chunks = [p for c, _, p in hub.requests if c == 0x0F]
    assert b"".join(p[1:] for p in chunks) == second.data


async def test_queue_image_validates(discovered):
    with pytest.raises(InvalidArgumentError):
        discovered.queue_image(UID_STRINGS[0], b"\x00" * 10)
    assert discovered.queue_image("00" * 12, blank_image()).code == ResultCode.UNKNOWN_DEVICE


async def test_image_gives_up_after_max_attempts(discovered, hub, config):
    uid = UID_STRINGS[0]
    events = record_events(discovered)
    hub.silent.add(0x10)
    discovered.queue_image(uid, blank_image())

    failed = await wait_for(events, EventKind.IMAGE_FAILED, timeout=5.0)
    assert failed[0].uid == uid
    assert hub.commands_sent().count(0x10) == config.image_max_attempts
    assert discovered.pending_images == 0


async def test_writes_work_between_image_chunks(discovered, hub):
    uid = UID_STRINGS[0]
    events = record_events(discovered)
    discovered.queue_image(uid, stripe_pattern())
    result = await discovered.set_value(UID_STRINGS[1], 77)

    assert result.ok
    await wait_for(events, EventKind.IMAGE_SENT)
    assert fake_dial(hub, UID_STRINGS[1]).value == 77


# ----- Events / reconciliation -------------------------------------------

async def test_callback_errors_are_contained(discovered):
    def broken(event):
        raise RuntimeError("boom")

    discovered.subscribe(broken)
    seen = []
    unsubscribe = discovered.subscribe(seen.append)
    await discovered.disconnect()
    assert [e.kind for e in seen] == [EventKind.DISCONNECTED]

    unsubscribe()
    assert (await discovered.connect("FAKE0")).ok
    assert len(seen) == 1


async def test_reconciler_rediscovers_after_power_cycle(discovered, hub):
    reconciler = Reconciler(discovered, interval=1.0)
    events = record_events(discovered)
    assert not await reconciler.check_once()

    hub.power_cycle(shuffle=True)
    for _ in hub.dials:
        hub.provision()

    assert await reconciler.check_once()
    assert any(e.kind == EventKind.RECONCILED for e in events)
    for uid in UID_STRINGS:
        index = discovered.registry.resolve(uid)
        assert fake_dial(hub, uid).index == index


async def test_reconciler_triggers_on_silence(discovered):
    uid = UID_STRINGS[0]
    stale = datetime.now(timezone.utc) - timedelta(minutes=10)
    registry = discovered.registry
    registry._dials[uid] = replace(registry.snapshot(uid), last_communication=stale)

    reconciler = Reconciler(discovered, interval=1.0, silence=60.0)
    assert await reconciler.check_once()
    assert reconciler.rediscoveries == 1


async def test_background_reconciliation(config, connector, hub):
    config.reconcile_interval = 0.05
    async with HubController(config, connector=connector) as controller:
        assert controller.reconciler is not None
        await controller.connect("FAKE0")
        await controller.discover()
        events = record_events(controller)

        hub.power_cycle(shuffle=True)
        await wait_for(events, EventKind.RECONCILED)
        assert sorted(controller.uids()) == sorted(UID_STRINGS)


async def test_newer_image_supersedes_transfer_in_progress(config, connector, hub):
    config.chunk_delay = 0.05
    async with HubController(config, connector=connector) as controller:
        await controller.connect("FAKE0")
        await controller.discover()
        uid = UID_STRINGS[0]
        events = record_events(controller)
        first = ImageBuffer(b"\xaa" * BYTES_PER_IMAGE)
        second = ImageBuffer(b"\x55" * BYTES_PER_IMAGE)

        controller.queue_image(uid, first)
        with anyio.fail_after(3):
            while 0x0F not in hub.commands_sent():
                await anyio.sleep(0.005)
        controller.queue_image(uid, second)

        await wait_for(events, EventKind.IMAGE_SENT)
        assert fake_dial(hub, uid).images_shown == [second.data]
        assert not any(e.kind == EventKind.IMAGE_FAILED for e in events)


async def test_exit_during_transfer_stops_between_frames(config, connector, hub):
    config.chunk_delay = 0.05
    async with HubController(config, connector=connector) as controller:
        await controller.connect("FAKE0")
        await controller.discover()
        port = controller.transport.serial
        hub.clear_requests()

        controller.queue_image(UID_STRINGS[0], stripe_pattern())
        with anyio.fail_after(3):
            while 0x0F not in hub.commands_sent():
                await anyio.sleep(0.005)

    sent = hub.commands_sent()
    assert 0x10 not in sent
    assert sent.count(0x0F) < 4
    # Every chunk that went out was a whole frame: index byte plus data
    assert all(len(payload) in (1001, 601) for c, _, payload in hub.requests if c == 0x0F)
    assert port._tx == bytearray()
    assert not port.is_open
    assert fake_dial(hub, UID_STRINGS[0]).images_shown == []


async def test_image_to_dropped_hub_fails_once(discovered, hub, config):
    events = record_events(discovered)
    hub.fail_writes = True
    discovered.queue_image(UID_STRINGS[0], blank_image())

    failed = await wait_for(events, EventKind.IMAGE_FAILED)
    await anyio.sleep(config.drain_idle_interval * 4)

    assert len([e for e in events if e.kind == EventKind.IMAGE_FAILED]) == 1
    assert failed[0].uid == UID_STRINGS[0]
    assert len([e for e in events if e.kind == EventKind.DISCONNECTED]) == 1
    assert discovered.pending_images == 0


async def test_image_retries_wait_between_attempts(discovered, hub, config):
    config.drain_idle_interval = 0.1
    events = record_events(discovered)
    hub.forced_status[0x0D] = 0x0001

    started = anyio.current_time()
    discovered.queue_image(UID_STRINGS[0], blank_image())
    await wait_for(events, EventKind.IMAGE_FAILED)

    assert hub.commands_sent().count(0x0D) == config.image_max_attempts
    assert anyio.current_time() - started >= 0.1 * (config.image_max_attempts - 1)
