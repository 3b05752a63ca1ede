"""
Pytest fixtures: a simulated VU hub behind a fake pyserial port.

FakeHub parses request lines the way the hub firmware does and answers with
response frames. Dials sit on the shared default address until PROVISION moves
the first waiting one (in physical order) onto the lowest free index.
"""

import functools
import struct
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import pytest
import serial

from vudials import HubConfig, HubController, HubTransport, connect_hub

# Mirrors of the wire constants, kept independent of the library under test
NONE, SINGLE, MULTIPLE, KVP, STATUS = 0x01, 0x02, 0x03, 0x04, 0x05
OK, FAIL, TIMEOUT, DEVICE_OFFLINE, I2C_ERROR = 0x0000, 0x0001, 0x0003, 0x0012, 0x0014

EXPECTED_TAGS = {
    0x01: KVP, 0x03: KVP, 0x04: MULTIPLE, 0x05: SINGLE, 0x06: SINGLE,
    0x07: NONE, 0x08: NONE, 0x09: NONE, 0x0A: SINGLE, 0x0B: SINGLE,
    0x0C: NONE, 0x0D: SINGLE, 0x0E: SINGLE, 0x0F: SINGLE, 0x10: SINGLE,
    0x11: SINGLE, 0x13: MULTIPLE, 0x14: SINGLE, 0x15: SINGLE, 0x16: SINGLE,
    0x17: SINGLE, 0x18: SINGLE, 0x19: SINGLE, 0x20: SINGLE, 0x21: SINGLE,
    0x22: SINGLE,
}

UIDS = [
    bytes.fromhex("A1B2C3D4E5F60718293A4B5C"),
    bytes.fromhex("0102030405060708090A0B0C"),
    bytes.fromhex("FFEEDDCCBBAA998877665544"),
]


def response_line(command: int, data_type: int, payload: bytes = b"") -> bytes:
    return f"<{command:02X}{data_type:02X}{len(payload):04X}{payload.hex().upper()}\r\n".encode("ascii")


def status_line(command: int, status: int) -> bytes:
    return response_line(command, STATUS, status.to_bytes(2, "big"))


@dataclass
class FakeDial:
    uid: bytes
    index: Optional[int] = None
    value: int = 0
    backlight: Tuple[int, int, int, int] = (0, 0, 0, 0)
    easing: Tuple[int, int, int, int] = (2, 50, 5, 100)
    calibration: Dict[str, int] = field(default_factory=dict)
    image_data: bytearray = field(default_factory=bytearray)
    images_shown: List[bytes] = field(default_factory=list)


class FakeHub:
    """Protocol-level hub simulation with fault injection."""

    def __init__(self, uids=None):
        self.dials: List[FakeDial] = [FakeDial(uid) for uid in (UIDS if uids is None else uids)]
        self.requests: List[Tuple[int, int, bytes]] = []
        self.ignored: List[Tuple[int, int, bytes]] = []

        # Fault injection
        self.silent: Set[int] = set()
        self.forced_status: Dict[int, int] = {}
        self.raw_responses: Dict[int, bytes] = {}
        self.noise = b""
        self.fail_writes = False

    # ----- Serial side --------------------------------------------------

    def serial_factory(self, **kwargs) -> "FakeSerial":
        return FakeSerial(self, **kwargs)

    def handle_line(self, line: bytes) -> bytes:
        text = line.decode("ascii")
        if len(text) < 9 or text[0] != ">":
            return b""
        command = int(text[1:3], 16)
        data_type = int(text[3:5], 16)
        length = int(text[5:9], 16)
        payload = bytes.fromhex(text[9:])
        if len(payload) != length:
            return status_line(command, FAIL)

        if EXPECTED_TAGS.get(command) != data_type:
            self.ignored.append((command, data_type, payload))
            return b""
        self.requests.append((command, data_type, payload))

        if command in self.silent:
            return b""
        if command in self.raw_responses:
            return self.noise + self.raw_responses[command]
        if command in self.forced_status:
            return self.noise + status_line(command, self.forced_status[command])
        return self.noise + self.respond(command, payload)

    # ----- Firmware behavior --------------------------------------------

    def dial_at(self, index: int) -> Optional[FakeDial]:
        for dial in self.dials:
            if dial.index == index:
                return dial
        return None

    def online_indices(self) -> List[int]:
        return sorted(d.index for d in self.dials if d.index is not None)

    def respond(self, command: int, payload: bytes) -> bytes:
        if command in (0x0C, 0x0A):
            return status_line(command, OK)
        if command == 0x07:
            flags = bytearray(100)
            for index in self.online_indices():
                flags[index] = 1
            return response_line(command, MULTIPLE, bytes(flags))
        if command == 0x08:
            return self.provision()
        if command == 0x09:
            for dial in self.dials:
                dial.index = None
            return status_line(command, OK)
        if command == 0x04:
            pairs = [payload[i:i + 2] for i in range(0, len(payload), 2)]
            targets = [(self.dial_at(index), percent) for index, percent in pairs]
            if any(dial is None for dial, _ in targets):
                return status_line(command, DEVICE_OFFLINE)
            for dial, percent in targets:
                dial.value = percent
            return status_line(command, OK)

        dial = self.dial_at(payload[0]) if payload else None
        if dial is None:
            return status_line(command, DEVICE_OFFLINE)

        if command == 0x0B:
            return response_line(command, SINGLE, dial.uid)
        if command in (0x19, 0x20, 0x21, 0x22):
            text = {0x19: "b1d5eed", 0x20: "3.1.0", 0x21: "2", 0x22: "1"}[command]
            return response_line(command, SINGLE, text.encode("ascii") + b"\x00")
        if command == 0x18:
            return response_line(command, SINGLE, struct.pack(">4I", *dial.easing))
        if command == 0x11:
            return response_line(command, SINGLE, struct.pack(">H", 1024))
        if command == 0x03:
            dial.value = payload[1]
        elif command == 0x01:
            dial.value = struct.unpack(">H", payload[1:3])[0]
        elif command == 0x13:
            dial.backlight = tuple(payload[1:5])
        elif command in (0x14, 0x15, 0x16, 0x17):
            value = struct.unpack(">I", payload[1:5])[0]
            easing = list(dial.easing)
            easing[command - 0x14] = value
            dial.easing = tuple(easing)
        elif command in (0x05, 0x06):
            key = "max" if command == 0x05 else "half"
            dial.calibration[key] = struct.unpack(">I", payload[1:5])[0]
        elif command == 0x0D:
            dial.image_data = bytearray()
        elif command == 0x0F:
            dial.image_data += payload[1:]
        elif command == 0x10:
            dial.images_shown.append(bytes(dial.image_data))
        return status_line(command, OK)

    def provision(self) -> bytes:
        waiting = [dial for dial in self.dials if dial.index is None]
        if not waiting:
            return status_line(0x08, DEVICE_OFFLINE)
        used = set(self.online_indices())
        waiting[0].index = next(i for i in range(100) if i not in used)
        return response_line(0x08, SINGLE, waiting[0].uid)

    def power_cycle(self, shuffle: bool = True):
        """All dials fall back to the default address; optionally rotate physical order."""
        for dial in self.dials:
            dial.index = None
            dial.value = 0
            dial.backlight = (0, 0, 0, 0)
            dial.easing = (2, 50, 5, 100)
        if shuffle:
            self.dials = self.dials[1:] + self.dials[:1]

    def commands_sent(self) -> List[int]:
        return [command for command, _, _ in self.requests]

    def clear_requests(self):
        self.requests.clear()
        self.ignored.clear()


class FakeSerial:
    """Just enough of serial.Serial for HubTransport."""

    def __init__(self, hub: FakeHub, **kwargs):
        self.hub = hub
        self.settings = kwargs
        self.is_open = True
        self._tx = bytearray()
        self._rx = bytearray()
        self._lock = threading.Lock()

    @property
    def in_waiting(self) -> int:
        self._check()
        with self._lock:
            return len(self._rx)

    def read(self, size: int = 1) -> bytes:
        self._check()
        with self._lock:
            data = bytes(self._rx[:size])
            del self._rx[:size]
            return data

    def write(self, data: bytes) -> int:
        self._check()
        if self.hub.fail_writes:
            raise serial.SerialException("device reports readiness to write but returned no data")
        with self._lock:
            self._tx += data
            while b"\r\n" in self._tx:
                line, _, rest = bytes(self._tx).partition(b"\r\n")
                self._tx = bytearray(rest)
                self._rx += self.hub.handle_line(line)
        return len(data)

    def flush(self):
        pass

    def reset_input_buffer(self):
        with self._lock:
            self._rx.clear()

    def feed(self, data: bytes):
        """Inject unsolicited bytes as if the hub had sent them."""
        with self._lock:
            self._rx += data

    def close(self):
        self.is_open = False

    def _check(self):
        if not self.is_open:
            raise serial.SerialException("Port is closed")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def hub():
    return FakeHub()


@pytest.fixture
def config():
    return HubConfig(
        read_timeout=0.2,
        write_timeout=0.2,
        discovery_timeout=0.2,
        display_chunk_timeout=0.2,
        display_refresh_timeout=0.2,
        handshake_timeout=0.2,
        provision_delay=0.0,
        chunk_delay=0.0,
        display_settle_delay=0.0,
        drain_idle_interval=0.05,
        poll_interval=0.001,
    )


@pytest.fixture
async def transport(hub):
    transport = HubTransport("FAKE0", serial_factory=hub.serial_factory, poll_interval=0.001)
    await transport.open()
    yield transport
    await transport.close()


@pytest.fixture
def connector(hub):
    return functools.partial(connect_hub, serial_factory=hub.serial_factory)


@pytest.fixture
async def controller(config, connector):
    """Started controller connected to the fake hub (not yet discovered)."""
    async with HubController(config, connector=connector) as controller:
        result = await controller.connect("FAKE0")
        assert result.ok
        yield controller


@pytest.fixture
async def discovered(controller):
    result = await controller.discover()
    assert result.ok
    return controller
