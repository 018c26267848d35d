"""Shared test doubles and frame builders for loommon tests."""

from datetime import datetime, timezone

import requests

from loommon.config import MachineConfig
from loommon.profile import PROFILE_A, Frame

START_ADDR = 5000
COUNT = 74
WINDOW_ADDRESS = START_ADDR - 1

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_registers(profile=PROFILE_A, count: int = COUNT, **values) -> list[int]:
    """Build a register window with the named profile fields set.

    Unless overridden, ``cloth_length`` is non-zero so the window is
    not a sentinel frame.
    """
    values.setdefault("cloth_length", 1200)
    registers = [0] * count
    for name, value in values.items():
        registers[profile.fields[name] - WINDOW_ADDRESS] = value
    return registers


def make_frame(profile=PROFILE_A, **values) -> Frame:
    """Build a Frame for *profile* with the named fields set."""
    return Frame(WINDOW_ADDRESS, make_registers(profile, **values))


def make_machine(machine_id: str = "L01", profile: str = "A",
                 transport: str = "tcp") -> MachineConfig:
    """Build a MachineConfig for tests."""
    return MachineConfig(id=machine_id, address="10.0.0.1",
                         profile=profile, transport=transport)


class FakeResponse:
    """Test double for a pymodbus read response."""

    def __init__(self, registers: list[int], error: bool = False):
        """Initialize with the registers to return."""
        self.registers = list(registers)
        self._error = error

    def isError(self) -> bool:
        """Return True for an exception response."""
        return self._error


class FakeClient:
    """Test double for a pymodbus client: canned reads, records calls.

    Each queued item is a FakeResponse to return or an exception to
    raise.  An exhausted queue returns an empty response.
    """

    def __init__(self, responses=(), connect_ok: bool = True):
        """Initialize with canned responses and the connect() result."""
        self._responses = list(responses)
        self.connect_ok = connect_ok
        self.connects = 0
        self.closed = 0
        self.reads = []

    def connect(self) -> bool:
        """Record the attempt and return the configured result."""
        self.connects += 1
        return self.connect_ok

    def close(self) -> None:
        """Record the close."""
        self.closed += 1

    def read_holding_registers(self, address, count=1, device_id=1):
        """Return or raise the next canned item."""
        self.reads.append((address, count, device_id))
        item = self._responses.pop(0) if self._responses else FakeResponse([])
        if isinstance(item, BaseException):
            raise item
        return item

    def queue(self, *items) -> None:
        """Append more canned items."""
        self._responses.extend(items)


class ClientFactory:
    """Test double for ``make_client``: hands out one FakeClient."""

    def __init__(self, client: FakeClient):
        """Initialize with the client every call returns."""
        self.client = client
        self.calls = []

    def __call__(self, machine, port, timeout_ms, baudrate):
        """Record the arguments and return the client."""
        self.calls.append((machine, port, timeout_ms, baudrate))
        return self.client


class FakeHttpResponse:
    """Test double for ``requests.Response``."""

    def __init__(self, status: int = 200, body=None):
        """Initialize with status code and JSON body."""
        self.status_code = status
        self._body = body

    def raise_for_status(self) -> None:
        """Raise HTTPError for 4xx/5xx statuses."""
        if self.status_code >= 400:
            raise requests.HTTPError("%d error" % self.status_code)

    def json(self):
        """Return the JSON body, or raise ValueError if there is none."""
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body


class FakeSession:
    """Test double for ``requests.Session``: records POSTs.

    Each queued item is a FakeHttpResponse or an exception to raise;
    an exhausted queue answers 200.  *on_post* is called during the
    POST, before the answer is produced.
    """

    def __init__(self, responses=(), on_post=None):
        """Initialize with canned answers and an optional hook."""
        self._responses = list(responses)
        self.on_post = on_post
        self.posts = []

    def post(self, url, json=None, timeout=None):
        """Record the request and return or raise the next answer."""
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        if self.on_post is not None:
            self.on_post()
        item = self._responses.pop(0) if self._responses else FakeHttpResponse()
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        """No-op for test compatibility."""
        pass
