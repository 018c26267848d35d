"""Modbus session management for a single loom controller.

Wraps a pymodbus client with a small connection state machine.  A
failed connect never raises: the error is kept in ``last_error`` and
the half-open client is closed, so the poll loop only has to look at
``connected``.  Reads raise the loommon field-device errors.

Example:
    >>> from loommon.connection import ConnectionManager
    >>> conn = ConnectionManager(machine, port=502, unit_id=85)
    >>> conn.connect()
    True
    >>> regs = conn.read_window(5000, 74)
"""

import enum
import logging
import threading

from pymodbus.client import ModbusSerialClient, ModbusTcpClient
from pymodbus.exceptions import (
    ConnectionException,
    ModbusException,
    ModbusIOException,
)

from loommon.config import MachineConfig
from loommon.errors import (
    DeviceConnectionError,
    ReadProtocolError,
    ReadTimeoutError,
)

log = logging.getLogger(__name__)

DEFAULT_PORT = 502
DEFAULT_UNIT_ID = 85
DEFAULT_TIMEOUT_MS = 1000
DEFAULT_BAUDRATE = 9600


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def make_client(machine: MachineConfig, port: int, timeout_ms: int,
                baudrate: int):
    """Build the pymodbus client for *machine*'s transport.

    ``serial`` machines are on a local RS-485 line and *address* is the
    device path.  ``tcp`` and ``rs485`` machines (the latter behind a
    serial-to-TCP gateway) are reached at *address*:*port*.
    """
    timeout = timeout_ms / 1000.0
    if machine.transport == "serial":
        return ModbusSerialClient(
            machine.address, baudrate=baudrate, timeout=timeout, retries=0,
        )
    return ModbusTcpClient(
        machine.address, port=port, timeout=timeout, retries=0,
    )


class ConnectionManager:
    """One persistent Modbus session to one loom controller.

    Args:
        machine: The machine this session belongs to.
        port: TCP port of the controller or gateway.
        unit_id: Modbus station (unit) id used for every read.
        timeout_ms: Per-request timeout in milliseconds.
        baudrate: Line speed for ``serial`` machines.
        client_factory: Callable building a pymodbus-like client;
            defaults to ``make_client``.  Tests substitute fakes here.
    """

    def __init__(self, machine: MachineConfig, port: int = DEFAULT_PORT,
                 unit_id: int = DEFAULT_UNIT_ID,
                 timeout_ms: int = DEFAULT_TIMEOUT_MS,
                 baudrate: int = DEFAULT_BAUDRATE, client_factory=None):
        """Initialize in the Disconnected state; nothing is opened yet."""
        self.machine = machine
        self.port = port
        self.unit_id = unit_id
        self.timeout_ms = timeout_ms
        self.baudrate = baudrate
        self.last_error: str | None = None
        self._factory = client_factory or make_client
        self._client = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def connect(self) -> bool:
        """Open the session unless it is already open or opening.

        Returns True if the session is connected afterwards.  Failures
        are recorded in ``last_error``; this method does not raise.
        """
        with self._lock:
            if self._state is not ConnectionState.DISCONNECTED:
                return self._state is ConnectionState.CONNECTED
            self._state = ConnectionState.CONNECTING

        client = None
        try:
            client = self._factory(
                self.machine, self.port, self.timeout_ms, self.baudrate,
            )
            if not client.connect():
                raise DeviceConnectionError(
                    "cannot connect to %s" % self._target()
                )
        except (DeviceConnectionError, ModbusException, OSError) as exc:
            self.last_error = str(exc) or exc.__class__.__name__
            log.warning("machine %s: connect failed: %s",
                        self.machine.id, self.last_error)
            self._close_client(client)
            self._state = ConnectionState.DISCONNECTED
            return False

        self._client = client
        self.last_error = None
        self._state = ConnectionState.CONNECTED
        log.info("machine %s: connected to %s unit=%d",
                 self.machine.id, self._target(), self.unit_id)
        return True

    def read_window(self, start: int, count: int) -> list[int]:
        """Read *count* holding registers from 1-based address *start*.

        Raises:
            DeviceConnectionError: Not connected, or the link dropped.
            ReadTimeoutError: The controller did not answer in time.
            ReadProtocolError: Exception response or short register list.
        """
        if not self.connected or self._client is None:
            raise DeviceConnectionError("not connected to %s" % self._target())

        try:
            result = self._client.read_holding_registers(
                start - 1, count=count, device_id=self.unit_id,
            )
        except ConnectionException as exc:
            raise DeviceConnectionError(str(exc)) from exc
        except ModbusIOException as exc:
            raise ReadTimeoutError(str(exc)) from exc
        except ModbusException as exc:
            raise ReadProtocolError(str(exc)) from exc
        except OSError as exc:
            raise DeviceConnectionError(str(exc)) from exc

        if result.isError():
            raise ReadProtocolError("exception response: %s" % result)
        registers = list(result.registers)
        if len(registers) < count:
            raise ReadProtocolError(
                "short response: %d of %d registers" % (len(registers), count)
            )
        return registers

    def close(self) -> None:
        """Force-close the session and return to Disconnected."""
        client, self._client = self._client, None
        self._close_client(client)
        self._state = ConnectionState.DISCONNECTED

    def _close_client(self, client) -> None:
        if client is None:
            return
        try:
            client.close()
        except OSError:
            pass

    def _target(self) -> str:
        if self.machine.transport == "serial":
            return self.machine.address
        return "%s:%d" % (self.machine.address, self.port)
