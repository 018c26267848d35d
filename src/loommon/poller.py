"""Per-machine poll loop.

Each loom gets one MachinePoller running in its own thread.  A cycle
connects if needed, reads the configured register window once,
applies the state machine, and sleeps: the nominal interval after a
success, an exponentially growing delay after consecutive failures.

Example:
    >>> from loommon.poller import MachinePoller
    >>> poller = MachinePoller(machine, conn, registry, 5000, 74)
    >>> poller.poll_once()
    True
"""

import logging
import threading

from pymodbus.exceptions import ModbusException

from loommon.config import BACKOFF_MAX, POLL_INTERVAL, MachineConfig
from loommon.errors import FieldDeviceError, ReadProtocolError
from loommon.profile import Frame, get_profile
from loommon.registry import MachineRegistry
from loommon.state import format_ts, update, utcnow

log = logging.getLogger(__name__)


class Backoff:
    """Delay policy: *nominal* after success, doubling up to *cap*.

    Example:
        >>> b = Backoff(1.0, 10.0)
        >>> [b.failure() for _ in range(5)]
        [2.0, 4.0, 8.0, 10.0, 10.0]
        >>> b.success()
        1.0
    """

    def __init__(self, nominal: float = POLL_INTERVAL,
                 cap: float = BACKOFF_MAX):
        """Start at the nominal delay."""
        self.nominal = nominal
        self.cap = cap
        self.delay = nominal

    def success(self) -> float:
        """Reset to the nominal delay and return it."""
        self.delay = self.nominal
        return self.delay

    def failure(self) -> float:
        """Double the delay, up to the cap, and return it."""
        self.delay = min(self.delay * 2, self.cap)
        return self.delay


class MachinePoller:
    """Sequential read/decode/update loop for one loom.

    Args:
        machine: The loom being polled.
        conn: ConnectionManager for the loom's controller.
        registry: Shared MachineRegistry; this poller is the only
            writer of ``registry[machine.id]``.
        start_addr: 1-based first register of the read window.
        count: Number of registers in the window.
        backoff: Delay policy; defaults to ``Backoff()``.
        clock: Callable returning the current aware datetime.
    """

    def __init__(self, machine: MachineConfig, conn, registry: MachineRegistry,
                 start_addr: int, count: int, backoff: Backoff | None = None,
                 clock=utcnow):
        """Initialize the poller; no I/O happens until ``poll_once()``."""
        self.machine = machine
        self.profile = get_profile(machine.profile)
        self.last_error: str | None = None
        self._conn = conn
        self._registry = registry
        self._start_addr = start_addr
        self._count = count
        self._backoff = backoff or Backoff()
        self._clock = clock

    @property
    def delay(self) -> float:
        """Seconds to wait before the next cycle."""
        return self._backoff.delay

    def poll_once(self) -> bool:
        """Run one cycle.  Returns True on a successful read.

        A sentinel frame counts as a successful read even though it
        leaves the machine state untouched.  Errors are recorded in
        ``last_error`` and never raised.
        """
        if not self._conn.connected:
            self._conn.connect()
            if not self._conn.connected:
                self.last_error = self._conn.last_error
                self._backoff.failure()
                return False

        try:
            registers = self._conn.read_window(self._start_addr, self._count)
            self._process(registers)
        except (FieldDeviceError, ModbusException, OSError) as exc:
            self.last_error = str(exc) or exc.__class__.__name__
            log.warning(
                "machine %s: %s: %s; retry in %.0fs",
                self.machine.id, exc.__class__.__name__, self.last_error,
                self._backoff.failure(),
            )
            self._conn.close()
            return False

        self.last_error = None
        self._backoff.success()
        return True

    def run(self, shutdown: threading.Event) -> int:
        """Poll until *shutdown* is set.  Returns the number of cycles."""
        cycles = 0
        while not shutdown.is_set():
            self.poll_once()
            cycles += 1
            shutdown.wait(self._backoff.delay)
        self._conn.close()
        return cycles

    def _process(self, registers: list[int]) -> None:
        """Validate, guard, and apply one register window."""
        frame = Frame(self._start_addr - 1, registers)
        if min(self.profile.fields.values()) < frame.address:
            raise ReadProtocolError(
                "window at %d starts past profile %s fields"
                % (self._start_addr, self.profile.name)
            )
        needed = self.profile.min_length(frame.address)
        if len(registers) < needed:
            raise ReadProtocolError(
                "frame too short for profile %s: %d < %d registers"
                % (self.profile.name, len(registers), needed)
            )

        if self.profile.is_sentinel(frame):
            log.debug("machine %s: sentinel frame %s", self.machine.id, registers)
            return

        machine_id = self.machine.id
        state = self._registry.get(machine_id)
        before_stop = state.current_stop_code if state is not None else None
        before_shift = state.shift if state is not None else None
        now = self._clock()

        with self._registry.lock:
            state = update(state, self.profile, frame, self.machine.transport, now)
            state = self._registry.insert(machine_id, state)

        if before_stop is None:
            log.info("machine %s: first frame, stop=%d shift=%s",
                     machine_id, state.current_stop_code, state.shift)
        elif (before_stop == 0) != state.running:
            log.info("machine %s: %s at %s (stop=%d)", machine_id,
                     "started" if state.running else "stopped",
                     format_ts(now), before_stop or state.current_stop_code)
        if before_shift is not None and before_shift != state.shift:
            log.info("machine %s: shift %s -> %s", machine_id,
                     before_shift, state.shift)
        log.debug("machine %s: stop=%d shift=%s stops=%d", machine_id,
                  state.current_stop_code, state.shift, state.stop_event_count)
