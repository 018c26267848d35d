"""Process-wide store of per-machine state.

Each machine id is written by exactly one poll thread.  The poller
applies a frame while holding ``registry.lock``, and the publisher
takes the same lock to serialize the registry and to drop published
shift snapshots, so neither sees a half-applied update.  Pollers for
different machines still contend only for the length of one update.

Example:
    >>> from loommon.registry import MachineRegistry
    >>> registry = MachineRegistry()
    >>> registry.get("L01") is None
    True
"""

import logging
import threading

from loommon.state import MachineState

log = logging.getLogger(__name__)


class MachineRegistry:
    """Keyed store of MachineState objects.

    Args:
        seed: Optional mapping of machine id to collector-shaped state
            dicts, restored with ``MachineState.from_dict``.  Entries
            that cannot be restored are logged and skipped.
    """

    def __init__(self, seed: dict[str, dict] | None = None):
        """Create the registry, restoring any *seed* entries."""
        self._lock = threading.RLock()
        self._states: dict[str, MachineState] = {}
        for machine_id, data in (seed or {}).items():
            try:
                self._states[str(machine_id)] = MachineState.from_dict(data)
            except (ValueError, TypeError, AttributeError) as exc:
                log.warning("machine %s: ignoring saved state: %s",
                            machine_id, exc)
        if self._states:
            log.info("restored state for %d machines", len(self._states))

    @property
    def lock(self) -> threading.RLock:
        """Reentrant lock guarding updates to registry entries."""
        return self._lock

    def get(self, machine_id: str) -> MachineState | None:
        """Return the state for *machine_id*, or None if never seen."""
        return self._states.get(machine_id)

    def insert(self, machine_id: str, state: MachineState) -> MachineState:
        """Store *state* unless an entry already exists.

        Returns the entry that ends up in the registry.
        """
        with self._lock:
            return self._states.setdefault(machine_id, state)

    def clear_snapshot(self, machine_id: str, snapshot: MachineState) -> bool:
        """Drop *snapshot* if it is still the machine's pending one.

        Returns True if it was cleared.  A snapshot taken after
        *snapshot* is left in place.
        """
        with self._lock:
            state = self._states.get(machine_id)
            if state is None or state.previous_shift_snapshot is not snapshot:
                return False
            state.previous_shift_snapshot = None
            return True

    def items(self) -> list[tuple[str, MachineState]]:
        """Return a point-in-time list of ``(machine_id, state)`` pairs."""
        with self._lock:
            return list(self._states.items())

    def to_dict(self) -> dict[str, dict]:
        """Serialize every machine to the collector's JSON shape."""
        with self._lock:
            return {machine_id: state.to_dict()
                    for machine_id, state in self._states.items()}

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, machine_id: str) -> bool:
        return machine_id in self._states
