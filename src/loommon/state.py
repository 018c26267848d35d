"""Per-machine run/stop state and the transition applied on every frame.

``update()`` is the whole state machine: it infers run/stop edges from
the stop code, closes finished stops into per-category StopEvents,
rolls counters over at shift boundaries, and stores the unit-adjusted
register window.  It only touches the MachineState it is given; the
caller owns the registry and the clock.

Example:
    >>> from loommon.state import update
    >>> state = update(None, profile, frame, "tcp", now)
    >>> state.current_stop_code
    0
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from loommon.profile import CATEGORIES, DeviceProfile, Frame, classify

log = logging.getLogger(__name__)

# Stops shorter than this many seconds are recorded but not counted.
STOP_DEBOUNCE_S = 60

_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_ts(ts: datetime | None) -> str | None:
    """Format *ts* as ``2024-06-01T12:00:00Z``, or None."""
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(text: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not text:
        return None
    ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _empty_buckets() -> dict[str, list["StopEvent"]]:
    return {category: [] for category in CATEGORIES}


@dataclass(frozen=True)
class StopEvent:
    """One finished stop of a loom."""

    start: datetime | None
    end: datetime
    status_code: int
    duration: int
    category: str

    def to_dict(self) -> dict:
        """Return the collector representation of this event."""
        return {
            "start": format_ts(self.start),
            "end": format_ts(self.end),
            "statusCode": self.status_code,
            "duration": self.duration,
        }


@dataclass
class MachineState:
    """Operational state of one loom, written only by its poll thread."""

    current_stop_code: int = 0
    last_stop_time: datetime | None = None
    last_start_time: datetime | None = None
    stop_event_count: int = 0
    stops_by_category: dict[str, list[StopEvent]] = field(
        default_factory=_empty_buckets
    )
    shift: int | None = None
    raw_snapshot: list[float | int] = field(default_factory=list)
    previous_shift_snapshot: "MachineState | None" = None

    @property
    def running(self) -> bool:
        return self.current_stop_code == 0

    def to_dict(self) -> dict:
        """Serialize to the collector's JSON shape.

        Keys follow the collector API: ``stopCount``, ``stopsData``,
        ``lastStopTime``, ``lastStartTime``, ``stop``, ``shift``,
        ``rawData`` and ``prevData``.
        """
        buckets = dict(self.stops_by_category)
        prev = self.previous_shift_snapshot
        return {
            "stopCount": self.stop_event_count,
            "stopsData": {
                category: [e.to_dict() for e in list(buckets.get(category, ()))]
                for category in CATEGORIES
            },
            "lastStopTime": format_ts(self.last_stop_time),
            "lastStartTime": format_ts(self.last_start_time),
            "stop": self.current_stop_code,
            "shift": self.shift,
            "rawData": list(self.raw_snapshot),
            "prevData": prev.to_dict() if prev is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MachineState":
        """Rebuild a state from the collector's JSON shape.

        Unknown keys are ignored and missing ones take their defaults,
        so partial seed records from the directory are accepted.
        """
        buckets = _empty_buckets()
        stops = data.get("stopsData") or {}
        for category in CATEGORIES:
            for item in stops.get(category) or ():
                buckets[category].append(StopEvent(
                    start=parse_ts(item.get("start")),
                    end=parse_ts(item.get("end")) or utcnow(),
                    status_code=int(item.get("statusCode") or 0),
                    duration=max(0, int(item.get("duration") or 0)),
                    category=category,
                ))

        prev = data.get("prevData")
        shift = data.get("shift")
        return cls(
            current_stop_code=int(data.get("stop") or 0),
            last_stop_time=parse_ts(data.get("lastStopTime")),
            last_start_time=parse_ts(data.get("lastStartTime")),
            stop_event_count=int(data.get("stopCount") or 0),
            stops_by_category=buckets,
            shift=int(shift) if shift is not None else None,
            raw_snapshot=list(data.get("rawData") or []),
            previous_shift_snapshot=(
                cls.from_dict(prev) if isinstance(prev, dict) else None
            ),
        )


def update(
    state: MachineState | None,
    profile: DeviceProfile,
    frame: Frame,
    transport: str,
    now: datetime,
) -> MachineState:
    """Apply one decoded frame to *state* and return it.

    A missing *state* is created.  The returned object is the one the
    caller should keep in its registry.
    """
    stop = profile.stop_code(frame, transport)
    shift = profile.shift(frame)

    if state is None:
        state = MachineState()
        if stop != 0:
            state.last_stop_time = now
        else:
            state.last_start_time = now
    elif state.current_stop_code == 0 and stop != 0:
        state.last_stop_time = now
    elif state.current_stop_code != 0 and stop == 0:
        state.last_start_time = now
        _finish_stop(state, profile, now)

    if state.shift is not None and shift != state.shift:
        _roll_shift(state, profile, stop, now)

    state.current_stop_code = stop
    state.raw_snapshot = profile.adjust(frame, transport)
    state.shift = shift
    return state


def _finish_stop(state: MachineState, profile: DeviceProfile,
                 now: datetime) -> StopEvent:
    """Close the stop in progress and file it under its category."""
    code = state.current_stop_code
    start = state.last_stop_time
    duration = 0
    if start is not None:
        duration = int((now - start).total_seconds())
        if duration < 0:
            log.warning(
                "stop ends before it started (%s > %s), clamping to 0",
                format_ts(start), format_ts(now),
            )
            duration = 0
        if duration >= STOP_DEBOUNCE_S:
            state.stop_event_count += 1

    category = classify(code, profile)
    event = StopEvent(
        start=start,
        end=now,
        status_code=code,
        duration=duration,
        category=category,
    )
    state.stops_by_category.setdefault(category, []).append(event)
    return event


def _roll_shift(state: MachineState, profile: DeviceProfile, stop: int,
                now: datetime) -> None:
    """Snapshot the ending shift and reset the per-shift counters."""
    if state.current_stop_code != 0 and stop != 0:
        # Split a stop that straddles the boundary across both shifts.
        _finish_stop(state, profile, now)
        state.last_stop_time = now

    pending = state.previous_shift_snapshot
    state.previous_shift_snapshot = None
    snapshot = copy.deepcopy(state)
    if pending is not None:
        log.warning(
            "shift %s snapshot replaced before it was published", pending.shift
        )
    state.previous_shift_snapshot = snapshot

    state.stop_event_count = 0
    state.stops_by_category = _empty_buckets()
    if state.current_stop_code == 0 and stop == 0:
        state.last_start_time = now
