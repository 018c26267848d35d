"""Periodic upload of the machine registry to the central collector.

A ticker fires every ``interval`` seconds and hands the publish to a
worker thread.  If the previous publish is still in flight the tick
is dropped, not queued.  Failures are logged and left for the next
tick; there is no separate retry schedule.

Example:
    >>> from loommon.publisher import Publisher
    >>> pub = Publisher(registry, url, "ws-1", "secret")
    >>> pub.publish_once()
    True
"""

import logging
import threading

import requests

from loommon.config import PUBLISH_INTERVAL, PUBLISH_TIMEOUT
from loommon.errors import PublishTransportError
from loommon.registry import MachineRegistry

log = logging.getLogger(__name__)


class Publisher:
    """Pushes the whole registry to the collector on a fixed cadence.

    Args:
        registry: The shared MachineRegistry.
        url: Collector endpoint receiving the POST.
        workspace_id: Tenant identifier sent with every batch.
        api_key: Static credential sent with every batch.
        interval: Seconds between ticks.
        timeout: HTTP timeout in seconds for one publish.
        session: ``requests.Session``-like object; one is created if
            omitted.
    """

    def __init__(self, registry: MachineRegistry, url: str, workspace_id: str,
                 api_key: str, interval: float = PUBLISH_INTERVAL,
                 timeout: float = PUBLISH_TIMEOUT, session=None):
        """Initialize the publisher; nothing is sent until a tick."""
        self._registry = registry
        self._url = url
        self._workspace_id = workspace_id
        self._api_key = api_key
        self.interval = interval
        self._timeout = timeout
        self._session = session or requests.Session()
        self._in_flight = False
        self._guard = threading.Lock()
        self.published = 0
        self.skipped = 0
        self.failed = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def publish_once(self) -> bool:
        """Send one batch unless another is still in flight.

        Returns True if a batch was accepted by the collector.  A
        skipped or failed publish returns False and leaves every
        machine state untouched.
        """
        with self._guard:
            if self._in_flight:
                self.skipped += 1
                log.debug("previous publish still in flight, skipping tick")
                return False
            self._in_flight = True

        try:
            return self._publish()
        finally:
            self._in_flight = False

    def tick(self) -> threading.Thread:
        """Start a publish on a worker thread and return the thread."""
        worker = threading.Thread(
            target=self.publish_once, name="publisher", daemon=True,
        )
        worker.start()
        return worker

    def run(self, shutdown: threading.Event) -> int:
        """Tick every ``interval`` seconds until *shutdown* is set.

        Returns the number of ticks fired.
        """
        ticks = 0
        while not shutdown.wait(self.interval):
            self.tick()
            ticks += 1
        return ticks

    def _publish(self) -> bool:
        with self._registry.lock:
            items = self._registry.items()
            snapshots = {
                machine_id: state.previous_shift_snapshot
                for machine_id, state in items
                if state.previous_shift_snapshot is not None
            }
            logs = {machine_id: state.to_dict() for machine_id, state in items}
        payload = {
            "logs": logs,
            "workspaceId": self._workspace_id,
            "apiKey": self._api_key,
        }

        try:
            self._post(payload)
        except PublishTransportError as exc:
            self.failed += 1
            log.warning("publish of %d machines failed: %s", len(items), exc)
            return False

        # Shift snapshots are one-shot: drop the ones this batch carried.
        for machine_id, snapshot in snapshots.items():
            if self._registry.clear_snapshot(machine_id, snapshot):
                log.info("machine %s: shift %s snapshot published",
                         machine_id, snapshot.shift)
        self.published += 1
        log.debug("published %d machines", len(items))
        return True

    def _post(self, payload: dict) -> None:
        """POST *payload* as JSON.

        Raises:
            PublishTransportError: On a transport error or non-2xx status.
        """
        try:
            resp = self._session.post(
                self._url, json=payload, timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise PublishTransportError(str(exc)) from exc
