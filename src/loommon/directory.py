"""Startup lookup of the machine list from the configuration service.

The service answers a POST with::

    {"data": {"machines": [{"id": ..., "ip": ..., "deviceType": ...}],
              "machineData": {<id>: <collector-shaped state>}}}

``machineData`` is optional and lets a restarted daemon carry on the
current shift's counters.  The list is read once; machines are not
added or removed at runtime.
"""

import logging

import requests

from loommon.config import PUBLISH_TIMEOUT, TRANSPORTS, MachineConfig, machine_from_record
from loommon.errors import DirectoryError

log = logging.getLogger(__name__)


def fetch_machines(session, url: str, workspace_id: str, api_key: str,
                   timeout: float = PUBLISH_TIMEOUT
                   ) -> tuple[list[MachineConfig], dict[str, dict]]:
    """Fetch the machine list and optional seed state.

    Returns:
        tuple: ``(machines, seed)`` where *seed* maps machine id to a
            state dict (empty if the service sent none).

    Raises:
        DirectoryError: On transport errors, non-2xx status, or a
            malformed response.
    """
    try:
        resp = session.post(
            url,
            json={"workspaceId": workspace_id, "apiKey": api_key},
            timeout=timeout,
        )
        resp.raise_for_status()
        body = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise DirectoryError("machine list request failed: %s" % exc) from exc

    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict) or not isinstance(data.get("machines"), list):
        raise DirectoryError("machine list response has no data.machines")

    machines = []
    seen = set()
    for record in data["machines"]:
        try:
            machine = machine_from_record(_normalize(record))
        except ValueError as exc:
            log.warning("skipping machine record: %s", exc)
            continue
        if machine.id in seen:
            log.warning("skipping duplicate machine id %s", machine.id)
            continue
        seen.add(machine.id)
        machines.append(machine)

    seed = data.get("machineData") or {}
    if not isinstance(seed, dict):
        log.warning("ignoring malformed machineData (%s)", type(seed).__name__)
        seed = {}
    seed = {str(k): v for k, v in seed.items() if isinstance(v, dict)}

    log.info("directory: %d machines, %d with seed state", len(machines), len(seed))
    return machines, seed


def _normalize(record):
    """Default unknown device types to ``tcp``.

    The directory tags serial-gateway looms ``rs485`` and leaves the
    rest free-form; anything else is a plain Modbus TCP controller.
    """
    if not isinstance(record, dict):
        return record
    transport = record.get("transport", record.get("deviceType"))
    if transport is not None and transport not in TRANSPORTS:
        record = dict(record, transport="tcp")
    return record
