"""Project-wide configuration constants and config-file loading.

Central place for tuneable parameters shared across modules.
Import individual names where needed.

Example:
    >>> from loommon.config import load_config
    >>> cfg = load_config("loommon.toml")
    >>> cfg["start_addr"], cfg["count"]
    (5000, 74)
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path

from loommon.profile import PROFILES

TRANSPORTS = ("tcp", "rs485", "serial")

# Modbus defaults; all overridable from [modbus] or the command line.
DEFAULT_MODBUS = {
    "port": 502,
    "unit_id": 85,
    "start_addr": 5000,
    "count": 74,
    "timeout_ms": 1000,
    "baudrate": 9600,
}

# Poll cadence in seconds: nominal delay and backoff cap.
POLL_INTERVAL = 1.0
BACKOFF_MAX = 10.0

# Publish cadence and HTTP timeout in seconds.
PUBLISH_INTERVAL = 4.0
PUBLISH_TIMEOUT = 10.0

HEALTH_PORT = 3001

ETC_DIR = "/etc/loommon"


@dataclass(frozen=True)
class MachineConfig:
    """Identity and wiring of one loom.

    *address* is a host name or IP for ``tcp``/``rs485`` machines and a
    serial device path for ``serial`` machines.
    """

    id: str
    address: str
    profile: str = "A"
    transport: str = "tcp"


def resolve_config(name: str) -> str:
    """Resolve a config file name to an absolute path.

    A *name* containing a path separator is used as given.  A bare
    file name is looked up in the current directory, then in
    ``ETC_DIR``.

    Raises:
        FileNotFoundError: If no candidate exists.
    """
    if os.sep in name or "/" in name:
        candidates = [Path(name)]
    else:
        candidates = [Path.cwd() / name, Path(ETC_DIR) / name]

    for path in candidates:
        if path.is_file():
            return str(path.resolve())
    raise FileNotFoundError(
        "config file '%s' not found (looked in %s)"
        % (name, ", ".join(str(p.parent) for p in candidates))
    )


def machine_from_record(record: dict[str, object]) -> MachineConfig:
    """Build a MachineConfig from a ``[[machines]]`` entry or a
    directory record.

    Accepts both the config spelling (``address``, ``transport``) and
    the directory spelling (``ip``, ``deviceType``).

    Raises:
        ValueError: If the id or address is missing, or the profile or
            transport is unknown.
    """
    if not isinstance(record, dict):
        raise ValueError("machine entry must be a table")
    machine_id = record.get("id")
    if machine_id is None or machine_id == "":
        raise ValueError("machine entry missing required key: id")

    address = record.get("address", record.get("ip"))
    if not isinstance(address, str) or not address:
        raise ValueError("machine %s: address must be a non-empty str" % machine_id)

    profile = record.get("profile") or "A"
    if profile not in PROFILES:
        raise ValueError(
            "machine %s: profile must be one of %s, got '%s'"
            % (machine_id, ", ".join(sorted(PROFILES)), profile)
        )

    transport = record.get("transport", record.get("deviceType")) or "tcp"
    if transport not in TRANSPORTS:
        raise ValueError(
            "machine %s: transport must be 'tcp', 'rs485', or 'serial', got '%s'"
            % (machine_id, transport)
        )

    return MachineConfig(
        id=str(machine_id),
        address=address,
        profile=profile,
        transport=transport,
    )


def load_config(path: str) -> dict:
    """Read a TOML config file, validate it, and fill in defaults.

    Sections: ``[modbus]`` (optional, see ``DEFAULT_MODBUS``),
    ``[poll]`` (optional: ``interval``, ``backoff_max``),
    ``[collector]`` (required: ``url``, ``workspace_id``, ``api_key``;
    optional ``interval``, ``timeout``), ``[health]`` (optional:
    ``port``).  Machines come from either ``[directory]`` with ``url``
    or a static ``[[machines]]`` list.

    Raises:
        ValueError: If any required key is missing or has the wrong type.

    Example:
        >>> cfg = load_config("loommon.toml")
        >>> cfg["machines"][0].id
        'L01'
    """
    with open(path, "rb") as f:
        raw = tomllib.load(f)

    result = dict(DEFAULT_MODBUS)
    modbus = _optional_table(raw, "modbus")
    for key in DEFAULT_MODBUS:
        if key in modbus:
            _require_int(modbus, key)
            result[key] = modbus[key]
    check_window(result)

    poll = _optional_table(raw, "poll")
    result["interval"] = _optional_number(poll, "interval", POLL_INTERVAL)
    result["backoff_max"] = _optional_number(poll, "backoff_max", BACKOFF_MAX)
    if result["backoff_max"] < result["interval"]:
        raise ValueError("poll.backoff_max must be >= poll.interval")

    if "collector" not in raw:
        raise ValueError("missing required section: [collector]")
    collector = _optional_table(raw, "collector")
    for key in ("url", "workspace_id", "api_key"):
        _require_str(collector, key)
    result["collector_url"] = collector["url"]
    result["workspace_id"] = collector["workspace_id"]
    result["api_key"] = collector["api_key"]
    result["publish_interval"] = _optional_number(
        collector, "interval", PUBLISH_INTERVAL,
    )
    result["publish_timeout"] = _optional_number(
        collector, "timeout", PUBLISH_TIMEOUT,
    )

    health = _optional_table(raw, "health")
    result["health_port"] = HEALTH_PORT
    if "port" in health:
        _require_int(health, "port")
        result["health_port"] = health["port"]

    result["directory_url"] = None
    result["machines"] = []
    if "directory" in raw:
        directory = _optional_table(raw, "directory")
        _require_str(directory, "url")
        result["directory_url"] = directory["url"]
    if "machines" in raw:
        if not isinstance(raw["machines"], list):
            raise ValueError("machines must be an array of tables")
        result["machines"] = [machine_from_record(m) for m in raw["machines"]]
        _check_unique(result["machines"])
    if result["directory_url"] is None and not result["machines"]:
        raise ValueError("config needs a [directory] section or [[machines]] entries")

    return result


def check_window(cfg: dict) -> None:
    """Validate the Modbus settings of a loaded config.

    Called by ``load_config()`` and again after command-line overrides.

    Raises:
        ValueError: If a value is out of range.
    """
    if not 1 <= cfg["port"] <= 65535:
        raise ValueError("modbus.port must be 1-65535, got %d" % cfg["port"])
    if not 1 <= cfg["unit_id"] <= 247:
        raise ValueError("modbus.unit_id must be 1-247, got %d" % cfg["unit_id"])
    if cfg["start_addr"] < 1:
        raise ValueError("modbus.start_addr is 1-based, got %d" % cfg["start_addr"])
    if not 1 <= cfg["count"] <= 125:
        raise ValueError("modbus.count must be 1-125, got %d" % cfg["count"])
    if cfg["timeout_ms"] <= 0:
        raise ValueError("modbus.timeout_ms must be positive")


def _check_unique(machines: list[MachineConfig]) -> None:
    """Reject duplicate machine ids."""
    seen = set()
    for m in machines:
        if m.id in seen:
            raise ValueError("duplicate machine id: %s" % m.id)
        seen.add(m.id)


def _optional_table(raw: dict[str, object], key: str) -> dict[str, object]:
    """Return table *key* from *raw*, or an empty dict if absent."""
    value = raw.get(key, {})
    if not isinstance(value, dict):
        raise ValueError("[%s] must be a table" % key)
    return value


def _optional_number(raw: dict[str, object], key: str, default: float) -> float:
    """Return positive number *key* from *raw*, or *default*."""
    if key not in raw:
        return default
    value = raw[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("%s must be a number, got %s" % (key, type(value).__name__))
    if value <= 0:
        raise ValueError("%s must be positive, got %s" % (key, value))
    return float(value)


def _require_str(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is a str."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if not isinstance(raw[key], str):
        raise ValueError("%s must be str, got %s" % (key, type(raw[key]).__name__))


def _require_int(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is an int."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if isinstance(raw[key], bool) or not isinstance(raw[key], int):
        raise ValueError("%s must be int, got %s" % (key, type(raw[key]).__name__))
