"""loommon daemon -- polls loom controllers and publishes their state.

Starts one poll thread per machine, a publisher thread, and the
liveness listener, then waits in the foreground.  Shuts down cleanly
on SIGINT or SIGTERM.

Example:
    Run from the command line::

        loommon loommon.toml -v
        loommon /etc/loommon/loommon.toml --unit-id 1 --count 80
"""

import argparse
import logging
import signal
import threading

import requests

from loommon.config import check_window, load_config, resolve_config
from loommon.connection import ConnectionManager
from loommon.directory import fetch_machines
from loommon.errors import DirectoryError
from loommon.health import create_app, start_server
from loommon.poller import Backoff, MachinePoller
from loommon.profile import get_profile
from loommon.publisher import Publisher
from loommon.registry import MachineRegistry

log = logging.getLogger(__name__)

_shutdown = threading.Event()

# Seconds to wait for each poll thread on shutdown.
_JOIN_TIMEOUT = 2.0


def _on_signal(signum: int, frame) -> None:
    """Set the module-level shutdown event on SIGINT/SIGTERM."""
    _shutdown.set()


def parse_args(argv=None) -> argparse.Namespace:
    """Parse the command line."""
    parser = argparse.ArgumentParser(description="loommon loom state collector")
    parser.add_argument("config", help="path to TOML config file")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="enable debug logging",
    )
    parser.add_argument("--port", type=int, help="Modbus TCP port")
    parser.add_argument("--unit-id", type=int, help="Modbus station id")
    parser.add_argument(
        "--start-addr", type=int, help="first register of the window (1-based)",
    )
    parser.add_argument("--count", type=int, help="registers per read")
    parser.add_argument("--health-port", type=int, help="liveness listener port")
    return parser.parse_args(argv)


def apply_overrides(cfg: dict, args: argparse.Namespace) -> dict:
    """Overlay command-line values on *cfg*; unset options are ignored.

    Raises:
        ValueError: If an override puts a Modbus setting out of range.
    """
    for key in ("port", "unit_id", "start_addr", "count", "health_port"):
        value = getattr(args, key, None)
        if value is not None:
            cfg[key] = value
    check_window(cfg)
    return cfg


def resolve_machines(cfg: dict, session) -> tuple[list, dict]:
    """Return ``(machines, seed)`` from the config or the directory.

    Raises:
        DirectoryError: If the directory lookup fails.
    """
    if cfg["machines"]:
        return list(cfg["machines"]), {}
    return fetch_machines(
        session, cfg["directory_url"], cfg["workspace_id"], cfg["api_key"],
        timeout=cfg["publish_timeout"],
    )


def build_pollers(cfg: dict, machines, registry: MachineRegistry,
                  client_factory=None) -> list[MachinePoller]:
    """Create one MachinePoller (with its own connection) per machine."""
    pollers = []
    for machine in machines:
        poller_profile = get_profile(machine.profile)
        if not poller_profile.covers(cfg["start_addr"] - 1, cfg["count"]):
            log.warning(
                "machine %s: window %d+%d does not cover profile %s; "
                "every read will be rejected",
                machine.id, cfg["start_addr"], cfg["count"], poller_profile.name,
            )
        conn = ConnectionManager(
            machine,
            port=cfg["port"],
            unit_id=cfg["unit_id"],
            timeout_ms=cfg["timeout_ms"],
            baudrate=cfg["baudrate"],
            client_factory=client_factory,
        )
        pollers.append(MachinePoller(
            machine, conn, registry, cfg["start_addr"], cfg["count"],
            backoff=Backoff(cfg["interval"], cfg["backoff_max"]),
        ))
    return pollers


def start_pollers(pollers, shutdown: threading.Event) -> list[threading.Thread]:
    """Start one daemon thread per poller and return the threads."""
    threads = []
    for poller in pollers:
        thread = threading.Thread(
            target=poller.run, args=(shutdown,),
            name="poll-%s" % poller.machine.id, daemon=True,
        )
        thread.start()
        threads.append(thread)
    return threads


def main(argv=None) -> int:
    """CLI entry point -- parse args, load config, run the daemon."""
    _shutdown.clear()
    args = parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=level,
    )

    try:
        cfg = apply_overrides(load_config(resolve_config(args.config)), args)
    except (FileNotFoundError, ValueError) as exc:
        log.error("bad configuration: %s", exc)
        return 1

    session = requests.Session()
    try:
        machines, seed = resolve_machines(cfg, session)
    except DirectoryError as exc:
        log.error("%s", exc)
        return 1
    if not machines:
        log.error("no machines to poll")
        return 1

    registry = MachineRegistry(seed)
    pollers = build_pollers(cfg, machines, registry)
    publisher = Publisher(
        registry, cfg["collector_url"], cfg["workspace_id"], cfg["api_key"],
        interval=cfg["publish_interval"], timeout=cfg["publish_timeout"],
        session=session,
    )

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    log.info(
        "starting: machines=%d port=%d unit_id=%d start=%d count=%d "
        "interval=%.1fs publish=%.1fs",
        len(machines), cfg["port"], cfg["unit_id"], cfg["start_addr"],
        cfg["count"], cfg["interval"], cfg["publish_interval"],
    )

    server = None
    try:
        server = start_server(create_app(registry, pollers), "0.0.0.0",
                              cfg["health_port"])
    except OSError as exc:
        log.warning("health listener not started: %s", exc)

    threads = start_pollers(pollers, _shutdown)
    publisher_thread = threading.Thread(
        target=publisher.run, args=(_shutdown,), name="publish-ticker",
        daemon=True,
    )
    publisher_thread.start()

    try:
        while not _shutdown.wait(1.0):
            pass
    finally:
        log.info("shutting down")
        _shutdown.set()
        for thread in threads:
            thread.join(_JOIN_TIMEOUT)
        if server is not None:
            server.shutdown()
        session.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
