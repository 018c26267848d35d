"""Liveness HTTP listener.

A small Flask application that reports the daemon is up and exposes
a read-only view of the registry.  It is served by werkzeug from a
background thread so it never competes with the poll threads.

Example:
    >>> app = create_app(registry)
    >>> server = start_server(app, "0.0.0.0", 3001)
    >>> server.shutdown()
"""

import logging
import threading

from flask import Flask, jsonify
from werkzeug.serving import make_server

from loommon.registry import MachineRegistry

log = logging.getLogger(__name__)


def create_app(registry: MachineRegistry, pollers=()) -> Flask:
    """Create the liveness application.

    Args:
        registry: Registry served by ``/api/machines``.
        pollers: MachinePoller objects whose ``last_error`` is reported
            by ``/health``.

    Example:
        >>> app = create_app(MachineRegistry())
        >>> app.name
        'loommon.health'
    """
    app = Flask(__name__)
    pollers = list(pollers)

    @app.route("/health")
    def health() -> tuple:
        """Return process liveness and per-machine error summary.

        Response JSON:
            {"status": "ok", "machines": 3, "errors": {"L02": "..."}}
        """
        errors = {
            p.machine.id: p.last_error for p in pollers if p.last_error
        }
        return jsonify({
            "status": "ok",
            "machines": len(registry),
            "errors": errors,
        }), 200

    @app.route("/api/machines")
    def api_machines() -> tuple:
        """Return the registry in the collector's JSON shape."""
        return jsonify(registry.to_dict()), 200

    return app


def start_server(app: Flask, host: str, port: int):
    """Serve *app* on *host*:*port* from a daemon thread.

    Returns the werkzeug server; call ``shutdown()`` to stop it.
    """
    server = make_server(host, port, app, threaded=True)
    thread = threading.Thread(
        target=server.serve_forever, name="health", daemon=True,
    )
    thread.start()
    log.info("health listener on http://%s:%d", host, port)
    return server
