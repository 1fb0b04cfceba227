"""Desktop entry point: bind a loopback port, render history pages, open the UI."""
from __future__ import annotations

import argparse
import logging
import os
import socket
from pathlib import Path
from typing import Optional, Sequence

from werkzeug.serving import BaseWSGIServer, make_server

from . import create_app
from .config import CONFIG_PATH_ENV, get_base_dir, resolve_config_path
from .coordinator import get_coordinator
from .services.config_store import ConfigStore
from .shell import BrowserShell, HostShell, NullShell

LOGGER = logging.getLogger(__name__)

HOST = "127.0.0.1"
PORT_SEARCH_SPAN = 200


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Compose prompts from configured choices and keep a local copy history."
    )
    parser.add_argument(
        "--config",
        type=Path,
        help=f"Path to config.txt (default: ${CONFIG_PATH_ENV} or config.txt next to the app)",
    )
    parser.add_argument(
        "--no-window",
        action="store_true",
        help="Serve without opening a browser window.",
    )
    return parser.parse_args(argv)


def _listen(port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((HOST, port))
        sock.listen(socket.SOMAXCONN)
    except OSError:
        sock.close()
        raise
    return sock


def bind_server(app, preferred_port: int) -> BaseWSGIServer:
    """Serve on ``preferred_port`` or the first free port after it.

    The socket is bound here and handed to Werkzeug through ``fd``, because
    ``make_server`` exits the process when its own bind fails.
    """

    last_error: Optional[OSError] = None
    for offset in range(PORT_SEARCH_SPAN + 1):
        port = preferred_port + offset
        if port > 65535:
            break
        try:
            sock = _listen(port)
        except OSError as exc:
            LOGGER.debug("Port %d unavailable: %s", port, exc)
            last_error = exc
            continue
        try:
            return make_server(HOST, port, app, threaded=True, fd=sock.fileno())
        finally:
            # Werkzeug keeps its own duplicate of the descriptor.
            sock.close()
    raise OSError(f"no free port in {preferred_port}-{preferred_port + PORT_SEARCH_SPAN}") from last_error


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    raw_config = str(args.config) if args.config else os.environ.get(CONFIG_PATH_ENV)
    config_path = resolve_config_path(raw_config, get_base_dir())
    if ConfigStore.initialize(config_path):
        LOGGER.info("Created starter configuration at %s", config_path)

    shell: HostShell = NullShell() if args.no_window else BrowserShell()
    app = create_app(overrides={"PROMPT_CONFIG_PATH": str(config_path)}, shell=shell)

    with app.app_context():
        coordinator = get_coordinator()
        server = bind_server(app, coordinator.server_port)
        if server.port != coordinator.server_port:
            LOGGER.info("Port %d is busy; using %d", coordinator.server_port, server.port)
        coordinator.server_port = server.port
        coordinator.regenerate_views()

    url = f"http://{HOST}:{server.port}/"
    LOGGER.info("Serving prompt builder on %s", url)
    shell.open_window(url)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        LOGGER.info("Shutting down")
    finally:
        server.server_close()
    return 0
