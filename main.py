"""Static file server for the current working directory."""

import logging
import signal
import sys
from typing import Optional

from static_server.bootstrap.config import (
    build_server_config,
    load_log_settings,
    parse_cli_args,
)
from static_server.bootstrap.logging_setup import configure_logging
from static_server.bootstrap.socket_factory import create_server_socket
from static_server.domain.correlation_id import CorrelationLoggerAdapter
from static_server.lifecycle.state import ServerLifecycle
from static_server.pipeline.chain import build_handler_chain
from static_server.security.credentials import load_credentials
from static_server.transport.accept_loop import run_server
from static_server.transport.context import WorkerContext

MAIN_LOGGER = CorrelationLoggerAdapter(logging.getLogger("static_server.main"), {})


def main(argv: Optional[list[str]] = None) -> int:
    """Start the server and block until it has shut down."""
    log_settings = load_log_settings()
    configure_logging(
        log_settings.level, log_settings.destination, log_settings.use_json
    )

    args = None
    try:
        args = parse_cli_args(sys.argv[1:] if argv is None else argv)
        config = build_server_config(args)
        credentials = load_credentials()
        handler = build_handler_chain(config, credentials)
        lifecycle = ServerLifecycle()
        server_socket = create_server_socket(config)
    except Exception:  # pylint: disable=broad-except
        MAIN_LOGGER.error(
            "Server startup failed.",
            extra={"event": "startup_failed", "port": getattr(args, "port", None)},
            exc_info=True,
        )
        return 1

    def shutdown_handler(signum: int, _frame) -> None:
        MAIN_LOGGER.info(
            "Received shutdown signal",
            extra={"event": "shutdown_signal", "signal": signum},
        )
        lifecycle.begin_draining()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    MAIN_LOGGER.info(
        "Starting static file server",
        extra={
            "event": "server_starting",
            "port": config.port,
            "directory": config.root_directory,
            "auth": "basic" if credentials is not None else "disabled",
            "log_destination": log_settings.destination,
            "log_level": log_settings.level,
            "shutdown_grace_seconds": config.shutdown_grace_seconds,
        },
    )
    run_server(server_socket, WorkerContext(handler, config, lifecycle))
    return 0


if __name__ == "__main__":
    sys.exit(main())
