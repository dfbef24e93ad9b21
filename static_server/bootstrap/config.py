"""Server configuration and CLI argument parsing."""

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value is not None else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


DEFAULT_PORT = 8080
IDLE_TIMEOUT_MS = 30_000
MAX_HEADER_BYTES = _env_int("STATIC_SERVER_MAX_HEADER_BYTES", 8 * 1024)
MAX_BODY_BYTES = _env_int("STATIC_SERVER_MAX_BODY_BYTES", 5 * 1024 * 1024)
DEFAULT_SHUTDOWN_GRACE_SECONDS = _env_int("STATIC_SERVER_SHUTDOWN_GRACE_SECONDS", 30)

HEADER_DELIMITER = b"\r\n\r\n"
BIND_HOST = ""
WORKER_THREAD_PREFIX = "static-server"


@dataclass(frozen=True)
class ServerConfig:
    """Immutable listener and content settings fixed at startup."""

    port: int
    root_directory: str
    idle_timeout_ms: int = IDLE_TIMEOUT_MS
    shutdown_grace_seconds: int = DEFAULT_SHUTDOWN_GRACE_SECONDS

    @property
    def idle_timeout_seconds(self) -> float:
        return self.idle_timeout_ms / 1000


@dataclass(frozen=True)
class LogSettings:
    """Logging destination and format taken from the environment."""

    level: str
    destination: str
    use_json: bool


def load_log_settings() -> LogSettings:
    """Read STATIC_SERVER_LOG_* variables, falling back to JSON on stdout at INFO."""
    return LogSettings(
        level=os.getenv("STATIC_SERVER_LOG_LEVEL", "INFO").upper(),
        destination=os.getenv("STATIC_SERVER_LOG_DESTINATION", "stdout"),
        use_json=_env_bool("STATIC_SERVER_LOG_JSON", True),
    )


class CliUsageError(ValueError):
    """Command line arguments the server cannot start with."""


class _StartupArgumentParser(argparse.ArgumentParser):
    """Report bad arguments as a startup failure instead of exiting."""

    def error(self, message: str):  # type: ignore[override]
        self.print_usage(sys.stderr)
        raise CliUsageError(message)


def parse_cli_args(argv: list[str]) -> argparse.Namespace:
    """Return parsed CLI arguments for server configuration."""
    parser = _StartupArgumentParser(
        description="Serve static files from the current working directory"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        metavar="PORT",
        help="Server port",
    )
    return parser.parse_args(argv)


def build_server_config(
    args: argparse.Namespace, cwd: Optional[Path] = None
) -> ServerConfig:
    """Freeze the CLI arguments and working directory into a ServerConfig."""
    root = (cwd if cwd is not None else Path.cwd()).resolve()
    return ServerConfig(port=args.port, root_directory=root.as_posix())
