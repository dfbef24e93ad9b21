"""Shared pytest fixtures for integration and unit tests."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Generator, TypedDict

import pytest

from tests.utils.http import reserve_port, wait_for_port

if TYPE_CHECKING:
    from _pytest.tmpdir import TempPathFactory

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SERVER_ENTRYPOINT = PROJECT_ROOT / "main.py"

TEST_USERNAME = "alice"
TEST_PASSWORD = "wonderland"

SAMPLE_FILES = {
    "hello.txt": b"Hello, static world!\n",
    "numbers.bin": bytes(range(256)) * 4,
    "docs/index.html": b"<html><body>docs</body></html>",
    "docs/guide.html": b"<html><body>guide</body></html>",
    "empty/.keep": b"",
}


class ServerProcessInfo(TypedDict):
    """Metadata describing a running server fixture instance."""

    base_url: str
    host: str
    port: int
    directory: Path
    process: subprocess.Popen[str]
    log_file: Path


def populate_directory(directory: Path) -> None:
    """Write the sample files every served directory starts with."""

    for relative, content in SAMPLE_FILES.items():
        target = directory / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)


def server_environment(log_file: Path, extra_env: dict[str, str] | None = None) -> dict:
    """Copy the current environment without credentials and point logs at a file."""

    env = {
        key: value
        for key, value in os.environ.items()
        if key not in {"USERNAME", "PASSWORD"}
    }
    env["STATIC_SERVER_LOG_DESTINATION"] = str(log_file)
    env["STATIC_SERVER_LOG_LEVEL"] = "DEBUG"
    env["STATIC_SERVER_SHUTDOWN_GRACE_SECONDS"] = "5"
    if extra_env:
        env.update(extra_env)
    return env


def start_server(
    port: int | None,
    directory: Path,
    log_file: Path,
    extra_env: dict[str, str] | None = None,
    extra_args: list[str] | None = None,
) -> subprocess.Popen[str]:
    """Spawn main.py serving ``directory`` as its working directory."""

    args = [sys.executable, str(SERVER_ENTRYPOINT)]
    if port is not None:
        args.extend(["--port", str(port)])
    if extra_args:
        args.extend(extra_args)
    return subprocess.Popen(
        args,
        cwd=directory,
        env=server_environment(log_file, extra_env),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )


def _launch_server(
    host: str,
    port: int,
    directory: Path,
    log_file: Path,
    extra_env: dict[str, str] | None = None,
) -> Generator[ServerProcessInfo, None, None]:
    with start_server(port, directory, log_file, extra_env) as process:
        try:
            wait_for_port(host, port)
        except Exception:
            # If startup failed, print stdout/stderr to help debug
            process.terminate()
            stdout, stderr = process.communicate(timeout=5)
            print(f"\nServer stdout:\n{stdout}")
            print(f"\nServer stderr:\n{stderr}")
            raise

        yield {
            "base_url": f"http://{host}:{port}",
            "host": host,
            "port": port,
            "directory": directory,
            "process": process,
            "log_file": log_file,
        }

        if process.poll() is None:
            process.terminate()
        try:
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            process.kill()


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Expose the repository root path to tests."""

    return PROJECT_ROOT


@pytest.fixture(name="served_directory")
def _served_directory(tmp_path_factory: "TempPathFactory") -> Path:
    """A fresh directory filled with the sample files."""

    directory = tmp_path_factory.mktemp("served")
    populate_directory(directory)
    return directory


@pytest.fixture(name="log_file")
def _log_file(tmp_path_factory: "TempPathFactory") -> Path:
    """Log destination kept outside the served directory."""

    return tmp_path_factory.mktemp("logs") / "server.log"


@pytest.fixture(name="server_process")
def _server_process(
    served_directory: Path, log_file: Path
) -> Generator[ServerProcessInfo, None, None]:
    """Launch the server without authentication."""

    host = "127.0.0.1"
    port = reserve_port(host)
    yield from _launch_server(host, port, served_directory, log_file)


@pytest.fixture(name="auth_server_process")
def _auth_server_process(
    served_directory: Path, log_file: Path
) -> Generator[ServerProcessInfo, None, None]:
    """Launch the server with USERNAME and PASSWORD set."""

    host = "127.0.0.1"
    port = reserve_port(host)
    credentials = {"USERNAME": TEST_USERNAME, "PASSWORD": TEST_PASSWORD}
    yield from _launch_server(host, port, served_directory, log_file, credentials)


@pytest.fixture(name="partial_auth_server_process")
def _partial_auth_server_process(
    served_directory: Path, log_file: Path
) -> Generator[ServerProcessInfo, None, None]:
    """Launch the server with only USERNAME set."""

    host = "127.0.0.1"
    port = reserve_port(host)
    yield from _launch_server(
        host, port, served_directory, log_file, {"USERNAME": TEST_USERNAME}
    )


@pytest.fixture()
def base_url(server_process: ServerProcessInfo) -> str:
    """Expose the running server base URL to integration tests."""

    return server_process["base_url"]


@pytest.fixture()
def auth_base_url(auth_server_process: ServerProcessInfo) -> str:
    """Base URL of the server that requires Basic authentication."""

    return auth_server_process["base_url"]
