"""Shared helpers: process IO setup, spec handling and kill error mapping."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import socket
import tempfile
import termios
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .errors import InvalidArgumentError, NotFoundError, OtherError, ShimError
from .stdio import Stdio

logger = logging.getLogger(__name__)

GROUP_LABELS = ("io.containerd.runc.v2.group", "io.kubernetes.cri.sandbox-id")
INIT_PID_FILE = "init.pid"
LOG_JSON_FILE = "log.json"
FIFO_SCHEME = "fifo"
DEFAULT_RUNC_ROOT = "/run/containerd/runc"
DEFAULT_COMMAND = "runc"
TIMEOUT_DURATION = 3.0


@dataclass(frozen=True)
class LogEntry:
    """One line of the OCI runtime's JSON log."""

    level: str
    msg: str

    @classmethod
    def from_json(cls, line: str) -> "LogEntry":
        """Parse a JSON log line; raise ValueError if it is not a log entry."""
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid log entry: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("invalid log entry: not an object")
        level, msg = data.get("level"), data.get("msg")
        if not isinstance(level, str) or not isinstance(msg, str):
            raise ValueError("invalid log entry: missing level or msg")
        return cls(level=level, msg=msg)


class NullIO:
    """IO that discards output and gives no input."""

    def __repr__(self) -> str:
        return "NullIO()"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, NullIO)

    def __hash__(self) -> int:
        return hash(NullIO)


@dataclass(frozen=True)
class FifoIO:
    """IO through named pipes that the runtime opens itself."""

    stdin: Optional[str] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None


@dataclass
class ProcessIO:
    """How a process's streams are wired."""

    uri: Optional[str] = None
    io: Union[NullIO, FifoIO, None] = None
    copy: bool = False


def create_io(container_id: str, io_uid: int, io_gid: int, stdio: Stdio) -> ProcessIO:
    """Choose the IO for a process from its stdio paths."""
    if stdio.is_null():
        return ProcessIO(io=NullIO())
    stdout = stdio.stdout
    parts = stdout.strip().split("://")
    pio = ProcessIO()
    if len(parts) <= 1:
        scheme = FIFO_SCHEME
        pio.uri = f"{scheme}://{stdout}"
    else:
        scheme = parts[0]
        pio.uri = stdout

    if scheme == FIFO_SCHEME:
        logger.debug(
            "create named pipe io for container %s, stdin: %s, stdout: %s, stderr: %s",
            container_id,
            stdio.stdin,
            stdio.stdout,
            stdio.stderr,
        )
        pio.io = FifoIO(
            stdin=stdio.stdin or None,
            stdout=stdio.stdout or None,
            stderr=stdio.stderr or None,
        )
        pio.copy = False
    return pio


def get_spec_from_request(spec: Union[bytes, str, None], terminal: bool) -> dict:
    """Decode an exec request's OCI process spec and set its terminal flag."""
    if spec is None:
        raise InvalidArgumentError("no spec in request")
    try:
        process = json.loads(spec)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidArgumentError(f"failed to parse process spec: {exc}") from exc
    if not isinstance(process, dict):
        raise InvalidArgumentError("failed to parse process spec: not an object")
    process["terminal"] = terminal
    return process


def check_kill_error(message: str) -> ShimError:
    """Map a runtime kill failure message to the error to report."""
    emsg = message.lower()
    if (
        "process already finished" in emsg
        or "container not running" in emsg
        or "no such process" in emsg
    ):
        return NotFoundError("process already finished")
    if "does not exist" in emsg:
        return NotFoundError("no such container")
    return OtherError(f"unknown error after kill {emsg}")


def has_shared_pid_namespace(spec: dict) -> bool:
    """False only when the spec gives the container its own new PID namespace."""
    linux = spec.get("linux")
    if linux is None:
        return True
    namespaces = linux.get("namespaces")
    if namespaces is None:
        return True
    return not any(
        ns.get("type") == "pid" and ns.get("path") is None for ns in namespaces
    )


def xdg_runtime_dir() -> str:
    """XDG_RUNTIME_DIR if set, otherwise the system temporary directory."""
    value = os.environ.get("XDG_RUNTIME_DIR")
    if value is not None:
        return value
    return tempfile.gettempdir() or "."


async def handle_file_open(
    opener: Callable[[], Any], timeout: float = TIMEOUT_DURATION
) -> Any:
    """Run a file-opening callable, giving up after ``timeout`` seconds.

    A coroutine function is awaited; a plain callable runs in a worker thread,
    since opening a FIFO blocks until the other end is opened.
    """
    if inspect.iscoroutinefunction(opener):
        pending = opener()
    else:
        pending = asyncio.to_thread(opener)
    try:
        return await asyncio.wait_for(pending, timeout)
    except asyncio.TimeoutError:
        raise TimeoutError("File operation timed out") from None


def receive_socket(sock: socket.socket) -> int:
    """Receive a terminal file descriptor sent over a Unix socket."""
    try:
        msg, fds, _flags, _addr = socket.recv_fds(sock, 4096, 2)
    except OSError as exc:
        raise OtherError(f"failed to receive message: {exc}") from exc
    if not fds:
        raise OtherError("received message is empty")
    fd, *extra = fds
    for other in extra:
        os.close(other)
    try:
        path = msg.decode("utf-8")
    except UnicodeDecodeError as exc:
        logger.warning("failed to get path from array %s", exc)
        path = ""
    path = path.strip("\0")
    logger.debug("copy_console: console socket get path: %s, fd: %d", path, fd)
    try:
        termios.tcgetattr(fd)
    except (termios.error, OSError) as exc:
        os.close(fd)
        raise OtherError(f"received fd is not a terminal: {exc}") from exc
    return fd