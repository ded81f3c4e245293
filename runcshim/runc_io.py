"""Wiring of a process's streams: copying pipes and the console terminal."""

from __future__ import annotations

import asyncio
import logging
import os
import select
import threading
from pathlib import Path
from typing import IO, Any, Callable, Optional, Set, Union

from .common import LOG_JSON_FILE, LogEntry, ProcessIO, handle_file_open, receive_socket
from .console import ConsoleSocket
from .errors import OtherError
from .stdio import Stdio

logger = logging.getLogger(__name__)

Stream = Union[IO[bytes], int]

_CHUNK = 64 * 1024
_POLL_INTERVAL = 0.1
_COPIES: Set["asyncio.Task[None]"] = set()


class ExitSignal:
    """A one-shot signal that a container or the shim is exiting."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_set(self) -> bool:
        """True once ``signal`` has been called."""
        return self._event.is_set()

    def signal(self) -> None:
        """Wake every waiter, now and later."""
        self._event.set()

    async def wait(self) -> None:
        """Return once the signal has been given."""
        await self._event.wait()


def runtime_error(bundle: Union[str, Path], error: Any, msg: str) -> OtherError:
    """Build the error to report, using the last error in the runtime's log."""
    log_path = Path(bundle) / LOG_JSON_FILE
    try:
        content = log_path.read_text()
    except OSError as exc:
        return OtherError(f"{msg}: unable to open OCI runtime log file){exc}")
    rt_msg = ""
    for line in content.splitlines():
        try:
            entry = LogEntry.from_json(line)
        except ValueError as exc:
            return OtherError(f"{msg}: unable to parse log msg: {exc}")
        if entry.level == "error":
            rt_msg = entry.msg.strip()
    if rt_msg:
        return OtherError(f"{msg}: {rt_msg}")
    return OtherError(f"{msg}: (no OCI runtime error in logfile) {error}")


def _fileno(stream: Stream) -> int:
    return stream if isinstance(stream, int) else stream.fileno()


def _close(stream: Any) -> None:
    try:
        if isinstance(stream, int):
            os.close(stream)
        else:
            stream.close()
    except OSError:
        pass


def _is_stream(value: Any) -> bool:
    return isinstance(value, int) or hasattr(value, "fileno")


def _pump(src: int, dst: int, stop: threading.Event) -> None:
    while not stop.is_set():
        ready, _, _ = select.select([src], [], [], _POLL_INTERVAL)
        if not ready:
            continue
        chunk = os.read(src, _CHUNK)
        if not chunk:
            return
        view = memoryview(chunk)
        while view:
            written = os.write(dst, view)
            view = view[written:]


def spawn_copy(
    source: Stream,
    dest: Stream,
    exit_signal: ExitSignal,
    on_close: Optional[Callable[[], None]] = None,
) -> "asyncio.Task[None]":
    """Copy ``source`` into ``dest`` in the background until EOF or exit.

    Both streams are owned by the copy and closed when it ends; ``on_close``
    runs afterwards.
    """

    async def _run() -> None:
        stop = threading.Event()
        copier = asyncio.ensure_future(
            asyncio.to_thread(_pump, _fileno(source), _fileno(dest), stop)
        )
        waiter = asyncio.ensure_future(exit_signal.wait())
        try:
            done, _ = await asyncio.wait(
                {copier, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
            if copier in done:
                waiter.cancel()
                exc = copier.exception()
                if exc is not None:
                    logger.error("copy io failed %s", exc)
            else:
                logger.debug("container exit, copy task should exit too")
                stop.set()
                try:
                    await copier
                except OSError:
                    pass
        finally:
            _close(source)
            _close(dest)
            if on_close is not None:
                on_close()

    task = asyncio.get_running_loop().create_task(_run())
    _COPIES.add(task)
    task.add_done_callback(_COPIES.discard)
    return task


async def _open(path: str, mode: str, what: str) -> IO[bytes]:
    try:
        return await handle_file_open(lambda: open(path, mode, buffering=0))
    except (OSError, TimeoutError) as exc:
        raise OtherError(f"{what}: {exc}") from exc


def _closer(stream: IO[bytes]) -> Callable[[], None]:
    return lambda: _close(stream)


async def copy_io(pio: ProcessIO, stdio: Stdio, exit_signal: ExitSignal) -> None:
    """Copy between the process's pipes and the stdio paths, when requested."""
    if not pio.copy or pio.io is None:
        return
    io = pio.io

    writer = getattr(io, "stdin", None)
    if _is_stream(writer):
        logger.debug("copy_io: pipe stdin from %s", stdio.stdin)
        if stdio.stdin:
            stdin = await _open(stdio.stdin, "rb", "open stdin")
            spawn_copy(stdin, writer, exit_signal)

    reader = getattr(io, "stdout", None)
    if _is_stream(reader):
        logger.debug("copy_io: pipe stdout from to %s", stdio.stdout)
        if stdio.stdout:
            stdout = await _open(stdio.stdout, "wb", "open stdout")
            # Keep a reader open so copying survives a restart of the far end.
            stdout_r = await _open(stdio.stdout, "rb", "open stdout for read")
            spawn_copy(reader, stdout, exit_signal, _closer(stdout_r))

    reader = getattr(io, "stderr", None)
    if _is_stream(reader) and stdio.stderr:
        logger.debug("copy_io: pipe stderr from to %s", stdio.stderr)
        stderr = await _open(stdio.stderr, "wb", "open stderr")
        stderr_r = await _open(stdio.stderr, "rb", "open stderr for read")
        spawn_copy(reader, stderr, exit_signal, _closer(stderr_r))


async def copy_console(
    console_socket: ConsoleSocket, stdio: Stdio, exit_signal: ExitSignal
) -> IO[bytes]:
    """Receive the console from the runtime and copy it to the stdio paths."""
    logger.debug("copy_console: waiting for runtime to send console fd")
    conn = await console_socket.accept()
    try:
        fd = await asyncio.to_thread(receive_socket, conn)
    finally:
        conn.close()
    console = os.fdopen(fd, "r+b", buffering=0)
    try:
        if stdio.stdin:
            logger.debug("copy_console: pipe stdin to console")
            console_stdin = _dup(console)
            try:
                stdin = await _open(stdio.stdin, "rb", "failed to open stdin")
            except OtherError:
                os.close(console_stdin)
                raise
            spawn_copy(stdin, console_stdin, exit_signal)

        if stdio.stdout:
            console_stdout = _dup(console)
            logger.debug("copy_console: pipe stdout from console")
            try:
                stdout = await _open(stdio.stdout, "wb", "open stdout")
                stdout_r = await _open(stdio.stdout, "rb", "open stdout for read")
            except OtherError:
                os.close(console_stdout)
                raise
            spawn_copy(console_stdout, stdout, exit_signal, _closer(stdout_r))
    except OtherError:
        console.close()
        raise
    return console


def _dup(console: IO[bytes]) -> int:
    try:
        return os.dup(console.fileno())
    except OSError as exc:
        raise OtherError(f"failed to clone console file: {exc}") from exc


async def copy_io_or_console(
    process: Any,
    socket: Optional[ConsoleSocket],
    pio: Optional[ProcessIO],
    exit_signal: ExitSignal,
) -> None:
    """Set up the console of a terminal process, or copy its pipes otherwise."""
    if process.stdio.terminal:
        if socket is not None:
            try:
                console = await copy_console(socket, process.stdio, exit_signal)
            finally:
                socket.clean()
            process.console = console
    elif pio is not None:
        await copy_io(pio, process.stdio, exit_signal)