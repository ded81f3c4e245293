"""Runtime lifecycles for init and exec processes, and the exec process factory."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Set, Union

from .common import check_kill_error, create_io, get_spec_from_request
from .console import ConsoleSocket
from .container import ExecProcessRequest, ProcessFactory, ProcessInfo
from .errors import (
    DeadlineExceededError,
    FailedPreconditionError,
    NotFoundError,
    OtherError,
    UnimplementedError,
)
from .processes import ProcessLifecycle, ProcessTemplate, Status
from .runc_io import ExitSignal, copy_io_or_console, runtime_error
from .stdio import Stdio

logger = logging.getLogger(__name__)

_U32 = 0xFFFFFFFF
KILL_TIMEOUT = 3.0
_BACKGROUND: Set["asyncio.Task[None]"] = set()
_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def _on_linux() -> bool:
    return sys.platform.startswith("linux")


def _mount_points(mountinfo: str) -> Iterator[str]:
    for line in mountinfo.splitlines():
        columns = line.split()
        if len(columns) > 4:
            yield _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), columns[4])


def _umount_recursive(target: Union[str, Path]) -> None:
    """Unmount everything mounted at or below ``target``, deepest first."""
    target_str = os.path.normpath(str(target))
    try:
        mountinfo = Path("/proc/self/mountinfo").read_text()
    except OSError:
        return
    prefix = target_str.rstrip("/") + "/"
    points = sorted(
        {p for p in _mount_points(mountinfo) if p == target_str or p.startswith(prefix)},
        key=len,
        reverse=True,
    )
    for point in points:
        result = subprocess.run(["umount", point], capture_output=True, text=True)
        if result.returncode != 0:
            raise OtherError(f"umount {point}: {result.stderr.strip()}")


def _read_pid(pid_path: Path) -> int:
    try:
        content = pid_path.read_text()
    except OSError as exc:
        raise OtherError(f"read {pid_path}: {exc}") from exc
    try:
        return int(content)
    except ValueError as exc:
        raise OtherError(f"invalid pid in {pid_path}: {exc}") from exc


class RuncInitLifecycle(ProcessLifecycle):
    """Lifecycle of a container's init process, driven through the OCI runtime.

    ``runtime`` provides async ``start``, ``kill``, ``delete``, ``ps``,
    ``pause`` and ``resume``; ``cgroup``, when known, provides ``exists()``,
    ``update(resources)`` and ``metrics()``.
    """

    def __init__(
        self,
        runtime: Any,
        options: Optional[Mapping[str, Any]],
        bundle: Union[str, Path],
        exit_signal: Optional[ExitSignal] = None,
        cgroup: Any = None,
        unmount: Callable[[Path], None] = _umount_recursive,
    ) -> None:
        self.runtime = runtime
        self.bundle = str(bundle)
        self.options: Dict[str, Any] = dict(options or {})
        if not self.options.get("criu_path"):
            self.options["criu_path"] = str(Path(self.bundle) / "work")
        self.exit_signal = exit_signal if exit_signal is not None else ExitSignal()
        self.cgroup = cgroup
        self._unmount = unmount

    def _cgroup_exists(self) -> bool:
        return self.cgroup is not None and bool(self.cgroup.exists())

    async def start(self, process: ProcessTemplate) -> None:
        try:
            await self.runtime.start(process.id)
        except Exception as exc:
            raise runtime_error(self.bundle, exc, "OCI runtime start failed") from exc
        process.status = Status.RUNNING

    async def kill(self, process: ProcessTemplate, signal: int, all_processes: bool) -> None:
        try:
            await self.runtime.kill(process.id, signal, all=all_processes)
        except Exception as exc:
            raise check_kill_error(str(exc)) from exc

    async def delete(self, process: ProcessTemplate) -> None:
        try:
            await self.runtime.delete(process.id, force=True)
        except Exception as exc:
            if "does not exist" not in str(exc).lower():
                raise runtime_error(self.bundle, exc, "OCI runtime delete failed") from exc
        self._unmount(Path(self.bundle) / "rootfs")
        self.exit_signal.signal()

    async def update(self, process: ProcessTemplate, resources: Any) -> None:
        if not _on_linux():
            raise UnimplementedError("update resource")
        if process.pid <= 0:
            raise OtherError(
                f"failed to update resources because init process is {process.pid}"
            )
        if not self._cgroup_exists():
            raise OtherError(
                "failed to update resources because cgroup for process "
                f"{process.pid} has been released"
            )
        self.cgroup.update(resources)

    async def stats(self, process: ProcessTemplate) -> Any:
        if not _on_linux():
            raise UnimplementedError("process stats")
        if process.pid <= 0:
            raise OtherError(
                f"failed to collect metrics because init process is {process.pid}"
            )
        if not self._cgroup_exists():
            raise OtherError(
                "failed to collect metrics because cgroup for process "
                f"{process.pid} has been released"
            )
        return self.cgroup.metrics()

    async def ps(self, process: ProcessTemplate) -> List[ProcessInfo]:
        try:
            pids = await self.runtime.ps(process.id)
        except Exception as exc:
            raise OtherError(f"failed to execute runc ps: {exc}") from exc
        return [ProcessInfo(pid=pid & _U32) for pid in pids]

    async def pause(self, process: ProcessTemplate) -> None:
        if not _on_linux():
            raise UnimplementedError("pause")
        if process.status != Status.RUNNING:
            raise OtherError(f"cannot pause when in {process.status.name} state")
        process.status = Status.PAUSING
        try:
            await self.runtime.pause(process.id)
        except Exception as exc:
            process.status = Status.RUNNING
            raise runtime_error(self.bundle, exc, "OCI runtime pause failed") from exc
        process.status = Status.PAUSED

    async def resume(self, process: ProcessTemplate) -> None:
        if not _on_linux():
            raise UnimplementedError("resume")
        if process.status != Status.PAUSED:
            raise OtherError(f"cannot resume when in {process.status.name} state")
        try:
            await self.runtime.resume(process.id)
        except Exception as exc:
            raise runtime_error(self.bundle, exc, "OCI runtime pause failed") from exc
        process.status = Status.RUNNING


async def _open_stdin_writer(process: ProcessTemplate, path: str) -> None:
    # Opening the write side early keeps the runtime's read side from blocking.
    try:
        writer = await asyncio.to_thread(open, path, "wb", buffering=0)
    except OSError:
        return
    with process.stdin_lock:
        process.stdin = writer


def _send_signal(pid: int, signal: int) -> None:
    os.kill(pid, signal)


@dataclass
class RuncExecLifecycle(ProcessLifecycle):
    """Lifecycle of a process exec'd inside a running container."""

    runtime: Any
    bundle: str
    container_id: str
    io_uid: int
    io_gid: int
    spec: Dict[str, Any]
    exit_signal: ExitSignal = field(default_factory=ExitSignal)

    async def start(self, process: ProcessTemplate) -> None:
        pid_path = Path(self.bundle) / f"{process.id}.pid"
        socket: Optional[ConsoleSocket] = None
        pio = None
        io = None
        console_path: Optional[str] = None
        if process.stdio.terminal:
            socket = ConsoleSocket.create()
            console_path = str(socket.path)
        else:
            pio = create_io(process.id, self.io_uid, self.io_gid, process.stdio)
            io = pio.io
        try:
            await self.runtime.exec(
                self.container_id,
                self.spec,
                io=io,
                pid_file=str(pid_path),
                console_socket=console_path,
                detach=True,
            )
        except Exception as exc:
            if socket is not None:
                socket.clean()
            raise runtime_error(self.bundle, exc, "OCI runtime exec failed") from exc

        if process.stdio.stdin:
            task = asyncio.get_running_loop().create_task(
                _open_stdin_writer(process, process.stdio.stdin)
            )
            _BACKGROUND.add(task)
            task.add_done_callback(_BACKGROUND.discard)

        await copy_io_or_console(process, socket, pio, self.exit_signal)
        process.pid = _read_pid(pid_path)
        process.status = Status.RUNNING

    async def kill(self, process: ProcessTemplate, signal: int, all_processes: bool) -> None:
        if process.pid <= 0:
            raise FailedPreconditionError("process not created")
        if process.exited_at is not None:
            raise NotFoundError("process already finished")
        pid = process.pid
        try:
            await asyncio.wait_for(
                asyncio.to_thread(_send_signal, pid, signal), KILL_TIMEOUT
            )
        except asyncio.TimeoutError:
            logger.debug("kill operation timed out for pid %d, signal %d", pid, signal)
            # A termination signal may have taken effect even though it timed out.
            if signal in (9, 15):
                return
            raise DeadlineExceededError("kill operation timed out") from None
        except (OSError, ValueError, OverflowError) as exc:
            raise OtherError(str(exc)) from exc

    async def delete(self, process: ProcessTemplate) -> None:
        self.exit_signal.signal()
        try:
            (Path(self.bundle) / f"{process.id}.pid").unlink()
        except OSError:
            pass

    async def update(self, process: ProcessTemplate, resources: Any) -> None:
        raise UnimplementedError("exec update")

    async def stats(self, process: ProcessTemplate) -> Any:
        raise UnimplementedError("exec stats")

    async def ps(self, process: ProcessTemplate) -> List[ProcessInfo]:
        raise UnimplementedError("exec ps")

    async def pause(self, process: ProcessTemplate) -> None:
        raise UnimplementedError("exec pause")

    async def resume(self, process: ProcessTemplate) -> None:
        raise UnimplementedError("exec resume")


@dataclass
class RuncExecFactory(ProcessFactory):
    """Creates exec processes that run through the OCI runtime."""

    runtime: Any
    bundle: str
    io_uid: int = 0
    io_gid: int = 0

    async def create(self, request: ExecProcessRequest) -> ProcessTemplate:
        spec = get_spec_from_request(request.spec, request.terminal)
        lifecycle = RuncExecLifecycle(
            runtime=self.runtime,
            bundle=self.bundle,
            container_id=request.id,
            io_uid=self.io_uid,
            io_gid=self.io_gid,
            spec=spec,
        )
        stdio = Stdio(
            stdin=request.stdin,
            stdout=request.stdout,
            stderr=request.stderr,
            terminal=request.terminal,
        )
        return ProcessTemplate(id=request.exec_id, stdio=stdio, lifecycle=lifecycle)