"""Process state and a process template that hands runtime work to a lifecycle."""

from __future__ import annotations

import abc
import asyncio
import enum
import fcntl
import struct
import termios
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import IO, TYPE_CHECKING, Any, List, Optional, Union

from .errors import OtherError
from .stdio import Stdio

if TYPE_CHECKING:
    from .container import ProcessInfo

_U32 = 0xFFFFFFFF
_U16 = 0xFFFF


class Status(enum.IntEnum):
    """Lifecycle status of a task process."""

    UNKNOWN = 0
    CREATED = 1
    RUNNING = 2
    STOPPED = 3
    PAUSED = 4
    PAUSING = 5


@dataclass
class StateResponse:
    """Snapshot of a process's state."""

    id: str = ""
    bundle: str = ""
    pid: int = 0
    status: Status = Status.UNKNOWN
    stdin: str = ""
    stdout: str = ""
    stderr: str = ""
    terminal: bool = False
    exit_status: int = 0
    exited_at: Optional[datetime] = None
    exec_id: str = ""


class Process(abc.ABC):
    """A process of a container: the init process or an exec'd one.

    Implementations expose ``id``, ``pid``, ``exit_code`` and ``exited_at``
    as attributes.
    """

    id: str
    pid: int
    exit_code: int
    exited_at: Optional[datetime]

    @abc.abstractmethod
    async def start(self) -> None:
        """Start the process."""

    @abc.abstractmethod
    def set_exited(self, exit_code: int) -> None:
        """Record that the process exited with ``exit_code``."""

    @abc.abstractmethod
    def state(self) -> StateResponse:
        """Return the current state."""

    @abc.abstractmethod
    async def kill(self, signal: int, all_processes: bool) -> None:
        """Send ``signal`` to the process (or to all processes)."""

    @abc.abstractmethod
    async def delete(self) -> None:
        """Remove the process from the runtime."""

    @abc.abstractmethod
    def wait_channel(self) -> asyncio.Event:
        """Return an event that is set once the process has exited."""

    @abc.abstractmethod
    def resize_pty(self, height: int, width: int) -> None:
        """Resize the process's terminal, if it has one."""

    @abc.abstractmethod
    async def update(self, resources: Any) -> None:
        """Update the process's resource limits."""

    @abc.abstractmethod
    async def stats(self) -> Any:
        """Collect resource usage metrics."""

    @abc.abstractmethod
    async def ps(self) -> List["ProcessInfo"]:
        """List the processes running inside the container."""

    @abc.abstractmethod
    def close_io(self) -> None:
        """Close the write side of the process's stdin."""

    @abc.abstractmethod
    async def pause(self) -> None:
        """Freeze the process."""

    @abc.abstractmethod
    async def resume(self) -> None:
        """Thaw the process."""


class ProcessLifecycle(abc.ABC):
    """Runtime operations that a ``ProcessTemplate`` delegates to."""

    @abc.abstractmethod
    async def start(self, process: Any) -> None:
        """Start ``process``."""

    @abc.abstractmethod
    async def kill(self, process: Any, signal: int, all_processes: bool) -> None:
        """Signal ``process``."""

    @abc.abstractmethod
    async def delete(self, process: Any) -> None:
        """Delete ``process``."""

    @abc.abstractmethod
    async def update(self, process: Any, resources: Any) -> None:
        """Update the resources of ``process``."""

    @abc.abstractmethod
    async def stats(self, process: Any) -> Any:
        """Collect metrics of ``process``."""

    @abc.abstractmethod
    async def ps(self, process: Any) -> List["ProcessInfo"]:
        """List the processes of ``process``'s container."""

    @abc.abstractmethod
    async def pause(self, process: Any) -> None:
        """Pause ``process``."""

    @abc.abstractmethod
    async def resume(self, process: Any) -> None:
        """Resume ``process``."""


@dataclass(eq=False)
class ProcessTemplate(Process):
    """A process whose runtime operations are carried out by ``lifecycle``."""

    id: str
    stdio: Stdio
    lifecycle: ProcessLifecycle
    status: Status = Status.CREATED
    pid: int = 0
    exit_code: int = 0
    exited_at: Optional[datetime] = None
    console: Union[IO[bytes], int, None] = None
    stdin: Optional[IO[bytes]] = None
    stdin_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _waiters: List[asyncio.Event] = field(default_factory=list, repr=False)

    async def start(self) -> None:
        await self.lifecycle.start(self)

    def set_exited(self, exit_code: int) -> None:
        self.status = Status.STOPPED
        self.exit_code = exit_code
        self.exited_at = datetime.now(timezone.utc)
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            waiter.set()

    def state(self) -> StateResponse:
        return StateResponse(
            id=self.id,
            status=self.status,
            pid=self.pid & _U32,
            terminal=self.stdio.terminal,
            stdin=self.stdio.stdin,
            stdout=self.stdio.stdout,
            stderr=self.stdio.stderr,
            exit_status=self.exit_code & _U32,
            exited_at=self.exited_at,
        )

    async def kill(self, signal: int, all_processes: bool) -> None:
        await self.lifecycle.kill(self, signal, all_processes)

    async def delete(self) -> None:
        await self.lifecycle.delete(self)

    def wait_channel(self) -> asyncio.Event:
        event = asyncio.Event()
        if self.status == Status.STOPPED:
            event.set()
        else:
            self._waiters.append(event)
        return event

    def resize_pty(self, height: int, width: int) -> None:
        if self.console is None:
            return
        fd = self.console if isinstance(self.console, int) else self.console.fileno()
        winsize = struct.pack("HHHH", height & _U16, width & _U16, 0, 0)
        try:
            fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
        except OSError as exc:
            raise OtherError(str(exc)) from exc

    async def update(self, resources: Any) -> None:
        await self.lifecycle.update(self, resources)

    async def stats(self) -> Any:
        return await self.lifecycle.stats(self)

    async def ps(self) -> List["ProcessInfo"]:
        return await self.lifecycle.ps(self)

    def close_io(self) -> None:
        with self.stdin_lock:
            stdin, self.stdin = self.stdin, None
        if stdin is not None:
            stdin.close()

    async def pause(self) -> None:
        await self.lifecycle.pause(self)

    async def resume(self) -> None:
        await self.lifecycle.resume(self)