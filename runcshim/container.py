"""A container made of an init process and exec'd processes."""

from __future__ import annotations

import abc
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .errors import NotFoundError, ShimError, UnimplementedError
from .processes import Process, StateResponse, Status

logger = logging.getLogger(__name__)

ExitInfo = Tuple[int, int, Optional[datetime]]


@dataclass
class ProcessInfo:
    """A process running in a container, with the exec it belongs to if any."""

    pid: int
    exec_id: Optional[str] = None


@dataclass
class ExecProcessRequest:
    """Request to add an exec process to a container."""

    id: str
    exec_id: str
    terminal: bool = False
    stdin: str = ""
    stdout: str = ""
    stderr: str = ""
    spec: Optional[bytes] = None


class ContainerFactory(abc.ABC):
    """Creates and cleans up containers."""

    @abc.abstractmethod
    async def create(self, namespace: str, request: Any) -> Any:
        """Create a container for ``request`` in ``namespace``."""

    @abc.abstractmethod
    async def cleanup(self, namespace: str, container: Any) -> None:
        """Release what was set up for ``container``."""


class ProcessFactory(abc.ABC):
    """Creates exec processes."""

    @abc.abstractmethod
    async def create(self, request: ExecProcessRequest) -> Process:
        """Create a process for ``request``."""


def _on_linux() -> bool:
    return sys.platform.startswith("linux")


@dataclass(eq=False)
class ContainerTemplate:
    """A container whose operations go to its init process or to an exec."""

    id: str
    bundle: str
    init: Process
    process_factory: ProcessFactory
    processes: Dict[str, Process] = field(default_factory=dict)

    @property
    def pid(self) -> int:
        """Pid of the init process."""
        return self.init.pid

    def get_process(self, exec_id: Optional[str]) -> Process:
        """The exec process named ``exec_id``, or the init process when none."""
        if not exec_id:
            return self.init
        try:
            return self.processes[exec_id]
        except KeyError:
            raise NotFoundError(f"can not find the exec by id {exec_id}") from None

    def init_state(self) -> Status:
        """Status of the init process, UNKNOWN if it cannot be read."""
        try:
            return self.init.state().status
        except ShimError:
            return Status.UNKNOWN

    async def start(self, exec_id: Optional[str]) -> int:
        """Start a process and return its pid."""
        process = self.get_process(exec_id)
        await process.start()
        return process.pid

    def state(self, exec_id: Optional[str]) -> StateResponse:
        """State of a process; a pausing or paused container reports so."""
        process = self.get_process(exec_id)
        resp = process.state()
        init_status = self.init.state().status
        if init_status in (Status.PAUSING, Status.PAUSED):
            resp.status = init_status
        resp.bundle = self.bundle
        logger.debug("container state: %r", resp)
        return resp

    async def kill(self, exec_id: Optional[str], signal: int, all_processes: bool) -> None:
        """Signal a process."""
        await self.get_process(exec_id).kill(signal, all_processes)

    def wait_channel(self, exec_id: Optional[str]):
        """Event that is set once the process has exited."""
        return self.get_process(exec_id).wait_channel()

    def get_exit_info(self, exec_id: Optional[str]) -> ExitInfo:
        """Return (pid, exit code, exit time) of a process."""
        process = self.get_process(exec_id)
        return process.pid, process.exit_code, process.exited_at

    async def delete(self, exec_id: Optional[str]) -> ExitInfo:
        """Delete a process, dropping it from the execs; return its exit info."""
        info = self.get_exit_info(exec_id)
        await self.get_process(exec_id).delete()
        if exec_id:
            self.processes.pop(exec_id, None)
        return info

    async def exec(self, request: ExecProcessRequest) -> None:
        """Create an exec process and register it under its exec id."""
        process = await self.process_factory.create(request)
        self.processes[request.exec_id] = process

    def resize_pty(self, exec_id: Optional[str], height: int, width: int) -> None:
        """Resize a process's terminal."""
        self.get_process(exec_id).resize_pty(height, width)

    async def update(self, resources: Any) -> None:
        """Update the container's resource limits."""
        if not _on_linux():
            raise UnimplementedError("update")
        await self.init.update(resources)

    async def stats(self) -> Any:
        """Collect the container's metrics."""
        if not _on_linux():
            raise UnimplementedError("stats")
        return await self.init.stats()

    async def all_processes(self) -> List[ProcessInfo]:
        """List the container's processes, naming the exec each one belongs to."""
        infos = await self.init.ps()
        for info in infos:
            exec_id = next(
                (eid for eid, proc in self.processes.items() if proc.pid == info.pid),
                None,
            )
            if exec_id is not None:
                info.exec_id = exec_id
        return infos

    def close_io(self, exec_id: Optional[str]) -> None:
        """Close a process's stdin."""
        self.get_process(exec_id).close_io()

    async def pause(self) -> None:
        """Pause the container."""
        await self.init.pause()

    async def resume(self) -> None:
        """Resume the container."""
        await self.init.resume()