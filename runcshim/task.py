"""Task service: the shim's task API over a set of containers."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    ClassVar,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from .cgroup_memory import (
    get_existing_cgroup_mem_path,
    get_path_from_cgroup,
    register_memory_event,
)
from .container import ContainerFactory, ExecProcessRequest, ProcessInfo
from .errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    OtherError,
    ShimError,
)
from .processes import StateResponse, Status
from .runc_io import ExitSignal

logger = logging.getLogger(__name__)

_U32 = 0xFFFFFFFF
_CGROUP_ROOT = Path("/sys/fs/cgroup")
_MONITORS: Set["asyncio.Task[None]"] = set()

EventQueue = "asyncio.Queue[Tuple[str, Any]]"
OomMonitor = Callable[[str, int, Any], Awaitable[None]]


@dataclass
class TaskIO:
    """Stream paths of a created task."""

    stdin: str = ""
    stdout: str = ""
    stderr: str = ""
    terminal: bool = False


@dataclass
class TaskCreate:
    """A task was created."""

    topic: ClassVar[str] = "/tasks/create"

    container_id: str = ""
    bundle: str = ""
    rootfs: List[Any] = field(default_factory=list)
    io: Optional[TaskIO] = None
    checkpoint: str = ""
    pid: int = 0


@dataclass
class TaskStart:
    """A task's init process was started."""

    topic: ClassVar[str] = "/tasks/start"

    container_id: str = ""
    pid: int = 0


@dataclass
class TaskDelete:
    """A task or one of its exec processes was deleted."""

    topic: ClassVar[str] = "/tasks/delete"

    container_id: str = ""
    pid: int = 0
    exit_status: int = 0
    exited_at: Optional[datetime] = None
    id: str = ""


@dataclass
class TaskExecAdded:
    """An exec process was added to a task."""

    topic: ClassVar[str] = "/tasks/exec-added"

    container_id: str = ""
    exec_id: str = ""


@dataclass
class TaskExecStarted:
    """An exec process was started."""

    topic: ClassVar[str] = "/tasks/exec-started"

    container_id: str = ""
    exec_id: str = ""
    pid: int = 0


@dataclass
class TaskPaused:
    """A task was paused."""

    topic: ClassVar[str] = "/tasks/paused"

    container_id: str = ""


@dataclass
class TaskResumed:
    """A task was resumed."""

    topic: ClassVar[str] = "/tasks/resumed"

    container_id: str = ""


@dataclass
class TaskOOM:
    """A task ran out of memory."""

    topic: ClassVar[str] = "/tasks/oom"

    container_id: str = ""


@dataclass
class CreateTaskRequest:
    """Request to create a task."""

    id: str
    bundle: str = ""
    rootfs: List[Any] = field(default_factory=list)
    terminal: bool = False
    stdin: str = ""
    stdout: str = ""
    stderr: str = ""
    checkpoint: str = ""
    parent_checkpoint: str = ""
    options: Any = None


def _on_linux() -> bool:
    return sys.platform.startswith("linux")


def _cgroup2_unified() -> bool:
    return (_CGROUP_ROOT / "cgroup.controllers").exists()


def _run_oom_monitor(queue: "asyncio.Queue[Optional[str]]", container_id: str, events: Any) -> None:
    async def _forward() -> None:
        while await queue.get() is not None:
            event = TaskOOM(container_id=container_id)
            await events.put((event.topic, event))

    task = asyncio.get_running_loop().create_task(_forward())
    _MONITORS.add(task)
    task.add_done_callback(_MONITORS.discard)


async def monitor_oom(container_id: str, pid: int, events: Any) -> None:
    """Publish an OOM event each time the container's memory cgroup reports one.

    Only cgroup v1 hosts are watched; on a unified hierarchy nothing is done.
    """
    if _cgroup2_unified():
        return
    pid_path = get_path_from_cgroup(pid)
    mount_root, mount_point = get_existing_cgroup_mem_path(pid_path)
    try:
        queue = await register_memory_event(
            container_id, Path(mount_point + mount_root), "memory.oom_control"
        )
    except OtherError as exc:
        raise OtherError(f"register_memory_event failed: {exc}") from exc
    _run_oom_monitor(queue, container_id, events)


class TaskService:
    """Serves task requests for the containers that ``factory`` creates.

    Events are put on ``events`` as ``(topic, event)`` pairs.
    """

    def __init__(
        self,
        namespace: str,
        exit_signal: ExitSignal,
        events: Any,
        factory: ContainerFactory,
        oom_monitor: OomMonitor = monitor_oom,
    ) -> None:
        self.factory = factory
        self.containers: Dict[str, Any] = {}
        self.lock = asyncio.Lock()
        self.namespace = namespace
        self.exit = exit_signal
        self.events = events
        self._oom_monitor = oom_monitor

    def container(self, container_id: str) -> Any:
        """The container named ``container_id``."""
        try:
            return self.containers[container_id]
        except KeyError:
            raise NotFoundError(f"can not find container by id {container_id}") from None

    @asynccontextmanager
    async def _locked(self, container_id: str) -> AsyncIterator[Any]:
        async with self.lock:
            yield self.container(container_id)

    async def send_event(self, event: Any) -> None:
        """Queue ``event`` for publishing under its topic."""
        await self.events.put((event.topic, event))

    def state(self, container_id: str, exec_id: Optional[str] = None) -> StateResponse:
        """State of the container's init process or of an exec."""
        return self.container(container_id).state(exec_id or None)

    async def create(self, request: CreateTaskRequest) -> int:
        """Create a task and return the pid of its init process."""
        logger.info("Create request for %r", request)
        async with self.lock:
            container = await self.factory.create(self.namespace, request)
            pid = container.pid & _U32
            self.containers[request.id] = container

        await self.send_event(
            TaskCreate(
                container_id=request.id,
                bundle=request.bundle,
                rootfs=list(request.rootfs),
                io=TaskIO(
                    stdin=request.stdin,
                    stdout=request.stdout,
                    stderr=request.stderr,
                    terminal=request.terminal,
                ),
                checkpoint=request.checkpoint,
                pid=pid,
            )
        )
        logger.info("Create request for %s returns pid %d", request.id, pid)
        return pid

    async def start(self, container_id: str, exec_id: Optional[str] = None) -> int:
        """Start the init process or an exec; return its pid."""
        logger.info("Start request for %s %s", container_id, exec_id or "")
        exec_id = exec_id or None
        async with self._locked(container_id) as container:
            if container.init_state() == Status.STOPPED:
                logger.debug(
                    "container init process has exited, start process should not continue"
                )
                raise FailedPreconditionError(
                    f"container init process has exited {container.id}"
                )
            pid = (await container.start(exec_id)) & _U32

        if exec_id is None:
            await self.send_event(TaskStart(container_id=container_id, pid=pid))
            if _on_linux():
                try:
                    await self._oom_monitor(container_id, pid, self.events)
                except (ShimError, OSError) as exc:
                    logger.error("monitor_oom failed: %s.", exc)
        else:
            await self.send_event(
                TaskExecStarted(container_id=container_id, exec_id=exec_id, pid=pid)
            )
        logger.info("Start request for %s returns pid %d", container_id, pid)
        return pid

    async def delete(
        self, container_id: str, exec_id: Optional[str] = None
    ) -> Tuple[int, int, Optional[datetime]]:
        """Delete the task or an exec; return (pid, exit status, exit time)."""
        logger.info("Delete request for %s %s", container_id, exec_id or "")
        exec_id = exec_id or None
        async with self._locked(container_id) as container:
            cid = container.id
            pid, exit_status, exited_at = await container.delete(exec_id)
            await self.factory.cleanup(self.namespace, container)
            if exec_id is None:
                self.containers.pop(container_id, None)

        pid &= _U32
        exit_status &= _U32
        await self.send_event(
            TaskDelete(
                container_id=cid,
                pid=pid,
                exit_status=exit_status,
                exited_at=exited_at,
            )
        )
        logger.info(
            "Delete request for %s %s returns pid %d status %d",
            container_id,
            exec_id or "",
            pid,
            exit_status,
        )
        return pid, exit_status, exited_at

    async def pids(self, container_id: str) -> List[ProcessInfo]:
        """Processes running in the container."""
        logger.debug("Pids request for %s", container_id)
        return await self.container(container_id).all_processes()

    async def pause(self, container_id: str) -> None:
        """Pause the container."""
        logger.info("pause request for %s", container_id)
        async with self._locked(container_id) as container:
            await container.pause()
        await self.send_event(TaskPaused(container_id=container_id))

    async def resume(self, container_id: str) -> None:
        """Resume the container."""
        logger.info("resume request for %s", container_id)
        async with self._locked(container_id) as container:
            await container.resume()
        await self.send_event(TaskResumed(container_id=container_id))

    async def kill(
        self,
        container_id: str,
        exec_id: Optional[str],
        signal: int,
        all_processes: bool = False,
    ) -> None:
        """Signal the init process or an exec."""
        logger.info("Kill request for %s %s signal %d", container_id, exec_id or "", signal)
        async with self._locked(container_id) as container:
            await container.kill(exec_id or None, signal, all_processes)

    async def exec(self, request: ExecProcessRequest) -> None:
        """Add an exec process to a container."""
        logger.info("Exec request for %r", request)
        async with self._locked(request.id) as container:
            await container.exec(request)
            cid = container.id
        await self.send_event(TaskExecAdded(container_id=cid, exec_id=request.exec_id))

    async def resize_pty(
        self, container_id: str, exec_id: Optional[str], height: int, width: int
    ) -> None:
        """Resize the terminal of the init process or an exec."""
        logger.debug(
            "Resize pty request for container %s, exec_id: %s", container_id, exec_id or ""
        )
        async with self._locked(container_id) as container:
            container.resize_pty(exec_id or None, height, width)

    async def close_io(self, container_id: str, exec_id: Optional[str] = None) -> None:
        """Close the stdin of the init process or an exec."""
        async with self._locked(container_id) as container:
            container.close_io(exec_id or None)

    async def update(
        self, container_id: str, resources: Union[bytes, str, None]
    ) -> None:
        """Apply a JSON resource spec to the container."""
        logger.debug("Update request for id %s", container_id)
        data = resources if resources is not None else b""
        try:
            parsed = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidArgumentError(f"failed to parse resource spec: {exc}") from exc
        if not isinstance(parsed, dict):
            raise InvalidArgumentError("failed to parse resource spec: not an object")
        logger.debug("Update resource is %r", parsed)
        async with self._locked(container_id) as container:
            await container.update(parsed)

    async def wait(
        self, container_id: str, exec_id: Optional[str] = None
    ) -> Tuple[int, Optional[datetime]]:
        """Wait for a process to exit; return (exit status, exit time)."""
        logger.info("Wait request for %s %s", container_id, exec_id or "")
        exec_id = exec_id or None
        async with self._locked(container_id) as container:
            state = container.state(exec_id)
            if state.status not in (Status.RUNNING, Status.CREATED):
                return state.exit_status, state.exited_at
            exited = container.wait_channel(exec_id)

        await exited.wait()
        _, code, exited_at = self.container(container_id).get_exit_info(exec_id)
        return code & _U32, exited_at

    async def stats(self, container_id: str) -> Any:
        """Resource metrics of the container."""
        logger.debug("Stats request for %s", container_id)
        return await self.container(container_id).stats()

    def connect(self, container_id: str) -> Tuple[int, int]:
        """Return (shim pid, task pid); the task pid is 0 for an unknown container."""
        logger.info("Connect request for %s", container_id)
        container = self.containers.get(container_id)
        task_pid = container.pid & _U32 if container is not None else 0
        return os.getpid(), task_pid

    def shutdown(self) -> None:
        """Signal the shim to exit once no container is left."""
        logger.debug("Shutdown request")
        if self.containers:
            return
        self.exit.signal()