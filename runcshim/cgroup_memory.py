"""Cgroup v1 memory paths and OOM event registration."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Optional, Set, Tuple, Union

from .errors import OtherError

_PUMPS: Set["asyncio.Task[None]"] = set()


def _read(path: Union[str, Path]) -> str:
    try:
        return Path(path).read_text()
    except OSError as exc:
        raise OtherError(f"open {path}.: {exc}") from exc


def get_path_from_cgroup(pid: int, proc_root: Union[str, Path] = "/proc") -> str:
    """Return the memory cgroup path of a process from its cgroup file."""
    content = _read(Path(proc_root) / str(pid) / "cgroup")
    line = next((ln for ln in content.splitlines() if "memory" in ln), None)
    if line is None:
        raise OtherError("Memory line not found")
    _, sep, path = line.partition(":memory:")
    if not sep:
        raise OtherError("Failed to parse memory line")
    return path


def parse_memory_mountroot(line: str) -> Tuple[str, str]:
    """Return (mount root, mount point) from a mountinfo line."""
    columns = line.split()
    if len(columns) < 5:
        raise OtherError("Invalid input information about mountinfo")
    return columns[3], columns[4]


def get_path_from_mountinfo(
    mountinfo_path: Union[str, Path] = "/proc/self/mountinfo",
) -> Tuple[str, str]:
    """Find the memory cgroup mount and return its root and mount point."""
    content = _read(mountinfo_path)
    line = next(
        (ln for ln in content.splitlines() if "cgroup" in ln and "memory" in ln),
        None,
    )
    if line is None:
        raise OtherError("Lines containers cgroup and memory not found in mountinfo")
    return parse_memory_mountroot(line)


def _trim_prefix_repeatedly(value: str, prefix: str) -> str:
    if not prefix:
        return value
    while value.startswith(prefix):
        value = value[len(prefix):]
    return value


def get_existing_cgroup_mem_path(
    pid_path: str, mountinfo_path: Union[str, Path] = "/proc/self/mountinfo"
) -> Tuple[str, str]:
    """Return the cgroup path relative to its mount, and the mount point."""
    mount_root, mount_point = get_path_from_mountinfo(mountinfo_path)
    if mount_root == "/":
        mount_root = ""
    return _trim_prefix_repeatedly(pid_path, mount_root), mount_point


async def register_memory_event(
    key: str, cg_dir: Union[str, Path], event_name: str
) -> "asyncio.Queue[Optional[str]]":
    """Register an eventfd for a cgroup memory event.

    Returns a queue that receives ``key`` each time the event fires and
    ``None`` once the event source is gone.
    """
    cg_dir = Path(cg_dir)
    try:
        event_fd = os.open(cg_dir / event_name, os.O_RDONLY | os.O_CLOEXEC)
    except OSError as exc:
        raise OtherError(f"Error get path: {exc}") from exc
    try:
        efd = os.eventfd(0, os.EFD_CLOEXEC | os.EFD_NONBLOCK)
    except OSError as exc:
        os.close(event_fd)
        raise OtherError(f"Error create eventfd: {exc}") from exc
    control_path = cg_dir / "cgroup.event_control"
    try:
        control_path.write_text(f"{efd} {event_fd}")
    except OSError as exc:
        os.close(efd)
        os.close(event_fd)
        raise OtherError(f"Error write eventfd: {exc}") from exc

    queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=128)
    task = asyncio.get_running_loop().create_task(
        _pump(efd, event_fd, control_path, key, queue)
    )
    _PUMPS.add(task)
    task.add_done_callback(_PUMPS.discard)
    return queue


async def _wait_readable(fd: int) -> None:
    loop = asyncio.get_running_loop()
    ready = loop.create_future()

    def _mark() -> None:
        if not ready.done():
            ready.set_result(None)

    loop.add_reader(fd, _mark)
    try:
        await ready
    finally:
        loop.remove_reader(fd)


async def _pump(
    efd: int,
    event_fd: int,
    control_path: Path,
    key: str,
    queue: "asyncio.Queue[Optional[str]]",
) -> None:
    try:
        while True:
            await _wait_readable(efd)
            try:
                data = os.read(efd, 8)
            except BlockingIOError:
                continue
            except OSError:
                return
            if not data or not control_path.exists():
                return
            await queue.put(key)
    finally:
        os.close(efd)
        os.close(event_fd)
        await queue.put(None)