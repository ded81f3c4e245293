"""Handling of process exits reported for the containers a shim runs."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, ClassVar, List, Mapping, Optional, Union

from .common import has_shared_pid_namespace
from .errors import ShimError

logger = logging.getLogger(__name__)

_U32 = 0xFFFFFFFF
_SPEC_FILE = "config.json"
_SIGKILL = 9


@dataclass
class TaskExit:
    """A process of a task exited."""

    topic: ClassVar[str] = "/tasks/exit"

    container_id: str = ""
    id: str = ""
    pid: int = 0
    exit_status: int = 0
    exited_at: Optional[datetime] = None


def _read_spec(bundle: Union[str, Path]) -> dict:
    path = Path(bundle) / _SPEC_FILE
    spec = json.loads(path.read_text())
    if not isinstance(spec, dict):
        raise ValueError(f"{path}: spec is not an object")
    return spec


def should_kill_all_on_exit(bundle: Union[str, Path]) -> bool:
    """True when the container shares a PID namespace, so its children outlive init.

    A spec that cannot be read counts as False.
    """
    try:
        spec = _read_spec(bundle)
    except (OSError, ValueError) as exc:
        logger.error("failed to read spec when call should_kill_all_on_exit: %s", exc)
        return False
    return has_shared_pid_namespace(spec)


async def process_exit(
    containers: Mapping[str, Any], pid: int, exit_code: int, events: Any
) -> List[TaskExit]:
    """Mark the process with ``pid`` as exited and queue a TaskExit event.

    The first container owning ``pid`` (as init or exec process) is the only
    one changed. When it is the init process of a container sharing a PID
    namespace, all its remaining processes are killed first. Returns the
    events queued.
    """
    sent: List[TaskExit] = []
    for container in containers.values():
        if container.init.pid == pid:
            if should_kill_all_on_exit(container.bundle):
                try:
                    await container.kill(None, _SIGKILL, True)
                except (ShimError, OSError) as exc:
                    logger.error("failed to kill init's children: %s", exc)
            process = container.init
        else:
            process = next(
                (p for p in container.processes.values() if p.pid == pid), None
            )
        if process is None:
            continue

        process.set_exited(exit_code)
        event = TaskExit(
            container_id=container.id,
            id=process.id,
            pid=process.pid & _U32,
            exit_status=process.exit_code & _U32,
            exited_at=process.exited_at,
        )
        await events.put((event.topic, event))
        sent.append(event)
        break
    return sent