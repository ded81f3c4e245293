"""Runner for logging binaries that containerd starts for a container.

containerd hands the binary the container's stdout on fd 3, its stderr on
fd 4 and a readiness pipe on fd 5, with the container id and namespace in
the environment.
"""

from __future__ import annotations

import os
import sys
import threading
from dataclasses import dataclass
from typing import BinaryIO, Callable, List, Mapping, Optional

STDOUT_FD = 3
STDERR_FD = 4
READY_FD = 5

LineSink = Callable[[str], None]


@dataclass
class Config:
    """What containerd gives a logging binary."""

    id: str
    namespace: str
    stdout: BinaryIO
    stderr: BinaryIO

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Read the configuration from the environment and the inherited fds.

        Raises ValueError when a required variable is missing.
        """
        env = os.environ if environ is None else environ
        container_id = env.get("CONTAINER_ID")
        if container_id is None:
            raise ValueError("CONTAINER_ID env not found")
        namespace = env.get("CONTAINER_NAMESPACE")
        if namespace is None:
            raise ValueError("CONTAINER_NAMESPACE env not found")
        return cls(
            id=container_id,
            namespace=namespace,
            stdout=os.fdopen(STDOUT_FD, "rb"),
            stderr=os.fdopen(STDERR_FD, "rb"),
        )


class Ready:
    """The pipe through which the logger tells containerd it is ready."""

    def __init__(self, fd: Optional[int] = None) -> None:
        self.fd = READY_FD if fd is None else fd
        self._closed = False

    def signal(self) -> None:
        """Signal readiness by closing the pipe."""
        if self._closed:
            return
        self._closed = True
        os.close(self.fd)


def _pump(stream: BinaryIO, sink: LineSink) -> None:
    with stream:
        for raw in stream:
            try:
                line = raw.decode("utf-8")
            except UnicodeDecodeError:
                return
            sink(line.rstrip("\n").rstrip("\r"))


class Driver:
    """A logger that forwards each line of the container's output to ``sink``.

    Lines from stdout and stderr are read on two threads; without a sink they
    are read and dropped. Subclasses may do their own work in ``__init__`` and
    ``wait``.
    """

    def __init__(self, config: Config, sink: Optional[LineSink] = None) -> None:
        self.config = config
        target = sink if sink is not None else (lambda line: None)
        self._threads: List[threading.Thread] = [
            threading.Thread(target=_pump, args=(stream, target), daemon=True)
            for stream in (config.stdout, config.stderr)
        ]
        for thread in self._threads:
            thread.start()

    def wait(self) -> None:
        """Block until both streams have been read to the end."""
        for thread in self._threads:
            thread.join()


def _fail(err: object) -> "SystemExit":
    print(repr(err), file=sys.stderr)
    return SystemExit(1)


def run(
    driver_factory: Callable[[Config], Driver],
    environ: Optional[Mapping[str, str]] = None,
) -> None:
    """Start a driver, signal readiness, and exit when the driver is done.

    Always ends by raising SystemExit: code 0 on success, 1 on any error.
    """
    try:
        config = Config.from_env(environ)
    except ValueError as exc:
        raise _fail(exc) from exc
    ready = Ready()

    try:
        driver = driver_factory(config)
    except Exception as exc:
        raise _fail(exc) from exc

    ready.signal()

    try:
        driver.wait()
    except Exception as exc:
        raise _fail(exc) from exc
    raise SystemExit(0)