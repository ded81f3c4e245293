"""Unix socket on which the runtime hands over a console terminal."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import socket
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .common import xdg_runtime_dir
from .errors import OtherError

logger = logging.getLogger(__name__)


@dataclass
class ConsoleSocket:
    """A listening socket in its own temporary directory."""

    listener: socket.socket
    path: Path
    rmdir: bool = True

    @classmethod
    def create(cls, runtime_dir: Optional[str] = None) -> "ConsoleSocket":
        """Create a fresh directory under ``runtime_dir`` and listen in it."""
        base = runtime_dir if runtime_dir is not None else xdg_runtime_dir()
        directory = Path(f"{base}/pty{uuid.uuid4()}")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            os.chmod(directory, 0o711)
        except OSError as exc:
            raise OtherError(f"mkdir {directory}: {exc}") from exc
        path = directory / "pty.sock"
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            listener.bind(str(path))
            listener.listen()
            listener.setblocking(False)
        except OSError as exc:
            listener.close()
            raise OtherError(f"bind socket {path}: {exc}") from exc
        return cls(listener=listener, path=path, rmdir=True)

    async def accept(self) -> socket.socket:
        """Wait for the runtime to connect; return the connection in blocking mode."""
        loop = asyncio.get_running_loop()
        try:
            conn, _addr = await loop.sock_accept(self.listener)
        except OSError as exc:
            raise OtherError(f"failed to list console socket: {exc}") from exc
        conn.setblocking(True)
        return conn

    def clean(self) -> None:
        """Close the listener and remove its directory when owned."""
        self.listener.close()
        if not self.rmdir:
            return
        directory = self.path.parent
        try:
            shutil.rmtree(directory)
        except OSError as exc:
            logger.warning("remove tmp console socket path %s : %s", directory, exc)