import asyncio
import os
import socket

import pytest

from runcshim.common import (
    FIFO_SCHEME,
    FifoIO,
    LogEntry,
    NullIO,
    check_kill_error,
    create_io,
    get_spec_from_request,
    handle_file_open,
    has_shared_pid_namespace,
    receive_socket,
    xdg_runtime_dir,
)
from runcshim.errors import InvalidArgumentError, NotFoundError, OtherError
from runcshim.stdio import Stdio


def test_log_entry_from_json():
    entry = LogEntry.from_json('{"level":"error","msg":"failed error","time":"2022-11-26"}')
    assert entry == LogEntry(level="error", msg="failed error")


@pytest.mark.parametrize("line", ["not json", "[1, 2]", '{"level":"info"}'])
def test_log_entry_rejects_bad_lines(line):
    with pytest.raises(ValueError):
        LogEntry.from_json(line)


def test_create_io_null():
    pio = create_io("c1", 0, 0, Stdio())
    assert pio.io == NullIO()
    assert pio.uri is None
    assert pio.copy is False


def test_create_io_defaults_to_fifo_scheme():
    stdio = Stdio(stdin="", stdout="/run/out", stderr="/run/err")
    pio = create_io("c1", 0, 0, stdio)
    assert pio.uri == f"{FIFO_SCHEME}:///run/out"
    assert pio.io == FifoIO(stdin=None, stdout="/run/out", stderr="/run/err")
    assert pio.copy is False


def test_create_io_explicit_fifo():
    stdio = Stdio(stdin="fifo:///a", stdout="fifo:///b", stderr="")
    pio = create_io("c1", 0, 0, stdio)
    assert pio.uri == "fifo:///b"
    assert pio.io == FifoIO(stdin="fifo:///a", stdout="fifo:///b", stderr=None)


def test_create_io_other_scheme_leaves_io_unset():
    stdio = Stdio(stdout="binary:///usr/bin/logger?x=1")
    pio = create_io("c1", 0, 0, stdio)
    assert pio.uri == stdio.stdout
    assert pio.io is None


def test_get_spec_from_request_sets_terminal():
    process = get_spec_from_request(b'{"args": ["sh"], "cwd": "/"}', True)
    assert process["terminal"] is True
    assert process["args"] == ["sh"]


def test_get_spec_from_request_without_spec():
    with pytest.raises(InvalidArgumentError, match="no spec in request"):
        get_spec_from_request(None, False)


def test_get_spec_from_request_bad_json():
    with pytest.raises(InvalidArgumentError):
        get_spec_from_request(b"{not json", False)


@pytest.mark.parametrize(
    "message",
    [
        "Process already finished",
        "container not running",
        "kill: no such process",
    ],
)
def test_check_kill_error_finished(message):
    err = check_kill_error(message)
    assert isinstance(err, NotFoundError)
    assert err.message == "process already finished"


def test_check_kill_error_missing_container():
    err = check_kill_error("container abc Does Not Exist")
    assert isinstance(err, NotFoundError)
    assert err.message == "no such container"


def test_check_kill_error_other():
    err = check_kill_error("Boom")
    assert isinstance(err, OtherError)
    assert err.message == "unknown error after kill boom"


def test_has_shared_pid_namespace():
    assert has_shared_pid_namespace({}) is True
    assert has_shared_pid_namespace({"linux": {}}) is True
    assert has_shared_pid_namespace({"linux": {"namespaces": [{"type": "pid"}]}}) is False
    shared = {"linux": {"namespaces": [{"type": "pid", "path": "/proc/1/ns/pid"}]}}
    assert has_shared_pid_namespace(shared) is True
    other = {"linux": {"namespaces": [{"type": "network"}, {"type": "mount"}]}}
    assert has_shared_pid_namespace(other) is True


def test_xdg_runtime_dir_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path))
    assert xdg_runtime_dir() == str(tmp_path)


def test_xdg_runtime_dir_fallback(monkeypatch, tmp_path):
    monkeypatch.delenv("XDG_RUNTIME_DIR", raising=False)
    monkeypatch.setenv("TMPDIR", str(tmp_path))
    import tempfile

    monkeypatch.setattr(tempfile, "tempdir", None)
    assert xdg_runtime_dir() == str(tmp_path)


@pytest.mark.asyncio
async def test_handle_file_open_async_opener():
    async def opener():
        return "opened"

    assert await handle_file_open(opener) == "opened"


@pytest.mark.asyncio
async def test_handle_file_open_sync_opener(tmp_path):
    target = tmp_path / "f"
    target.write_text("hello")
    handle = await handle_file_open(lambda: open(target))
    with handle:
        assert handle.read() == "hello"


@pytest.mark.asyncio
async def test_handle_file_open_times_out():
    async def opener():
        await asyncio.sleep(10)

    with pytest.raises(TimeoutError, match="File operation timed out"):
        await handle_file_open(opener, timeout=0.05)


def test_receive_socket_gets_terminal_fd():
    master, slave = os.openpty()
    left, right = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        socket.send_fds(left, [b"/dev/pts/x\0\0"], [slave])
        fd = receive_socket(right)
        try:
            assert os.isatty(fd)
        finally:
            os.close(fd)
    finally:
        for f in (master, slave):
            os.close(f)
        left.close()
        right.close()


def test_receive_socket_without_fds():
    left, right = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        left.sendall(b"path")
        with pytest.raises(OtherError, match="received message is empty"):
            receive_socket(right)
    finally:
        left.close()
        right.close()


def test_receive_socket_rejects_non_terminal():
    read_end, write_end = os.pipe()
    left, right = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        socket.send_fds(left, [b"p"], [read_end])
        with pytest.raises(OtherError):
            receive_socket(right)
    finally:
        os.close(read_end)
        os.close(write_end)
        left.close()
        right.close()