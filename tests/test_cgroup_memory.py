import asyncio
import os

import pytest

from runcshim.cgroup_memory import (
    get_existing_cgroup_mem_path,
    get_path_from_cgroup,
    get_path_from_mountinfo,
    parse_memory_mountroot,
    register_memory_event,
)
from runcshim.errors import OtherError

MOUNT_LINE = (
    "35 24 0:31 /user.slice /sys/fs/cgroup/memory rw,nosuid shared:16 "
    "- cgroup cgroup rw,memory"
)


def _write_cgroup(root, pid, content):
    directory = root / str(pid)
    directory.mkdir()
    (directory / "cgroup").write_text(content)


def test_get_path_from_cgroup(tmp_path):
    _write_cgroup(tmp_path, 123, "12:pids:/a\n4:memory:/kubepods/pod1\n1:cpu:/b\n")
    assert get_path_from_cgroup(123, tmp_path) == "/kubepods/pod1"


def test_get_path_from_cgroup_no_memory_line(tmp_path):
    _write_cgroup(tmp_path, 5, "12:pids:/a\n")
    with pytest.raises(OtherError, match="Memory line not found"):
        get_path_from_cgroup(5, tmp_path)


def test_get_path_from_cgroup_unparsable_line(tmp_path):
    _write_cgroup(tmp_path, 6, "3:cpu,memory:/x\n")
    with pytest.raises(OtherError, match="Failed to parse memory line"):
        get_path_from_cgroup(6, tmp_path)


def test_get_path_from_cgroup_missing_file(tmp_path):
    with pytest.raises(OtherError):
        get_path_from_cgroup(999, tmp_path)


def test_parse_memory_mountroot():
    assert parse_memory_mountroot(MOUNT_LINE) == ("/user.slice", "/sys/fs/cgroup/memory")


def test_parse_memory_mountroot_short_line():
    with pytest.raises(OtherError, match="Invalid input information about mountinfo"):
        parse_memory_mountroot("1 2 3 /root")


def test_get_path_from_mountinfo(tmp_path):
    info = tmp_path / "mountinfo"
    info.write_text("22 1 8:1 / / rw - ext4 /dev/sda1 rw\n" + MOUNT_LINE + "\n")
    assert get_path_from_mountinfo(info) == ("/user.slice", "/sys/fs/cgroup/memory")


def test_get_path_from_mountinfo_missing(tmp_path):
    info = tmp_path / "mountinfo"
    info.write_text("22 1 8:1 / / rw - ext4 /dev/sda1 rw\n")
    with pytest.raises(OtherError, match="not found in mountinfo"):
        get_path_from_mountinfo(info)


def test_existing_path_strips_mount_root(tmp_path):
    info = tmp_path / "mountinfo"
    info.write_text(MOUNT_LINE + "\n")
    rel, point = get_existing_cgroup_mem_path("/user.slice/session-1.scope", info)
    assert "/user.slice" + rel == "/user.slice/session-1.scope"
    assert point == "/sys/fs/cgroup/memory"


def test_existing_path_with_slash_root_is_unchanged(tmp_path):
    info = tmp_path / "mountinfo"
    info.write_text(
        "35 24 0:31 / /sys/fs/cgroup/memory rw shared:16 - cgroup cgroup rw,memory\n"
    )
    rel, point = get_existing_cgroup_mem_path("/kubepods/pod1", info)
    assert rel == "/kubepods/pod1"
    assert point == "/sys/fs/cgroup/memory"


@pytest.mark.asyncio
async def test_register_memory_event_delivers_key(tmp_path):
    (tmp_path / "memory.oom_control").write_text("oom_kill_disable 0\n")
    control = tmp_path / "cgroup.event_control"
    control.write_text("")
    queue = await register_memory_event("4242", tmp_path, "memory.oom_control")

    efd_text, event_text = control.read_text().split()
    efd = int(efd_text)
    assert int(event_text) >= 0

    os.eventfd_write(efd, 1)
    assert await asyncio.wait_for(queue.get(), 2) == "4242"

    control.unlink()
    os.eventfd_write(efd, 1)
    assert await asyncio.wait_for(queue.get(), 2) is None


@pytest.mark.asyncio
async def test_register_memory_event_missing_event_file(tmp_path):
    with pytest.raises(OtherError, match="Error get path"):
        await register_memory_event("1", tmp_path, "memory.oom_control")