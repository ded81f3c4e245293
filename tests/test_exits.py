import asyncio
import json

import pytest

from runcshim.container import ContainerTemplate, ProcessFactory
from runcshim.errors import NotFoundError
from runcshim.exits import TaskExit, process_exit, should_kill_all_on_exit
from runcshim.processes import ProcessLifecycle, ProcessTemplate, Status
from runcshim.stdio import Stdio


class RecordingLifecycle(ProcessLifecycle):
    def __init__(self, kill_error=None):
        self.kills = []
        self.kill_error = kill_error

    async def start(self, process):
        process.status = Status.RUNNING

    async def kill(self, process, signal, all_processes):
        self.kills.append((signal, all_processes))
        if self.kill_error is not None:
            raise self.kill_error

    async def delete(self, process):
        pass

    async def update(self, process, resources):
        pass

    async def stats(self, process):
        return None

    async def ps(self, process):
        return []

    async def pause(self, process):
        pass

    async def resume(self, process):
        pass


class NoFactory(ProcessFactory):
    async def create(self, request):
        raise NotFoundError("no execs")


def write_spec(bundle, spec):
    (bundle / "config.json").write_text(json.dumps(spec))


def make_container(cid, bundle, init_pid, lifecycle=None, execs=None):
    lifecycle = lifecycle or RecordingLifecycle()
    init = ProcessTemplate(id=cid, stdio=Stdio(), lifecycle=lifecycle, pid=init_pid)
    init.status = Status.RUNNING
    processes = {}
    for exec_id, pid in (execs or {}).items():
        proc = ProcessTemplate(
            id=exec_id, stdio=Stdio(), lifecycle=RecordingLifecycle(), pid=pid
        )
        proc.status = Status.RUNNING
        processes[exec_id] = proc
    return ContainerTemplate(
        id=cid,
        bundle=str(bundle),
        init=init,
        process_factory=NoFactory(),
        processes=processes,
    )


def test_shared_namespace_when_spec_has_no_linux(tmp_path):
    write_spec(tmp_path, {"ociVersion": "1.0.2"})
    assert should_kill_all_on_exit(tmp_path) is True


def test_private_pid_namespace_is_not_shared(tmp_path):
    write_spec(tmp_path, {"linux": {"namespaces": [{"type": "pid"}]}})
    assert should_kill_all_on_exit(tmp_path) is False


def test_joined_pid_namespace_is_shared(tmp_path):
    write_spec(
        tmp_path, {"linux": {"namespaces": [{"type": "pid", "path": "/proc/1/ns/pid"}]}}
    )
    assert should_kill_all_on_exit(tmp_path) is True


def test_missing_spec_counts_as_false(tmp_path):
    assert should_kill_all_on_exit(tmp_path / "absent") is False


def test_invalid_spec_counts_as_false(tmp_path):
    (tmp_path / "config.json").write_text("{not json")
    assert should_kill_all_on_exit(tmp_path) is False


@pytest.mark.asyncio
async def test_init_exit_kills_children_and_publishes(tmp_path):
    write_spec(tmp_path, {})
    lifecycle = RecordingLifecycle()
    container = make_container("c1", tmp_path, 100, lifecycle)
    events = asyncio.Queue()

    sent = await process_exit({"c1": container}, 100, 3, events)

    assert lifecycle.kills == [(9, True)]
    assert container.init.status == Status.STOPPED
    assert container.init.exit_code == 3
    topic, event = events.get_nowait()
    assert topic == "/tasks/exit"
    assert event == sent[0]
    assert (event.container_id, event.id, event.pid, event.exit_status) == (
        "c1",
        "c1",
        100,
        3,
    )
    assert event.exited_at == container.init.exited_at
    assert event.exited_at is not None


@pytest.mark.asyncio
async def test_init_exit_with_private_namespace_does_not_kill(tmp_path):
    write_spec(tmp_path, {"linux": {"namespaces": [{"type": "pid"}]}})
    lifecycle = RecordingLifecycle()
    container = make_container("c1", tmp_path, 100, lifecycle)
    events = asyncio.Queue()

    await process_exit({"c1": container}, 100, 0, events)

    assert lifecycle.kills == []
    assert container.init.status == Status.STOPPED
    assert events.qsize() == 1


@pytest.mark.asyncio
async def test_kill_failure_still_marks_exit(tmp_path):
    write_spec(tmp_path, {})
    lifecycle = RecordingLifecycle(kill_error=NotFoundError("process already finished"))
    container = make_container("c1", tmp_path, 100, lifecycle)
    events = asyncio.Queue()

    sent = await process_exit({"c1": container}, 100, 137, events)

    assert lifecycle.kills == [(9, True)]
    assert [e.exit_status for e in sent] == [137]
    assert container.init.status == Status.STOPPED


@pytest.mark.asyncio
async def test_exec_exit_marks_only_exec(tmp_path):
    write_spec(tmp_path, {})
    container = make_container("c1", tmp_path, 100, execs={"e1": 200})
    events = asyncio.Queue()

    sent = await process_exit({"c1": container}, 200, 1, events)

    exec_proc = container.processes["e1"]
    assert exec_proc.status == Status.STOPPED
    assert container.init.status == Status.RUNNING
    assert sent == [
        TaskExit(
            container_id="c1",
            id="e1",
            pid=200,
            exit_status=1,
            exited_at=exec_proc.exited_at,
        )
    ]


@pytest.mark.asyncio
async def test_unknown_pid_changes_nothing(tmp_path):
    write_spec(tmp_path, {})
    container = make_container("c1", tmp_path, 100, execs={"e1": 200})
    events = asyncio.Queue()

    sent = await process_exit({"c1": container}, 999, 1, events)

    assert sent == []
    assert events.empty()
    assert container.init.status == Status.RUNNING
    assert container.processes["e1"].status == Status.RUNNING


@pytest.mark.asyncio
async def test_search_stops_at_first_owner(tmp_path):
    write_spec(tmp_path, {"linux": {"namespaces": [{"type": "pid"}]}})
    first = make_container("c1", tmp_path, 100)
    second = make_container("c2", tmp_path, 100)
    events = asyncio.Queue()

    sent = await process_exit({"c1": first, "c2": second}, 100, 0, events)

    assert [e.container_id for e in sent] == ["c1"]
    assert first.init.status == Status.STOPPED
    assert second.init.status == Status.RUNNING


@pytest.mark.asyncio
async def test_exit_wakes_waiters(tmp_path):
    write_spec(tmp_path, {"linux": {"namespaces": [{"type": "pid"}]}})
    container = make_container("c1", tmp_path, 100)
    waiter = container.wait_channel(None)
    assert not waiter.is_set()

    await process_exit({"c1": container}, 100, 0, asyncio.Queue())

    assert waiter.is_set()