# runcshim

`runcshim` holds the building blocks of a containerd v2 task shim that
drives an OCI runtime such as `runc`. It also has a small helper for writing
containerd v2 logging binaries. It is written with `asyncio` and uses only
the standard library. Much of it relies on Linux: `/proc`, cgroups, eventfd
and terminals.

## What is inside

- `runcshim.errors` holds the error hierarchy. `ShimError` is the base class,
  and each error has a `code` attribute that names its RPC status. The
  subclasses are `NotFoundError`, `InvalidArgumentError`,
  `FailedPreconditionError`, `DeadlineExceededError`, `UnimplementedError` and
  `OtherError`.
- `runcshim.stdio` has `Stdio`. It holds a process's stdin, stdout and stderr
  paths and its terminal flag. `Stdio.is_null()` is true when no path is set.
- `runcshim.common` has the shared helpers:
  - `create_io` picks `NullIO` or `FifoIO` from the stdout URI and returns a
    `ProcessIO`.
  - `get_spec_from_request` decodes an exec's JSON process spec and sets its
    terminal flag.
  - `check_kill_error` maps runtime kill messages to `NotFoundError` or
    `OtherError`. It returns the error; it does not raise it.
  - `has_shared_pid_namespace` checks a spec.
  - `xdg_runtime_dir` returns the runtime directory.
  - `handle_file_open` runs a file-opening callable with a timeout.
  - `receive_socket` receives a terminal descriptor over a Unix socket.
  - `LogEntry.from_json` parses a line of the runtime's `log.json`.
- `runcshim.cgroup_memory` parses `/proc/<pid>/cgroup` and
  `/proc/self/mountinfo` to find the memory cgroup. Its
  `register_memory_event` watches a cgroup v1 event file through an eventfd
  and returns an `asyncio.Queue`.
- `runcshim.console` has `ConsoleSocket`, a listening Unix socket in its own
  temporary directory. The runtime connects to it to hand over a terminal.
- `runcshim.processes` has `Status`, `StateResponse`, the `Process` and
  `ProcessLifecycle` interfaces, and `ProcessTemplate`. `ProcessTemplate` keeps
  a process's state and hands runtime work to its lifecycle.
- `runcshim.container` has `ContainerTemplate`, which routes operations to the
  init process or to an exec. It also has `ProcessInfo`,
  `ExecProcessRequest`, and the `ContainerFactory` and `ProcessFactory`
  interfaces.
- `runcshim.runc_io` has `ExitSignal`, `spawn_copy`, `copy_io`,
  `copy_console` and `copy_io_or_console`, which move data between a
  process's streams and its stdio paths. It also has `runtime_error`, which
  builds an error from the last `"error"` entry in the bundle's `log.json`.
- `runcshim.lifecycle` has `RuncInitLifecycle`, `RuncExecLifecycle` and
  `RuncExecFactory`:
  - `RuncInitLifecycle` drives an init process through a runtime object that
    you supply. On delete, it unmounts the bundle's `rootfs` by calling
    `umount`.
  - `RuncExecLifecycle` starts execs through the same runtime object and
    signals them with `os.kill`.
- `runcshim.task` has `TaskService`, which implements the task operations:
  - `create`, `start`, `state`, `kill`, `exec`, `wait`, `delete`
  - `pause`, `resume`, `update`, `stats`, `pids`
  - `resize_pty`, `close_io`, `connect`, `shutdown`

  Events go onto a queue as `(topic, event)` pairs. The event types are
  `TaskCreate`, `TaskStart`, `TaskDelete`, `TaskExecAdded`,
  `TaskExecStarted`, `TaskPaused`, `TaskResumed` and `TaskOOM`. The
  `monitor_oom` function queues `TaskOOM` events on cgroup v1 hosts.
- `runcshim.exits` has `process_exit`. It marks the process with a given pid
  as exited and queues a `TaskExit` event. Its `should_kill_all_on_exit`
  reads the bundle's `config.json`.
- `runcshim.logging_driver` has `Config`, `Ready`, `Driver` and `run`, for
  writing a logging binary that containerd starts.

## Stdio and I/O selection

```python
from runcshim.stdio import Stdio
from runcshim.common import create_io

stdio = Stdio(stdin="", stdout="/run/ctr/stdout", stderr="/run/ctr/stderr")
pio = create_io("my-container", 0, 0, stdio)
print(pio.uri)  # "fifo:///run/ctr/stdout"
```

## Interpreting kill errors

```python
from runcshim.common import check_kill_error

err = check_kill_error("container not running")
print(type(err).__name__, err)  # NotFoundError process already finished
```

## Writing a logging binary

containerd starts a logging binary with these inputs:

- the container id in `CONTAINER_ID`
- the namespace in `CONTAINER_NAMESPACE`
- the container's stdout on descriptor 3
- the container's stderr on descriptor 4
- a readiness pipe on descriptor 5

`run(driver_factory)` does the following:

1. It reads this configuration into a `Config`.
2. It calls `driver_factory(config)`.
3. It closes the readiness pipe.
4. It calls the driver's `wait()`.
5. It raises `SystemExit(0)` on success. On any failure it prints the error
   to stderr and raises `SystemExit(1)`.

The base `Driver` reads both streams on threads. It passes each line to an
optional `sink` callable and drops the line when no sink is given.

```python
from runcshim.logging_driver import Driver, run


class PrintDriver(Driver):
    def __init__(self, config):
        super().__init__(config, sink=print)


if __name__ == "__main__":
    run(PrintDriver)
```

## What the package does not do

- It has no command-line shim binary and no ttrpc server. Nothing here
  listens for containerd's requests. `TaskService` is a Python object that
  you call directly.
- It does not wrap the `runc` command. The lifecycles expect a runtime object
  with async methods: `start`, `kill`, `delete`, `exec`, `ps`, `pause` and
  `resume`. For `update` and `stats`, the init lifecycle also expects a
  cgroup object.
- It has no `ContainerFactory` that builds containers from a bundle.
  `TaskService` needs a factory that you supply.
- It does not publish events to containerd. Events stay on the queue you pass
  in.

## Running the tests

The test suite uses `pytest` and `pytest-asyncio`. Both are listed in the
`test` extra:

```
pip install -e .[test]
pytest
```