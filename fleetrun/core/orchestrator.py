"""
Pipeline orchestration for fleetrun.
Runs an ordered task list against every host of a Context: hosts in parallel,
tasks for one host strictly in order, stopping that host at its first failure.
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from loguru import logger

from .channel import ChannelOptions, execute
from .connection import AuthMaterial, Connection, connect
from .context import Context, Host
from .errors import (
    ChannelError, ChannelErrorKind, ConnectError, ConnectErrorKind, FleetError,
    ScpError, ScpErrorKind,
)
from .events import EventStream, EventType
from .scp import ScpEngine, walk_local


# ============ Tasks ============

@dataclass(frozen=True)
class Run:
    command: str
    timeout: Optional[float] = None

    def describe(self) -> str:
        return f"run {self.command}"


@dataclass(frozen=True)
class Upload:
    local_path: str
    remote_path: str = "."
    recursive: bool = False
    timeout: Optional[float] = None

    def describe(self) -> str:
        return f"upload {self.local_path} -> {self.remote_path}"


@dataclass(frozen=True)
class Download:
    remote_path: str
    local_path: str
    recursive: bool = False
    timeout: Optional[float] = None

    def describe(self) -> str:
        return f"download {self.remote_path} -> {self.local_path}"


Task = Union[Run, Upload, Download]


# ============ Results ============

@dataclass(frozen=True)
class HostOk:
    results: Tuple[Any, ...] = ()

    ok = True


@dataclass(frozen=True)
class HostFailed:
    """
    A host stopped early. `last_completed_task_index` is None when no task
    completed; `failed_task_index` is None when no task was started (the
    connection failed or the host was cancelled between tasks).
    """
    reason: Exception
    last_completed_task_index: Optional[int]
    failed_task_index: Optional[int] = None
    not_attempted: Tuple[int, ...] = ()
    results: Tuple[Any, ...] = ()

    ok = False


HostOutcome = Union[HostOk, HostFailed]


class PipelineError(Exception):
    """Raised by PipelineResult.raise_for_failures() when any host failed."""

    def __init__(self, failures: Mapping[Host, HostFailed]):
        self.failures = failures
        hosts = ", ".join(str(h) for h in failures)
        super().__init__(f"{len(failures)} host(s) failed: {hosts}")


class PipelineResult(Mapping):
    """Read-only mapping of every host in the Context to its outcome."""

    def __init__(self, outcomes: Dict[Host, HostOutcome]):
        self._outcomes = MappingProxyType(dict(outcomes))

    def __getitem__(self, host: Host) -> HostOutcome:
        return self._outcomes[host]

    def __iter__(self) -> Iterator[Host]:
        return iter(self._outcomes)

    def __len__(self) -> int:
        return len(self._outcomes)

    def __repr__(self):
        return f"PipelineResult({dict(self._outcomes)!r})"

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self._outcomes.values())

    def failures(self) -> Dict[Host, HostFailed]:
        return {h: o for h, o in self._outcomes.items() if not o.ok}

    def raise_for_failures(self) -> 'PipelineResult':
        failures = self.failures()
        if failures:
            raise PipelineError(failures)
        return self

    def summary(self) -> str:
        lines = []
        for host, outcome in self._outcomes.items():
            if outcome.ok:
                lines.append(f"{host}: ok")
            elif outcome.failed_task_index is None:
                lines.append(f"{host}: failed ({outcome.reason})")
            else:
                lines.append(f"{host}: failed at task {outcome.failed_task_index} ({outcome.reason})")
        return "\n".join(lines)


# ============ Orchestrator ============

Connector = Callable[..., Connection]


class Orchestrator:
    """
    Fans a task list out over a Context's hosts.

    Connection attempts that fail with a network error or timeout are retried
    up to `retry_attempts` times in total; authentication failures and task
    failures are never retried.
    """

    def __init__(self, auth: Optional[AuthMaterial] = None, max_parallel: int = 8,
                 connect_timeout: Optional[float] = 30, retry_attempts: int = 1,
                 retry_delay: float = 5, connector: Connector = connect,
                 journal: Optional[EventStream] = None):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self.auth = auth or AuthMaterial()
        self.max_parallel = max_parallel
        self.connect_timeout = connect_timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.connector = connector
        self.journal = journal
        # one host -> cancel event map per run() in flight
        self._runs: List[Dict[Host, threading.Event]] = []
        self._lock = threading.Lock()

    def run(self, context: Context, tasks: Iterable[Task]) -> PipelineResult:
        """Run `tasks` on every host; returns one outcome per host."""
        tasks = tuple(tasks)
        hosts = context.hosts
        outcomes: Dict[Host, Optional[HostOutcome]] = dict.fromkeys(hosts)
        cancel_events = {host: threading.Event() for host in hosts}
        with self._lock:
            self._runs.append(cancel_events)

        self._record(EventType.PIPELINE_STARTED, hosts=[str(h) for h in hosts],
                     tasks=[t.describe() for t in tasks])
        try:
            if hosts:
                workers = min(self.max_parallel, len(hosts))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='fleetrun') as pool:
                    futures = {
                        host: pool.submit(self._run_host, context, host, tasks, cancel_events[host])
                        for host in hosts
                    }
                    for host, future in futures.items():
                        outcomes[host] = future.result()
        finally:
            with self._lock:
                self._runs = [run for run in self._runs if run is not cancel_events]

        result = PipelineResult(outcomes)
        self._record(EventType.PIPELINE_COMPLETED, ok=result.ok,
                     failed=[str(h) for h in result.failures()])
        return result

    def upload(self, context: Context, local_path: str, remote_path: str = ".",
               recursive: bool = False) -> PipelineResult:
        """Copy a local file or tree to every host."""
        return self.run(context, [Upload(local_path, remote_path, recursive)])

    def download(self, context: Context, remote_path: str, local_path: str,
                 recursive: bool = False) -> PipelineResult:
        """Fetch a remote file or tree from every host."""
        return self.run(context, [Download(remote_path, local_path, recursive)])

    def cancel(self, host: Host):
        """
        Stop a host: its running channel and connection are closed and every
        task that has not completed is reported as not attempted.
        """
        with self._lock:
            events = [run[host] for run in self._runs if host in run]
        if not events:
            logger.warning(f"cancel: {host} is not part of a running pipeline")
            return
        for event in events:
            event.set()

    # ============ Per-host execution ============

    def _run_host(self, context: Context, host: Host, tasks: Tuple[Task, ...],
                  cancelled: threading.Event) -> HostOutcome:
        self._record(EventType.HOST_STARTED, host=str(host))
        try:
            connection = self._connect(host, cancelled)
        except ConnectError as e:
            logger.info(f"{host}: connection failed: {e}")
            outcome = HostFailed(e, None, None, tuple(range(len(tasks))))
            self._record(EventType.HOST_FAILED, host=str(host), reason=str(e))
            return outcome
        except Exception as e:
            logger.opt(exception=e).error(f"{host}: unexpected error while connecting")
            self._record(EventType.HOST_FAILED, host=str(host), reason=repr(e))
            return HostFailed(e, None, None, tuple(range(len(tasks))))

        results: List[Any] = []
        try:
            for index, task in enumerate(tasks):
                if cancelled.is_set():
                    return self._failed(host, _cancelled_error(), index, None, tasks, results)
                self._record(EventType.TASK_STARTED, host=str(host), index=index, task=task.describe())
                try:
                    results.append(self._execute(connection, context, host, task))
                except FleetError as e:
                    if cancelled.is_set():
                        return self._failed(host, _cancelled_error(), index, index, tasks, results)
                    self._record(EventType.TASK_FAILED, host=str(host), index=index, reason=str(e))
                    return self._failed(host, e, index + 1, index, tasks, results)
                except Exception as e:
                    logger.opt(exception=e).error(f"{host}: unexpected error in task {index}")
                    self._record(EventType.TASK_FAILED, host=str(host), index=index, reason=repr(e))
                    return self._failed(host, e, index + 1, index, tasks, results)
                self._record(EventType.TASK_COMPLETED, host=str(host), index=index)
        finally:
            connection.disconnect()

        logger.info(f"{host}: {len(tasks)} task(s) completed")
        self._record(EventType.HOST_COMPLETED, host=str(host))
        return HostOk(tuple(results))

    def _failed(self, host: Host, reason: Exception, first_not_attempted: int,
                failed_index: Optional[int], tasks: Tuple[Task, ...],
                results: List[Any]) -> HostFailed:
        last_completed = len(results) - 1 if results else None
        outcome = HostFailed(
            reason=reason,
            last_completed_task_index=last_completed,
            failed_task_index=failed_index,
            not_attempted=tuple(range(first_not_attempted, len(tasks))),
            results=tuple(results),
        )
        logger.info(f"{host}: failed: {reason}")
        self._record(EventType.HOST_FAILED, host=str(host), reason=str(reason),
                     failed_task_index=failed_index)
        return outcome

    def _connect(self, host: Host, cancelled: threading.Event) -> Connection:
        auth = self.auth
        if host.options.get('username'):
            auth = replace(auth, username=host.options['username'])

        for attempt in range(1, self.retry_attempts + 1):
            try:
                connection = self.connector(
                    host.address, auth,
                    timeout=self.connect_timeout,
                    port=host.port,
                    cancel_event=cancelled,
                )
            except ConnectError as e:
                retryable = e.kind != ConnectErrorKind.AUTH_FAILED
                if not retryable or attempt == self.retry_attempts:
                    self._record(EventType.CONNECTION_FAILED, host=str(host),
                                 attempt=attempt, reason=str(e))
                    raise
                self._record(EventType.CONNECTION_RETRY, host=str(host),
                             attempt=attempt, error=str(e))
                logger.debug(f"{host}: connect attempt {attempt} failed ({e}), retrying")
                if cancelled.wait(self.retry_delay):
                    raise
            else:
                self._record(EventType.CONNECTION_ESTABLISHED, host=str(host), attempt=attempt)
                return connection
        raise AssertionError("unreachable")

    def _execute(self, connection: Connection, context: Context, host: Host, task: Task):
        options = ChannelOptions(timeout=task.timeout)
        if isinstance(task, Run):
            return execute(connection, context.build(task.command, host), options).check()

        engine = ScpEngine(connection, options, wrap=lambda command: context.build(command, host))
        if isinstance(task, Upload):
            return engine.upload(walk_local(task.local_path), task.remote_path, task.recursive)
        if isinstance(task, Download):
            local_path = task.local_path
            if len(context.hosts) > 1:
                local_path = os.path.join(local_path, _host_directory(host))
                try:
                    os.makedirs(local_path, exist_ok=True)
                except OSError as e:
                    raise ScpError(ScpErrorKind.IO_ERROR, str(e)) from e
            return engine.download(task.remote_path, local_path, task.recursive)
        raise TypeError(f"unknown task: {task!r}")

    def _record(self, event_type: EventType, **data):
        if self.journal is not None:
            self.journal.append(event_type, data)


def _cancelled_error() -> ChannelError:
    return ChannelError(ChannelErrorKind.CLOSED, "cancelled")


def _host_directory(host: Host) -> str:
    return host.address if host.port == 22 else f"{host.address}_{host.port}"
