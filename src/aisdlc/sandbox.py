"""Sandbox Execution Engine.

Runs one code-modification task in an isolated, resource-bounded process and
reports a structured :class:`~aisdlc.models.SandboxResult`. The engine owns
the process, the isolated view and any runtime resources for exactly one
run, and releases all of them on every exit path.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Callable, Iterator

from .errors import PrerequisitesNotMetError, SetupFailureError
from .models import (
    LogLevel,
    LogRecord,
    LogSource,
    SandboxErrorKind,
    SandboxFailure,
    SandboxResult,
    SandboxTask,
)
from .runtimes import LaunchPlan, SandboxRuntime
from .workspace import IsolatedView

logger = logging.getLogger(__name__)

REDACTED = "***"
_EOF = object()
_SANDBOX_LINE_PREFIXES = ("docker:", "Unable to find image", "Error response from daemon")
_TAIL_LINES = 20
_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def _classify_line(line: str) -> tuple[LogLevel, LogSource]:
    if line.startswith(_SANDBOX_LINE_PREFIXES):
        return LogLevel.WARNING, LogSource.SANDBOX
    return LogLevel.INFO, LogSource.AGENT


@dataclass
class _RunState:
    run_id: str
    task: SandboxTask
    cancel_event: threading.Event
    secrets: list[str]
    started: float = field(default_factory=time.monotonic)
    view: IsolatedView | None = None
    snapshot: dict[str, str | None] | None = None
    process: subprocess.Popen[bytes] | None = None
    reader: threading.Thread | None = None
    lines: "queue.Queue[object]" = field(default_factory=queue.Queue)
    allocated: bool = False
    failure: SandboxFailure | None = None
    exit_code: int | None = None
    finished: bool = False
    changed_files: list[str] = field(default_factory=list)
    watchdog: threading.Thread | None = None
    watchdog_notes: list[str] = field(default_factory=list)
    interrupted: SandboxErrorKind | None = None
    done: threading.Event = field(default_factory=threading.Event)
    guard: threading.Lock = field(default_factory=threading.Lock)


class SandboxRun:
    """Live log stream of one execution.

    Iterating yields :class:`LogRecord` objects in emission order while the
    process runs. The stream is finite and can be consumed only once; after
    it is exhausted, :attr:`result` holds the outcome. Closing the iterator
    early cancels the run and still tears everything down.
    """

    def __init__(self, run_id: str, cancel_event: threading.Event, generator: Iterator[LogRecord]) -> None:
        self.run_id = run_id
        self.cancel_event = cancel_event
        self.logs: list[LogRecord] = []
        self._generator = generator
        self._consumed = False
        self._result: SandboxResult | None = None

    def __iter__(self) -> Iterator[LogRecord]:
        if self._consumed:
            raise RuntimeError(f"log stream of run {self.run_id} was already consumed")
        self._consumed = True
        return self._generator

    def cancel(self) -> None:
        self.cancel_event.set()

    def close(self) -> None:
        self._generator.close()

    @property
    def result(self) -> SandboxResult:
        if self._result is None:
            raise RuntimeError(f"run {self.run_id} has not finished; consume the log stream first")
        return self._result


class SandboxEngine:
    """Preflight, launch, stream, watchdog and teardown for sandbox runs."""

    def __init__(
        self,
        runtime: SandboxRuntime,
        *,
        termination_grace_seconds: float = 5.0,
        poll_interval_seconds: float = 0.05,
        view_base_dir: Path | None = None,
        run_id_factory: Callable[[], str] = _new_run_id,
    ) -> None:
        self.runtime = runtime
        self.termination_grace_seconds = termination_grace_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.view_base_dir = view_base_dir
        self.run_id_factory = run_id_factory
        self._active: set[str] = set()
        self._active_lock = threading.Lock()

    # -- readiness -----------------------------------------------------------

    def preflight(self, task: SandboxTask) -> list[str]:
        """Missing prerequisites for *task*; empty when ready. Allocates nothing."""
        return self.runtime.check_prerequisites(task)

    def ensure_ready(self, task: SandboxTask) -> None:
        missing = self.preflight(task)
        if missing:
            raise PrerequisitesNotMetError(missing)

    @property
    def active_runs(self) -> set[str]:
        """Run ids currently holding an isolated view or runtime resources."""
        with self._active_lock:
            return set(self._active)

    # -- execution -----------------------------------------------------------

    def run(
        self,
        task: SandboxTask,
        *,
        cancel_event: threading.Event | None = None,
        on_log: Callable[[LogRecord], None] | None = None,
    ) -> SandboxResult:
        """Execute *task* to completion and return its result.

        Failures are reported in the result, never raised; call
        :meth:`SandboxResult.raise_for_error` for exception semantics.
        """
        sandbox_run = self.stream(task, cancel_event=cancel_event)
        for record in sandbox_run:
            if on_log is not None:
                on_log(record)
        return sandbox_run.result

    def stream(self, task: SandboxTask, *, cancel_event: threading.Event | None = None) -> SandboxRun:
        run_id = self.run_id_factory()
        event = cancel_event if cancel_event is not None else threading.Event()
        state = _RunState(
            run_id=run_id,
            task=task,
            cancel_event=event,
            secrets=[os.environ[name] for name in task.env_allowlist if len(os.environ.get(name, "")) >= 4],
        )
        sandbox_run = SandboxRun(run_id, event, iter(()))
        sandbox_run._generator = self._generate(sandbox_run, state)
        return sandbox_run

    def _record(self, sandbox_run: SandboxRun, state: _RunState, level: LogLevel, source: LogSource, message: str) -> LogRecord:
        for secret in state.secrets:
            message = message.replace(secret, REDACTED)
        record = LogRecord(level=level, source=source, message=message)
        sandbox_run.logs.append(record)
        py_level = _PY_LEVELS[level] if source == LogSource.CONTROLLER else logging.DEBUG
        logger.log(py_level, "[run %s] %s: %s", state.run_id, source.value, message)
        return record

    def _generate(self, sandbox_run: SandboxRun, state: _RunState) -> Iterator[LogRecord]:
        body = self._body(sandbox_run, state)
        delivered = 0
        try:
            for record in body:
                delivered += 1
                yield record
        except Exception as exc:
            logger.exception("Sandbox run %s failed unexpectedly", state.run_id)
            self._record(sandbox_run, state, LogLevel.ERROR, LogSource.CONTROLLER, f"sandbox run failed: {exc}")
            if not state.finished:
                state.failure = SandboxFailure(kind=SandboxErrorKind.SETUP_FAILURE, message=f"sandbox run failed: {exc}")
                state.finished = True
        finally:
            body.close()
            self._teardown(sandbox_run, state)
            if not state.finished:
                state.failure = SandboxFailure(
                    kind=SandboxErrorKind.CANCELLED, message="log stream closed before the run finished"
                )
                state.finished = True
            sandbox_run._result = self._build_result(sandbox_run, state)
        for record in sandbox_run.logs[delivered:]:
            yield record

    def _body(self, sandbox_run: SandboxRun, state: _RunState) -> Iterator[LogRecord]:
        task = state.task

        def emit(level: LogLevel, source: LogSource, message: str) -> LogRecord:
            return self._record(sandbox_run, state, level, source, message)

        missing = self.runtime.check_prerequisites(task)
        if missing:
            for item in missing:
                yield emit(LogLevel.ERROR, LogSource.CONTROLLER, f"prerequisite missing: {item}")
            state.failure = SandboxFailure(
                kind=SandboxErrorKind.PREREQUISITES_NOT_MET,
                message="prerequisites not met: " + "; ".join(missing),
                missing=missing,
            )
            state.finished = True
            return

        yield emit(
            LogLevel.INFO,
            LogSource.CONTROLLER,
            f"starting run {state.run_id} on {self.runtime.name} runtime "
            f"(timeout={task.budget.timeout_seconds}s, memory={task.budget.memory_mb}MB, "
            f"cpu_shares={task.budget.cpu_shares})",
        )
        try:
            with self._active_lock:
                self._active.add(state.run_id)
            state.allocated = True
            state.view = IsolatedView.materialize(task, base_dir=self.view_base_dir)
            state.snapshot = state.view.snapshot()
            plan = self.runtime.prepare(task, state.view, state.run_id)
        except SetupFailureError as exc:
            yield emit(LogLevel.ERROR, LogSource.CONTROLLER, f"setup failed: {exc.message}")
            state.failure = SandboxFailure(kind=SandboxErrorKind.SETUP_FAILURE, message=exc.message, transient=exc.transient)
            state.finished = True
            return
        except (OSError, ValueError) as exc:
            yield emit(LogLevel.ERROR, LogSource.CONTROLLER, f"setup failed: {exc}")
            state.failure = SandboxFailure(kind=SandboxErrorKind.SETUP_FAILURE, message=str(exc))
            state.finished = True
            return

        for notice in plan.notices:
            yield emit(LogLevel.WARNING, LogSource.CONTROLLER, notice)

        try:
            process = self._launch(state, plan)
        except OSError as exc:
            yield emit(LogLevel.ERROR, LogSource.CONTROLLER, f"could not launch agent process: {exc}")
            state.failure = SandboxFailure(kind=SandboxErrorKind.SETUP_FAILURE, message=f"launch failed: {exc}")
            state.finished = True
            return

        # The watchdog thread enforces the deadline and the cancel event; this
        # loop only relays output.
        tail: deque[str] = deque(maxlen=_TAIL_LINES)
        eof = False
        while state.interrupted is None:
            if eof:
                try:
                    process.wait(timeout=self.poll_interval_seconds)
                except subprocess.TimeoutExpired:
                    continue
                with state.guard:
                    if state.interrupted is None:
                        state.done.set()
                break
            try:
                item = state.lines.get(timeout=self.poll_interval_seconds)
            except queue.Empty:
                continue
            if item is _EOF:
                eof = True
                continue
            line = str(item)
            tail.append(line)
            yield emit(*_classify_line(line), line)

        interrupted = state.interrupted
        if interrupted is not None:
            if state.watchdog is not None:
                state.watchdog.join()
            for line in self._drain(state):
                yield emit(*_classify_line(line), line)
            for note in state.watchdog_notes:
                yield emit(LogLevel.WARNING, LogSource.CONTROLLER, note)
            if interrupted == SandboxErrorKind.TIMEOUT:
                message = f"run exceeded its {task.budget.timeout_seconds}s wall-clock timeout"
            else:
                message = "run cancelled by caller"
            yield emit(LogLevel.WARNING, LogSource.CONTROLLER, f"{message}; agent process terminated")
            state.exit_code = process.poll()
            state.failure = SandboxFailure(kind=interrupted, message=message, exit_code=state.exit_code)
            state.finished = True
            return

        for line in self._drain(state):
            tail.append(line)
            yield emit(*_classify_line(line), line)

        returncode = process.returncode
        state.exit_code = returncode
        if returncode == 0:
            yield emit(LogLevel.INFO, LogSource.CONTROLLER, "agent process exited successfully")
        else:
            state.failure = self.runtime.classify_exit(returncode, list(tail)) or SandboxFailure(
                kind=SandboxErrorKind.NON_ZERO_EXIT,
                message=f"agent process exited with code {returncode}",
                exit_code=returncode,
            )
            yield emit(LogLevel.ERROR, LogSource.CONTROLLER, state.failure.message)
        state.finished = True

    def _launch(self, state: _RunState, plan: LaunchPlan) -> subprocess.Popen[bytes]:
        process = subprocess.Popen(
            plan.argv,
            cwd=str(plan.cwd),
            env=plan.env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            preexec_fn=plan.preexec_fn,
        )
        state.process = process
        if process.stdout is None:
            raise OSError("agent process has no output pipe")
        reader = threading.Thread(
            target=_pump_lines,
            args=(process.stdout, state.lines),
            name=f"aisdlc-sandbox-{state.run_id}",
            daemon=True,
        )
        reader.start()
        state.reader = reader
        watchdog = threading.Thread(
            target=self._watch,
            args=(state, process, time.monotonic() + state.task.budget.timeout_seconds),
            name=f"aisdlc-watchdog-{state.run_id}",
            daemon=True,
        )
        watchdog.start()
        state.watchdog = watchdog
        return process

    def _watch(self, state: _RunState, process: subprocess.Popen[bytes], deadline: float) -> None:
        """Terminate the process group on timeout or cancellation.

        Runs on its own thread until the body marks the run done. Warnings
        are queued in ``watchdog_notes`` for the body to emit.
        """
        while not state.done.is_set():
            remaining = deadline - time.monotonic()
            if state.cancel_event.is_set():
                kind = SandboxErrorKind.CANCELLED
            elif remaining <= 0:
                kind = SandboxErrorKind.TIMEOUT
            else:
                state.done.wait(min(self.poll_interval_seconds, remaining))
                continue
            with state.guard:
                if state.done.is_set():
                    return
                if process.poll() is None:
                    state.interrupted = kind
            logger.warning("Run %s hit %s; terminating process group %d", state.run_id, kind.value, process.pid)
            state.watchdog_notes.extend(self._signal_group(process))
            return

    def _drain(self, state: _RunState) -> list[str]:
        if state.reader is not None:
            state.reader.join(timeout=self.termination_grace_seconds)
        lines: list[str] = []
        while True:
            try:
                item = state.lines.get_nowait()
            except queue.Empty:
                return lines
            if item is not _EOF:
                lines.append(str(item))

    def _signal_group(self, process: subprocess.Popen[bytes]) -> list[str]:
        """SIGTERM the process group, then SIGKILL after the grace period.

        Returns warnings instead of recording them so the watchdog thread
        never touches the run's log list.
        """
        notes: list[str] = []
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.killpg(process.pid, sig)
            except ProcessLookupError:
                return notes
            except OSError as exc:
                notes.append(f"could not signal process group: {exc}")
                try:
                    process.send_signal(sig)
                except OSError:
                    pass
            try:
                process.wait(timeout=self.termination_grace_seconds)
                return notes
            except subprocess.TimeoutExpired:
                continue
        notes.append(f"agent process {process.pid} did not exit after SIGKILL")
        return notes

    def _terminate(self, sandbox_run: SandboxRun, state: _RunState) -> None:
        process = state.process
        if process is None or process.poll() is not None:
            return
        for note in self._signal_group(process):
            self._record(sandbox_run, state, LogLevel.WARNING, LogSource.CONTROLLER, note)

    def _teardown(self, sandbox_run: SandboxRun, state: _RunState) -> None:
        """Release everything the run owns. Never raises."""

        def warn(message: str) -> None:
            self._record(sandbox_run, state, LogLevel.WARNING, LogSource.CONTROLLER, message)

        with state.guard:
            state.done.set()
        if state.watchdog is not None:
            state.watchdog.join(timeout=2 * self.termination_grace_seconds + 1.0)
        try:
            self._terminate(sandbox_run, state)
        except Exception as exc:  # noqa: BLE001
            warn(f"termination failed: {exc}")
        if state.process is not None and state.process.stdout is not None:
            if state.reader is not None:
                state.reader.join(timeout=1.0)
            try:
                state.process.stdout.close()
            except OSError as exc:
                warn(f"could not close process output: {exc}")

        view = state.view
        if view is not None and state.snapshot is not None:
            try:
                state.changed_files = view.changed_files(state.snapshot)
                if state.changed_files:
                    view.sync_back(state.changed_files)
                    self._record(
                        sandbox_run,
                        state,
                        LogLevel.INFO,
                        LogSource.CONTROLLER,
                        "changed files: " + ", ".join(state.changed_files),
                    )
                strays = view.stray_files()
                if strays:
                    warn("ignored files created outside the declared scope: " + ", ".join(strays))
            except (OSError, ValueError) as exc:
                warn(f"could not collect changed files: {exc}")

        if state.allocated:
            try:
                self.runtime.release(state.run_id)
            except Exception as exc:  # noqa: BLE001
                warn(f"runtime cleanup failed: {exc}")
            if view is not None:
                try:
                    view.release()
                except OSError as exc:
                    warn(f"could not remove isolated view {view.root}: {exc}")
            with self._active_lock:
                self._active.discard(state.run_id)

    def _build_result(self, sandbox_run: SandboxRun, state: _RunState) -> SandboxResult:
        return SandboxResult(
            run_id=state.run_id,
            success=state.failure is None,
            changed_files=list(state.changed_files),
            logs=list(sandbox_run.logs),
            error=state.failure,
            exit_code=state.exit_code,
            duration_seconds=time.monotonic() - state.started,
        )


def _pump_lines(stream: IO[bytes], lines: "queue.Queue[object]") -> None:
    try:
        for raw in iter(stream.readline, b""):
            text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if text.strip():
                lines.put(text)
    except (OSError, ValueError):
        # Stream closed by teardown.
        pass
    finally:
        lines.put(_EOF)
