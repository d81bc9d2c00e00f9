from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest

from aisdlc.models import LogRecord, LogSource, ResourceBudget, SandboxErrorKind, SandboxTask
from aisdlc.runtimes import (
    DockerRuntime,
    LocalProcessRuntime,
    build_aider_command,
    make_runtime,
)
from aisdlc.sandbox import REDACTED, SandboxEngine
from aisdlc.workspace import IsolatedView
from conftest import SLEEP_TEN, WRITE_TARGET, python_command


def _task(working_dir: Path, *, timeout: float = 30.0, **overrides: object) -> SandboxTask:
    payload: dict[str, object] = {
        "model": "gpt-4o",
        "instruction": "Write implemented into target.txt",
        "working_dir": working_dir,
        "writeable_files": ["target.txt"],
        "read_only_files": ["README.md"],
        "budget": ResourceBudget(timeout_seconds=timeout, memory_mb=1024),
    }
    payload.update(overrides)
    return SandboxTask(**payload)


def _engine(source: str, view_dir: Path) -> SandboxEngine:
    return SandboxEngine(
        LocalProcessRuntime(command_builder=python_command(source)),
        termination_grace_seconds=2.0,
        view_base_dir=view_dir,
    )


def test_successful_run_syncs_changed_files(working_dir: Path, view_dir: Path) -> None:
    engine = _engine(WRITE_TARGET, view_dir)
    seen: list[str] = []
    result = engine.run(_task(working_dir), on_log=lambda record: seen.append(record.message))

    assert result.success is True
    assert result.error is None
    assert result.exit_code == 0
    assert result.changed_files == ["target.txt"]
    assert (working_dir / "target.txt").read_text(encoding="utf-8") == "implemented\n"
    assert "edited target.txt" in seen
    assert [record.message for record in result.logs] == seen
    assert any(record.source == LogSource.AGENT for record in result.logs)
    assert any("does not isolate network access" in record.message for record in result.logs)
    assert engine.active_runs == set()
    assert list(view_dir.iterdir()) == []


def test_view_exposes_only_declared_files(working_dir: Path, view_dir: Path) -> None:
    (working_dir / "secret.txt").write_text("hidden", encoding="utf-8")
    source = (
        "import os, pathlib\n"
        "print('secret visible=%s' % os.path.exists('secret.txt'))\n"
        "print('readme visible=%s' % os.path.exists('README.md'))\n"
        "pathlib.Path('target.txt').write_text('x')\n"
        "pathlib.Path('stray.txt').write_text('ignored')\n"
        "os.chmod('README.md', 0o644)\n"
        "pathlib.Path('README.md').write_text('tampered')\n"
    )
    result = _engine(source, view_dir).run(_task(working_dir))

    messages = [record.message for record in result.logs]
    assert "secret visible=False" in messages
    assert "readme visible=True" in messages
    assert result.changed_files == ["target.txt"]
    assert (working_dir / "README.md").read_text(encoding="utf-8") == "# Repo\n"
    assert not (working_dir / "stray.txt").exists()
    assert any("stray.txt" in message for message in messages)


def test_read_only_files_are_read_only_in_view(working_dir: Path, view_dir: Path) -> None:
    view = IsolatedView.materialize(_task(working_dir), base_dir=view_dir)
    try:
        mode = (view.root / "README.md").stat().st_mode & 0o777
        assert mode == 0o444
        assert not (view.root / "target.txt").exists()
    finally:
        view.release()
    assert not view.root.exists()


def test_timeout_kills_process_and_releases_resources(working_dir: Path, view_dir: Path) -> None:
    source = "import os, time; print('pid=%d' % os.getpid(), flush=True); time.sleep(10)"
    engine = _engine(source, view_dir)
    result = engine.run(_task(working_dir, timeout=1.0))

    assert result.success is False
    assert result.error is not None
    assert result.error.kind == SandboxErrorKind.TIMEOUT
    assert result.error.retryable is True
    assert result.duration_seconds < 8
    pid_lines = [record.message for record in result.logs if record.message.startswith("pid=")]
    assert pid_lines
    pid = int(pid_lines[0].split("=", 1)[1])
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    assert engine.active_runs == set()
    assert list(view_dir.iterdir()) == []


def test_watchdog_enforces_timeout_while_consumer_is_slow(working_dir: Path, view_dir: Path) -> None:
    source = (
        "import pathlib, time\n"
        "print('started', flush=True)\n"
        "time.sleep(2.5)\n"
        "pathlib.Path('target.txt').write_text('late')\n"
        "time.sleep(10)\n"
    )

    def slow_consumer(record: LogRecord) -> None:
        if record.message == "started":
            time.sleep(4)

    result = _engine(source, view_dir).run(_task(working_dir, timeout=1.0), on_log=slow_consumer)

    assert result.error is not None
    assert result.error.kind == SandboxErrorKind.TIMEOUT
    assert result.changed_files == []
    assert not (working_dir / "target.txt").exists()
    assert result.duration_seconds < 9


def test_log_records_keep_emission_order(working_dir: Path, view_dir: Path) -> None:
    source = (
        "import pathlib, sys\n"
        "for i in range(200):\n"
        "    stream = sys.stderr if i % 3 == 0 else sys.stdout\n"
        "    print('line %03d' % i, file=stream, flush=True)\n"
        "pathlib.Path('target.txt').write_text('done')\n"
    )
    seen: list[LogRecord] = []
    result = _engine(source, view_dir).run(_task(working_dir), on_log=seen.append)

    expected = ["line %03d" % i for i in range(200)]
    assert result.success is True
    assert [record.message for record in seen if record.source == LogSource.AGENT] == expected
    assert [record.message for record in result.logs if record.source == LogSource.AGENT] == expected
    assert [record.message for record in result.logs] == [record.message for record in seen]


def test_non_zero_exit_still_reports_changes(working_dir: Path, view_dir: Path) -> None:
    source = "import pathlib, sys; pathlib.Path('target.txt').write_text('half'); print('failing'); sys.exit(3)"
    result = _engine(source, view_dir).run(_task(working_dir))

    assert result.success is False
    assert result.error is not None
    assert result.error.kind == SandboxErrorKind.NON_ZERO_EXIT
    assert result.error.exit_code == 3
    assert result.exit_code == 3
    assert result.changed_files == ["target.txt"]
    assert (working_dir / "target.txt").read_text(encoding="utf-8") == "half"


def test_cancel_event_stops_run(working_dir: Path, view_dir: Path) -> None:
    engine = _engine(SLEEP_TEN, view_dir)
    cancel = threading.Event()
    timer = threading.Timer(0.5, cancel.set)
    timer.start()
    try:
        result = engine.run(_task(working_dir), cancel_event=cancel)
    finally:
        timer.cancel()

    assert result.error is not None
    assert result.error.kind == SandboxErrorKind.CANCELLED
    assert engine.active_runs == set()
    assert list(view_dir.iterdir()) == []


def test_closing_stream_early_cancels_and_tears_down(working_dir: Path, view_dir: Path) -> None:
    engine = _engine(SLEEP_TEN, view_dir)
    sandbox_run = engine.stream(_task(working_dir))
    for _record in sandbox_run:
        break
    sandbox_run.close()

    assert sandbox_run.result.error is not None
    assert sandbox_run.result.error.kind == SandboxErrorKind.CANCELLED
    assert engine.active_runs == set()


def test_stream_can_be_consumed_once(working_dir: Path, view_dir: Path) -> None:
    sandbox_run = _engine(WRITE_TARGET, view_dir).stream(_task(working_dir))
    with pytest.raises(RuntimeError):
        _ = sandbox_run.result
    records = list(sandbox_run)
    assert records
    assert sandbox_run.result.success is True
    with pytest.raises(RuntimeError):
        list(sandbox_run)


def test_missing_prerequisites_allocate_nothing(working_dir: Path, view_dir: Path) -> None:
    engine = SandboxEngine(
        LocalProcessRuntime(command_builder=lambda _task: ["aisdlc-no-such-agent-binary"]),
        view_base_dir=view_dir,
    )
    task = _task(working_dir)
    assert engine.preflight(task)
    result = engine.run(task)

    assert result.error is not None
    assert result.error.kind == SandboxErrorKind.PREREQUISITES_NOT_MET
    assert "aisdlc-no-such-agent-binary" in result.error.missing[0]
    assert list(view_dir.iterdir()) == []
    assert not (working_dir / "target.txt").exists()


def test_missing_read_only_file_is_setup_failure(working_dir: Path, view_dir: Path) -> None:
    task = _task(working_dir, read_only_files=["docs/missing.md"])
    result = _engine(WRITE_TARGET, view_dir).run(task)

    assert result.error is not None
    assert result.error.kind == SandboxErrorKind.SETUP_FAILURE
    assert list(view_dir.iterdir()) == []


def test_credentials_are_forwarded_but_redacted(
    working_dir: Path, view_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("AISDLC_TEST_API_KEY", "sk-test-0123456789")
    source = (
        "import os, pathlib; print('key is ' + os.environ['AISDLC_TEST_API_KEY']); "
        "pathlib.Path('target.txt').write_text('ok')"
    )
    task = _task(working_dir, env_allowlist=["AISDLC_TEST_API_KEY"])
    result = _engine(source, view_dir).run(task)

    assert result.success is True
    rendered = "\n".join(record.render() for record in result.logs)
    assert "sk-test-0123456789" not in rendered
    assert f"key is {REDACTED}" in rendered


def test_missing_credentials_block_preflight(
    working_dir: Path, view_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("AISDLC_TEST_API_KEY", raising=False)
    task = _task(working_dir, env_allowlist=["AISDLC_TEST_API_KEY"])
    missing = _engine(WRITE_TARGET, view_dir).preflight(task)
    assert missing == ["none of the credential variables is set: AISDLC_TEST_API_KEY"]


def test_local_runtime_classifies_cpu_kill() -> None:
    runtime = LocalProcessRuntime()
    failure = runtime.classify_exit(-9)
    assert failure is not None
    assert failure.kind == SandboxErrorKind.RESOURCE_LIMIT
    assert runtime.classify_exit(1) is None
    assert runtime.classify_exit(1, ["Traceback (most recent call last):", "boom"]) is None
    oom = runtime.classify_exit(1, ["Traceback (most recent call last):", "MemoryError"])
    assert oom is not None and oom.kind == SandboxErrorKind.RESOURCE_LIMIT


def test_allocation_failure_is_reported_as_resource_limit(working_dir: Path, view_dir: Path) -> None:
    result = _engine("raise MemoryError()", view_dir).run(_task(working_dir))

    assert result.error is not None
    assert result.error.kind == SandboxErrorKind.RESOURCE_LIMIT
    assert result.error.error_class == "ResourceLimitExceeded"
    assert result.exit_code == 1


def test_docker_runtime_launch_plan(
    working_dir: Path, view_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-live-secret")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    task = _task(working_dir, env_allowlist=["OPENAI_API_KEY", "ANTHROPIC_API_KEY"], editor_model="gpt-4o-mini")
    view = IsolatedView.materialize(task, base_dir=view_dir)
    try:
        plan = DockerRuntime(image="example/aider:latest").prepare(task, view, "abc123")
    finally:
        view.release()

    argv = plan.argv
    assert argv[:3] == ["docker", "run", "--rm"]
    assert argv[argv.index("--network") + 1] == "none"
    assert argv[argv.index("--memory") + 1] == "1024m"
    assert argv[argv.index("--name") + 1] == "aisdlc-abc123"
    assert f"{view.root / 'README.md'}:/app/README.md:ro" in argv
    assert "OPENAI_API_KEY" in argv
    assert "ANTHROPIC_API_KEY" not in argv
    assert not any("sk-live-secret" in item for item in argv)
    image_index = argv.index("example/aider:latest")
    assert argv[image_index + 1 :][:2] == ["--model", "gpt-4o"]
    assert argv[-2:] == ["--read", "README.md"]


def test_docker_runtime_reports_missing_cli(working_dir: Path) -> None:
    runtime = DockerRuntime(docker_binary="aisdlc-no-such-docker")
    missing = runtime.check_prerequisites(_task(working_dir))
    assert missing == ["docker CLI 'aisdlc-no-such-docker' not found on PATH"]
    failure = runtime.classify_exit(137)
    assert failure is not None and failure.kind == SandboxErrorKind.RESOURCE_LIMIT
    transient = runtime.classify_exit(125)
    assert transient is not None and transient.retryable is True


def test_build_aider_command() -> None:
    task = _task(Path("."), writeable_files=["a.py", "b.py"], read_only_files=["c.md"])
    command = build_aider_command(task)
    assert command[:3] == ["aider", "--model", "gpt-4o"]
    assert "--no-auto-commits" in command
    assert command[command.index("--message") + 1] == "Write implemented into target.txt"
    assert command[-4:] == ["a.py", "b.py", "--read", "c.md"]


def test_make_runtime() -> None:
    assert isinstance(make_runtime("docker", image="x"), DockerRuntime)
    assert isinstance(make_runtime("local"), LocalProcessRuntime)
    with pytest.raises(ValueError):
        make_runtime("vm")
