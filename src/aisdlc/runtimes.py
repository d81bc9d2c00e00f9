"""Execution runtimes for the sandbox engine.

A runtime turns a :class:`~aisdlc.models.SandboxTask` plus a materialized
:class:`~aisdlc.workspace.IsolatedView` into a launch plan, knows how to
check its own prerequisites without side effects, maps runtime-specific exit
codes onto the sandbox error taxonomy, and releases whatever it allocated.
"""

from __future__ import annotations

import logging
import math
import os
import resource
import shutil
import signal
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol, Sequence

from .models import SandboxErrorKind, SandboxFailure, SandboxTask
from .workspace import IsolatedView

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = "paulgauthier/aider"
CONTAINER_WORKDIR = "/app"
_FIXED_ENV = {"PYTHONUNBUFFERED": "1", "AIDER_NO_AUTO_COMMITS": "1"}
_INSPECT_TIMEOUT_SECONDS = 30
# Output of a process that hit RLIMIT_AS and exited on its own.
_OUT_OF_MEMORY_MARKERS = ("MemoryError", "Cannot allocate memory", "std::bad_alloc", "out of memory")


@dataclass(frozen=True)
class LaunchPlan:
    argv: list[str]
    env: dict[str, str]
    cwd: Path
    preexec_fn: Callable[[], None] | None = None
    notices: tuple[str, ...] = field(default_factory=tuple)


class SandboxRuntime(Protocol):
    name: str

    def check_prerequisites(self, task: SandboxTask) -> list[str]: ...

    def prepare(self, task: SandboxTask, view: IsolatedView, run_id: str) -> LaunchPlan: ...

    def classify_exit(self, returncode: int, tail: Sequence[str] = ()) -> SandboxFailure | None: ...

    def release(self, run_id: str) -> None: ...


def build_aider_args(task: SandboxTask) -> list[str]:
    """Aider arguments (without the executable) for one non-interactive edit."""
    args = ["--model", task.model]
    if task.editor_model:
        args += ["--editor-model", task.editor_model]
    args += ["--no-auto-commits", "--no-git", "--yes", "--message", task.instruction]
    args += list(task.writeable_files)
    for name in task.read_only_files:
        args += ["--read", name]
    return args


def build_aider_command(task: SandboxTask) -> list[str]:
    return ["aider", *build_aider_args(task)]


def credential_names_present(task: SandboxTask) -> list[str]:
    return [name for name in task.env_allowlist if os.environ.get(name)]


def _missing_credentials(task: SandboxTask) -> list[str]:
    if task.env_allowlist and not credential_names_present(task):
        return ["none of the credential variables is set: " + ", ".join(task.env_allowlist)]
    return []


class DockerRuntime:
    """Runs the agent in a throwaway container through the docker CLI.

    The container has no network, a memory ceiling and a CPU share, runs as
    the calling user, and sees only the isolated view mounted at ``/app``
    with read-only files re-mounted ``:ro``. Credentials are forwarded by
    name (``-e NAME``) so their values never appear in the argument vector.
    """

    name = "docker"

    def __init__(self, image: str = DEFAULT_IMAGE, *, docker_binary: str = "docker") -> None:
        self.image = image
        self.docker_binary = docker_binary

    @staticmethod
    def container_name(run_id: str) -> str:
        return f"aisdlc-{run_id}"

    def check_prerequisites(self, task: SandboxTask) -> list[str]:
        missing: list[str] = []
        docker = shutil.which(self.docker_binary)
        if docker is None:
            missing.append(f"docker CLI '{self.docker_binary}' not found on PATH")
        else:
            try:
                inspected = subprocess.run(
                    [docker, "image", "inspect", self.image],
                    capture_output=True,
                    text=True,
                    timeout=_INSPECT_TIMEOUT_SECONDS,
                    check=False,
                )
            except (OSError, subprocess.TimeoutExpired) as exc:
                missing.append(f"docker daemon not reachable: {exc}")
            else:
                if inspected.returncode != 0:
                    missing.append(f"image '{self.image}' not present (run: docker pull {self.image})")
        return missing + _missing_credentials(task)

    def prepare(self, task: SandboxTask, view: IsolatedView, run_id: str) -> LaunchPlan:
        budget = task.budget
        argv = [
            self.docker_binary, "run", "--rm",
            "--name", self.container_name(run_id),
            "--network", "none",
            "--memory", f"{budget.memory_mb}m",
            "--memory-swap", f"{budget.memory_mb}m",
            "--cpu-shares", str(budget.cpu_shares),
            "-v", f"{view.root}:{CONTAINER_WORKDIR}",
        ]
        for name in task.read_only_files:
            argv += ["-v", f"{view.root / name}:{CONTAINER_WORKDIR}/{name}:ro"]
        if hasattr(os, "getuid"):
            argv += ["--user", f"{os.getuid()}:{os.getgid()}"]
        for key, value in _FIXED_ENV.items():
            argv += ["-e", f"{key}={value}"]
        present = credential_names_present(task)
        for name in present:
            argv += ["-e", name]
        argv += ["-w", CONTAINER_WORKDIR, "--entrypoint", "aider", self.image, *build_aider_args(task)]

        env = dict(os.environ)
        env.update(_FIXED_ENV)
        return LaunchPlan(argv=argv, env=env, cwd=view.root)

    def classify_exit(self, returncode: int, tail: Sequence[str] = ()) -> SandboxFailure | None:
        # 137 = SIGKILL inside the container, which is how the OOM killer ends it.
        if returncode in (137, -signal.SIGKILL):
            return SandboxFailure(
                kind=SandboxErrorKind.RESOURCE_LIMIT,
                message="container was killed (out of memory or resource limit)",
                exit_code=returncode,
            )
        if returncode == 125:
            return SandboxFailure(
                kind=SandboxErrorKind.SETUP_FAILURE,
                message="docker could not create or start the container",
                exit_code=returncode,
                transient=True,
            )
        if returncode in (126, 127):
            return SandboxFailure(
                kind=SandboxErrorKind.SETUP_FAILURE,
                message="agent command could not be invoked inside the container",
                exit_code=returncode,
            )
        return None

    def release(self, run_id: str) -> None:
        docker = shutil.which(self.docker_binary)
        if docker is None:
            return
        removed = subprocess.run(
            [docker, "rm", "-f", self.container_name(run_id)],
            capture_output=True,
            text=True,
            timeout=_INSPECT_TIMEOUT_SECONDS,
            check=False,
        )
        if removed.returncode != 0 and "No such container" not in removed.stderr:
            raise RuntimeError(f"docker rm -f failed: {removed.stderr.strip()}")


def _limits_preexec(memory_mb: int, cpu_seconds: int, niceness: int) -> Callable[[], None]:
    memory_bytes = memory_mb * 1024 * 1024

    def apply_limits() -> None:
        resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
        if niceness:
            os.nice(niceness)

    return apply_limits


def _niceness_for(cpu_shares: int) -> int:
    """Map docker-style CPU shares (1024 = one full share) onto a nice increment."""
    if cpu_shares >= 1024:
        return 0
    return min(19, round(10 * (1 - cpu_shares / 1024)))


class LocalProcessRuntime:
    """Runs the agent command as a host process inside the isolated view.

    Memory and CPU time are capped with ``setrlimit``. A host process cannot
    be denied network access, so every launch carries a controller warning.
    """

    name = "local"

    def __init__(self, command_builder: Callable[[SandboxTask], list[str]] = build_aider_command) -> None:
        self.command_builder = command_builder

    def check_prerequisites(self, task: SandboxTask) -> list[str]:
        missing: list[str] = []
        argv = self.command_builder(task)
        executable = argv[0] if argv else ""
        if not executable or (shutil.which(executable) is None and not Path(executable).is_file()):
            missing.append(f"agent executable '{executable}' not found")
        return missing + _missing_credentials(task)

    def prepare(self, task: SandboxTask, view: IsolatedView, run_id: str) -> LaunchPlan:
        env = {"PATH": os.environ.get("PATH", os.defpath), "HOME": str(view.root)}
        env.update(_FIXED_ENV)
        for name in credential_names_present(task):
            env[name] = os.environ[name]
        cpu_seconds = max(1, math.ceil(task.budget.timeout_seconds)) + 1
        return LaunchPlan(
            argv=self.command_builder(task),
            env=env,
            cwd=view.root,
            preexec_fn=_limits_preexec(task.budget.memory_mb, cpu_seconds, _niceness_for(task.budget.cpu_shares)),
            notices=("local runtime does not isolate network access",),
        )

    def classify_exit(self, returncode: int, tail: Sequence[str] = ()) -> SandboxFailure | None:
        """Map a failed exit onto the error taxonomy.

        RLIMIT_AS makes allocations fail instead of killing the process, so a
        memory overrun usually ends in an ordinary non-zero exit. It is
        recognised only from the allocation errors in the last agent lines
        (*tail*); an agent that swallows them is reported as ``NonZeroExit``.
        """
        if returncode in (-signal.SIGKILL, -signal.SIGXCPU):
            return SandboxFailure(
                kind=SandboxErrorKind.RESOURCE_LIMIT,
                message=f"agent process killed by {signal.Signals(-returncode).name}",
                exit_code=returncode,
            )
        if returncode != 0 and any(marker in line for line in tail for marker in _OUT_OF_MEMORY_MARKERS):
            return SandboxFailure(
                kind=SandboxErrorKind.RESOURCE_LIMIT,
                message=f"agent process ran out of memory (exit code {returncode})",
                exit_code=returncode,
            )
        return None

    def release(self, run_id: str) -> None:
        logger.debug("Local runtime holds no resources for run %s", run_id)


def make_runtime(kind: str, *, image: str = DEFAULT_IMAGE) -> SandboxRuntime:
    if kind == "docker":
        return DockerRuntime(image=image)
    if kind == "local":
        return LocalProcessRuntime()
    raise ValueError(f"Unknown sandbox runtime '{kind}' (expected 'docker' or 'local')")
