from __future__ import annotations

import sys
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable

import pytest

from aisdlc.content import InMemoryContentStore
from aisdlc.lifecycle import LifecycleManager
from aisdlc.models import ArtifactType, GenerationOutput, SandboxTask, StageName, ValidationOutcome
from aisdlc.orchestrator import Orchestrator
from aisdlc.registry import InMemoryRegistryStore
from aisdlc.runtimes import LocalProcessRuntime
from aisdlc.sandbox import SandboxEngine
from aisdlc.settings import RuntimeSettings

PRD_TEXT = "# Todo App PRD\n\n## Goals\n- Track todos\n"
CHUNKS_TEXT = (
    "# Chunk: Storage\n\nPersist todos.\n\n"
    "# Chunk: Web UI\n\nRender todos.\n"
)
STORIES_TEXT = (
    "# Story: Write target\n\n## Story Points\n5\n\n## Writeable Files\n- target.txt\n\n"
    "## Read-Only Files\n- README.md\n\n"
    "# Story: Second\n\n## Writeable Files\n- second.txt\n\n"
    "# Story: Third\n\n## Story Points\n8\n\n## Writeable Files\n- third.txt\n"
)


class SequentialIds:
    """Deterministic ``<type>-<n>`` ids, numbered per type."""

    def __init__(self) -> None:
        self._counters: dict[ArtifactType, int] = defaultdict(int)

    def __call__(self, artifact_type: ArtifactType) -> str:
        self._counters[artifact_type] += 1
        return f"{artifact_type.value}-{self._counters[artifact_type]}"


class FakeGenerator:
    def __init__(self, outputs: dict[StageName, str] | None = None) -> None:
        self.outputs = outputs if outputs is not None else {
            StageName.PRD: PRD_TEXT,
            StageName.CHUNK: CHUNKS_TEXT,
            StageName.STORY: STORIES_TEXT,
        }
        self.calls: list[tuple[StageName, str, dict[str, Any]]] = []
        self.fail_stages: set[StageName] = set()

    def generate(self, stage: StageName, input_text: str, context: dict[str, Any]) -> GenerationOutput:
        self.calls.append((stage, input_text, context))
        if stage in self.fail_stages:
            return GenerationOutput(text="", ok=False)
        return GenerationOutput(text=self.outputs[stage], ok=True)


class FakeValidator:
    def __init__(self, verdicts: list[bool] | None = None) -> None:
        self.verdicts = list(verdicts) if verdicts is not None else []
        self.calls: list[tuple[str, str]] = []

    def validate(self, content: str, persona: str) -> ValidationOutcome:
        self.calls.append((content, persona))
        passed = self.verdicts.pop(0) if self.verdicts else True
        return ValidationOutcome(passed=passed, report="Looks good." if passed else "Missing acceptance criteria.")


def python_command(source: str) -> Callable[[SandboxTask], list[str]]:
    """Command builder that runs *source* with the current interpreter in place of the agent."""

    def build(_task: SandboxTask) -> list[str]:
        return [sys.executable, "-c", source]

    return build


WRITE_TARGET = "import pathlib; pathlib.Path('target.txt').write_text('implemented\\n'); print('edited target.txt')"
SLEEP_TEN = "import time; print('working', flush=True); time.sleep(10)"


@pytest.fixture
def lifecycle() -> LifecycleManager:
    return LifecycleManager(InMemoryRegistryStore(), InMemoryContentStore(), id_factory=SequentialIds())


@pytest.fixture
def working_dir(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    (root / "README.md").write_text("# Repo\n", encoding="utf-8")
    return root


@pytest.fixture
def view_dir(tmp_path: Path) -> Path:
    views = tmp_path / "views"
    views.mkdir()
    return views


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(
        sandbox_runtime="local",
        credential_env="",
        sandbox_max_retries=0,
        retry_backoff_seconds=0.0,
        sandbox_timeout_seconds=30.0,
    )


def make_orchestrator(
    lifecycle: LifecycleManager,
    settings: RuntimeSettings,
    working_dir: Path,
    view_dir: Path,
    *,
    source: str = WRITE_TARGET,
    generator: FakeGenerator | None = None,
    validator: FakeValidator | None = None,
    sleep: Callable[[float], None] | None = None,
) -> Orchestrator:
    engine = SandboxEngine(
        LocalProcessRuntime(command_builder=python_command(source)),
        termination_grace_seconds=2.0,
        view_base_dir=view_dir,
    )
    kwargs: dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return Orchestrator(
        lifecycle,
        generator or FakeGenerator(),
        validator or FakeValidator(),
        engine,
        settings=settings,
        working_dir=working_dir,
        **kwargs,
    )
