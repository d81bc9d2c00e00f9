from importlib.metadata import version

from .content import FileContentStore, InMemoryContentStore
from .errors import (
    GenerationFailedError,
    IllegalTransitionError,
    InvalidLineageError,
    InvariantViolationError,
    NonZeroExitError,
    NotFoundError,
    PipelineError,
    PrerequisitesNotMetError,
    ResourceLimitExceededError,
    SandboxCancelledError,
    SandboxError,
    SandboxTimeoutError,
    SetupFailureError,
    TypeMismatchError,
)
from .lifecycle import LifecycleManager
from .models import (
    ArtifactType,
    ChunkRecord,
    CompletedRecord,
    IdeaRecord,
    LogRecord,
    PrdRecord,
    ResourceBudget,
    SandboxResult,
    SandboxTask,
    StageName,
    StoryRecord,
    ValidationRecord,
)
from .orchestrator import Orchestrator, PipelineGraph, PipelineReport, StageOutcome
from .registry import InMemoryRegistryStore, JsonFileRegistryStore
from .runtimes import DockerRuntime, LocalProcessRuntime
from .sandbox import SandboxEngine, SandboxRun
from .settings import RuntimeSettings


def get_version() -> str:
    try:
        return version("aisdlc")
    except Exception:
        return "0.0.0"


__all__ = [
    "ArtifactType",
    "ChunkRecord",
    "CompletedRecord",
    "DockerRuntime",
    "FileContentStore",
    "GenerationFailedError",
    "IdeaRecord",
    "IllegalTransitionError",
    "InMemoryContentStore",
    "InMemoryRegistryStore",
    "InvalidLineageError",
    "InvariantViolationError",
    "JsonFileRegistryStore",
    "LifecycleManager",
    "LocalProcessRuntime",
    "LogRecord",
    "NonZeroExitError",
    "NotFoundError",
    "Orchestrator",
    "PipelineError",
    "PipelineGraph",
    "PipelineReport",
    "PrdRecord",
    "PrerequisitesNotMetError",
    "ResourceBudget",
    "ResourceLimitExceededError",
    "RuntimeSettings",
    "SandboxCancelledError",
    "SandboxEngine",
    "SandboxError",
    "SandboxResult",
    "SandboxRun",
    "SandboxTask",
    "SandboxTimeoutError",
    "SetupFailureError",
    "StageName",
    "StageOutcome",
    "StoryRecord",
    "TypeMismatchError",
    "ValidationRecord",
    "get_version",
]
