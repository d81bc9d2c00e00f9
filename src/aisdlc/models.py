from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from . import errors


def utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Artifact types and per-type status enums
# ---------------------------------------------------------------------------


class ArtifactType(str, Enum):
    IDEA = "idea"
    PRD = "prd"
    CHUNK = "chunk"
    STORY = "story"
    VALIDATION = "validation"
    COMPLETED = "completed"


class IdeaStatus(str, Enum):
    NEW = "new"
    PRD_GENERATED = "prd_generated"


class PrdStatus(str, Enum):
    DRAFT = "draft"
    CHUNKED = "chunked"


class ChunkStatus(str, Enum):
    BACKLOG = "backlog"
    VALIDATED = "validated"
    NEEDS_REVISION = "needs_revision"
    STORIFIED = "storified"


class StoryStatus(str, Enum):
    READY = "ready"
    IN_PROGRESS = "in_progress"
    REVIEW_PENDING = "review_pending"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class ValidationStatus(str, Enum):
    COMPLETED = "completed"


class CompletedStatus(str, Enum):
    RECORDED = "recorded"


# The single legal parent type of each artifact type (``None`` means root).
PARENT_TYPE: dict[ArtifactType, ArtifactType | None] = {
    ArtifactType.IDEA: None,
    ArtifactType.PRD: ArtifactType.IDEA,
    ArtifactType.CHUNK: ArtifactType.PRD,
    ArtifactType.STORY: ArtifactType.CHUNK,
    ArtifactType.VALIDATION: ArtifactType.CHUNK,
    ArtifactType.COMPLETED: ArtifactType.STORY,
}

# Child type whose linking advances the parent's status.
PIPELINE_CHILD_TYPE: dict[ArtifactType, ArtifactType] = {
    ArtifactType.IDEA: ArtifactType.PRD,
    ArtifactType.PRD: ArtifactType.CHUNK,
    ArtifactType.CHUNK: ArtifactType.STORY,
}


# ---------------------------------------------------------------------------
# Artifact records (tagged variant over ``type``)
# ---------------------------------------------------------------------------


class ArtifactMetadata(BaseModel):
    """Free-form metadata bag; timestamps are always present."""

    model_config = ConfigDict(extra="allow")

    created_at: datetime
    updated_at: datetime
    priority: str = "medium"
    owner_agent_type: str | None = None

    def merged(self, **updates: Any) -> "ArtifactMetadata":
        payload = self.model_dump()
        payload.update(updates)
        return ArtifactMetadata.model_validate(payload)

    def get(self, key: str, default: Any = None) -> Any:
        if key in type(self).model_fields:
            return getattr(self, key)
        return (self.model_extra or {}).get(key, default)


class ArtifactBase(BaseModel):
    """Envelope fields shared by every artifact record."""

    model_config = ConfigDict(frozen=True)

    id: str
    parent_id: str | None = None
    children_ids: list[str] = Field(default_factory=list)
    content_ref: str | None = None
    metadata: ArtifactMetadata

    @model_validator(mode="after")
    def _id_matches_type(self) -> "ArtifactBase":
        type_value = getattr(self, "type")
        if not self.id.startswith(f"{type_value}-") or len(self.id) <= len(type_value) + 1:
            raise ValueError(f"artifact id {self.id!r} must be prefixed with '{type_value}-'")
        if len(set(self.children_ids)) != len(self.children_ids):
            raise ValueError(f"artifact {self.id} lists duplicate children")
        if self.parent_id == self.id or self.id in self.children_ids:
            raise ValueError(f"artifact {self.id} cannot reference itself")
        return self

    @property
    def artifact_type(self) -> ArtifactType:
        return ArtifactType(getattr(self, "type"))

    @property
    def status_value(self) -> str:
        return getattr(self, "status").value


class IdeaRecord(ArtifactBase):
    type: Literal["idea"] = "idea"
    status: IdeaStatus = IdeaStatus.NEW
    title: str = ""


class PrdRecord(ArtifactBase):
    type: Literal["prd"] = "prd"
    status: PrdStatus = PrdStatus.DRAFT
    title: str = ""


class ChunkRecord(ArtifactBase):
    type: Literal["chunk"] = "chunk"
    status: ChunkStatus = ChunkStatus.BACKLOG
    title: str = ""
    chunk_number: int = Field(default=1, ge=1)
    total_chunks: int = Field(default=1, ge=1)


class StoryRecord(ArtifactBase):
    type: Literal["story"] = "story"
    status: StoryStatus = StoryStatus.READY
    title: str = ""
    story_points: int = Field(default=3, ge=0)
    story_number: int = Field(default=1, ge=1)
    read_only_files: list[str] = Field(default_factory=list)
    writeable_files: list[str] = Field(default_factory=list)


class ValidationRecord(ArtifactBase):
    type: Literal["validation"] = "validation"
    status: ValidationStatus = ValidationStatus.COMPLETED
    passed: bool
    persona: str = "general"


class CompletedRecord(ArtifactBase):
    type: Literal["completed"] = "completed"
    status: CompletedStatus = CompletedStatus.RECORDED
    files_changed: list[str] = Field(default_factory=list)
    commit_ref: str | None = None


ArtifactRecord = Annotated[
    Union[IdeaRecord, PrdRecord, ChunkRecord, StoryRecord, ValidationRecord, CompletedRecord],
    Field(discriminator="type"),
]
ARTIFACT_RECORD_ADAPTER: TypeAdapter[ArtifactRecord] = TypeAdapter(ArtifactRecord)

RECORD_CLASSES: dict[ArtifactType, type[ArtifactBase]] = {
    ArtifactType.IDEA: IdeaRecord,
    ArtifactType.PRD: PrdRecord,
    ArtifactType.CHUNK: ChunkRecord,
    ArtifactType.STORY: StoryRecord,
    ArtifactType.VALIDATION: ValidationRecord,
    ArtifactType.COMPLETED: CompletedRecord,
}


class RegistryDocument(BaseModel):
    """Persisted registry: a single mapping of artifact id to record."""

    version: int = 1
    artifacts: dict[str, ArtifactRecord] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _keys_match_ids(self) -> "RegistryDocument":
        for key, record in self.artifacts.items():
            if key != record.id:
                raise ValueError(f"registry key {key!r} does not match record id {record.id!r}")
        return self


# ---------------------------------------------------------------------------
# Transition events
# ---------------------------------------------------------------------------


class EventKind(str, Enum):
    CHILDREN_LINKED = "children_linked"
    VALIDATION_PASSED = "validation_passed"
    VALIDATION_FAILED = "validation_failed"
    RESUBMITTED = "resubmitted"
    IMPLEMENTATION_STARTED = "implementation_started"
    SANDBOX_SUCCEEDED = "sandbox_succeeded"
    SANDBOX_FAILED = "sandbox_failed"
    SANDBOX_CANCELLED = "sandbox_cancelled"
    ABANDONED = "abandoned"
    REQUEUED = "requeued"


@dataclass(frozen=True)
class ChildrenLinked:
    child_ids: tuple[str, ...]

    @property
    def event_kind(self) -> EventKind:
        return EventKind.CHILDREN_LINKED

    def metadata_updates(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class ValidationVerdict:
    """Critic verdict; drives ``backlog -> validated | needs_revision``."""

    passed: bool
    validation_id: str | None = None
    persona: str = "general"

    @property
    def event_kind(self) -> EventKind:
        return EventKind.VALIDATION_PASSED if self.passed else EventKind.VALIDATION_FAILED

    def metadata_updates(self) -> dict[str, Any]:
        updates: dict[str, Any] = {"last_validation_passed": self.passed, "last_validation_persona": self.persona}
        if self.validation_id is not None:
            updates["validation_id"] = self.validation_id
        return updates


@dataclass(frozen=True)
class Resubmitted:
    reason: str = "resubmitted for validation"

    @property
    def event_kind(self) -> EventKind:
        return EventKind.RESUBMITTED

    def metadata_updates(self) -> dict[str, Any]:
        return {"resubmitted_at": utc_now().isoformat()}


@dataclass(frozen=True)
class ImplementationStarted:
    agent_type: str = "BuilderAgent"

    @property
    def event_kind(self) -> EventKind:
        return EventKind.IMPLEMENTATION_STARTED

    def metadata_updates(self) -> dict[str, Any]:
        return {
            "assigned_agent_type": self.agent_type,
            "implementation_started_at": utc_now().isoformat(),
        }


@dataclass(frozen=True)
class ImplementationAbandoned:
    """Marks an ``in_progress`` story whose run will never report back."""

    reason: str

    @property
    def event_kind(self) -> EventKind:
        return EventKind.ABANDONED

    def metadata_updates(self) -> dict[str, Any]:
        return {"cancelled": True, "abandoned_at": utc_now().isoformat(), "abandon_reason": self.reason}


@dataclass(frozen=True)
class Requeued:
    reason: str

    @property
    def event_kind(self) -> EventKind:
        return EventKind.REQUEUED

    def metadata_updates(self) -> dict[str, Any]:
        return {"requeued_at": utc_now().isoformat(), "requeue_reason": self.reason}


# ---------------------------------------------------------------------------
# Sandbox task / result
# ---------------------------------------------------------------------------


class LogSource(str, Enum):
    SANDBOX = "sandbox"
    AGENT = "agent"
    CONTROLLER = "controller"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LogRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel = LogLevel.INFO
    source: LogSource
    message: str

    def render(self) -> str:
        return f"{self.timestamp.isoformat()} [{self.source.value}] {self.level.value.upper()} {self.message}"


class ResourceBudget(BaseModel):
    """Limits for one sandbox run. There is no unbounded mode."""

    model_config = ConfigDict(frozen=True)

    memory_mb: int = Field(default=2048, gt=0)
    cpu_shares: int = Field(default=1024, gt=0)
    timeout_seconds: float = Field(gt=0)


def _check_relative_path(value: str) -> str:
    path = PurePosixPath(value.strip())
    if not value.strip() or path.is_absolute() or ".." in path.parts:
        raise ValueError(f"sandbox file paths must be relative to the working tree: {value!r}")
    return str(path)


class SandboxTask(BaseModel):
    """Ephemeral specification for one sandboxed code-modification run."""

    model_config = ConfigDict(frozen=True)

    model: str
    editor_model: str | None = None
    instruction: str
    working_dir: Path
    writeable_files: list[str]
    read_only_files: list[str] = Field(default_factory=list)
    budget: ResourceBudget
    env_allowlist: list[str] = Field(default_factory=list)

    @field_validator("model", "instruction")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value

    @field_validator("writeable_files", "read_only_files")
    @classmethod
    def _relative_paths(cls, values: list[str]) -> list[str]:
        normalized = [_check_relative_path(item) for item in values]
        if len(set(normalized)) != len(normalized):
            raise ValueError("file list contains duplicates")
        return normalized

    @model_validator(mode="after")
    def _disjoint_scopes(self) -> "SandboxTask":
        if not self.writeable_files:
            raise ValueError("at least one writeable file is required")
        overlap = set(self.writeable_files) & set(self.read_only_files)
        if overlap:
            raise ValueError(f"read-only and writeable file sets overlap: {sorted(overlap)}")
        return self


class SandboxErrorKind(str, Enum):
    PREREQUISITES_NOT_MET = "prerequisites_not_met"
    TIMEOUT = "timeout"
    RESOURCE_LIMIT = "resource_limit"
    NON_ZERO_EXIT = "non_zero_exit"
    SETUP_FAILURE = "setup_failure"
    CANCELLED = "cancelled"


ERROR_CLASS_BY_KIND: dict[SandboxErrorKind, str] = {
    SandboxErrorKind.PREREQUISITES_NOT_MET: "PrerequisitesNotMet",
    SandboxErrorKind.TIMEOUT: "Timeout",
    SandboxErrorKind.RESOURCE_LIMIT: "ResourceLimitExceeded",
    SandboxErrorKind.NON_ZERO_EXIT: "NonZeroExit",
    SandboxErrorKind.SETUP_FAILURE: "SetupFailure",
    SandboxErrorKind.CANCELLED: "Cancelled",
}


class SandboxFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: SandboxErrorKind
    message: str
    exit_code: int | None = None
    transient: bool = False
    missing: list[str] = Field(default_factory=list)

    @property
    def error_class(self) -> str:
        return ERROR_CLASS_BY_KIND[self.kind]

    @property
    def retryable(self) -> bool:
        if self.kind == SandboxErrorKind.TIMEOUT:
            return True
        return self.kind == SandboxErrorKind.SETUP_FAILURE and self.transient


class SandboxResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    success: bool
    changed_files: list[str] = Field(default_factory=list)
    logs: list[LogRecord] = Field(default_factory=list)
    error: SandboxFailure | None = None
    exit_code: int | None = None
    duration_seconds: float = 0.0

    @model_validator(mode="after")
    def _success_xor_error(self) -> "SandboxResult":
        if self.success == (self.error is not None):
            raise ValueError("a sandbox result is either successful or carries an error")
        return self

    @property
    def event_kind(self) -> EventKind:
        if self.success:
            return EventKind.SANDBOX_SUCCEEDED
        if self.error is not None and self.error.kind == SandboxErrorKind.CANCELLED:
            return EventKind.SANDBOX_CANCELLED
        return EventKind.SANDBOX_FAILED

    def log_excerpt(self, max_lines: int = 40) -> list[str]:
        return [record.render() for record in self.logs[-max_lines:]]

    def metadata_updates(self) -> dict[str, Any]:
        updates: dict[str, Any] = {
            "files_changed": list(self.changed_files),
            "sandbox_run_id": self.run_id,
            "sandbox_exit_code": self.exit_code,
            "sandbox_duration_seconds": round(self.duration_seconds, 3),
        }
        if self.success:
            updates["implementation_completed_at"] = utc_now().isoformat()
        elif self.error is not None:
            updates["sandbox_error"] = {
                "error_class": self.error.error_class,
                "message": self.error.message,
                "exit_code": self.error.exit_code,
                "log_excerpt": self.log_excerpt(),
            }
            if self.error.kind == SandboxErrorKind.CANCELLED:
                updates["cancelled"] = True
        return updates

    def raise_for_error(self) -> None:
        """Raise the exception class matching ``error``; no-op on success."""
        if self.error is None:
            return
        common: dict[str, Any] = {"logs": list(self.logs), "changed_files": list(self.changed_files)}
        kind = self.error.kind
        if kind == SandboxErrorKind.PREREQUISITES_NOT_MET:
            raise errors.PrerequisitesNotMetError(self.error.missing or [self.error.message], **common)
        if kind == SandboxErrorKind.TIMEOUT:
            raise errors.SandboxTimeoutError(self.error.message, **common)
        if kind == SandboxErrorKind.RESOURCE_LIMIT:
            raise errors.ResourceLimitExceededError(self.error.message, **common)
        if kind == SandboxErrorKind.NON_ZERO_EXIT:
            raise errors.NonZeroExitError(self.error.message, exit_code=self.error.exit_code or -1, **common)
        if kind == SandboxErrorKind.CANCELLED:
            raise errors.SandboxCancelledError(self.error.message, **common)
        raise errors.SetupFailureError(self.error.message, transient=self.error.transient, **common)


# Legal transitions: type -> current status -> event kind -> next status.
ARTIFACT_STATUS_TRANSITIONS: dict[ArtifactType, dict[str, dict[EventKind, str]]] = {
    ArtifactType.IDEA: {
        IdeaStatus.NEW.value: {EventKind.CHILDREN_LINKED: IdeaStatus.PRD_GENERATED.value},
    },
    ArtifactType.PRD: {
        PrdStatus.DRAFT.value: {EventKind.CHILDREN_LINKED: PrdStatus.CHUNKED.value},
    },
    ArtifactType.CHUNK: {
        ChunkStatus.BACKLOG.value: {
            EventKind.VALIDATION_PASSED: ChunkStatus.VALIDATED.value,
            EventKind.VALIDATION_FAILED: ChunkStatus.NEEDS_REVISION.value,
        },
        ChunkStatus.NEEDS_REVISION.value: {EventKind.RESUBMITTED: ChunkStatus.BACKLOG.value},
        ChunkStatus.VALIDATED.value: {EventKind.CHILDREN_LINKED: ChunkStatus.STORIFIED.value},
    },
    ArtifactType.STORY: {
        StoryStatus.READY.value: {EventKind.IMPLEMENTATION_STARTED: StoryStatus.IN_PROGRESS.value},
        StoryStatus.IN_PROGRESS.value: {
            EventKind.SANDBOX_SUCCEEDED: StoryStatus.REVIEW_PENDING.value,
            EventKind.SANDBOX_FAILED: StoryStatus.BLOCKED.value,
            EventKind.SANDBOX_CANCELLED: StoryStatus.CANCELLED.value,
            EventKind.ABANDONED: StoryStatus.CANCELLED.value,
        },
        StoryStatus.BLOCKED.value: {EventKind.REQUEUED: StoryStatus.READY.value},
        StoryStatus.CANCELLED.value: {EventKind.REQUEUED: StoryStatus.READY.value},
    },
    ArtifactType.VALIDATION: {},
    ArtifactType.COMPLETED: {},
}


TransitionEvent = Union[
    ChildrenLinked,
    ValidationVerdict,
    Resubmitted,
    ImplementationStarted,
    ImplementationAbandoned,
    Requeued,
    SandboxResult,
]


# ---------------------------------------------------------------------------
# Stages and collaborator contracts
# ---------------------------------------------------------------------------


class StageName(str, Enum):
    PRD = "prd"
    CHUNK = "chunk"
    VALIDATE = "validate"
    STORY = "story"
    IMPLEMENT = "implement"


STAGE_INPUT_TYPE: dict[StageName, ArtifactType] = {
    StageName.PRD: ArtifactType.IDEA,
    StageName.CHUNK: ArtifactType.PRD,
    StageName.VALIDATE: ArtifactType.CHUNK,
    StageName.STORY: ArtifactType.CHUNK,
    StageName.IMPLEMENT: ArtifactType.STORY,
}


@dataclass(frozen=True)
class GenerationOutput:
    text: str
    ok: bool


@dataclass(frozen=True)
class ValidationOutcome:
    passed: bool
    report: str


@dataclass(frozen=True)
class FileScope:
    writeable: list[str] = field(default_factory=list)
    read_only: list[str] = field(default_factory=list)
