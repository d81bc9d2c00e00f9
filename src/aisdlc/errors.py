"""Exception taxonomy for the registry, lifecycle and sandbox layers.

Registry/lifecycle errors are caller or data errors and are never retried.
Sandbox errors carry the accumulated execution log so callers can persist a
diagnostic excerpt alongside the artifact.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import LogRecord


class PipelineError(Exception):
    """Base class for every error raised by the pipeline core."""

    error_class = "PipelineError"
    retryable = False

    def __init__(self, message: str, *, artifact_id: str | None = None, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.artifact_id = artifact_id
        self.stage = stage

    def describe(self) -> str:
        """Render the error the way the CLI reports it."""
        parts = [f"{self.error_class}"]
        if self.artifact_id is not None:
            parts.append(f"artifact={self.artifact_id}")
        if self.stage is not None:
            parts.append(f"stage={self.stage}")
        return f"{' '.join(parts)}: {self.message}"


# ---------------------------------------------------------------------------
# Registry / lifecycle layer
# ---------------------------------------------------------------------------


class NotFoundError(PipelineError, LookupError):
    error_class = "NotFound"


class TypeMismatchError(PipelineError):
    error_class = "TypeMismatch"


class InvalidLineageError(PipelineError):
    error_class = "InvalidLineage"


class IllegalTransitionError(PipelineError):
    error_class = "IllegalTransition"

    def __init__(
        self,
        message: str,
        *,
        artifact_id: str | None = None,
        stage: str | None = None,
        current_status: str | None = None,
        event: str | None = None,
    ) -> None:
        super().__init__(message, artifact_id=artifact_id, stage=stage)
        self.current_status = current_status
        self.event = event


class InvariantViolationError(PipelineError):
    error_class = "InvariantViolation"


class GenerationFailedError(PipelineError):
    """A generation or validation collaborator returned no usable output."""

    error_class = "GenerationFailed"
    retryable = True


# ---------------------------------------------------------------------------
# Sandbox layer
# ---------------------------------------------------------------------------


class SandboxError(PipelineError):
    """Sandbox failure carrying the log accumulated up to the failure."""

    error_class = "SandboxError"

    def __init__(
        self,
        message: str,
        *,
        logs: list[LogRecord] | None = None,
        changed_files: list[str] | None = None,
        artifact_id: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message, artifact_id=artifact_id, stage=stage)
        self.logs = list(logs or [])
        self.changed_files = list(changed_files or [])


class PrerequisitesNotMetError(SandboxError):
    error_class = "PrerequisitesNotMet"

    def __init__(self, missing: list[str], **kwargs: Any) -> None:
        super().__init__("prerequisites not met: " + "; ".join(missing), **kwargs)
        self.missing = list(missing)


class SandboxTimeoutError(SandboxError):
    error_class = "Timeout"
    retryable = True


class ResourceLimitExceededError(SandboxError):
    error_class = "ResourceLimitExceeded"


class NonZeroExitError(SandboxError):
    error_class = "NonZeroExit"

    def __init__(self, message: str, *, exit_code: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.exit_code = exit_code


class SetupFailureError(SandboxError):
    error_class = "SetupFailure"

    def __init__(self, message: str, *, transient: bool = False, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.transient = transient

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient


class SandboxCancelledError(SandboxError):
    error_class = "Cancelled"
