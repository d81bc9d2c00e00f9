"""Pipeline Orchestrator.

Each stage call loads one artifact, checks its type and the lifecycle edge the
stage needs, invokes the collaborator (generation, validation or sandbox),
and applies the resulting transition through the Lifecycle Manager.
Registry and lifecycle errors propagate to the caller; collaborator failures
are returned as unsuccessful :class:`StageOutcome` values and recorded in the
artifact's metadata.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph
from pydantic import ValidationError

from .errors import (
    GenerationFailedError,
    IllegalTransitionError,
    InvariantViolationError,
    PipelineError,
    PrerequisitesNotMetError,
    SandboxError,
)
from .lifecycle import LifecycleManager
from .models import (
    ArtifactRecord,
    ArtifactType,
    ChunkStatus,
    EventKind,
    IdeaStatus,
    ImplementationStarted,
    LogRecord,
    PrdStatus,
    ResourceBudget,
    Resubmitted,
    SandboxErrorKind,
    SandboxFailure,
    SandboxResult,
    SandboxTask,
    StageName,
    StoryStatus,
    ValidationVerdict,
    STAGE_INPUT_TYPE,
    utc_now,
)
from .parsers import extract_file_scope, extract_story_points, extract_title, split_documents
from .sandbox import SandboxEngine
from .services import GenerationService, ValidationService, implementation_instruction
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

# Statuses meaning the artifact has already gone through the stage.
_PAST_STAGE: dict[StageName, frozenset[str]] = {
    StageName.PRD: frozenset({IdeaStatus.PRD_GENERATED.value}),
    StageName.CHUNK: frozenset({PrdStatus.CHUNKED.value}),
    StageName.VALIDATE: frozenset({ChunkStatus.VALIDATED.value, ChunkStatus.STORIFIED.value}),
    StageName.STORY: frozenset({ChunkStatus.STORIFIED.value}),
    StageName.IMPLEMENT: frozenset({StoryStatus.REVIEW_PENDING.value}),
}


@dataclass(frozen=True)
class StageOutcome:
    stage: StageName
    artifact_id: str
    ok: bool
    record: ArtifactRecord | None = None
    children: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    error: PipelineError | None = None
    skipped: bool = False
    passed: bool | None = None
    sandbox_result: SandboxResult | None = None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class Orchestrator:
    """Drives one artifact through one stage per call."""

    def __init__(
        self,
        lifecycle: LifecycleManager,
        generator: GenerationService,
        validator: ValidationService,
        sandbox: SandboxEngine,
        *,
        settings: RuntimeSettings | None = None,
        working_dir: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.lifecycle = lifecycle
        self.generator = generator
        self.validator = validator
        self.sandbox = sandbox
        self.settings = settings if settings is not None else RuntimeSettings()
        self.working_dir = working_dir if working_dir is not None else Path.cwd()
        self.sleep = sleep
        self._active_stories: set[str] = set()
        self._active_lock = threading.Lock()

    # -- helpers -------------------------------------------------------------

    def _load(self, stage: StageName, artifact_id: str) -> ArtifactRecord:
        return self.lifecycle.get_typed(artifact_id, STAGE_INPUT_TYPE[stage], stage=stage.value)

    def _skip(self, stage: StageName, record: ArtifactRecord) -> StageOutcome | None:
        if record.status_value not in _PAST_STAGE[stage]:
            return None
        message = (
            f"{record.id} is already {record.status_value}; stage '{stage.value}' was not re-run"
        )
        logger.warning(message)
        return StageOutcome(
            stage=stage,
            artifact_id=record.id,
            ok=True,
            record=record,
            children=tuple(record.children_ids),
            warnings=(message,),
            skipped=True,
        )

    def _fail(self, stage: StageName, artifact_id: str, error: PipelineError, **extra: Any) -> StageOutcome:
        error.artifact_id = error.artifact_id or artifact_id
        error.stage = error.stage or stage.value
        failure = {
            "stage": stage.value,
            "error_class": error.error_class,
            "message": error.message,
            "at": utc_now().isoformat(),
        }
        record = self.lifecycle.annotate(artifact_id, last_failure=failure)
        logger.error("Stage failed: %s", error.describe())
        return StageOutcome(stage=stage, artifact_id=artifact_id, ok=False, record=record, error=error, **extra)

    def _generate(self, stage: StageName, record: ArtifactRecord) -> str | GenerationFailedError:
        context = {
            "artifact_id": record.id,
            "title": getattr(record, "title", ""),
            "max_chunks": self.settings.max_chunks,
        }
        try:
            output = self.generator.generate(stage, self.lifecycle.read_content(record.id), context)
        except PipelineError:
            raise
        except Exception as exc:  # noqa: BLE001 - collaborator failures become stage failures.
            logger.exception("Generation for %s raised", record.id)
            return GenerationFailedError(f"generation raised {type(exc).__name__}: {exc}")
        if not output.ok:
            return GenerationFailedError("generation service reported failure")
        return output.text

    def _register_children(
        self, parent_id: str, artifact_type: ArtifactType, entries: list[tuple[str, dict[str, Any]]]
    ) -> list[str]:
        """Register children then link them; a failure part-way removes what was registered."""
        child_ids: list[str] = []
        try:
            for content, fields in entries:
                child_ids.append(self.lifecycle.register(artifact_type, content, parent_id, **fields))
        except Exception:
            self.lifecycle.discard_orphans(parent_id, child_ids)
            raise
        self.lifecycle.link_children(parent_id, child_ids)
        return child_ids

    # -- stages --------------------------------------------------------------

    def submit_idea(self, text: str, *, priority: str = "medium") -> str:
        if not text.strip():
            raise InvariantViolationError("idea text is empty")
        first_line = text.strip().splitlines()[0].lstrip("# ").strip()
        return self.lifecycle.register(
            ArtifactType.IDEA,
            text,
            title=extract_title(text, default=first_line[:80]),
            metadata={"priority": priority},
        )

    def generate_prd(self, idea_id: str) -> StageOutcome:
        stage = StageName.PRD
        idea = self._load(stage, idea_id)
        skipped = self._skip(stage, idea)
        if skipped is not None:
            return skipped
        self.lifecycle.require_edge(idea_id, EventKind.CHILDREN_LINKED, stage=stage.value)

        generated = self._generate(stage, idea)
        if isinstance(generated, PipelineError):
            return self._fail(stage, idea_id, generated)
        fields = {
            "title": extract_title(generated, default="Untitled PRD"),
            "metadata": {"owner_agent_type": "ProductOwnerAgent", "priority": idea.metadata.priority},
        }
        children = self._register_children(idea_id, ArtifactType.PRD, [(generated, fields)])
        return StageOutcome(
            stage=stage, artifact_id=idea_id, ok=True, record=self.lifecycle.get(idea_id), children=tuple(children)
        )

    def chunk(self, prd_id: str) -> StageOutcome:
        stage = StageName.CHUNK
        prd = self._load(stage, prd_id)
        skipped = self._skip(stage, prd)
        if skipped is not None:
            return skipped
        self.lifecycle.require_edge(prd_id, EventKind.CHILDREN_LINKED, stage=stage.value)

        generated = self._generate(stage, prd)
        if isinstance(generated, PipelineError):
            return self._fail(stage, prd_id, generated)
        documents = split_documents(generated)[: self.settings.max_chunks]
        if not documents:
            return self._fail(stage, prd_id, GenerationFailedError("chunking produced no chunks"))
        entries = [
            (
                document,
                {
                    "title": extract_title(document, default=f"Chunk {number}"),
                    "chunk_number": number,
                    "total_chunks": len(documents),
                    "metadata": {"owner_agent_type": "PlannerAgent", "priority": prd.metadata.priority},
                },
            )
            for number, document in enumerate(documents, start=1)
        ]
        children = self._register_children(prd_id, ArtifactType.CHUNK, entries)
        return StageOutcome(
            stage=stage, artifact_id=prd_id, ok=True, record=self.lifecycle.get(prd_id), children=tuple(children)
        )

    def validate(self, chunk_id: str, *, persona: str | None = None) -> StageOutcome:
        """Run the critic on a chunk. A failed verdict is a successful stage with ``passed=False``."""
        stage = StageName.VALIDATE
        persona = persona or self.settings.default_persona
        chunk = self._load(stage, chunk_id)
        skipped = self._skip(stage, chunk)
        if skipped is not None:
            return skipped
        if chunk.status_value == ChunkStatus.NEEDS_REVISION.value:
            logger.info("Resubmitting %s for validation", chunk_id)
            chunk = self.lifecycle.transition(chunk_id, Resubmitted())
        self.lifecycle.require_edge(chunk_id, EventKind.VALIDATION_PASSED, stage=stage.value)

        content = self.lifecycle.read_content(chunk_id)
        try:
            verdict = self.validator.validate(content, persona)
        except PipelineError:
            raise
        except Exception as exc:  # noqa: BLE001 - collaborator failures become stage failures.
            logger.exception("Validation of %s raised", chunk_id)
            return self._fail(stage, chunk_id, GenerationFailedError(f"validation raised {type(exc).__name__}: {exc}"))

        result_word = "PASSED" if verdict.passed else "FAILED"
        report = (
            f"# Validation Report: {getattr(chunk, 'title', '') or chunk_id}\n\n"
            f"**Artifact:** {chunk_id}\n**Persona:** {persona}\n**Result:** {result_word}\n\n"
            f"{verdict.report.strip()}\n"
        )
        validation_id = self.lifecycle.register(
            ArtifactType.VALIDATION,
            report,
            chunk_id,
            passed=verdict.passed,
            persona=persona,
            metadata={"owner_agent_type": "CriticAgent"},
        )
        record = self.lifecycle.transition(
            chunk_id, ValidationVerdict(passed=verdict.passed, validation_id=validation_id, persona=persona)
        )
        return StageOutcome(
            stage=stage,
            artifact_id=chunk_id,
            ok=True,
            record=record,
            children=(validation_id,),
            passed=verdict.passed,
        )

    def generate_stories(self, chunk_id: str) -> StageOutcome:
        stage = StageName.STORY
        chunk = self._load(stage, chunk_id)
        skipped = self._skip(stage, chunk)
        if skipped is not None:
            return skipped
        self.lifecycle.require_edge(chunk_id, EventKind.CHILDREN_LINKED, stage=stage.value)

        generated = self._generate(stage, chunk)
        if isinstance(generated, PipelineError):
            return self._fail(stage, chunk_id, generated)
        documents = split_documents(generated)
        if not documents:
            return self._fail(stage, chunk_id, GenerationFailedError("story generation produced no stories"))
        entries = []
        for number, document in enumerate(documents, start=1):
            scope = extract_file_scope(document)
            entries.append(
                (
                    document,
                    {
                        "title": extract_title(document, default=f"Story {number}"),
                        "story_points": extract_story_points(document),
                        "story_number": number,
                        "writeable_files": scope.writeable,
                        "read_only_files": scope.read_only,
                        "metadata": {"owner_agent_type": "PlannerAgent", "priority": chunk.metadata.priority},
                    },
                )
            )
        children = self._register_children(chunk_id, ArtifactType.STORY, entries)
        return StageOutcome(
            stage=stage, artifact_id=chunk_id, ok=True, record=self.lifecycle.get(chunk_id), children=tuple(children)
        )

    def build_task(
        self,
        story: ArtifactRecord,
        *,
        instruction: str | None = None,
        writeable: list[str] | None = None,
        read_only: list[str] | None = None,
        timeout_seconds: float | None = None,
        model: str | None = None,
    ) -> SandboxTask:
        writeable_files = list(writeable) if writeable else list(getattr(story, "writeable_files", []))
        read_only_files = list(read_only) if read_only is not None else list(getattr(story, "read_only_files", []))
        read_only_files = [name for name in read_only_files if name not in writeable_files]
        if not writeable_files:
            raise InvariantViolationError(
                "story declares no writeable files; pass them explicitly",
                artifact_id=story.id,
                stage=StageName.IMPLEMENT.value,
            )
        if instruction is None:
            instruction = implementation_instruction(
                getattr(story, "title", story.id),
                self.lifecycle.read_content(story.id),
                writeable_files,
                read_only_files,
            )
        try:
            return SandboxTask(
                model=model or self.settings.agent_model,
                editor_model=self.settings.editor_model or None,
                instruction=instruction,
                working_dir=self.working_dir,
                writeable_files=writeable_files,
                read_only_files=read_only_files,
                budget=ResourceBudget(
                    memory_mb=self.settings.sandbox_memory_mb,
                    cpu_shares=self.settings.sandbox_cpu_shares,
                    timeout_seconds=timeout_seconds or self.settings.sandbox_timeout_seconds,
                ),
                env_allowlist=self.settings.credential_names,
            )
        except ValidationError as exc:
            raise InvariantViolationError(
                f"invalid sandbox task: {exc}", artifact_id=story.id, stage=StageName.IMPLEMENT.value
            ) from exc

    def implement(
        self,
        story_id: str,
        *,
        instruction: str | None = None,
        writeable: list[str] | None = None,
        read_only: list[str] | None = None,
        timeout_seconds: float | None = None,
        model: str | None = None,
        cancel_event: threading.Event | None = None,
        on_log: Callable[[LogRecord], None] | None = None,
    ) -> StageOutcome:
        """Run the coding agent for a story in the sandbox.

        A second attempt on a story that is already being implemented is
        rejected before any sandbox resource is allocated. Missing
        prerequisites are raised before the story leaves ``ready``.
        """
        stage = StageName.IMPLEMENT
        story = self._load(stage, story_id)
        skipped = self._skip(stage, story)
        if skipped is not None:
            return skipped

        with self._active_lock:
            if story_id in self._active_stories:
                raise IllegalTransitionError(
                    "an implementation attempt for this story is already running",
                    artifact_id=story_id,
                    stage=stage.value,
                    current_status=StoryStatus.IN_PROGRESS.value,
                    event=EventKind.IMPLEMENTATION_STARTED.value,
                )
            self._active_stories.add(story_id)
        try:
            return self._implement(
                story_id,
                instruction=instruction,
                writeable=writeable,
                read_only=read_only,
                timeout_seconds=timeout_seconds,
                model=model,
                cancel_event=cancel_event,
                on_log=on_log,
            )
        finally:
            with self._active_lock:
                self._active_stories.discard(story_id)

    def _implement(
        self,
        story_id: str,
        *,
        instruction: str | None,
        writeable: list[str] | None,
        read_only: list[str] | None,
        timeout_seconds: float | None,
        model: str | None,
        cancel_event: threading.Event | None,
        on_log: Callable[[LogRecord], None] | None,
    ) -> StageOutcome:
        stage = StageName.IMPLEMENT
        story = self.lifecycle.require_edge(story_id, EventKind.IMPLEMENTATION_STARTED, stage=stage.value)
        task = self.build_task(
            story,
            instruction=instruction,
            writeable=writeable,
            read_only=read_only,
            timeout_seconds=timeout_seconds,
            model=model,
        )
        missing = self.sandbox.preflight(task)
        if missing:
            raise PrerequisitesNotMetError(missing, artifact_id=story_id, stage=stage.value)

        self.lifecycle.transition(story_id, ImplementationStarted())
        try:
            try:
                result, attempts = self._run_sandbox(story_id, task, cancel_event=cancel_event, on_log=on_log)
            except Exception as exc:  # noqa: BLE001 - reported as a setup failure on the story.
                logger.exception("Sandbox run for %s raised", story_id)
                result = SandboxResult(
                    run_id="unavailable",
                    success=False,
                    error=SandboxFailure(kind=SandboxErrorKind.SETUP_FAILURE, message=f"sandbox raised: {exc}"),
                )
                attempts = 1
            record = self.lifecycle.transition(story_id, result, metadata={"sandbox_attempts": attempts})
        except BaseException as exc:
            self._abandon(story_id, exc)
            raise

        if result.success:
            summary = (
                f"# Implementation of {getattr(record, 'title', '') or story_id}\n\n"
                f"**Story:** {story_id}\n**Sandbox run:** {result.run_id}\n\n## Files Changed\n"
                + "".join(f"- {name}\n" for name in result.changed_files)
            )
            completed_id = self.lifecycle.register(
                ArtifactType.COMPLETED,
                summary,
                story_id,
                files_changed=result.changed_files,
                metadata={"owner_agent_type": "BuilderAgent", "sandbox_run_id": result.run_id},
            )
            logger.info("Story %s implemented; changed files: %s", story_id, result.changed_files)
            return StageOutcome(
                stage=stage,
                artifact_id=story_id,
                ok=True,
                record=self.lifecycle.get(story_id),
                children=(completed_id,),
                sandbox_result=result,
            )

        error: PipelineError = SandboxError("sandbox run failed", artifact_id=story_id, stage=stage.value)
        try:
            result.raise_for_error()
        except SandboxError as exc:
            exc.artifact_id = story_id
            exc.stage = stage.value
            error = exc
        logger.error("Stage failed: %s (changed files: %s)", error.describe(), result.changed_files)
        return StageOutcome(
            stage=stage, artifact_id=story_id, ok=False, record=record, error=error, sandbox_result=result
        )

    def _run_sandbox(
        self,
        story_id: str,
        task: SandboxTask,
        *,
        cancel_event: threading.Event | None,
        on_log: Callable[[LogRecord], None] | None,
    ) -> tuple[SandboxResult, int]:
        attempts = 1 + self.settings.sandbox_max_retries
        attempt = 0
        while True:
            attempt += 1
            result = self.sandbox.run(task, cancel_event=cancel_event, on_log=on_log)
            if result.success or result.error is None or not result.error.retryable:
                return result, attempt
            if attempt >= attempts or (cancel_event is not None and cancel_event.is_set()):
                return result, attempt
            delay = self.settings.retry_backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "Sandbox run %s for %s failed with %s (attempt %d/%d); retrying in %.1fs",
                result.run_id,
                story_id,
                result.error.error_class,
                attempt,
                attempts,
                delay,
            )
            self.sleep(delay)

    def _abandon(self, story_id: str, exc: BaseException) -> None:
        reason = f"implementation interrupted: {exc.__class__.__name__}: {exc}"
        try:
            self.lifecycle.abandon(story_id, reason)
        except Exception:  # noqa: BLE001 - the original error is re-raised by the caller.
            logger.exception("Could not mark %s cancelled; recover it with `requeue --force`", story_id)

    def requeue(self, story_id: str, reason: str = "requeued by operator", *, force: bool = False) -> ArtifactRecord:
        """Return a story to ``ready``.

        *force* also recovers a story stuck in ``in_progress`` after its
        process died, as long as no attempt is running in this orchestrator.
        """
        if not force:
            return self.lifecycle.requeue(story_id, reason)
        with self._active_lock:
            if story_id in self._active_stories:
                raise IllegalTransitionError(
                    "an implementation attempt for this story is still running",
                    artifact_id=story_id,
                    stage=StageName.IMPLEMENT.value,
                    current_status=StoryStatus.IN_PROGRESS.value,
                    event=EventKind.REQUEUED.value,
                )
            return self.lifecycle.requeue(story_id, reason, force=True)

    def run_pipeline(
        self, idea_id: str, *, implement: bool = False, persona: str | None = None
    ) -> "PipelineReport":
        return PipelineGraph(self).run(idea_id, implement=implement, persona=persona)


# ---------------------------------------------------------------------------
# Full idea -> code run
# ---------------------------------------------------------------------------


class PipelineGraphState(TypedDict, total=False):
    idea_id: str
    persona: str | None
    implement: bool
    prd_id: str | None
    chunk_ids: list[str]
    validated_chunk_ids: list[str]
    story_ids: list[str]
    outcomes: list[StageOutcome]
    halted: bool


@dataclass
class PipelineReport:
    idea_id: str
    outcomes: list[StageOutcome] = field(default_factory=list)
    halted: bool = False

    @property
    def ok(self) -> bool:
        return not self.halted and all(outcome.ok for outcome in self.outcomes)

    @property
    def failures(self) -> list[StageOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]


class PipelineGraph:
    """LangGraph run of every stage for one idea, halting at the first failed stage."""

    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineGraphState)
        graph.add_node("prd", self._prd_node)
        graph.add_node("chunk", self._chunk_node)
        graph.add_node("validate", self._validate_node)
        graph.add_node("stories", self._stories_node)
        graph.add_node("implement", self._implement_node)

        graph.add_edge(START, "prd")
        graph.add_conditional_edges("prd", self._continue_route, {"next": "chunk", "end": END})
        graph.add_conditional_edges("chunk", self._continue_route, {"next": "validate", "end": END})
        graph.add_conditional_edges("validate", self._continue_route, {"next": "stories", "end": END})
        graph.add_conditional_edges("stories", self._implement_route, {"implement": "implement", "end": END})
        graph.add_edge("implement", END)
        return graph

    def _call(self, stage: StageName, artifact_id: str, call: Callable[[], StageOutcome]) -> StageOutcome:
        try:
            return call()
        except PipelineError as exc:
            exc.artifact_id = exc.artifact_id or artifact_id
            exc.stage = exc.stage or stage.value
            logger.error("Stage failed: %s", exc.describe())
            return StageOutcome(stage=stage, artifact_id=artifact_id, ok=False, error=exc)

    def _children_of_type(self, artifact_id: str, artifact_type: ArtifactType) -> list[str]:
        return [child.id for child in self.orchestrator.lifecycle.children(artifact_id) if child.artifact_type == artifact_type]

    def _prd_node(self, state: PipelineGraphState) -> dict[str, Any]:
        idea_id = state["idea_id"]
        outcome = self._call(StageName.PRD, idea_id, lambda: self.orchestrator.generate_prd(idea_id))
        prd_ids = self._children_of_type(idea_id, ArtifactType.PRD) if outcome.ok else []
        return {
            "outcomes": [*state.get("outcomes", []), outcome],
            "prd_id": prd_ids[0] if prd_ids else None,
            "halted": not prd_ids,
        }

    def _chunk_node(self, state: PipelineGraphState) -> dict[str, Any]:
        prd_id = state.get("prd_id")
        if prd_id is None:
            return {"halted": True}
        outcome = self._call(StageName.CHUNK, prd_id, lambda: self.orchestrator.chunk(prd_id))
        chunk_ids = self._children_of_type(prd_id, ArtifactType.CHUNK) if outcome.ok else []
        return {
            "outcomes": [*state.get("outcomes", []), outcome],
            "chunk_ids": chunk_ids,
            "halted": not chunk_ids,
        }

    def _validate_node(self, state: PipelineGraphState) -> dict[str, Any]:
        outcomes = list(state.get("outcomes", []))
        validated: list[str] = []
        for chunk_id in state.get("chunk_ids", []):
            outcome = self._call(
                StageName.VALIDATE,
                chunk_id,
                lambda chunk_id=chunk_id: self.orchestrator.validate(chunk_id, persona=state.get("persona")),
            )
            outcomes.append(outcome)
            status = self.orchestrator.lifecycle.get(chunk_id).status_value
            if status in (ChunkStatus.VALIDATED.value, ChunkStatus.STORIFIED.value):
                validated.append(chunk_id)
        return {"outcomes": outcomes, "validated_chunk_ids": validated, "halted": not validated}

    def _stories_node(self, state: PipelineGraphState) -> dict[str, Any]:
        outcomes = list(state.get("outcomes", []))
        story_ids: list[str] = []
        for chunk_id in state.get("validated_chunk_ids", []):
            outcome = self._call(
                StageName.STORY, chunk_id, lambda chunk_id=chunk_id: self.orchestrator.generate_stories(chunk_id)
            )
            outcomes.append(outcome)
            if outcome.ok:
                story_ids += self._children_of_type(chunk_id, ArtifactType.STORY)
        return {"outcomes": outcomes, "story_ids": story_ids, "halted": not story_ids}

    def _implement_node(self, state: PipelineGraphState) -> dict[str, Any]:
        outcomes = list(state.get("outcomes", []))
        for story_id in state.get("story_ids", []):
            if self.orchestrator.lifecycle.get(story_id).status_value != StoryStatus.READY.value:
                continue
            outcomes.append(
                self._call(
                    StageName.IMPLEMENT, story_id, lambda story_id=story_id: self.orchestrator.implement(story_id)
                )
            )
        return {"outcomes": outcomes}

    def _continue_route(self, state: PipelineGraphState) -> str:
        return "end" if state.get("halted") else "next"

    def _implement_route(self, state: PipelineGraphState) -> str:
        if state.get("halted") or not state.get("implement"):
            return "end"
        return "implement"

    def run(self, idea_id: str, *, implement: bool = False, persona: str | None = None) -> PipelineReport:
        initial_state: PipelineGraphState = {
            "idea_id": idea_id,
            "persona": persona,
            "implement": implement,
            "prd_id": None,
            "chunk_ids": [],
            "validated_chunk_ids": [],
            "story_ids": [],
            "outcomes": [],
            "halted": False,
        }
        result = self.graph.invoke(initial_state)
        return PipelineReport(
            idea_id=idea_id, outcomes=list(result.get("outcomes", [])), halted=bool(result.get("halted"))
        )
