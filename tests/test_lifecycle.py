from __future__ import annotations

import threading
from pathlib import Path

import pytest

from aisdlc.canonical import fingerprint
from aisdlc.content import FileContentStore, InMemoryContentStore
from aisdlc.errors import (
    IllegalTransitionError,
    InvalidLineageError,
    InvariantViolationError,
    NotFoundError,
    TypeMismatchError,
)
from aisdlc.lifecycle import LifecycleManager
from aisdlc.models import (
    ArtifactType,
    ChildrenLinked,
    EventKind,
    ImplementationStarted,
    Resubmitted,
    ValidationVerdict,
)
from aisdlc.registry import InMemoryRegistryStore, JsonFileRegistryStore
from conftest import SequentialIds


def _chunk(lifecycle: LifecycleManager) -> str:
    idea_id = lifecycle.register(ArtifactType.IDEA, "# Idea\n")
    prd_id = lifecycle.register(ArtifactType.PRD, "# PRD\n", idea_id)
    chunk_id = lifecycle.register(ArtifactType.CHUNK, "# Chunk\n", prd_id)
    lifecycle.link_children(idea_id, [prd_id])
    lifecycle.link_children(prd_id, [chunk_id])
    return chunk_id


def _story(lifecycle: LifecycleManager) -> str:
    chunk_id = _chunk(lifecycle)
    lifecycle.transition(chunk_id, ValidationVerdict(passed=True))
    story_id = lifecycle.register(ArtifactType.STORY, "# Story\n", chunk_id, title="Story")
    lifecycle.link_children(chunk_id, [story_id])
    return story_id


def test_register_sets_initial_status_and_content(lifecycle: LifecycleManager) -> None:
    idea_id = lifecycle.register(ArtifactType.IDEA, "# Todo app\n", title="Todo app")
    record = lifecycle.get(idea_id)
    assert idea_id == "idea-1"
    assert record.status_value == "new"
    assert record.content_ref == "content/idea-1.md"
    assert lifecycle.read_content(idea_id) == "# Todo app\n"
    assert len(record.metadata.get("content_sha256")) == 64


def test_register_rejects_bad_lineage_without_partial_writes(lifecycle: LifecycleManager) -> None:
    with pytest.raises(InvalidLineageError):
        lifecycle.register(ArtifactType.PRD, "# PRD\n", "idea-404")
    with pytest.raises(InvalidLineageError):
        lifecycle.register(ArtifactType.PRD, "# PRD\n")
    idea_id = lifecycle.register(ArtifactType.IDEA, "# Idea\n")
    with pytest.raises(InvalidLineageError):
        lifecycle.register(ArtifactType.CHUNK, "# Chunk\n", idea_id)
    with pytest.raises(InvalidLineageError):
        lifecycle.register(ArtifactType.IDEA, "# Idea\n", idea_id)
    assert [record.id for record in lifecycle.list()] == [idea_id]
    assert lifecycle.get(idea_id).children_ids == []


def test_duplicate_id_is_an_invariant_violation() -> None:
    content = InMemoryContentStore()
    lifecycle = LifecycleManager(InMemoryRegistryStore(), content, id_factory=lambda _t: "idea-fixed")
    lifecycle.register(ArtifactType.IDEA, "first")
    with pytest.raises(InvariantViolationError):
        lifecycle.register(ArtifactType.IDEA, "second")
    assert lifecycle.read_content("idea-fixed") == "first"


def test_get_typed_and_missing_ids(lifecycle: LifecycleManager) -> None:
    idea_id = lifecycle.register(ArtifactType.IDEA, "# Idea\n")
    with pytest.raises(TypeMismatchError) as excinfo:
        lifecycle.get_typed(idea_id, ArtifactType.PRD, stage="chunk")
    assert excinfo.value.stage == "chunk"
    with pytest.raises(NotFoundError):
        lifecycle.get("story-404")
    with pytest.raises(NotFoundError):
        lifecycle.transition("story-404", ImplementationStarted())


def test_illegal_transition_leaves_record_unchanged(lifecycle: LifecycleManager) -> None:
    chunk_id = _chunk(lifecycle)
    before = lifecycle.get(chunk_id)
    with pytest.raises(IllegalTransitionError) as excinfo:
        lifecycle.transition(chunk_id, Resubmitted())
    assert excinfo.value.current_status == "backlog"
    assert excinfo.value.event == EventKind.RESUBMITTED.value
    assert fingerprint(lifecycle.get(chunk_id)) == fingerprint(before)


def test_validation_loop_can_repeat(lifecycle: LifecycleManager) -> None:
    chunk_id = _chunk(lifecycle)
    for _ in range(3):
        assert lifecycle.transition(chunk_id, ValidationVerdict(passed=False)).status_value == "needs_revision"
        assert lifecycle.transition(chunk_id, Resubmitted()).status_value == "backlog"
    validated = lifecycle.transition(chunk_id, ValidationVerdict(passed=True, validation_id="validation-9"))
    assert validated.status_value == "validated"
    assert validated.metadata.get("validation_ids") == ["validation-9"]
    with pytest.raises(IllegalTransitionError):
        lifecycle.transition(chunk_id, ValidationVerdict(passed=True))


def test_side_artifacts_attach_without_advancing_parent(lifecycle: LifecycleManager) -> None:
    chunk_id = _chunk(lifecycle)
    validation_id = lifecycle.register(
        ArtifactType.VALIDATION, "# Report\n", chunk_id, passed=True, persona="security"
    )
    chunk = lifecycle.get(chunk_id)
    assert chunk.children_ids == [validation_id]
    assert chunk.status_value == "backlog"
    assert lifecycle.get(validation_id).status_value == "completed"


def test_link_children_advances_parent_once(lifecycle: LifecycleManager) -> None:
    idea_id = lifecycle.register(ArtifactType.IDEA, "# Idea\n")
    prd_id = lifecycle.register(ArtifactType.PRD, "# PRD\n", idea_id)
    linked = lifecycle.transition(idea_id, ChildrenLinked(child_ids=(prd_id,)))
    assert linked.status_value == "prd_generated"
    assert linked.children_ids == [prd_id]
    second = lifecycle.register(ArtifactType.PRD, "# PRD 2\n", idea_id)
    with pytest.raises(IllegalTransitionError):
        lifecycle.link_children(idea_id, [second])
    # The unlinked second PRD is rolled back.
    with pytest.raises(NotFoundError):
        lifecycle.get(second)


def test_failed_link_rolls_back_orphans_and_keeps_parent(lifecycle: LifecycleManager) -> None:
    idea_id = lifecycle.register(ArtifactType.IDEA, "# Idea\n")
    prd_id = lifecycle.register(ArtifactType.PRD, "# PRD\n", idea_id)
    lifecycle.link_children(idea_id, [prd_id])
    first = lifecycle.register(ArtifactType.CHUNK, "# One\n", prd_id)
    before = lifecycle.get(prd_id)
    with pytest.raises(NotFoundError):
        lifecycle.link_children(prd_id, [first, "chunk-404"])
    assert fingerprint(lifecycle.get(prd_id)) == fingerprint(before)
    with pytest.raises(NotFoundError):
        lifecycle.get(first)
    with pytest.raises(NotFoundError):
        lifecycle.content.read("content/chunk-1.md")


def test_link_children_rejects_foreign_children(lifecycle: LifecycleManager) -> None:
    idea_a = lifecycle.register(ArtifactType.IDEA, "# A\n")
    idea_b = lifecycle.register(ArtifactType.IDEA, "# B\n")
    prd_b = lifecycle.register(ArtifactType.PRD, "# PRD B\n", idea_b)
    with pytest.raises(InvalidLineageError):
        lifecycle.link_children(idea_a, [prd_b], rollback_orphans=False)
    assert lifecycle.get(idea_a).status_value == "new"
    assert lifecycle.get(prd_b).parent_id == idea_b


def test_concurrent_verdicts_apply_exactly_once(lifecycle: LifecycleManager) -> None:
    chunk_id = _chunk(lifecycle)
    barrier = threading.Barrier(8)
    outcomes: list[str] = []
    guard = threading.Lock()

    def worker() -> None:
        barrier.wait()
        try:
            lifecycle.transition(chunk_id, ValidationVerdict(passed=True))
            result = "ok"
        except IllegalTransitionError:
            result = "rejected"
        with guard:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert outcomes.count("ok") == 1
    assert outcomes.count("rejected") == 7
    assert lifecycle.get(chunk_id).status_value == "validated"


def test_two_managers_sharing_a_state_root_do_not_lose_updates(tmp_path: Path) -> None:
    root = tmp_path / "state"
    first = LifecycleManager(JsonFileRegistryStore(root), FileContentStore(root), id_factory=SequentialIds())
    second = LifecycleManager(JsonFileRegistryStore(root), FileContentStore(root))
    idea_id = first.register(ArtifactType.IDEA, "# Idea\n")
    prd_id = first.register(ArtifactType.PRD, "# PRD\n", idea_id)
    second.link_children(idea_id, [prd_id])
    with pytest.raises(IllegalTransitionError):
        first.link_children(idea_id, [prd_id], rollback_orphans=False)
    assert first.get(idea_id).children_ids == [prd_id]


def test_annotate_keeps_status(lifecycle: LifecycleManager) -> None:
    idea_id = lifecycle.register(ArtifactType.IDEA, "# Idea\n")
    updated = lifecycle.annotate(idea_id, last_failure={"error_class": "GenerationFailed"})
    assert updated.status_value == "new"
    assert updated.metadata.get("last_failure") == {"error_class": "GenerationFailed"}


def test_transition_merges_extra_metadata_in_one_commit(lifecycle: LifecycleManager) -> None:
    story_id = _story(lifecycle)
    started = lifecycle.transition(story_id, ImplementationStarted(), metadata={"sandbox_attempts": 2})
    assert started.status_value == "in_progress"
    assert started.metadata.get("sandbox_attempts") == 2
    assert started.metadata.get("assigned_agent_type") == "BuilderAgent"


def test_forced_requeue_recovers_stale_in_progress_story(lifecycle: LifecycleManager) -> None:
    story_id = _story(lifecycle)
    lifecycle.transition(story_id, ImplementationStarted())

    with pytest.raises(IllegalTransitionError):
        lifecycle.requeue(story_id)
    assert lifecycle.get(story_id).status_value == "in_progress"

    ready = lifecycle.requeue(story_id, "runner died", force=True)
    assert ready.status_value == "ready"
    assert ready.metadata.get("cancelled") is True
    assert ready.metadata.get("abandon_reason") == "runner died"


def test_abandon_marks_story_cancelled(lifecycle: LifecycleManager) -> None:
    story_id = _story(lifecycle)
    with pytest.raises(IllegalTransitionError):
        lifecycle.abandon(story_id, "never started")
    lifecycle.transition(story_id, ImplementationStarted())
    cancelled = lifecycle.abandon(story_id, "registry write failed")
    assert cancelled.status_value == "cancelled"
    assert cancelled.metadata.get("cancelled") is True
