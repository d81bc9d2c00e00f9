"""Artifact Lifecycle Manager: the sole writer of artifact records."""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator

from pydantic import ValidationError

from .canonical import text_digest
from .content import ContentStore
from .errors import (
    IllegalTransitionError,
    InvalidLineageError,
    InvariantViolationError,
    NotFoundError,
    TypeMismatchError,
)
from .models import (
    ARTIFACT_STATUS_TRANSITIONS,
    PARENT_TYPE,
    PIPELINE_CHILD_TYPE,
    RECORD_CLASSES,
    ArtifactMetadata,
    ArtifactRecord,
    ArtifactType,
    ChildrenLinked,
    EventKind,
    ImplementationAbandoned,
    Requeued,
    StoryStatus,
    TransitionEvent,
    ValidationVerdict,
    utc_now,
)
from .registry import RegistryStore, RegistryWrite

logger = logging.getLogger(__name__)

IdFactory = Callable[[ArtifactType], str]

# Side artifacts are attached to their parent on registration; they never
# advance the parent's status.
_SIDE_ARTIFACT_TYPES = frozenset({ArtifactType.VALIDATION, ArtifactType.COMPLETED})


def default_id_factory(artifact_type: ArtifactType) -> str:
    return f"{artifact_type.value}-{uuid.uuid4().hex[:8]}"


class _KeyedLocks:
    """One lock per artifact id; multi-id holds acquire in sorted order."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                lock.acquire()
                stack.callback(lock.release)
            yield


def _evolve(record: ArtifactRecord, **updates: Any) -> ArtifactRecord:
    """Rebuild *record* with *updates*, re-running model validation."""
    payload = record.model_dump()
    payload.update(updates)
    try:
        return type(record).model_validate(payload)
    except ValidationError as exc:
        raise InvariantViolationError(f"invalid update for {record.id}: {exc}", artifact_id=record.id) from exc


class LifecycleManager:
    """Gate and apply every status transition and lineage edge.

    Writes are serialized per artifact id in-process and committed to the
    registry with compare-and-swap, so concurrent writers in other processes
    sharing the same store are detected and retried rather than overwritten.
    Every failing call leaves the registry exactly as it was.
    """

    def __init__(
        self,
        registry: RegistryStore,
        content: ContentStore,
        *,
        id_factory: IdFactory = default_id_factory,
        clock: Callable[[], datetime] = utc_now,
        max_commit_attempts: int = 8,
    ) -> None:
        self.registry = registry
        self.content = content
        self.id_factory = id_factory
        self.clock = clock
        self.max_commit_attempts = max_commit_attempts
        self._locks = _KeyedLocks()

    # -- reads ---------------------------------------------------------------

    def get(self, artifact_id: str) -> ArtifactRecord:
        record = self.registry.get(artifact_id)
        if record is None:
            raise NotFoundError(f"artifact {artifact_id} not found", artifact_id=artifact_id)
        return record

    def get_typed(self, artifact_id: str, expected: ArtifactType, *, stage: str | None = None) -> ArtifactRecord:
        record = self.get(artifact_id)
        if record.artifact_type != expected:
            raise TypeMismatchError(
                f"expected a {expected.value} artifact, got {record.artifact_type.value}",
                artifact_id=artifact_id,
                stage=stage,
            )
        return record

    def read_content(self, artifact_id: str) -> str:
        record = self.get(artifact_id)
        if record.content_ref is None:
            return ""
        return self.content.read(record.content_ref)

    def list(self, artifact_type: ArtifactType | None = None) -> list[ArtifactRecord]:
        records = self.registry.list()
        if artifact_type is not None:
            records = [record for record in records if record.artifact_type == artifact_type]
        return sorted(records, key=lambda record: (record.metadata.created_at, record.id))

    def children(self, artifact_id: str) -> list[ArtifactRecord]:
        return [self.get(child_id) for child_id in self.get(artifact_id).children_ids]

    def next_status(self, record: ArtifactRecord, event_kind: EventKind) -> str | None:
        return ARTIFACT_STATUS_TRANSITIONS[record.artifact_type].get(record.status_value, {}).get(event_kind)

    def require_edge(self, artifact_id: str, event_kind: EventKind, *, stage: str | None = None) -> ArtifactRecord:
        """Return the record if *event_kind* is legal from its current status."""
        record = self.get(artifact_id)
        if self.next_status(record, event_kind) is None:
            raise IllegalTransitionError(
                f"no {event_kind.value} edge from {record.artifact_type.value} status {record.status_value}",
                artifact_id=artifact_id,
                stage=stage,
                current_status=record.status_value,
                event=event_kind.value,
            )
        return record

    # -- writes --------------------------------------------------------------

    def _commit(self, writes: list[RegistryWrite], *, artifact_id: str) -> None:
        if not self.registry.commit(writes):
            raise _StaleRead(artifact_id)

    def _retrying(self, artifact_id: str, attempt: Callable[[], ArtifactRecord]) -> ArtifactRecord:
        for number in range(1, self.max_commit_attempts + 1):
            try:
                return attempt()
            except _StaleRead:
                logger.debug("Stale read on %s (attempt %d), retrying", artifact_id, number)
        raise InvariantViolationError(
            f"could not commit update after {self.max_commit_attempts} attempts; registry under contention",
            artifact_id=artifact_id,
        )

    def register(
        self,
        artifact_type: ArtifactType,
        content: str,
        parent_id: str | None = None,
        *,
        metadata: dict[str, Any] | None = None,
        **fields: Any,
    ) -> str:
        """Create a record in its initial status and return its id.

        Raises:
            InvalidLineageError: If the parent is missing, of the wrong type,
                or given for an idea.
            InvariantViolationError: On a duplicate id or malformed fields.
        """
        artifact_type = ArtifactType(artifact_type)
        expected_parent = PARENT_TYPE[artifact_type]
        if expected_parent is None:
            if parent_id is not None:
                raise InvalidLineageError(f"{artifact_type.value} artifacts have no parent", artifact_id=parent_id)
        else:
            if parent_id is None:
                raise InvalidLineageError(f"{artifact_type.value} artifacts require a {expected_parent.value} parent")
            parent = self.registry.get(parent_id)
            if parent is None:
                raise InvalidLineageError(f"parent {parent_id} does not exist", artifact_id=parent_id)
            if parent.artifact_type != expected_parent:
                raise InvalidLineageError(
                    f"parent of a {artifact_type.value} must be a {expected_parent.value}, "
                    f"got {parent.artifact_type.value}",
                    artifact_id=parent_id,
                )

        artifact_id = self.id_factory(artifact_type)
        now = self.clock()
        meta = ArtifactMetadata.model_validate(
            {**(metadata or {}), "created_at": now, "updated_at": now, "content_sha256": text_digest(content)}
        )
        record_class = RECORD_CLASSES[artifact_type]
        try:
            record = record_class.model_validate(
                {**fields, "id": artifact_id, "parent_id": parent_id, "metadata": meta}
            )
        except ValidationError as exc:
            raise InvariantViolationError(f"invalid {artifact_type.value} record: {exc}", artifact_id=artifact_id) from exc

        content_ref = self.content.write(artifact_id, content)
        record = _evolve(record, content_ref=content_ref)
        try:
            if artifact_type in _SIDE_ARTIFACT_TYPES and parent_id is not None:
                self._register_attached(record, parent_id)
            elif not self.registry.commit([(None, record)]):
                raise InvariantViolationError(f"duplicate artifact id {artifact_id}", artifact_id=artifact_id)
        except BaseException:
            self.content.delete(content_ref)
            raise
        logger.info("Registered %s (parent=%s)", artifact_id, parent_id)
        return artifact_id

    def _register_attached(self, record: ArtifactRecord, parent_id: str) -> None:
        def attempt() -> ArtifactRecord:
            parent = self.get(parent_id)
            updated_parent = _evolve(
                parent,
                children_ids=[*parent.children_ids, record.id],
                metadata=parent.metadata.merged(updated_at=self.clock()),
            )
            if self.registry.get(record.id) is not None:
                raise InvariantViolationError(f"duplicate artifact id {record.id}", artifact_id=record.id)
            self._commit([(parent, updated_parent), (None, record)], artifact_id=parent_id)
            return updated_parent

        with self._locks.hold([parent_id, record.id]):
            self._retrying(parent_id, attempt)

    def transition(
        self, artifact_id: str, event: TransitionEvent, *, metadata: dict[str, Any] | None = None
    ) -> ArtifactRecord:
        """Apply the single legal edge for *event* and return the updated record.

        *metadata* is merged in the same commit as the status change.

        Raises:
            NotFoundError: If the artifact does not exist.
            IllegalTransitionError: If no edge matches the current status.
        """
        if isinstance(event, ChildrenLinked):
            return self.link_children(artifact_id, list(event.child_ids))

        def attempt() -> ArtifactRecord:
            current = self.require_edge(artifact_id, event.event_kind)
            new_status = self.next_status(current, event.event_kind)
            updates = {**(metadata or {}), **event.metadata_updates()}
            if isinstance(event, ValidationVerdict) and event.validation_id is not None:
                updates["validation_ids"] = [*current.metadata.get("validation_ids", []), event.validation_id]
            updates["updated_at"] = self.clock()
            updated = _evolve(current, status=new_status, metadata=current.metadata.merged(**updates))
            self._commit([(current, updated)], artifact_id=artifact_id)
            logger.info(
                "Transitioned %s: %s -> %s (%s)", artifact_id, current.status_value, new_status, event.event_kind.value
            )
            return updated

        with self._locks.hold([artifact_id]):
            return self._retrying(artifact_id, attempt)

    def link_children(self, parent_id: str, child_ids: list[str], *, rollback_orphans: bool = True) -> ArtifactRecord:
        """Link *child_ids* under *parent_id* and advance the parent, atomically.

        On failure the parent keeps its prior status, and children that were
        registered under it but never linked are removed when
        *rollback_orphans* is set.
        """
        with self._locks.hold([parent_id, *child_ids]):
            try:
                return self._retrying(parent_id, lambda: self._link_once(parent_id, child_ids))
            except Exception:
                if rollback_orphans:
                    self._discard_unlinked(parent_id, child_ids)
                raise

    def _link_once(self, parent_id: str, child_ids: list[str]) -> ArtifactRecord:
        parent = self.require_edge(parent_id, EventKind.CHILDREN_LINKED)
        if not child_ids:
            raise InvariantViolationError("link_children needs at least one child", artifact_id=parent_id)
        if len(set(child_ids)) != len(child_ids):
            raise InvariantViolationError(f"duplicate child ids: {child_ids}", artifact_id=parent_id)
        if parent_id in child_ids:
            raise InvariantViolationError("an artifact cannot be its own child", artifact_id=parent_id)
        already = sorted(set(child_ids) & set(parent.children_ids))
        if already:
            raise InvariantViolationError(f"children already linked: {already}", artifact_id=parent_id)

        child_type = PIPELINE_CHILD_TYPE[parent.artifact_type]
        writes: list[RegistryWrite] = []
        for child_id in child_ids:
            child = self.registry.get(child_id)
            if child is None:
                raise NotFoundError(f"child {child_id} not found", artifact_id=child_id)
            if child.artifact_type != child_type:
                raise InvalidLineageError(
                    f"children of a {parent.artifact_type.value} must be {child_type.value} artifacts, "
                    f"{child_id} is a {child.artifact_type.value}",
                    artifact_id=parent_id,
                )
            if child.parent_id != parent_id:
                raise InvalidLineageError(
                    f"{child_id} was registered under {child.parent_id}, not {parent_id}", artifact_id=parent_id
                )
            # Unchanged children still join the commit so a concurrent delete is detected.
            writes.append((child, child))

        new_status = self.next_status(parent, EventKind.CHILDREN_LINKED)
        updated = _evolve(
            parent,
            status=new_status,
            children_ids=[*parent.children_ids, *child_ids],
            metadata=parent.metadata.merged(updated_at=self.clock()),
        )
        self._commit([(parent, updated), *writes], artifact_id=parent_id)
        logger.info(
            "Linked %d child(ren) under %s: %s -> %s", len(child_ids), parent_id, parent.status_value, new_status
        )
        return updated

    def discard_orphans(self, parent_id: str, child_ids: list[str]) -> None:
        """Delete registered-but-unlinked children of *parent_id*."""
        with self._locks.hold([parent_id, *child_ids]):
            self._discard_unlinked(parent_id, child_ids)

    def _discard_unlinked(self, parent_id: str, child_ids: list[str]) -> None:
        parent = self.registry.get(parent_id)
        linked = set(parent.children_ids) if parent is not None else set()
        for child_id in child_ids:
            child = self.registry.get(child_id)
            if child is None or child_id in linked or child.parent_id != parent_id or child.children_ids:
                continue
            if self.registry.compare_and_swap(child, None):
                if child.content_ref is not None:
                    self.content.delete(child.content_ref)
                logger.warning("Rolled back orphaned artifact %s under %s", child_id, parent_id)

    def requeue(self, story_id: str, reason: str = "requeued by operator", *, force: bool = False) -> ArtifactRecord:
        """Return a blocked or cancelled story to ``ready``.

        With *force*, an ``in_progress`` story is first marked abandoned
        (``cancelled``). Callers must know that no run is still live for it.
        """
        story = self.get_typed(story_id, ArtifactType.STORY)
        if force and story.status_value == StoryStatus.IN_PROGRESS.value:
            logger.warning("Abandoning stale in_progress story %s: %s", story_id, reason)
            self.transition(story_id, ImplementationAbandoned(reason=reason))
        return self.transition(story_id, Requeued(reason=reason))

    def abandon(self, story_id: str, reason: str) -> ArtifactRecord:
        """Move an ``in_progress`` story to ``cancelled`` with an explicit marker."""
        self.get_typed(story_id, ArtifactType.STORY)
        return self.transition(story_id, ImplementationAbandoned(reason=reason))

    def annotate(self, artifact_id: str, **updates: Any) -> ArtifactRecord:
        """Merge *updates* into metadata without changing status."""

        def attempt() -> ArtifactRecord:
            current = self.get(artifact_id)
            updated = _evolve(current, metadata=current.metadata.merged(**updates, updated_at=self.clock()))
            self._commit([(current, updated)], artifact_id=artifact_id)
            return updated

        with self._locks.hold([artifact_id]):
            return self._retrying(artifact_id, attempt)


class _StaleRead(Exception):
    def __init__(self, artifact_id: str) -> None:
        super().__init__(artifact_id)
        self.artifact_id = artifact_id
