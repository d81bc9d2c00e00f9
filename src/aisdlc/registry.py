"""Registry Store: the single logical table of artifact records keyed by id.

The store knows nothing about lifecycles. It offers plain reads, an
insert-only ``put``, and optimistic ``compare_and_swap`` / ``commit`` writes
whose expectations are matched by canonical fingerprint. The Lifecycle
Manager is the only intended writer.
"""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol, Sequence

from pydantic import ValidationError

from .canonical import fingerprint
from .errors import InvariantViolationError
from .models import ArtifactRecord, RegistryDocument

logger = logging.getLogger(__name__)

# (expected current record or None for "absent", new record or None for "delete")
RegistryWrite = tuple["ArtifactRecord | None", "ArtifactRecord | None"]


class RegistryStore(Protocol):
    def get(self, artifact_id: str) -> ArtifactRecord | None: ...

    def list(self) -> list[ArtifactRecord]: ...

    def put(self, record: ArtifactRecord) -> None: ...

    def compare_and_swap(self, expected: ArtifactRecord | None, new: ArtifactRecord | None) -> bool: ...

    def commit(self, writes: Sequence[RegistryWrite]) -> bool: ...


def _write_key(write: RegistryWrite) -> str:
    expected, new = write
    if expected is not None and new is not None and expected.id != new.id:
        raise InvariantViolationError(
            f"id is immutable: cannot swap {expected.id} for {new.id}", artifact_id=expected.id
        )
    record = new if new is not None else expected
    if record is None:
        raise ValueError("a registry write needs an expected or a new record")
    return record.id


def _expectation_holds(artifacts: dict[str, ArtifactRecord], key: str, expected: ArtifactRecord | None) -> bool:
    current = artifacts.get(key)
    if expected is None:
        return current is None
    if current is None:
        return False
    return fingerprint(current) == fingerprint(expected)


def _apply(artifacts: dict[str, ArtifactRecord], writes: Sequence[RegistryWrite]) -> bool:
    """Apply *writes* to *artifacts* in place, all or nothing."""
    keys = [_write_key(write) for write in writes]
    if len(set(keys)) != len(keys):
        raise InvariantViolationError(f"a registry commit may touch each id once: {sorted(keys)}")
    for key, (expected, _new) in zip(keys, writes):
        if not _expectation_holds(artifacts, key, expected):
            return False
    for key, (_expected, new) in zip(keys, writes):
        if new is None:
            artifacts.pop(key, None)
        else:
            artifacts[key] = new
    return True


class InMemoryRegistryStore:
    """Thread-safe dict-backed store. Records are frozen so they are shared as-is."""

    def __init__(self) -> None:
        self._artifacts: dict[str, ArtifactRecord] = {}
        self._lock = threading.Lock()

    def get(self, artifact_id: str) -> ArtifactRecord | None:
        with self._lock:
            return self._artifacts.get(artifact_id)

    def list(self) -> list[ArtifactRecord]:
        with self._lock:
            return list(self._artifacts.values())

    def put(self, record: ArtifactRecord) -> None:
        if not self.commit([(None, record)]):
            raise InvariantViolationError(f"duplicate artifact id {record.id}", artifact_id=record.id)

    def compare_and_swap(self, expected: ArtifactRecord | None, new: ArtifactRecord | None) -> bool:
        return self.commit([(expected, new)])

    def commit(self, writes: Sequence[RegistryWrite]) -> bool:
        with self._lock:
            return _apply(self._artifacts, writes)


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar lets the data file itself be replaced with ``os.replace``
    while the lock handle stays valid.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file beside *path*, fsync, then rename over it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_text(path: Path, label: str) -> str:
    """Read a UTF-8 document, raising ``FileNotFoundError``/``ValueError`` with the path."""
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


class JsonFileRegistryStore:
    """Registry persisted as one JSON document, rewritten atomically on every commit.

    Writers serialize on a thread lock plus an ``fcntl`` sidecar lock, so
    several processes may share one state root. Readers never lock: the
    document is only ever replaced whole, so a reader sees either the old or
    the new registry.
    """

    FILE_NAME = "registry.json"

    def __init__(self, root: Path) -> None:
        self.root = root
        self.path = root / self.FILE_NAME
        self._thread_lock = threading.Lock()
        root.mkdir(parents=True, exist_ok=True)

    def _read_document(self) -> RegistryDocument:
        if not self.path.exists():
            return RegistryDocument()
        text = _safe_read_text(self.path, "artifact registry")
        try:
            return RegistryDocument.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"artifact registry at {self.path} failed validation: {exc}") from exc

    def get(self, artifact_id: str) -> ArtifactRecord | None:
        return self._read_document().artifacts.get(artifact_id)

    def list(self) -> list[ArtifactRecord]:
        return list(self._read_document().artifacts.values())

    def put(self, record: ArtifactRecord) -> None:
        if not self.commit([(None, record)]):
            raise InvariantViolationError(f"duplicate artifact id {record.id}", artifact_id=record.id)

    def compare_and_swap(self, expected: ArtifactRecord | None, new: ArtifactRecord | None) -> bool:
        return self.commit([(expected, new)])

    def commit(self, writes: Sequence[RegistryWrite]) -> bool:
        with self._thread_lock, _locked_file(self.path):
            document = self._read_document()
            artifacts = dict(document.artifacts)
            if not _apply(artifacts, writes):
                logger.debug("Registry commit rejected: stale expectation among %d write(s)", len(writes))
                return False
            updated = RegistryDocument(version=document.version, artifacts=artifacts)
            _atomic_write_text(self.path, updated.model_dump_json(indent=2))
        return True
