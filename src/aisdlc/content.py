"""Append-only storage for artifact bodies.

A body is written exactly once, under a reference derived from the owning
artifact id. Revisions are new artifacts, never rewrites.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol

from .errors import InvariantViolationError, NotFoundError
from .registry import _atomic_write_text, _locked_file

logger = logging.getLogger(__name__)


class ContentStore(Protocol):
    def write(self, artifact_id: str, text: str) -> str: ...

    def read(self, content_ref: str) -> str: ...

    def delete(self, content_ref: str) -> None: ...


def content_ref_for(artifact_id: str) -> str:
    return f"content/{artifact_id}.md"


class InMemoryContentStore:
    def __init__(self) -> None:
        self._bodies: dict[str, str] = {}
        self._lock = threading.Lock()

    def write(self, artifact_id: str, text: str) -> str:
        ref = content_ref_for(artifact_id)
        with self._lock:
            if ref in self._bodies:
                raise InvariantViolationError(f"content for {artifact_id} already written", artifact_id=artifact_id)
            self._bodies[ref] = text
        return ref

    def read(self, content_ref: str) -> str:
        with self._lock:
            try:
                return self._bodies[content_ref]
            except KeyError:
                raise NotFoundError(f"content {content_ref} not found") from None

    def delete(self, content_ref: str) -> None:
        with self._lock:
            self._bodies.pop(content_ref, None)


class FileContentStore:
    """Bodies stored as markdown files under ``<root>/content/``."""

    def __init__(self, root: Path) -> None:
        self.root = root
        (root / "content").mkdir(parents=True, exist_ok=True)

    def _path(self, content_ref: str) -> Path:
        path = (self.root / content_ref).resolve()
        if self.root.resolve() not in path.parents:
            raise InvariantViolationError(f"content reference escapes the state root: {content_ref}")
        return path

    def write(self, artifact_id: str, text: str) -> str:
        ref = content_ref_for(artifact_id)
        path = self._path(ref)
        with _locked_file(path):
            if path.exists():
                raise InvariantViolationError(f"content for {artifact_id} already written", artifact_id=artifact_id)
            _atomic_write_text(path, text)
        return ref

    def read(self, content_ref: str) -> str:
        path = self._path(content_ref)
        if not path.is_file():
            raise NotFoundError(f"content {content_ref} not found at {path}")
        return path.read_text(encoding="utf-8")

    def delete(self, content_ref: str) -> None:
        """Remove a body whose artifact was rolled back before becoming visible."""
        path = self._path(content_ref)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        lock_path = path.with_suffix(path.suffix + ".lock")
        try:
            lock_path.unlink()
        except OSError as exc:
            logger.debug("Could not remove content lock %s: %s", lock_path, exc)
