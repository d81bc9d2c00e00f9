from __future__ import annotations

import hashlib
import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path

from .errors import SetupFailureError
from .models import SandboxTask

logger = logging.getLogger(__name__)

VIEW_PREFIX = "aisdlc-sandbox-"
_READ_ONLY_MODE = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH


def _digest(path: Path) -> str | None:
    if not path.is_file():
        return None
    hasher = hashlib.sha256()
    with path.open("rb") as handle:
        for block in iter(lambda: handle.read(65536), b""):
            hasher.update(block)
    return hasher.hexdigest()


class IsolatedView:
    """Temporary directory exposing exactly a task's declared files.

    Writeable files are copied in (or left absent for the agent to create),
    read-only files are copied in with mode ``0444``. Nothing else from the
    working tree is visible. Changes reach the working tree only through
    :meth:`sync_back`.
    """

    def __init__(self, root: Path, source: Path, writeable_files: list[str], read_only_files: list[str]) -> None:
        self.root = root
        self.source = source
        self.writeable_files = list(writeable_files)
        self.read_only_files = list(read_only_files)
        self.released = False

    @classmethod
    def materialize(cls, task: SandboxTask, *, base_dir: Path | None = None) -> "IsolatedView":
        """Build the view for *task*.

        Raises:
            SetupFailureError: If the working tree or a read-only file is missing.
        """
        source = task.working_dir.resolve()
        if not source.is_dir():
            raise SetupFailureError(f"working directory does not exist: {source}")
        missing = [name for name in task.read_only_files if not (source / name).is_file()]
        if missing:
            raise SetupFailureError(f"read-only files missing from working tree: {missing}")

        root = Path(tempfile.mkdtemp(prefix=VIEW_PREFIX, dir=str(base_dir) if base_dir else None))
        view = cls(root, source, task.writeable_files, task.read_only_files)
        try:
            for name in task.writeable_files:
                target = root / name
                target.parent.mkdir(parents=True, exist_ok=True)
                if (source / name).is_file():
                    shutil.copy2(source / name, target)
            for name in task.read_only_files:
                target = root / name
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source / name, target)
                os.chmod(target, _READ_ONLY_MODE)
        except OSError as exc:
            shutil.rmtree(root, ignore_errors=True)
            raise SetupFailureError(f"could not materialize isolated view: {exc}") from exc
        logger.debug(
            "Materialized view %s (%d writeable, %d read-only)", root, len(task.writeable_files), len(task.read_only_files)
        )
        return view

    def snapshot(self) -> dict[str, str | None]:
        return {name: _digest(self.root / name) for name in self.writeable_files}

    def changed_files(self, before: dict[str, str | None]) -> list[str]:
        after = self.snapshot()
        return [name for name in self.writeable_files if after.get(name) != before.get(name)]

    def stray_files(self) -> list[str]:
        """Files the agent created outside the declared sets; these are never synced."""
        declared = set(self.writeable_files) | set(self.read_only_files)
        found: list[str] = []
        for path in sorted(self.root.rglob("*")):
            if path.is_file():
                relative = path.relative_to(self.root).as_posix()
                if relative not in declared:
                    found.append(relative)
        return found

    def sync_back(self, names: list[str]) -> None:
        """Copy changed writeable files back into the working tree.

        A writeable file deleted inside the view is deleted from the tree.
        """
        for name in names:
            if name not in self.writeable_files:
                raise ValueError(f"{name} is not a writeable file of this view")
            inside = self.root / name
            outside = self.source / name
            if inside.is_file():
                outside.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(inside, outside)
            elif outside.exists():
                outside.unlink()

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        if self.root.exists():
            shutil.rmtree(self.root)
