"""Narrow parsers for structured fields in generated markdown.

Every parser has a defined fallback and never raises on malformed input, so a
badly formatted generation can only ever produce default field values.
"""

from __future__ import annotations

import re

from .models import FileScope

DEFAULT_STORY_POINTS = 3
DEFAULT_TITLE = "Untitled"

_STORY_POINTS_RE = re.compile(r"^##\s*Story Points\s*(\d+)", re.IGNORECASE | re.MULTILINE)
_H1_RE = re.compile(r"^# (?!#)", re.MULTILINE)
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_BULLET_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?(.*\S)\s*$")
_PATH_TOKEN_RE = re.compile(r"`([^`]+)`")

_WRITEABLE_HEADINGS = {"writeable files", "writable files", "files to modify", "target files"}
_READ_ONLY_HEADINGS = {"read-only files", "read only files", "context files"}


def extract_title(content: str, default: str = DEFAULT_TITLE) -> str:
    """Text of the first ``# `` heading, or *default*."""
    for line in content.splitlines():
        if line.startswith("# "):
            title = line[2:].strip()
            if title:
                return title
    return default


def extract_story_points(content: str, default: int = DEFAULT_STORY_POINTS) -> int:
    match = _STORY_POINTS_RE.search(content)
    if match is None:
        return default
    return int(match.group(1))


def extract_section_items(content: str, heading: str) -> list[str]:
    """Bullet items listed under the ``##``-level section named *heading*.

    Matching is case-insensitive. The section ends at the next heading of the
    same or higher level.
    """
    wanted = heading.strip().lower()
    items: list[str] = []
    level: int | None = None
    for line in content.splitlines():
        heading_match = _HEADING_RE.match(line)
        if heading_match is not None:
            depth = len(heading_match.group(1))
            if level is not None and depth <= level:
                break
            if level is None and heading_match.group(2).strip().lower() == wanted:
                level = depth
            continue
        if level is None:
            continue
        bullet = _BULLET_RE.match(line)
        if bullet is not None:
            items.append(bullet.group(1))
    return items


def _clean_path(item: str) -> str | None:
    quoted = _PATH_TOKEN_RE.search(item)
    candidate = quoted.group(1) if quoted else item.split()[0] if item.split() else ""
    candidate = candidate.strip().strip(",;")
    if not candidate or candidate.lower() in {"none", "n/a"}:
        return None
    if candidate.startswith("/") or ".." in candidate.split("/"):
        return None
    return candidate


def _paths_under(content: str, headings: set[str]) -> list[str]:
    paths: list[str] = []
    for heading in sorted(headings):
        for item in extract_section_items(content, heading):
            path = _clean_path(item)
            if path is not None and path not in paths:
                paths.append(path)
    return paths


def _paths_from_file_paths_section(content: str) -> tuple[list[str], list[str]]:
    """Parse ``## File Paths`` with ``Read-only: a, b`` / ``Writeable: c`` bullets."""
    writeable: list[str] = []
    read_only: list[str] = []
    for item in extract_section_items(content, "file paths"):
        label, _, rest = item.partition(":")
        target = None
        if label.strip().lower() in {"writeable", "writable"}:
            target = writeable
        elif label.strip().lower() in {"read-only", "read only", "readonly"}:
            target = read_only
        if target is None:
            continue
        for raw in rest.split(","):
            path = _clean_path(raw.strip())
            if path is not None and path not in target:
                target.append(path)
    return writeable, read_only


def extract_file_scope(content: str) -> FileScope:
    """Declared writeable / read-only file sets; overlap is resolved as writeable."""
    writeable = _paths_under(content, _WRITEABLE_HEADINGS)
    read_only = _paths_under(content, _READ_ONLY_HEADINGS)
    extra_writeable, extra_read_only = _paths_from_file_paths_section(content)
    writeable += [path for path in extra_writeable if path not in writeable]
    read_only += [path for path in extra_read_only if path not in read_only]
    return FileScope(writeable=writeable, read_only=[path for path in read_only if path not in writeable])


def split_documents(text: str) -> list[str]:
    """Split generated text into one document per top-level ``# `` heading.

    Text before the first heading is dropped when at least one heading
    exists. Text with no heading at all is returned as a single document;
    blank text yields no documents.
    """
    if not text.strip():
        return []
    starts = [match.start() for match in _H1_RE.finditer(text)]
    if not starts:
        return [text.strip()]
    bounds = [*starts, len(text)]
    documents = [text[begin:end].strip() for begin, end in zip(bounds, bounds[1:])]
    return [document for document in documents if document]
