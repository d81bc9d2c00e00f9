from __future__ import annotations

from aisdlc.parsers import (
    extract_file_scope,
    extract_section_items,
    extract_story_points,
    extract_title,
    split_documents,
)


def test_extract_title_falls_back() -> None:
    assert extract_title("intro\n# Todo App\n\n# Other") == "Todo App"
    assert extract_title("## Only a subheading") == "Untitled"
    assert extract_title("", default="Idea") == "Idea"


def test_extract_story_points() -> None:
    assert extract_story_points("# Story\n\n## Story Points\n8\n") == 8
    assert extract_story_points("## Story Points 13") == 13
    assert extract_story_points("## Story Points\nlots") == 3
    assert extract_story_points("no section", default=1) == 1


def test_extract_section_items_stops_at_sibling_heading() -> None:
    content = (
        "# Story\n\n## Acceptance Criteria\n- one\n* two\n1. three\n"
        "### Details\n- nested\n\n## Other\n- not included\n"
    )
    assert extract_section_items(content, "acceptance criteria") == ["one", "two", "three", "nested"]
    assert extract_section_items(content, "missing") == []


def test_extract_file_scope_from_sections() -> None:
    content = (
        "# Story\n\n## Writeable Files\n- `src/app.py`\n- src/db.py (new)\n- /etc/passwd\n\n"
        "## Read-Only Files\n- README.md\n- src/app.py\n- none\n"
    )
    scope = extract_file_scope(content)
    assert scope.writeable == ["src/app.py", "src/db.py"]
    assert scope.read_only == ["README.md"]


def test_extract_file_scope_from_file_paths_bullets() -> None:
    content = "# Story\n\n## File Paths\n- Read-only: docs/api.md, README.md\n- Writeable: api.py, ../escape.py\n"
    scope = extract_file_scope(content)
    assert scope.writeable == ["api.py"]
    assert scope.read_only == ["docs/api.md", "README.md"]


def test_extract_file_scope_without_sections_is_empty() -> None:
    scope = extract_file_scope("# Story\n\nJust prose.")
    assert scope.writeable == []
    assert scope.read_only == []


def test_split_documents() -> None:
    text = "preamble\n# One\nbody one\n## sub\n# Two\nbody two\n"
    assert split_documents(text) == ["# One\nbody one\n## sub", "# Two\nbody two"]
    assert split_documents("   \n") == []
    assert split_documents("no headings here\n") == ["no headings here"]
