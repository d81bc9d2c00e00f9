from __future__ import annotations

from pathlib import Path

import pytest

from aisdlc import __main__ as cli
from aisdlc.lifecycle import LifecycleManager
from aisdlc.models import ImplementationStarted
from aisdlc.orchestrator import Orchestrator
from aisdlc.settings import RuntimeSettings
from conftest import make_orchestrator


@pytest.fixture
def orchestrator(
    lifecycle: LifecycleManager,
    settings: RuntimeSettings,
    working_dir: Path,
    view_dir: Path,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> Orchestrator:
    built = make_orchestrator(lifecycle, settings, working_dir, view_dir)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "build_orchestrator", lambda _settings, _root: built)
    return built


def test_stage_commands_print_created_artifacts(
    orchestrator: Orchestrator, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    idea_file = tmp_path / "idea.md"
    idea_file.write_text("# Todo app\n\nTrack todos.\n", encoding="utf-8")

    assert cli.main(["idea", str(idea_file), "--priority", "high"]) == 0
    assert capsys.readouterr().out.strip() == "idea-1"

    assert cli.main(["prd", "idea-1"]) == 0
    out = capsys.readouterr().out
    assert "prd: idea-1 -> prd_generated" in out
    assert "created prd-1" in out

    assert cli.main(["chunk", "prd-1"]) == 0
    assert "created chunk-2" in capsys.readouterr().out

    assert cli.main(["validate", "chunk-1", "--persona", "end-user"]) == 0
    assert "validation PASSED" in capsys.readouterr().out

    assert cli.main(["story", "chunk-1"]) == 0
    assert "created story-3" in capsys.readouterr().out

    assert cli.main(["implement", "story-1"]) == 0
    out = capsys.readouterr().out
    assert "implement: story-1 -> review_pending" in out
    assert "changed files: target.txt" in out

    assert cli.main(["list", "--type", "story"]) == 0
    listing = capsys.readouterr().out.splitlines()
    assert len(listing) == 3
    assert listing[0].startswith("story-1")
    assert "review_pending" in listing[0]


def test_errors_are_reported_with_class_artifact_and_stage(
    orchestrator: Orchestrator, capsys: pytest.CaptureFixture[str]
) -> None:
    orchestrator.submit_idea("# Idea\n")

    assert cli.main(["chunk", "idea-1"]) == 1
    err = capsys.readouterr().err
    assert "error: TypeMismatch artifact=idea-1 stage=chunk" in err

    assert cli.main(["show", "story-404"]) == 1
    assert "error: NotFound artifact=story-404" in capsys.readouterr().err


def test_show_prints_record_and_content(orchestrator: Orchestrator, capsys: pytest.CaptureFixture[str]) -> None:
    orchestrator.submit_idea("# Idea body\n")
    assert cli.main(["show", "idea-1"]) == 0
    out = capsys.readouterr().out
    assert '"id": "idea-1"' in out
    assert "# Idea body" in out


def test_preflight_reports_readiness(orchestrator: Orchestrator, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["preflight"]) == 0
    assert "sandbox ready (local runtime)" in capsys.readouterr().out


def test_invalid_configuration_fails_fast(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AISDLC_SANDBOX_RUNTIME", "vm")
    assert cli.main(["list"]) == 1
    assert "AISDLC_SANDBOX_RUNTIME" in capsys.readouterr().err


def test_requeue_force_recovers_in_progress_story(
    orchestrator: Orchestrator, capsys: pytest.CaptureFixture[str]
) -> None:
    orchestrator.submit_idea("# Todo app\n")
    orchestrator.generate_prd("idea-1")
    orchestrator.chunk("prd-1")
    orchestrator.validate("chunk-1")
    orchestrator.generate_stories("chunk-1")
    orchestrator.lifecycle.transition("story-1", ImplementationStarted())

    assert cli.main(["requeue", "story-1"]) == 1
    assert "error: IllegalTransition artifact=story-1" in capsys.readouterr().err

    assert cli.main(["requeue", "story-1", "--force", "--reason", "runner crashed"]) == 0
    assert "story-1 -> ready" in capsys.readouterr().out
