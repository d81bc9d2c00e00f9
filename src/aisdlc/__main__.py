"""Entry point for `python -m aisdlc` and the `aisdlc` CLI script.

Every stage command maps to exactly one Orchestrator call.
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable

from aisdlc.content import FileContentStore
from aisdlc.errors import PipelineError
from aisdlc.lifecycle import LifecycleManager
from aisdlc.llm import load_env_file
from aisdlc.models import ArtifactType, LogRecord, ResourceBudget, SandboxTask
from aisdlc.orchestrator import Orchestrator, StageOutcome
from aisdlc.registry import JsonFileRegistryStore
from aisdlc.runtimes import make_runtime
from aisdlc.sandbox import SandboxEngine
from aisdlc.services import LlmGenerationService, LlmValidationService
from aisdlc.settings import RuntimeSettings

logger = logging.getLogger("aisdlc.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aisdlc", description="Drive ideas through PRD, chunks, stories and code")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    idea = commands.add_parser("idea", help="Submit an idea from a markdown file ('-' for stdin)")
    idea.add_argument("file")
    idea.add_argument("--priority", default="medium", choices=["low", "medium", "high"])

    commands.add_parser("prd", help="Generate the PRD for an idea").add_argument("idea_id")
    commands.add_parser("chunk", help="Split a PRD into feature chunks").add_argument("prd_id")

    validate = commands.add_parser("validate", help="Run the critic on a chunk")
    validate.add_argument("chunk_id")
    validate.add_argument("--persona", default=None, help="Stakeholder persona (e.g. end-user, security-officer)")

    commands.add_parser("story", help="Generate user stories for a validated chunk").add_argument("chunk_id")

    implement = commands.add_parser("implement", help="Implement a story in the sandbox")
    implement.add_argument("story_id")
    implement.add_argument("--instruction", default=None, help="Override the generated agent instruction")
    implement.add_argument("--write", action="append", default=None, help="Writeable file (repeatable)")
    implement.add_argument("--read", action="append", default=None, help="Read-only context file (repeatable)")
    implement.add_argument("--timeout", type=float, default=None, help="Wall-clock timeout in seconds")
    implement.add_argument("--model", default=None, help="Agent model identifier")

    requeue = commands.add_parser("requeue", help="Return a blocked or cancelled story to ready")
    requeue.add_argument("story_id")
    requeue.add_argument("--reason", default="requeued by operator")
    requeue.add_argument(
        "--force", action="store_true", help="Also recover a story left in_progress by a run that died"
    )

    commands.add_parser("show", help="Print an artifact record and its content").add_argument("artifact_id")

    listing = commands.add_parser("list", help="List artifacts")
    listing.add_argument("--type", dest="artifact_type", default=None, choices=[item.value for item in ArtifactType])

    preflight = commands.add_parser("preflight", help="Check sandbox prerequisites without running anything")
    preflight.add_argument("story_id", nargs="?", default=None)

    run = commands.add_parser("run", help="Run every stage for an idea")
    run.add_argument("idea_id")
    run.add_argument("--implement", action="store_true", help="Also implement every generated story")
    run.add_argument("--persona", default=None)
    return parser


def build_orchestrator(settings: RuntimeSettings, repo_root: Path) -> Orchestrator:
    state_root = settings.state_path(repo_root)
    lifecycle = LifecycleManager(JsonFileRegistryStore(state_root), FileContentStore(state_root))
    engine = SandboxEngine(make_runtime(settings.sandbox_runtime, image=settings.sandbox_image))
    return Orchestrator(
        lifecycle,
        LlmGenerationService(model_name=settings.model_generation, root=repo_root),
        LlmValidationService(model_name=settings.model_critic, root=repo_root),
        engine,
        settings=settings,
        working_dir=settings.working_path(repo_root),
    )


def _print_outcome(outcome: StageOutcome) -> int:
    for warning in outcome.warnings:
        print(f"warning: {warning}")
    if outcome.error is not None:
        print(f"error: {outcome.error.describe()}", file=sys.stderr)
        if outcome.sandbox_result is not None and outcome.sandbox_result.changed_files:
            print("changed files (kept for inspection): " + ", ".join(outcome.sandbox_result.changed_files))
        return 1
    status = outcome.record.status_value if outcome.record is not None else "unknown"
    print(f"{outcome.stage.value}: {outcome.artifact_id} -> {status}")
    if outcome.passed is not None:
        print(f"validation {'PASSED' if outcome.passed else 'FAILED'}")
    for child_id in outcome.children:
        print(f"  created {child_id}")
    if outcome.sandbox_result is not None:
        print("changed files: " + (", ".join(outcome.sandbox_result.changed_files) or "none"))
    return 0


def _run_cancellable(call: Callable[[threading.Event], StageOutcome]) -> StageOutcome:
    """Run *call* in a worker so Ctrl-C cancels the sandbox instead of abandoning it."""
    cancel_event = threading.Event()
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="aisdlc-implement") as executor:
        future = executor.submit(call, cancel_event)
        while True:
            try:
                return future.result()
            except KeyboardInterrupt:
                print("cancelling sandbox run...", file=sys.stderr)
                cancel_event.set()


def _print_log(record: LogRecord) -> None:
    print(record.render())


def _dispatch(args: argparse.Namespace, orchestrator: Orchestrator) -> int:
    lifecycle = orchestrator.lifecycle
    if args.command == "idea":
        text = sys.stdin.read() if args.file == "-" else Path(args.file).read_text(encoding="utf-8")
        print(orchestrator.submit_idea(text, priority=args.priority))
        return 0
    if args.command == "prd":
        return _print_outcome(orchestrator.generate_prd(args.idea_id))
    if args.command == "chunk":
        return _print_outcome(orchestrator.chunk(args.prd_id))
    if args.command == "validate":
        return _print_outcome(orchestrator.validate(args.chunk_id, persona=args.persona))
    if args.command == "story":
        return _print_outcome(orchestrator.generate_stories(args.chunk_id))
    if args.command == "implement":
        outcome = _run_cancellable(
            lambda cancel_event: orchestrator.implement(
                args.story_id,
                instruction=args.instruction,
                writeable=args.write,
                read_only=args.read,
                timeout_seconds=args.timeout,
                model=args.model,
                cancel_event=cancel_event,
                on_log=_print_log,
            )
        )
        return _print_outcome(outcome)
    if args.command == "requeue":
        record = orchestrator.requeue(args.story_id, args.reason, force=args.force)
        print(f"{record.id} -> {record.status_value}")
        return 0
    if args.command == "show":
        record = lifecycle.get(args.artifact_id)
        print(record.model_dump_json(indent=2))
        print()
        print(lifecycle.read_content(args.artifact_id))
        return 0
    if args.command == "list":
        artifact_type = ArtifactType(args.artifact_type) if args.artifact_type else None
        for record in lifecycle.list(artifact_type):
            title = getattr(record, "title", "")
            print(f"{record.id:<22} {record.artifact_type.value:<11} {record.status_value:<15} {title}")
        return 0
    if args.command == "preflight":
        if args.story_id is not None:
            task = orchestrator.build_task(lifecycle.get_typed(args.story_id, ArtifactType.STORY))
        else:
            settings = orchestrator.settings
            task = SandboxTask(
                model=settings.agent_model,
                instruction="preflight",
                working_dir=orchestrator.working_dir,
                writeable_files=["PREFLIGHT"],
                budget=ResourceBudget(timeout_seconds=settings.sandbox_timeout_seconds),
                env_allowlist=settings.credential_names,
            )
        missing = orchestrator.sandbox.preflight(task)
        for item in missing:
            print(f"missing: {item}")
        if missing:
            return 1
        print(f"sandbox ready ({orchestrator.sandbox.runtime.name} runtime)")
        return 0
    if args.command == "run":
        report = orchestrator.run_pipeline(args.idea_id, implement=args.implement, persona=args.persona)
        exit_code = 0
        for outcome in report.outcomes:
            exit_code = max(exit_code, _print_outcome(outcome))
        if report.halted:
            print(f"pipeline for {args.idea_id} halted", file=sys.stderr)
            exit_code = 1
        return exit_code
    raise ValueError(f"unknown command {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    repo_root = Path.cwd()
    load_env_file(repo_root)
    try:
        settings = RuntimeSettings.from_env()
        orchestrator = build_orchestrator(settings, repo_root)
    except (OSError, ValueError) as exc:
        logger.error("Unable to initialise the pipeline: %s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1

    try:
        return _dispatch(args, orchestrator)
    except PipelineError as exc:
        print(f"error: {exc.describe()}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
