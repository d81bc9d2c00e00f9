"""Generation and Validation adapters.

The orchestrator depends only on the two protocols. The LLM-backed
implementations give each stage an agent role (product owner, planner,
critic) and are built lazily so that commands which never call a model do
not need an API key.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from .llm import (
    StructuredOutputAdapter,
    SupportsInvoke,
    build_messages,
    get_chat_model,
    get_structured_chat_model,
    message_text,
)
from .models import GenerationOutput, StageName, ValidationOutcome
from .parsers import split_documents

logger = logging.getLogger(__name__)


class GenerationService(Protocol):
    def generate(self, stage: StageName, input_text: str, context: dict[str, Any]) -> GenerationOutput: ...


class ValidationService(Protocol):
    def validate(self, content: str, persona: str) -> ValidationOutcome: ...


AGENT_ROLE_PROMPTS: dict[str, str] = {
    "product_owner": (
        "You are a Product Owner. You turn raw product ideas into complete Product Requirements "
        "Documents: problem statement, goals and success metrics, users, functional and "
        "non-functional requirements, acceptance criteria and open risks."
    ),
    "planner": (
        "You are a Technical Planner. You decompose requirements into independently deliverable "
        "pieces that follow the INVEST model and estimate stories in Fibonacci story points "
        "(1, 2, 3, 5, 8, 13)."
    ),
    "critic": (
        "You are a Quality Assessor. You evaluate artifacts produced by other agents against "
        "clear quality criteria and gate whether they may proceed to the next stage. Be specific "
        "and actionable."
    ),
    "builder": (
        "You are a Pair Programmer. You implement one user story by editing only the files you are "
        "given, keeping changes minimal and consistent with the existing code."
    ),
}

STAGE_ROLES: dict[StageName, str] = {
    StageName.PRD: "product_owner",
    StageName.CHUNK: "planner",
    StageName.STORY: "planner",
}

STAGE_INSTRUCTIONS: dict[StageName, str] = {
    StageName.PRD: (
        "Write a Product Requirements Document for the idea below. Start with a single '# ' title "
        "line and use '## ' section headings."
    ),
    StageName.CHUNK: (
        "Split the PRD below into {max_chunks} or fewer feature chunks that can be validated and "
        "delivered independently. Start every chunk with its own '# ' title line; do not use '# ' "
        "anywhere else."
    ),
    StageName.STORY: (
        "Break the feature chunk below into user stories. Start every story with its own '# ' title "
        "line and include the sections '## Story', '## Acceptance Criteria', '## Story Points' "
        "(a single number), '## Writeable Files' and '## Read-Only Files' (bullet lists of paths "
        "relative to the repository root)."
    ),
}

_MULTI_DOCUMENT_STAGES = frozenset({StageName.CHUNK, StageName.STORY})


def build_stage_prompt(stage: StageName, input_text: str, context: dict[str, Any]) -> str:
    instruction = STAGE_INSTRUCTIONS[stage].format(max_chunks=context.get("max_chunks", 5))
    lines = [instruction, ""]
    for key in ("title", "parent_title", "artifact_id"):
        if context.get(key):
            lines.append(f"{key.replace('_', ' ').title()}: {context[key]}")
    lines += ["", "---", input_text.strip()]
    return "\n".join(lines)


def implementation_instruction(title: str, story_content: str, writeable: list[str], read_only: list[str]) -> str:
    """Single-message instruction handed to the sandboxed coding agent."""
    parts = [
        f"Implement the user story '{title}'.",
        "Edit only these files: " + ", ".join(writeable) + ".",
    ]
    if read_only:
        parts.append("Use these files for context only: " + ", ".join(read_only) + ".")
    parts += ["Do not commit. Story follows.", "", story_content.strip()]
    return "\n".join(parts)


class LlmGenerationService:
    """Generation adapter backed by a chat model."""

    def __init__(
        self,
        *,
        model_name: str,
        root: Path | None = None,
        chat_model: SupportsInvoke | None = None,
    ) -> None:
        self.model_name = model_name
        self.root = root
        self._chat_model = chat_model

    def _model(self) -> SupportsInvoke:
        if self._chat_model is None:
            self._chat_model = get_chat_model(model_name=self.model_name, temperature=0.2, root=self.root)
        return self._chat_model

    def generate(self, stage: StageName, input_text: str, context: dict[str, Any]) -> GenerationOutput:
        if stage not in STAGE_ROLES:
            raise ValueError(f"stage {stage.value} has no generation step")
        messages = build_messages(AGENT_ROLE_PROMPTS[STAGE_ROLES[stage]], build_stage_prompt(stage, input_text, context))
        logger.info("Generating %s output with %s", stage.value, self.model_name)
        text = message_text(self._model().invoke(messages)).strip()
        ok = bool(text)
        if ok and stage in _MULTI_DOCUMENT_STAGES:
            ok = bool(split_documents(text))
        if not ok:
            logger.warning("Model returned no usable %s output", stage.value)
        return GenerationOutput(text=text, ok=ok)


class CriticVerdict(BaseModel):
    passed: bool = Field(description="True when the artifact is good enough to proceed.")
    report: str = Field(description="Markdown assessment: strengths, weaknesses and required changes.")
    issues: list[str] = Field(default_factory=list, description="Blocking issues, one per entry.")


class LlmValidationService:
    """Critic agent returning a structured pass/fail verdict."""

    def __init__(
        self,
        *,
        model_name: str,
        root: Path | None = None,
        structured_model: StructuredOutputAdapter[CriticVerdict] | None = None,
    ) -> None:
        self.model_name = model_name
        self.root = root
        self._structured = structured_model

    def _model(self) -> StructuredOutputAdapter[CriticVerdict]:
        if self._structured is None:
            self._structured = get_structured_chat_model(
                model_name=self.model_name, schema=CriticVerdict, root=self.root
            )
        return self._structured

    def validate(self, content: str, persona: str) -> ValidationOutcome:
        prompt = (
            f"Evaluate the artifact below from the perspective of a {persona}. Judge clarity, "
            "completeness, feasibility and testability. Fail it only for issues that would block "
            "delivery.\n\n---\n" + content.strip()
        )
        verdict = self._model().invoke(build_messages(AGENT_ROLE_PROMPTS["critic"], prompt))
        report = verdict.report.strip()
        if verdict.issues:
            report += "\n\n## Blocking Issues\n" + "\n".join(f"- {issue}" for issue in verdict.issues)
        logger.info("Critic (%s) verdict: %s", persona, "passed" if verdict.passed else "failed")
        return ValidationOutcome(passed=verdict.passed, report=report)
