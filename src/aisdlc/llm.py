from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT = 120
_DEFAULT_MAX_RETRIES = 3


class SupportsInvoke(Protocol):
    """Anything LangChain-shaped with a synchronous ``invoke``."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


def load_env_file(root: Path | None = None) -> None:
    """Load ``<root>/.env`` (cwd by default) without overriding the environment."""
    env_path = (root if root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path, override=False)


def ensure_openai_api_key(root: Path | None = None) -> str:
    """Return OPENAI_API_KEY from the environment or ``.env``.

    Raises:
        RuntimeError: If the key is unavailable from both sources.
    """
    load_env_file(root)
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for generation and validation agents")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ``ChatOpenAI`` client after checking the API key.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(root=root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def build_messages(system_prompt: str, user_prompt: str) -> list[BaseMessage]:
    return [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]


def message_text(response: Any) -> str:
    """Flatten a chat response (string or content-part list) to plain text."""
    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    raise RuntimeError(f"Unsupported chat response content type {type(content).__name__}")


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Coerce structured LLM output into a validated ``schema`` instance.

    Accepts the ``include_raw=True`` envelope, a model instance, or a plain
    dict.

    Raises:
        RuntimeError: If parsing failed upstream or the payload does not validate.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise RuntimeError(f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}")
        payload = payload.get("parsed")
        if payload is None:
            raise RuntimeError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type {type(payload).__name__}"
        )
    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise RuntimeError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Schema-bound runnable whose every response is validated into ``schema``."""

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, prompt: str | list[BaseMessage]) -> ModelT:
        return normalize_structured_output(raw_output=self.runnable.invoke(prompt), schema=self.schema)


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    method: StructuredOutputMethod = "function_calling",
    strict: bool = True,
    include_raw: bool = False,
    root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Bind *schema* to a chat model with ``with_structured_output``.

    Raises:
        ValueError: If ``strict`` is combined with ``json_mode``.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if method == "json_mode" and strict:
        raise ValueError("strict=True is not valid for method='json_mode'")
    model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        root=root,
    )
    runnable = model.with_structured_output(
        schema,
        method=method,
        include_raw=include_raw,
        strict=strict if method != "json_mode" else None,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
