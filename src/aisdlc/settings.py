from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

_RUNTIMES = {"docker", "local"}


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from ``AISDLC_*`` environment variables with fail-fast validation."""

    state_root: str = ".aisdlc"
    working_dir: str = ""
    sandbox_runtime: str = "docker"
    sandbox_image: str = "paulgauthier/aider"
    agent_model: str = "gpt-4o"
    editor_model: str = ""
    sandbox_timeout_seconds: float = 300.0
    sandbox_memory_mb: int = 2048
    sandbox_cpu_shares: int = 1024
    credential_env: str = "ANTHROPIC_API_KEY,OPENAI_API_KEY"
    sandbox_max_retries: int = 1
    retry_backoff_seconds: float = 2.0
    model_generation: str = "gpt-4o"
    model_critic: str = "gpt-4o-mini"
    default_persona: str = "general"
    max_chunks: int = 5

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_root=os.getenv("AISDLC_STATE_ROOT", ".aisdlc"),
            working_dir=os.getenv("AISDLC_WORKING_DIR", ""),
            sandbox_runtime=os.getenv("AISDLC_SANDBOX_RUNTIME", "docker"),
            sandbox_image=os.getenv("AISDLC_SANDBOX_IMAGE", "paulgauthier/aider"),
            agent_model=os.getenv("AISDLC_AGENT_MODEL", "gpt-4o"),
            editor_model=os.getenv("AISDLC_EDITOR_MODEL", ""),
            sandbox_timeout_seconds=_get_env_float("AISDLC_SANDBOX_TIMEOUT_SECONDS", default=300.0, minimum=1.0),
            sandbox_memory_mb=_get_env_int("AISDLC_SANDBOX_MEMORY_MB", default=2048, minimum=64),
            sandbox_cpu_shares=_get_env_int("AISDLC_SANDBOX_CPU_SHARES", default=1024, minimum=2, maximum=262_144),
            credential_env=os.getenv("AISDLC_CREDENTIAL_ENV", "ANTHROPIC_API_KEY,OPENAI_API_KEY"),
            sandbox_max_retries=_get_env_int("AISDLC_SANDBOX_MAX_RETRIES", default=1, minimum=0, maximum=10),
            retry_backoff_seconds=_get_env_float("AISDLC_RETRY_BACKOFF_SECONDS", default=2.0, minimum=0.0),
            model_generation=os.getenv("AISDLC_MODEL_GENERATION", "gpt-4o"),
            model_critic=os.getenv("AISDLC_MODEL_CRITIC", "gpt-4o-mini"),
            default_persona=os.getenv("AISDLC_DEFAULT_PERSONA", "general"),
            max_chunks=_get_env_int("AISDLC_MAX_CHUNKS", default=5, minimum=1, maximum=50),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        runtime = self.sandbox_runtime.strip().lower()
        if runtime not in _RUNTIMES:
            raise ValueError(f"AISDLC_SANDBOX_RUNTIME must be one of: {', '.join(sorted(_RUNTIMES))}")
        for env_name, value in (
            ("AISDLC_STATE_ROOT", self.state_root),
            ("AISDLC_SANDBOX_IMAGE", self.sandbox_image),
            ("AISDLC_AGENT_MODEL", self.agent_model),
            ("AISDLC_MODEL_GENERATION", self.model_generation),
            ("AISDLC_MODEL_CRITIC", self.model_critic),
            ("AISDLC_DEFAULT_PERSONA", self.default_persona),
        ):
            if not value.strip():
                raise ValueError(f"{env_name} must be non-empty")
        credentials = ",".join(name.strip() for name in self.credential_env.split(",") if name.strip())
        return replace(
            self,
            sandbox_runtime=runtime,
            sandbox_image=self.sandbox_image.strip(),
            agent_model=self.agent_model.strip(),
            editor_model=self.editor_model.strip(),
            model_generation=self.model_generation.strip(),
            model_critic=self.model_critic.strip(),
            default_persona=self.default_persona.strip(),
            credential_env=credentials,
        )

    @property
    def credential_names(self) -> list[str]:
        return [name for name in self.credential_env.split(",") if name]

    def state_path(self, repo_root: Path) -> Path:
        path = Path(self.state_root)
        return path if path.is_absolute() else repo_root / path

    def working_path(self, repo_root: Path) -> Path:
        if not self.working_dir:
            return repo_root
        path = Path(self.working_dir)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 86_400.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed
