from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

VALID_LLM_MODES: frozenset[str] = frozenset({"cli", "direct", "fallback"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    project_root: str = ""
    graph_path: str = ".beads/graph.json"
    agent_command: str = "opencode"
    agent_name: str = "sisyphus"
    agent_timeout_seconds: float = 600.0
    kill_grace_seconds: float = 5.0
    check_timeout_seconds: float = 120.0
    criterion_timeout_seconds: float = 60.0
    llm_mode: str = ""
    sentinel_window_chars: int = 4_096
    max_output_chars: int = 1_000_000
    daily_token_limit: int = 2_000_000
    cost_alert_threshold_usd: float = 1.0
    verify_config_path: str = ".axon/verify.json"
    skills_dir: str = ".axon/skills"
    spec_path: str = ".openspec/spec.md"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            project_root=os.getenv("AXON_PROJECT_ROOT", ""),
            graph_path=os.getenv("AXON_GRAPH_PATH", ".beads/graph.json"),
            agent_command=os.getenv("AXON_AGENT_COMMAND", "opencode"),
            agent_name=os.getenv("AXON_AGENT_NAME", "sisyphus"),
            agent_timeout_seconds=_get_env_float("AXON_AGENT_TIMEOUT_SECONDS", default=600.0, minimum=0.01),
            kill_grace_seconds=_get_env_float("AXON_KILL_GRACE_SECONDS", default=5.0, minimum=0.0),
            check_timeout_seconds=_get_env_float("AXON_CHECK_TIMEOUT_SECONDS", default=120.0, minimum=0.01),
            criterion_timeout_seconds=_get_env_float("AXON_CRITERION_TIMEOUT_SECONDS", default=60.0, minimum=0.01),
            llm_mode=os.getenv("AXON_LLM_MODE", ""),
            sentinel_window_chars=_get_env_int("AXON_SENTINEL_WINDOW_CHARS", default=4_096, minimum=256),
            max_output_chars=_get_env_int("AXON_MAX_OUTPUT_CHARS", default=1_000_000, minimum=1_024),
            daily_token_limit=_get_env_int("AXON_DAILY_TOKEN_LIMIT", default=2_000_000, minimum=1),
            cost_alert_threshold_usd=_get_env_float("AXON_COST_ALERT_THRESHOLD_USD", default=1.0, minimum=0.0),
            verify_config_path=os.getenv("AXON_VERIFY_CONFIG", ".axon/verify.json"),
            skills_dir=os.getenv("AXON_SKILLS_DIR", ".axon/skills"),
            spec_path=os.getenv("AXON_SPEC_PATH", ".openspec/spec.md"),
        ).normalized()

    @property
    def project_root_path(self) -> Path:
        """Return the project root as a Path, defaulting to cwd if unset."""
        return Path(self.project_root) if self.project_root else Path.cwd()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        agent_command = self.agent_command.strip()
        if not agent_command:
            raise ValueError("AXON_AGENT_COMMAND must be non-empty")
        agent_name = self.agent_name.strip()
        if not agent_name:
            raise ValueError("AXON_AGENT_NAME must be non-empty")
        if not self.graph_path.strip():
            raise ValueError("AXON_GRAPH_PATH must be non-empty")

        llm_mode = self.llm_mode.strip().lower()
        if llm_mode and llm_mode not in VALID_LLM_MODES:
            raise ValueError("AXON_LLM_MODE must be one of: cli, direct, fallback")

        if self.sentinel_window_chars > self.max_output_chars:
            raise ValueError(
                "AXON_SENTINEL_WINDOW_CHARS must be <= AXON_MAX_OUTPUT_CHARS, "
                f"got: {self.sentinel_window_chars} > {self.max_output_chars}"
            )
        return replace(self, agent_command=agent_command, agent_name=agent_name, llm_mode=llm_mode)

    def resolve(self, raw: str) -> Path:
        path = Path(raw)
        return path if path.is_absolute() else self.project_root_path / path

    @property
    def graph_file(self) -> Path:
        return self.resolve(self.graph_path)

    @property
    def verify_config_file(self) -> Path:
        return self.resolve(self.verify_config_path)

    @property
    def skills_path(self) -> Path:
        return self.resolve(self.skills_dir)

    @property
    def spec_file(self) -> Path:
        return self.resolve(self.spec_path)


def load_project_env(project_root: Path | None = None) -> bool:
    """Load a project ``.env`` file into the environment without overriding set variables.

    Returns:
        True when a ``.env`` file was found and loaded.
    """
    root = project_root if project_root is not None else Path.cwd()
    env_path = root / ".env"
    if not env_path.is_file():
        return False
    return load_dotenv(env_path, override=False)


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 1_000_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

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
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
