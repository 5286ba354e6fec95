from __future__ import annotations


class AxonError(RuntimeError):
    """Base error for the execution engine.

    Carries a stable ``code`` for programmatic handling and a list of
    operator-facing ``suggestions`` rendered by :meth:`format`.
    """

    code = "AXON_ERROR"
    default_suggestions: tuple[str, ...] = ()

    def __init__(self, message: str, *, suggestions: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.suggestions = list(suggestions) if suggestions else list(self.default_suggestions)

    def format(self) -> str:
        lines = [f"error [{self.code}]: {self.message}"]
        if self.suggestions:
            lines.append("suggestions:")
            lines.extend(f"  - {suggestion}" for suggestion in self.suggestions)
        return "\n".join(lines)


class ConfigError(AxonError):
    code = "CONFIG_ERROR"
    default_suggestions = ("Check the configuration file format", "Check AXON_* environment variables")


class BeadsError(AxonError):
    code = "BEADS_ERROR"
    default_suggestions = ("Check the bead graph file (.beads/graph.json)", "Regenerate the graph with the planner")


class GraphValidationError(BeadsError):
    """Raised when the graph has duplicate IDs, dangling dependencies, or a cycle."""

    code = "GRAPH_INVALID"

    def __init__(self, errors: list[str]) -> None:
        super().__init__(
            "Bead graph failed validation: " + "; ".join(errors),
            suggestions=["Fix the listed graph defects in the planner output; the engine never repairs them"],
        )
        self.errors = list(errors)


class InvocationError(AxonError):
    """Agent spawn failure, non-zero exit without sentinel, or malformed backend response."""

    code = "INVOCATION_ERROR"


class AgentTimeoutError(InvocationError):
    code = "TIMEOUT"

    def __init__(self, message: str, *, timeout_seconds: float) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class VerificationFailure(AxonError):
    """The agent claimed completion but independent checks disagree."""

    code = "VERIFICATION_FAILED"

    def __init__(self, bead_id: str, failed_checks: list[str]) -> None:
        super().__init__(f"Verification failed for bead {bead_id}: {', '.join(failed_checks) or 'unknown check'}")
        self.bead_id = bead_id
        self.failed_checks = list(failed_checks)


class ProviderResolutionError(AxonError):
    """Every backend invocation strategy failed; ``diagnostic`` explains why."""

    code = "API_ERROR"
    default_suggestions = (
        "Check network connectivity",
        "Verify the API key is valid",
        "Set one of ANTHROPIC_API_KEY, OPENAI_API_KEY, GOOGLE_API_KEY, DEEPSEEK_API_KEY",
    )

    def __init__(self, message: str, *, status_code: int = 500, diagnostic: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.diagnostic = diagnostic


class CostLimitError(AxonError):
    code = "COST_LIMIT"

    def __init__(self, daily_limit: int, current_usage: int, estimated: int) -> None:
        super().__init__(
            f"Daily token limit exceeded ({daily_limit:,})",
            suggestions=[
                f"Used today: {current_usage:,} tokens",
                f"This bead estimate: {estimated:,} tokens",
                "Raise AXON_DAILY_TOKEN_LIMIT or wait for the daily reset",
            ],
        )
        self.daily_limit = daily_limit
        self.current_usage = current_usage
        self.estimated = estimated
