from importlib.metadata import version

from .bridge import AgentBridge, AgentExecutionResult, SentinelScanner, build_prompt
from .context import BeadContext, ContextProvider, SkillsDirectoryContext
from .errors import (
    AgentTimeoutError,
    AxonError,
    BeadsError,
    ConfigError,
    CostLimitError,
    GraphValidationError,
    InvocationError,
    ProviderResolutionError,
    VerificationFailure,
)
from .graph import (
    create_empty_graph,
    find_blocked_beads,
    get_graph_stats,
    get_next_executable,
    has_cycle,
    topological_sort,
    validate_graph,
)
from .models import Bead, BeadExecutionResult, BeadGraph, BeadStatus, GraphMetadata, GraphStats
from .pricing import MODEL_PRICING, CostTracker, calculate_cost
from .resolver import LLMSession, ResolutionState, ResolverContext, build_state, cascade, detect_mode
from .scheduler import BatchReport, ExecutionScheduler
from .settings import RuntimeSettings
from .state_store import GraphStore
from .verify import CheckInterpreter, VerificationConfig, VerificationResult, Verifier


def get_version() -> str:
    try:
        return version("axon-engine")
    except Exception:
        return "0.0.0"


__all__ = [
    "AgentBridge",
    "AgentExecutionResult",
    "AgentTimeoutError",
    "AxonError",
    "BatchReport",
    "Bead",
    "BeadContext",
    "BeadExecutionResult",
    "BeadGraph",
    "BeadStatus",
    "BeadsError",
    "CheckInterpreter",
    "ConfigError",
    "ContextProvider",
    "CostLimitError",
    "CostTracker",
    "ExecutionScheduler",
    "GraphMetadata",
    "GraphStats",
    "GraphStore",
    "GraphValidationError",
    "InvocationError",
    "LLMSession",
    "MODEL_PRICING",
    "ProviderResolutionError",
    "ResolutionState",
    "ResolverContext",
    "RuntimeSettings",
    "SentinelScanner",
    "SkillsDirectoryContext",
    "VerificationConfig",
    "VerificationFailure",
    "VerificationResult",
    "Verifier",
    "build_prompt",
    "build_state",
    "calculate_cost",
    "cascade",
    "create_empty_graph",
    "detect_mode",
    "find_blocked_beads",
    "get_graph_stats",
    "get_next_executable",
    "has_cycle",
    "topological_sort",
    "validate_graph",
]
