"""Website effectiveness analysis engine."""

# Lazy imports to avoid requiring Playwright and the database at import time
# Use explicit imports when needed:
# from worker.effectiveness.engine import build_engine
# from worker.effectiveness.orchestrator import RunOrchestrator
# from worker.effectiveness.reaper import StaleRunReaper
# from worker.effectiveness.progress import ProgressRegistry

__all__ = [
    # Engine
    "build_engine",
    "EffectivenessEngine",
    # Orchestration
    "RunOrchestrator",
    "OrchestratorConfig",
    "StaleRunReaper",
    "SweepResult",
    # Scoring
    "TieredScorer",
    "ScorerRegistry",
    "ParallelDataCollector",
    "ResilientApiClient",
    "RetryPolicy",
    "CircuitBreaker",
    # Progress
    "ProgressRegistry",
    "ProgressRecord",
]
