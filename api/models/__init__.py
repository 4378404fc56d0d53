"""SQLAlchemy models package."""

from api.models.client import Client, Competitor
from api.models.run import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    CriterionScore,
    EffectivenessRun,
    RunStatus,
    can_transition,
    is_terminal,
)

__all__ = [
    # Client
    "Client",
    "Competitor",
    # Run
    "EffectivenessRun",
    "CriterionScore",
    "RunStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "can_transition",
    "is_terminal",
]
