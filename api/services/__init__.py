"""Business logic services package."""

from api.services.client_service import client_service
from api.services.run_service import (
    ClientRun,
    CompetitorRun,
    RunKind,
    kind_of,
    run_service,
)

__all__ = [
    "client_service",
    "run_service",
    "ClientRun",
    "CompetitorRun",
    "RunKind",
    "kind_of",
]
