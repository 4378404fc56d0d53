"""Pydantic schemas package."""

from api.schemas.effectiveness import (
    CriterionScoreRead,
    EntityLatest,
    LatestResultsResponse,
    ProgressRead,
    RefreshResponse,
    RunRead,
    RunWithScores,
    SweepResponse,
)
from api.schemas.responses import ErrorDetail, ErrorResponse, SuccessResponse

__all__ = [
    "CriterionScoreRead",
    "EntityLatest",
    "ErrorDetail",
    "ErrorResponse",
    "LatestResultsResponse",
    "ProgressRead",
    "RefreshResponse",
    "RunRead",
    "RunWithScores",
    "SuccessResponse",
    "SweepResponse",
]
