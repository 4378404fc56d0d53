"""V1 API router - aggregates all versioned endpoints."""

from fastapi import APIRouter

from api.routers import effectiveness

router = APIRouter()

# Effectiveness endpoints
router.include_router(effectiveness.router)
router.include_router(effectiveness.admin_router)


@router.get("/")
async def v1_root() -> dict[str, str]:
    """V1 API root endpoint."""
    return {
        "version": "1",
        "status": "active",
    }
