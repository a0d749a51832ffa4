"""Health check router."""

from fastapi import APIRouter, status

router = APIRouter(
    prefix="/api/v1/health",
    tags=["Health"],
)


@router.get("", status_code=status.HTTP_200_OK)
async def healthcheck():
    """Liveness probe. Does not touch the user store."""
    return {"status": "ok"}
