"""
Health check endpoint
"""

from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel

from voice_relay.core.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response model"""

    status: str
    timestamp: str


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint
    Returns 200 if the service is running
    """
    logger.debug("health_check_requested")
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )
