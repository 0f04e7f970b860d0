"""Prometheus metrics endpoint.

Exposes relay and HTTP metrics for scraping. No authentication
(should be secured at infrastructure level).
"""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(prefix="/metrics", tags=["observability"])


@router.get("", response_class=Response)
async def prometheus_metrics():
    """
    Expose Prometheus metrics in text format.

    Returns:
        Prometheus-formatted metrics
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
