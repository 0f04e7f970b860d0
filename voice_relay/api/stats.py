"""
Relay statistics endpoint
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter()


class ConnectionStats(BaseModel):
    client_id: str
    connected_duration: int
    metrics: Dict[str, Any]


class StatsResponse(BaseModel):
    """Aggregate relay statistics"""

    active_connections: int
    server_uptime: int
    total_connections_served: int
    connections: List[ConnectionStats]


@router.get("/stats", response_model=StatsResponse)
async def relay_stats(request: Request):
    """
    Active connection count, uptime (ms), lifetime connection count and the
    per-connection metrics of every open relay.
    """
    return request.app.state.registry.stats_snapshot()
