"""Registry of open relay connections and their metrics.

All methods are synchronous and the server runs on a single asyncio loop, so
registry state never changes between the steps of one method call.
"""

import secrets
import string
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from voice_relay.core.errors import DuplicateConnectionError
from voice_relay.core.logging import get_logger
from voice_relay.core.metrics import relay_active_connections, relay_connections_total

if TYPE_CHECKING:
    from voice_relay.services.relay import ConnectionRelay

logger = get_logger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_connection_id() -> str:
    """``client_<epoch ms>_<9 random chars>``; not guaranteed unique."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"client_{now_ms()}_{suffix}"


@dataclass
class ConnectionMetrics:
    """Per-connection counters. Only the owning relay mutates them."""

    start_time: int = field(default_factory=now_ms)
    messages_received: int = 0
    messages_sent: int = 0
    interruption_count: int = 0
    conversation_turn_count: int = 0
    error_count: int = 0

    def duration_ms(self) -> int:
        return now_ms() - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConnectionRegistry:
    """
    Process-wide map of connection id -> relay.

    Also owns the aggregate stats: process start time and the lifetime count
    of accepted sockets.
    """

    def __init__(self):
        self._connections: Dict[str, "ConnectionRelay"] = {}
        self.started_at: int = now_ms()
        self.total_connections_served: int = 0

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def record_accept(self) -> None:
        """Count an accepted socket, whatever happens to it afterwards."""
        self.total_connections_served += 1
        relay_connections_total.inc()

    def register(self, connection_id: str, connection: "ConnectionRelay") -> None:
        if connection_id in self._connections:
            raise DuplicateConnectionError(f"Connection {connection_id} already registered")
        self._connections[connection_id] = connection
        relay_active_connections.set(len(self._connections))

    def lookup(self, connection_id: str) -> Optional["ConnectionRelay"]:
        return self._connections.get(connection_id)

    def unregister(self, connection_id: str) -> None:
        """Remove a connection; unknown ids are ignored."""
        if self._connections.pop(connection_id, None) is not None:
            relay_active_connections.set(len(self._connections))

    def snapshot(self) -> List["ConnectionRelay"]:
        return list(self._connections.values())

    def stats_snapshot(self) -> Dict[str, Any]:
        """Aggregate stats for the /stats endpoint."""
        connections = self.snapshot()
        return {
            "active_connections": len(connections),
            "server_uptime": now_ms() - self.started_at,
            "total_connections_served": self.total_connections_served,
            "connections": [
                {
                    "client_id": connection.connection_id,
                    "connected_duration": connection.metrics.duration_ms(),
                    "metrics": connection.metrics.to_dict(),
                }
                for connection in connections
            ],
        }

    async def close_all(self) -> None:
        """Close every open connection (used at shutdown)."""
        connections = self.snapshot()
        if connections:
            logger.info("closing_all_connections", count=len(connections))
        for connection in connections:
            await connection.close(reason="server shutdown")
