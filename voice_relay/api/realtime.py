"""
Realtime relay WebSocket endpoint.

Every accepted socket gets its own ConnectionRelay and its own upstream
OpenAI Realtime session. Protocol frames are documented in
voice_relay.schemas.frames.
"""

from fastapi import APIRouter, WebSocket

from voice_relay.core.errors import DuplicateConnectionError
from voice_relay.core.logging import get_logger
from voice_relay.services.relay import ConnectionRelay

router = APIRouter(tags=["realtime"])
logger = get_logger(__name__)


@router.websocket("/realtime")
async def realtime_relay(websocket: WebSocket):
    """
    Relay a client socket to an upstream realtime session.

    The socket is accepted before the upstream session is opened so that a
    failed upstream connect can still be reported with a connection_error
    frame.
    """
    state = websocket.app.state
    await websocket.accept()

    relay = ConnectionRelay(
        websocket,
        registry=state.registry,
        session_factory=state.session_factory,
        tools=state.tools,
        session_config=state.session_config,
    )
    try:
        await relay.run()
    except DuplicateConnectionError as e:
        logger.error("relay_connection_id_collision", connection_id=relay.connection_id, error=e.message)
        await websocket.close(code=1011)
