"""
Per-connection realtime relay.

A ConnectionRelay owns one client WebSocket and one upstream RealtimeSession:
- client frames are validated and turned into upstream session calls
- upstream session events are turned into client frames, in arrival order
- per-connection metrics are counted along the way

States: CONNECTING -> ACTIVE -> CLOSED. There is no reconnection; a dropped
client socket or upstream session closes the relay and the client must open
a new socket.
"""

import asyncio
import struct
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from voice_relay.core.config import Settings
from voice_relay.core.errors import FrameValidationError, RelayError
from voice_relay.core.logging import get_voice_logger
from voice_relay.core.metrics import (
    relay_errors_total,
    relay_frames_received_total,
    relay_frames_sent_total,
    relay_interruptions_total,
)
from voice_relay.schemas.frames import (
    CancelResponseFrame,
    ClientFrame,
    CreateResponseFrame,
    GetMetricsFrame,
    InputAudioFrame,
    UpdateSessionFrame,
    UserMessageFrame,
    create_connected_frame,
    create_connection_error_frame,
    create_conversation_update_frame,
    create_error_frame,
    create_interrupted_frame,
    create_item_completed_frame,
    create_metrics_response_frame,
    create_realtime_event_frame,
    decode_frame,
    parse_client_frame,
)
from voice_relay.services.connection_registry import ConnectionMetrics, ConnectionRegistry, generate_connection_id
from voice_relay.services.realtime_session import (
    ConversationInterrupted,
    ItemCompleted,
    ItemUpdated,
    RealtimeSession,
    ServerEvent,
    SessionClosed,
    SessionError,
    SessionEvent,
    ToolCallRequested,
)
from voice_relay.services.relay_tools import ToolRegistry

voice_log = get_voice_logger(__name__)

# Raw upstream events forwarded to the client as realtime_event frames.
# Everything else (audio deltas, token deltas, ...) stays server side.
FORWARDED_SERVER_EVENTS = frozenset(
    {
        "input_audio_buffer.speech_started",
        "input_audio_buffer.speech_stopped",
        "response.created",
        "response.done",
    }
)

LOGGED_SERVER_EVENTS = frozenset(
    {
        "response.audio.delta",
        "input_audio_buffer.speech_started",
        "input_audio_buffer.speech_stopped",
    }
)

DEFAULT_INSTRUCTIONS = """You are an advanced AI assistant with real-time conversation capabilities.
You can be interrupted naturally - this is expected and normal in human conversation.
Keep your responses engaging, concise, and natural.
You have access to tools for the current time and for conversation metrics.
React appropriately to interruptions and continue conversations smoothly."""

SessionFactory = Callable[[], RealtimeSession]


class RelayState(Enum):
    """Relay connection states"""

    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


def default_session_config(settings: Settings) -> Dict[str, Any]:
    """Session configuration pushed to every new upstream session."""
    return {
        "modalities": ["text", "audio"],
        "instructions": DEFAULT_INSTRUCTIONS,
        "voice": settings.REALTIME_VOICE,
        "input_audio_format": "pcm16",
        "output_audio_format": "pcm16",
        "input_audio_transcription": {"model": "whisper-1"},
        "turn_detection": {
            "type": "server_vad",
            "threshold": settings.VAD_THRESHOLD,
            "prefix_padding_ms": settings.VAD_PREFIX_PADDING_MS,
            "silence_duration_ms": settings.VAD_SILENCE_DURATION_MS,
        },
        "temperature": settings.REALTIME_TEMPERATURE,
        "max_response_output_tokens": settings.REALTIME_MAX_OUTPUT_TOKENS,
    }


def samples_to_pcm16(samples: List[int]) -> bytes:
    """Pack int16 samples as little-endian PCM16."""
    try:
        return struct.pack(f"<{len(samples)}h", *samples)
    except struct.error as e:
        raise FrameValidationError(f"Invalid audio samples: {e}") from e


def is_websocket_connected(websocket: WebSocket) -> bool:
    """Check if WebSocket is still in a connected state and can receive messages."""
    try:
        return (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        )
    except Exception:
        return False


async def safe_send_json(websocket: WebSocket, data: Dict[str, Any]) -> bool:
    """Send JSON to a WebSocket, returning False if the socket is closed."""
    if not is_websocket_connected(websocket):
        return False

    try:
        await websocket.send_json(data)
        return True
    except (RuntimeError, WebSocketDisconnect) as e:
        voice_log.debug("relay_send_on_closed_socket", error=str(e))
        return False


class ConnectionRelay:
    """
    Relay between one client socket and one upstream realtime session.

    Usage:
        await websocket.accept()
        relay = ConnectionRelay(websocket, registry=registry, session_factory=factory, tools=tools)
        await relay.run()  # returns once the relay is CLOSED
    """

    def __init__(
        self,
        websocket: WebSocket,
        *,
        registry: ConnectionRegistry,
        session_factory: SessionFactory,
        tools: ToolRegistry,
        session_config: Optional[Dict[str, Any]] = None,
        connection_id: Optional[str] = None,
    ):
        self.websocket = websocket
        self.registry = registry
        self.tools = tools
        self.session_config = session_config or {}
        self.connection_id = connection_id or generate_connection_id()
        self.metrics = ConnectionMetrics()
        self.state = RelayState.CONNECTING
        self.session: Optional[RealtimeSession] = None

        self._session_factory = session_factory
        self._pump_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Open the upstream session, relay until either side closes, tear down."""
        self.registry.record_accept()
        self.registry.register(self.connection_id, self)
        voice_log.session_start(session_id=self.connection_id)

        try:
            if await self._open_session():
                await self._receive_loop()
        finally:
            await self.close(reason="client disconnected")

    async def _open_session(self) -> bool:
        self.session = self._session_factory()
        try:
            for definition in self.tools.definitions():
                self.session.add_tool(definition)
            await self.session.update_session(self.session_config)
            await self.session.connect()
        except RelayError as e:
            voice_log.error("relay_upstream_connect_failed", session_id=self.connection_id, error=e.message)
            self._count_error("upstream")
            await self._send(create_connection_error_frame(e.message))
            return False

        self._set_state(RelayState.ACTIVE, trigger="upstream connected")
        await self._send(create_connected_frame(self.connection_id))
        self._pump_task = asyncio.create_task(self._pump_events())
        return True

    async def close(self, reason: str = "closed") -> None:
        """
        Move to CLOSED: request upstream disconnect, unregister, close the socket.

        Safe to call more than once.
        """
        if self.state is RelayState.CLOSED:
            return
        self._set_state(RelayState.CLOSED, trigger=reason)

        if self._pump_task and self._pump_task is not asyncio.current_task() and not self._pump_task.done():
            self._pump_task.cancel()

        if self.session is not None:
            # Best effort; the close handshake is not awaited.
            self.session.disconnect()

        self.registry.unregister(self.connection_id)

        if is_websocket_connected(self.websocket):
            code = 1001 if reason == "server shutdown" else 1000
            try:
                await self.websocket.close(code=code)
            except Exception as e:
                voice_log.debug("relay_socket_close_failed", session_id=self.connection_id, error=str(e))

        voice_log.session_end(
            session_id=self.connection_id,
            duration_ms=self.metrics.duration_ms(),
            turn_count=self.metrics.conversation_turn_count,
            reason=reason,
        )

    def _set_state(self, new_state: RelayState, trigger: Optional[str] = None) -> None:
        old_state = self.state
        self.state = new_state
        if old_state != new_state:
            voice_log.state_change(
                session_id=self.connection_id,
                from_state=old_state.value,
                to_state=new_state.value,
                trigger=trigger,
            )

    # -------------------------------------------------------------------------
    # Client -> upstream
    # -------------------------------------------------------------------------

    async def _receive_loop(self) -> None:
        while self.state is RelayState.ACTIVE:
            try:
                message = await self.websocket.receive()
            except (WebSocketDisconnect, RuntimeError):
                break
            if message.get("type") == "websocket.disconnect":
                break

            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            if raw is not None:
                await self.handle_frame(raw)

    async def handle_frame(self, raw: str) -> None:
        """Validate and dispatch one client frame. Never raises."""
        try:
            payload = decode_frame(raw)
        except FrameValidationError as e:
            voice_log.error("relay_frame_malformed", session_id=self.connection_id, error=e.message)
            self._count_error("frame")
            return

        frame_type = payload.get("type")
        try:
            frame = parse_client_frame(payload)
        except FrameValidationError as e:
            self._count_received(str(frame_type))
            voice_log.error("relay_frame_invalid", session_id=self.connection_id, error=e.message)
            self._count_error("frame")
            return

        if frame is None:
            voice_log.info("relay_frame_unknown", session_id=self.connection_id, frame_type=frame_type)
            return

        self._count_received(frame.type)
        voice_log.websocket_message(
            session_id=self.connection_id,
            direction="receive",
            message_type=frame.type,
            size_bytes=len(raw),
        )

        try:
            await self._dispatch_frame(frame)
        except RelayError as e:
            voice_log.error(
                "relay_frame_failed",
                session_id=self.connection_id,
                frame_type=frame.type,
                error_code=e.code,
                error=e.message,
            )
            self._count_error(e.category.value)
        except Exception as e:
            voice_log.error(
                "relay_frame_crashed",
                session_id=self.connection_id,
                frame_type=frame.type,
                error=str(e),
                exc_info=True,
            )
            self._count_error("internal")

    async def _dispatch_frame(self, frame: ClientFrame) -> None:
        session = self.session

        if isinstance(frame, InputAudioFrame):
            if frame.audio_data:
                await session.append_input_audio(samples_to_pcm16(frame.audio_data))

        elif isinstance(frame, CreateResponseFrame):
            await session.create_response()

        elif isinstance(frame, CancelResponseFrame):
            if frame.response_id:
                await session.cancel_response(frame.response_id, frame.sample_count)
                self.metrics.interruption_count += 1
                relay_interruptions_total.labels(source="client_cancel").inc()
                voice_log.barge_in(
                    session_id=self.connection_id,
                    source="client_cancel",
                    item_id=frame.response_id,
                    sample_count=frame.sample_count,
                )

        elif isinstance(frame, UserMessageFrame):
            if frame.text:
                await session.send_user_message([{"type": "input_text", "text": frame.text}])

        elif isinstance(frame, UpdateSessionFrame):
            if frame.session_config is not None:
                await session.update_session(frame.session_config)

        elif isinstance(frame, GetMetricsFrame):
            await self._send(
                create_metrics_response_frame(
                    self.metrics.to_dict(),
                    duration_seconds=round(self.metrics.duration_ms() / 1000),
                )
            )

    # -------------------------------------------------------------------------
    # Upstream -> client
    # -------------------------------------------------------------------------

    async def _pump_events(self) -> None:
        async for event in self.session.events():
            if self.state is RelayState.CLOSED:
                return
            try:
                await self.handle_session_event(event)
            except RelayError as e:
                voice_log.error("relay_event_failed", session_id=self.connection_id, error=e.message)
                self._count_error(e.category.value)
            except Exception as e:
                voice_log.error(
                    "relay_event_crashed",
                    session_id=self.connection_id,
                    event_class=type(event).__name__,
                    error=str(e),
                    exc_info=True,
                )
                self._count_error("internal")

    async def handle_session_event(self, event: SessionEvent) -> None:
        """Map one upstream session event to client frames and metrics."""
        if isinstance(event, ServerEvent):
            if event.event_type in LOGGED_SERVER_EVENTS:
                voice_log.upstream_event(session_id=self.connection_id, event_type=event.event_type)
            if event.event_type in FORWARDED_SERVER_EVENTS:
                await self._send(create_realtime_event_frame(event.event_type, event.payload, event.received_at))

        elif isinstance(event, SessionError):
            voice_log.error("relay_upstream_error", session_id=self.connection_id, error=event.error)
            self._count_error("upstream")
            await self._send(create_error_frame(event.error))

        elif isinstance(event, ConversationInterrupted):
            if not event.client_initiated:
                # Client cancels were already counted when the frame arrived
                self.metrics.interruption_count += 1
                relay_interruptions_total.labels(source="server_vad").inc()
                voice_log.barge_in(session_id=self.connection_id, source="server_vad")
            await self._send(create_interrupted_frame(self.metrics.interruption_count))

        elif isinstance(event, ItemUpdated):
            self.metrics.messages_sent += 1
            await self._send(
                create_conversation_update_frame(
                    event.item,
                    event.delta,
                    event.conversation_items,
                    audio_length=event.audio_length,
                )
            )

        elif isinstance(event, ItemCompleted):
            self.metrics.messages_sent += 1
            if event.item.get("role") == "assistant":
                self.metrics.conversation_turn_count += 1
            voice_log.info(
                "relay_item_completed",
                session_id=self.connection_id,
                item_type=event.item.get("type"),
                role=event.item.get("role"),
            )
            await self._send(create_item_completed_frame(event.item, self.metrics.conversation_turn_count))

        elif isinstance(event, ToolCallRequested):
            await self._run_tool(event)

        elif isinstance(event, SessionClosed):
            await self.close(reason=event.reason)

    async def _run_tool(self, call: ToolCallRequested) -> None:
        voice_log.info("relay_tool_call", session_id=self.connection_id, tool=call.name, call_id=call.call_id)
        output = self.tools.execute(call.name, call.arguments, self.connection_id)
        await self.session.submit_tool_output(call.call_id, output)
        await self.session.create_response()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _send(self, frame: Dict[str, Any]) -> bool:
        if self.state is RelayState.CLOSED:
            return False
        sent = await safe_send_json(self.websocket, frame)
        if sent:
            relay_frames_sent_total.labels(frame_type=frame["type"]).inc()
            voice_log.websocket_message(session_id=self.connection_id, direction="send", message_type=frame["type"])
        return sent

    def _count_received(self, frame_type: str) -> None:
        self.metrics.messages_received += 1
        relay_frames_received_total.labels(frame_type=frame_type).inc()

    def _count_error(self, category: str) -> None:
        self.metrics.error_count += 1
        relay_errors_total.labels(category=category).inc()
