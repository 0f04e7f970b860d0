"""
OpenAI Realtime API session client.

One RealtimeSession owns one upstream WebSocket. Client calls (audio append,
response create/cancel, text messages, session updates, tool outputs) are sent
as Realtime API client events. Server events are folded into a local
RealtimeConversation and surfaced as a single ordered stream of typed session
events, consumed with ``async for event in session.events()``.
"""

import asyncio
import base64
import copy
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

import websockets

from voice_relay.core.errors import UpstreamSessionError
from voice_relay.core.logging import get_logger
from voice_relay.services.realtime_conversation import (
    DEFAULT_FREQUENCY,
    RealtimeConversation,
    ms_to_byte_offset,
    serialize_delta,
    serialize_item,
)

logger = get_logger(__name__)

# Input audio kept locally for speech windows while server VAD is on
MAX_BUFFERED_INPUT_MS = 60_000

# Keys accepted by session.update
SESSION_CONFIG_KEYS = (
    "modalities",
    "instructions",
    "voice",
    "input_audio_format",
    "output_audio_format",
    "input_audio_transcription",
    "turn_detection",
    "tools",
    "tool_choice",
    "temperature",
    "max_response_output_tokens",
)

DEFAULT_SESSION_CONFIG: Dict[str, Any] = {
    "modalities": ["text", "audio"],
    "instructions": "",
    "voice": "alloy",
    "input_audio_format": "pcm16",
    "output_audio_format": "pcm16",
    "input_audio_transcription": None,
    "turn_detection": None,
    "tools": [],
    "tool_choice": "auto",
    "temperature": 0.8,
    "max_response_output_tokens": 4096,
}

# Server events that change a visible conversation item
ITEM_UPDATE_EVENTS = frozenset(
    {
        "conversation.item.truncated",
        "conversation.item.deleted",
        "conversation.item.input_audio_transcription.completed",
        "response.audio_transcript.delta",
        "response.audio.delta",
        "response.text.delta",
        "response.function_call_arguments.delta",
    }
)

# Server events that only update bookkeeping
SILENT_STATE_EVENTS = frozenset(
    {
        "response.created",
        "response.output_item.added",
        "response.content_part.added",
        "response.done",
    }
)


# =============================================================================
# Session events
# =============================================================================


@dataclass(frozen=True)
class SessionError:
    """The upstream reported an error."""

    error: Dict[str, Any]


@dataclass(frozen=True)
class ConversationInterrupted:
    """An in-flight response was interrupted.

    ``client_initiated`` is True when the interruption echoes a cancel request
    made through this session, False when server VAD heard the user speak.
    """

    client_initiated: bool = False


@dataclass(frozen=True)
class ItemUpdated:
    """An item changed. All fields are JSON-safe snapshots."""

    item: Dict[str, Any]
    delta: Optional[Dict[str, Any]]
    conversation_items: List[Dict[str, Any]]
    audio_length: Optional[int] = None


@dataclass(frozen=True)
class ItemCompleted:
    item: Dict[str, Any]


@dataclass(frozen=True)
class ServerEvent:
    """Raw server event, emitted for every message before any derived event."""

    event_type: str
    payload: Dict[str, Any]
    received_at: int


@dataclass(frozen=True)
class ToolCallRequested:
    """The model finished a function call and is waiting for its output."""

    call_id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class SessionClosed:
    reason: str


SessionEvent = Union[
    SessionError,
    ConversationInterrupted,
    ItemUpdated,
    ItemCompleted,
    ServerEvent,
    ToolCallRequested,
    SessionClosed,
]

Connector = Callable[..., Awaitable[Any]]


def _event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:21]}"


class RealtimeSession:
    """
    Bidirectional session with the OpenAI Realtime API.

    Usage:
        session = RealtimeSession(api_key=key, url=url, model=model)
        session.add_tool(definition)
        await session.update_session({"voice": "alloy"})
        await session.connect()
        async for event in session.events():
            ...
        session.disconnect()
    """

    def __init__(
        self,
        *,
        api_key: str,
        url: str,
        model: str,
        connect_timeout_sec: float = 10.0,
        connector: Optional[Connector] = None,
    ):
        self.api_key = api_key
        self.url = url
        self.model = model
        self.connect_timeout_sec = connect_timeout_sec
        self._connector = connector or websockets.connect

        self.session_config: Dict[str, Any] = copy.deepcopy(DEFAULT_SESSION_CONFIG)
        self.conversation = RealtimeConversation()
        self.input_audio_buffer = bytearray()
        # Stream byte position of input_audio_buffer[0]
        self._input_audio_offset = 0

        self._tool_definitions: Dict[str, Dict[str, Any]] = {}
        self._ws = None
        self._receiver_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._events: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._closed

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the upstream socket and push the current session configuration.

        Raises:
            UpstreamSessionError: connection failed or timed out
        """
        if self.is_connected:
            raise UpstreamSessionError("Already connected")
        if self._closed:
            raise UpstreamSessionError("Session was disconnected")

        url = f"{self.url}?model={self.model}"
        try:
            self._ws = await asyncio.wait_for(
                self._connector(
                    url,
                    additional_headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "OpenAI-Beta": "realtime=v1",
                    },
                ),
                timeout=self.connect_timeout_sec,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamSessionError("Connection timeout") from e
        except Exception as e:
            raise UpstreamSessionError(str(e) or type(e).__name__) from e

        self._receiver_task = asyncio.create_task(self._receiver())
        logger.info("realtime_session_connected", model=self.model)
        await self._send_session_update()

    def disconnect(self) -> Optional[asyncio.Task]:
        """
        Request the upstream socket to close.

        Does not wait for the close handshake. Returns the closing task so a
        caller may await it; calling again is a no-op.
        """
        if self._closed:
            return self._close_task
        self._closed = True

        if self._receiver_task and not self._receiver_task.done():
            self._receiver_task.cancel()

        if self._ws is not None:
            self._close_task = asyncio.create_task(self._close_socket(self._ws))

        self.conversation.clear()
        self.input_audio_buffer = bytearray()
        self._input_audio_offset = 0
        self._events.put_nowait(SessionClosed(reason="disconnected"))
        return self._close_task

    async def _close_socket(self, ws) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug("realtime_session_close_failed", error=str(e))

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Yield session events in arrival order; ends after SessionClosed."""
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, SessionClosed):
                return

    # -------------------------------------------------------------------------
    # Client operations
    # -------------------------------------------------------------------------

    def add_tool(self, definition: Dict[str, Any]) -> None:
        """Register a function tool definition ({name, description, parameters})."""
        name = definition.get("name")
        if not name:
            raise ValueError("Tool definition requires a name")
        if name in self._tool_definitions:
            raise ValueError(f"Tool {name!r} already added")
        self._tool_definitions[name] = definition

    async def update_session(self, config: Dict[str, Any]) -> None:
        """Merge known keys into the session configuration and resend it."""
        for key in SESSION_CONFIG_KEYS:
            if key in config:
                self.session_config[key] = copy.deepcopy(config[key])
        if self.is_connected:
            await self._send_session_update()

    def turn_detection_type(self) -> Optional[str]:
        turn_detection = self.session_config.get("turn_detection")
        if not turn_detection or turn_detection.get("type") in (None, "none"):
            return None
        return turn_detection.get("type")

    async def append_input_audio(self, audio: bytes) -> None:
        """Append PCM16 audio to the upstream input buffer."""
        if not audio:
            return
        await self._send("input_audio_buffer.append", {"audio": base64.b64encode(audio).decode()})
        self.input_audio_buffer.extend(audio)
        overflow = len(self.input_audio_buffer) - ms_to_byte_offset(MAX_BUFFERED_INPUT_MS)
        if overflow > 0:
            del self.input_audio_buffer[:overflow]
            self._input_audio_offset += overflow

    async def create_response(self) -> None:
        """Ask for a response, committing buffered audio first when VAD is off."""
        if self.turn_detection_type() is None and self.input_audio_buffer:
            await self._send("input_audio_buffer.commit")
            self.conversation.queue_input_audio(bytes(self.input_audio_buffer))
            self._input_audio_offset += len(self.input_audio_buffer)
            self.input_audio_buffer = bytearray()
        await self._send("response.create")

    async def cancel_response(self, item_id: Optional[str] = None, sample_count: int = 0) -> Optional[Dict[str, Any]]:
        """
        Cancel the in-flight response.

        When ``item_id`` names an assistant message, its audio is truncated at
        ``sample_count`` samples so the conversation matches what was heard.

        Returns:
            Snapshot of the truncated item, or None

        Raises:
            UpstreamSessionError: the item is unknown or not an assistant message
        """
        if not item_id:
            await self._send("response.cancel")
            self._events.put_nowait(ConversationInterrupted(client_initiated=True))
            return None

        item = self.conversation.get_item(item_id)
        if item is None:
            raise UpstreamSessionError(f'Could not find item "{item_id}"', code="UNKNOWN_ITEM")
        if item.get("type") != "message" or item.get("role") != "assistant":
            raise UpstreamSessionError("Can only cancel assistant messages", code="INVALID_CANCEL_TARGET")

        await self._send("response.cancel")
        audio_index = next(
            (index for index, part in enumerate(item.get("content") or []) if part.get("type") == "audio"),
            None,
        )
        if audio_index is not None:
            await self._send(
                "conversation.item.truncate",
                {
                    "item_id": item_id,
                    "content_index": audio_index,
                    "audio_end_ms": int(max(sample_count, 0) * 1000 / DEFAULT_FREQUENCY),
                },
            )
        self._events.put_nowait(ConversationInterrupted(client_initiated=True))
        return serialize_item(item)

    async def send_user_message(self, content: List[Dict[str, Any]]) -> None:
        """Add a user message item; does not request a response."""
        if not content:
            return
        await self._send(
            "conversation.item.create",
            {"item": {"type": "message", "role": "user", "content": content}},
        )

    async def submit_tool_output(self, call_id: str, output: Dict[str, Any]) -> None:
        await self._send(
            "conversation.item.create",
            {
                "item": {
                    "type": "function_call_output",
                    "call_id": call_id,
                    "output": json.dumps(output),
                }
            },
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _session_payload(self) -> Dict[str, Any]:
        payload = copy.deepcopy(self.session_config)
        if self.turn_detection_type() is None:
            payload["turn_detection"] = None

        tools = [dict(tool, type="function") for tool in payload.get("tools") or []]
        registered = {tool.get("name") for tool in tools}
        tools.extend(
            dict(definition, type="function")
            for name, definition in self._tool_definitions.items()
            if name not in registered
        )
        payload["tools"] = tools
        return payload

    async def _send_session_update(self) -> None:
        await self._send("session.update", {"session": self._session_payload()})

    async def _send(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        if not self.is_connected:
            raise UpstreamSessionError("Realtime session is not connected", code="NOT_CONNECTED")

        event = {"event_id": _event_id(), "type": event_type}
        if data:
            event.update(data)
        try:
            await self._ws.send(json.dumps(event))
        except websockets.ConnectionClosed as e:
            raise UpstreamSessionError(f"Realtime connection closed: {e}") from e

    async def _receiver(self) -> None:
        """Receive server events until the socket closes."""
        reason = "upstream closed"
        try:
            async for message in self._ws:
                try:
                    event = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("realtime_invalid_json")
                    continue
                try:
                    self._handle_server_event(event)
                except Exception as e:
                    logger.error("realtime_event_failed", event_type=event.get("type"), error=str(e))
        except websockets.ConnectionClosed as e:
            reason = f"upstream closed: {e}"
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error("realtime_receiver_failed", error=str(e))
            reason = f"upstream failed: {e}"

        if not self._closed:
            self._closed = True
            logger.info("realtime_session_dropped", reason=reason)
            self._events.put_nowait(SessionClosed(reason=reason))

    def _emit_update(self, item: Optional[Dict[str, Any]], delta: Optional[Dict[str, Any]]) -> None:
        if item is None:
            return
        audio_length = len(delta["audio"]) // 2 if delta and "audio" in delta else None
        self._events.put_nowait(
            ItemUpdated(
                item=serialize_item(item),
                delta=serialize_delta(delta),
                conversation_items=self.conversation.snapshot(),
                audio_length=audio_length,
            )
        )

    def _trim_input_audio(self, until_ms: int) -> None:
        """Drop buffered input audio that precedes until_ms."""
        cut = min(ms_to_byte_offset(until_ms) - self._input_audio_offset, len(self.input_audio_buffer))
        if cut > 0:
            del self.input_audio_buffer[:cut]
            self._input_audio_offset += cut

    def _handle_server_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type", "")
        self._events.put_nowait(ServerEvent(event_type=event_type, payload=event, received_at=int(time.time() * 1000)))

        if event_type == "error":
            self._events.put_nowait(SessionError(error=event.get("error") or {}))

        elif event_type == "input_audio_buffer.speech_started":
            self.conversation.process_event(event)
            self._trim_input_audio(event.get("audio_start_ms", 0))
            self._events.put_nowait(ConversationInterrupted(client_initiated=False))

        elif event_type == "input_audio_buffer.speech_stopped":
            self.conversation.process_event(event, self.input_audio_buffer, self._input_audio_offset)
            self._trim_input_audio(event.get("audio_end_ms", 0))

        elif event_type in SILENT_STATE_EVENTS:
            self.conversation.process_event(event)

        elif event_type == "conversation.item.created":
            item, delta = self.conversation.process_event(event)
            self._emit_update(item, delta)
            if item and item.get("status") == "completed":
                self._events.put_nowait(ItemCompleted(item=serialize_item(item)))

        elif event_type == "response.output_item.done":
            item, delta = self.conversation.process_event(event)
            self._emit_update(item, delta)
            if item.get("status") == "completed":
                self._events.put_nowait(ItemCompleted(item=serialize_item(item)))
            tool = item["formatted"].get("tool")
            if tool:
                self._events.put_nowait(
                    ToolCallRequested(
                        call_id=tool.get("call_id"),
                        name=tool.get("name"),
                        arguments=tool.get("arguments") or "{}",
                    )
                )

        elif event_type in ITEM_UPDATE_EVENTS:
            item, delta = self.conversation.process_event(event)
            self._emit_update(item, delta)
