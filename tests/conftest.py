from __future__ import annotations

import os

# Settings require OPENAI_API_KEY; tests never reach the real API. These
# defaults are only applied when the variables are not already set.
os.environ.setdefault("OPENAI_API_KEY", "sk-test-key")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
from starlette.websockets import WebSocketState

from voice_relay.core.errors import UpstreamSessionError
from voice_relay.services.realtime_session import (
    ConversationInterrupted,
    ItemCompleted,
    ItemUpdated,
    SessionClosed,
)


class FakeRealtimeSession:
    """In-memory stand-in for RealtimeSession that records every call."""

    def __init__(self, fail_connect: Optional[str] = None):
        self.fail_connect = fail_connect
        self.calls: List[tuple] = []
        self.tools: List[Dict[str, Any]] = []
        self.config: Dict[str, Any] = {}
        self.connected = False
        self.disconnect_count = 0
        self._queue: Optional[asyncio.Queue] = None

    @property
    def queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def emit(self, event) -> None:
        self.queue.put_nowait(event)

    def add_tool(self, definition):
        self.tools.append(definition)

    async def update_session(self, config):
        self.config.update(config)
        self.calls.append(("update_session", config))

    async def connect(self):
        if self.fail_connect:
            raise UpstreamSessionError(self.fail_connect)
        self.connected = True

    def disconnect(self):
        self.disconnect_count += 1
        if self.connected:
            self.connected = False
            self.emit(SessionClosed(reason="disconnected"))
        return None

    async def events(self):
        while True:
            event = await self.queue.get()
            yield event
            if isinstance(event, SessionClosed):
                return

    async def append_input_audio(self, audio):
        self.calls.append(("append_input_audio", audio))

    async def create_response(self):
        self.calls.append(("create_response",))

    async def cancel_response(self, item_id=None, sample_count=0):
        self.calls.append(("cancel_response", item_id, sample_count))
        self.emit(ConversationInterrupted(client_initiated=True))
        return None

    async def send_user_message(self, content):
        self.calls.append(("send_user_message", content))

    async def submit_tool_output(self, call_id, output):
        self.calls.append(("submit_tool_output", call_id, output))

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


class ScriptedRealtimeSession(FakeRealtimeSession):
    """Answers every create_response with a short assistant reply."""

    reply_chunks = ("Hi", " there!")

    async def send_user_message(self, content):
        await super().send_user_message(content)
        item = {
            "id": "item_user",
            "type": "message",
            "role": "user",
            "status": "completed",
            "content": content,
            "formatted": {"text": content[0]["text"], "transcript": "", "audio_length": 0},
        }
        self.emit(ItemUpdated(item=item, delta=None, conversation_items=[item]))
        self.emit(ItemCompleted(item=item))

    async def create_response(self):
        await super().create_response()
        item = {
            "id": "item_assistant",
            "type": "message",
            "role": "assistant",
            "status": "in_progress",
            "content": [],
            "formatted": {"text": "", "transcript": "", "audio_length": 0},
        }
        for chunk in self.reply_chunks:
            item = dict(item, formatted=dict(item["formatted"], text=item["formatted"]["text"] + chunk))
            self.emit(ItemUpdated(item=item, delta={"text": chunk}, conversation_items=[item]))
        self.emit(ItemCompleted(item=dict(item, status="completed")))


class FakeClientSocket:
    """Minimal starlette WebSocket double for driving a ConnectionRelay."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.close_code: Optional[int] = None

    def feed(self, frame) -> None:
        text = frame if isinstance(frame, str) else json.dumps(frame)
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def hang_up(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})

    async def receive(self):
        return await self.incoming.get()

    async def send_json(self, data):
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    def sent_types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]


async def settle(rounds: int = 20) -> None:
    """Let queued tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def fake_session():
    return FakeRealtimeSession()


@pytest.fixture
def client_socket():
    return FakeClientSocket()


@pytest.fixture
def settle_loop():
    return settle


@pytest.fixture
def session_classes():
    """(FakeRealtimeSession, ScriptedRealtimeSession) for tests that build their own."""
    return FakeRealtimeSession, ScriptedRealtimeSession


@pytest.fixture
def socket_class():
    return FakeClientSocket
