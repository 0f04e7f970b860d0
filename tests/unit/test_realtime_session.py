"""
Unit tests for the OpenAI Realtime session client.

The upstream socket is replaced by an in-memory fake passed as the
session's connector.
"""

import asyncio
import base64
import json

import pytest


class FakeUpstreamSocket:
    """Async-iterable socket double: push() feeds server events, sent collects client events."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, message):
        self.sent.append(json.loads(message))

    def push(self, event):
        self._incoming.put_nowait(json.dumps(event))

    def drop(self):
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def close(self):
        self.closed = True

    def sent_types(self):
        return [event["type"] for event in self.sent]


def make_session(socket, **kwargs):
    from voice_relay.services.realtime_session import RealtimeSession

    connect_calls = []

    async def connector(url, additional_headers=None):
        connect_calls.append((url, additional_headers))
        return socket

    session = RealtimeSession(
        api_key="sk-test",
        url="wss://example.test/v1/realtime",
        model="test-model",
        connector=connector,
        **kwargs,
    )
    return session, connect_calls


async def next_event(events, timeout=1.0):
    return await asyncio.wait_for(events.__anext__(), timeout)


async def collect_until(events, predicate, limit=20):
    seen = []
    for _ in range(limit):
        event = await next_event(events)
        seen.append(event)
        if predicate(event):
            return seen
    raise AssertionError(f"predicate not satisfied after {limit} events: {seen}")


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_sends_headers_and_session_update(self):
        socket = FakeUpstreamSocket()
        session, connect_calls = make_session(socket)
        session.add_tool({"name": "get_current_time", "description": "clock", "parameters": {}})
        await session.update_session({"voice": "echo", "unknown_key": 1})

        await session.connect()

        url, headers = connect_calls[0]
        assert url == "wss://example.test/v1/realtime?model=test-model"
        assert headers["Authorization"] == "Bearer sk-test"
        assert headers["OpenAI-Beta"] == "realtime=v1"

        update = socket.sent[0]
        assert update["type"] == "session.update"
        assert update["session"]["voice"] == "echo"
        assert "unknown_key" not in update["session"]
        assert update["session"]["tools"] == [
            {"name": "get_current_time", "description": "clock", "parameters": {}, "type": "function"}
        ]
        assert session.is_connected
        session.disconnect()

    @pytest.mark.asyncio
    async def test_connect_failure_raises_upstream_error(self):
        from voice_relay.core.errors import UpstreamSessionError
        from voice_relay.services.realtime_session import RealtimeSession

        async def connector(url, additional_headers=None):
            raise OSError("connection refused")

        session = RealtimeSession(api_key="sk", url="wss://x", model="m", connector=connector)

        with pytest.raises(UpstreamSessionError, match="connection refused"):
            await session.connect()
        assert not session.is_connected

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        from voice_relay.core.errors import UpstreamSessionError
        from voice_relay.services.realtime_session import RealtimeSession

        async def connector(url, additional_headers=None):
            await asyncio.sleep(10)

        session = RealtimeSession(api_key="sk", url="wss://x", model="m", connector=connector, connect_timeout_sec=0.01)

        with pytest.raises(UpstreamSessionError, match="timeout"):
            await session.connect()

    @pytest.mark.asyncio
    async def test_send_before_connect_raises(self):
        from voice_relay.core.errors import UpstreamSessionError

        session, _ = make_session(FakeUpstreamSocket())
        with pytest.raises(UpstreamSessionError) as exc_info:
            await session.create_response()
        assert exc_info.value.code == "NOT_CONNECTED"


class TestSessionConfig:
    @pytest.mark.asyncio
    async def test_turn_detection_none_is_sent_as_null(self):
        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()

        await session.update_session({"turn_detection": {"type": "none"}})

        assert socket.sent[-1]["session"]["turn_detection"] is None
        assert session.turn_detection_type() is None
        session.disconnect()

    def test_server_vad_turn_detection_type(self):
        session, _ = make_session(FakeUpstreamSocket())
        session.session_config["turn_detection"] = {"type": "server_vad"}
        assert session.turn_detection_type() == "server_vad"

    def test_duplicate_tool_rejected(self):
        session, _ = make_session(FakeUpstreamSocket())
        session.add_tool({"name": "t", "parameters": {}})
        with pytest.raises(ValueError):
            session.add_tool({"name": "t", "parameters": {}})


class TestClientOperations:
    @pytest.mark.asyncio
    async def test_append_audio_is_base64(self):
        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()

        await session.append_input_audio(b"\x01\x00\x02\x00")

        event = socket.sent[-1]
        assert event["type"] == "input_audio_buffer.append"
        assert base64.b64decode(event["audio"]) == b"\x01\x00\x02\x00"
        session.disconnect()

    @pytest.mark.asyncio
    async def test_create_response_commits_when_vad_off(self):
        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()
        await session.append_input_audio(b"\x01\x00")

        await session.create_response()

        assert socket.sent_types()[-2:] == ["input_audio_buffer.commit", "response.create"]
        assert session.input_audio_buffer == bytearray()
        session.disconnect()

    @pytest.mark.asyncio
    async def test_create_response_does_not_commit_with_server_vad(self):
        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.update_session({"turn_detection": {"type": "server_vad"}})
        await session.connect()
        await session.append_input_audio(b"\x01\x00")

        await session.create_response()

        assert "input_audio_buffer.commit" not in socket.sent_types()
        assert socket.sent_types()[-1] == "response.create"
        session.disconnect()

    @pytest.mark.asyncio
    async def test_send_user_message(self):
        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()

        await session.send_user_message([{"type": "input_text", "text": "hello"}])

        event = socket.sent[-1]
        assert event["type"] == "conversation.item.create"
        assert event["item"] == {
            "type": "message",
            "role": "user",
            "content": [{"type": "input_text", "text": "hello"}],
        }
        assert "response.create" not in socket.sent_types()
        session.disconnect()

    @pytest.mark.asyncio
    async def test_submit_tool_output(self):
        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()

        await session.submit_tool_output("call_1", {"result": "12:00:00"})

        item = socket.sent[-1]["item"]
        assert item["type"] == "function_call_output"
        assert item["call_id"] == "call_1"
        assert json.loads(item["output"]) == {"result": "12:00:00"}
        session.disconnect()


class TestCancelResponse:
    async def _session_with_assistant_audio(self):
        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()
        socket.push(
            {
                "type": "conversation.item.created",
                "item": {"id": "item_a", "type": "message", "role": "assistant", "content": []},
            }
        )
        socket.push({"type": "response.content_part.added", "item_id": "item_a", "part": {"type": "audio"}})
        events = session.events()
        await collect_until(events, lambda e: getattr(e, "event_type", None) == "response.content_part.added")
        return socket, session, events

    @pytest.mark.asyncio
    async def test_cancel_truncates_at_sample_count(self):
        from voice_relay.services.realtime_session import ConversationInterrupted

        socket, session, events = await self._session_with_assistant_audio()

        await session.cancel_response("item_a", sample_count=48000)

        assert socket.sent_types()[-2:] == ["response.cancel", "conversation.item.truncate"]
        truncate = socket.sent[-1]
        assert truncate["item_id"] == "item_a"
        assert truncate["content_index"] == 0
        assert truncate["audio_end_ms"] == 2000

        event = await next_event(events)
        assert event == ConversationInterrupted(client_initiated=True)
        session.disconnect()

    @pytest.mark.asyncio
    async def test_cancel_unknown_item_raises(self):
        from voice_relay.core.errors import UpstreamSessionError

        socket, session, _ = await self._session_with_assistant_audio()

        with pytest.raises(UpstreamSessionError) as exc_info:
            await session.cancel_response("item_missing", 10)
        assert exc_info.value.code == "UNKNOWN_ITEM"
        assert "response.cancel" not in socket.sent_types()
        session.disconnect()


class TestServerEvents:
    @pytest.mark.asyncio
    async def test_raw_event_precedes_derived_events(self):
        from voice_relay.services.realtime_session import ItemCompleted, ItemUpdated, ServerEvent

        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()
        socket.push(
            {
                "type": "conversation.item.created",
                "item": {
                    "id": "item_u",
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": "hi"}],
                },
            }
        )

        events = session.events()
        first, second, third = [await next_event(events) for _ in range(3)]

        assert isinstance(first, ServerEvent)
        assert first.event_type == "conversation.item.created"
        assert isinstance(second, ItemUpdated)
        assert second.item["formatted"]["text"] == "hi"
        assert second.conversation_items[0]["id"] == "item_u"
        assert isinstance(third, ItemCompleted)
        assert third.item["role"] == "user"
        session.disconnect()

    @pytest.mark.asyncio
    async def test_audio_delta_update_carries_length(self):
        from voice_relay.services.realtime_session import ItemUpdated

        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()
        audio = b"\x01\x00\x02\x00\x03\x00"
        socket.push(
            {
                "type": "conversation.item.created",
                "item": {"id": "item_a", "type": "message", "role": "assistant", "content": []},
            }
        )
        socket.push({"type": "response.audio.delta", "item_id": "item_a", "delta": base64.b64encode(audio).decode()})

        events = session.events()
        seen = await collect_until(events, lambda e: isinstance(e, ItemUpdated) and e.delta is not None)
        update = seen[-1]

        assert update.audio_length == 3
        assert base64.b64decode(update.delta["audio"]) == audio
        assert update.item["formatted"]["audio_length"] == 3
        session.disconnect()

    @pytest.mark.asyncio
    async def test_speech_started_interrupts(self):
        from voice_relay.services.realtime_session import ConversationInterrupted

        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()
        socket.push({"type": "input_audio_buffer.speech_started", "item_id": "item_u", "audio_start_ms": 0})

        seen = await collect_until(session.events(), lambda e: isinstance(e, ConversationInterrupted))
        assert seen[-1].client_initiated is False
        session.disconnect()

    @pytest.mark.asyncio
    async def test_error_event(self):
        from voice_relay.services.realtime_session import SessionError

        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()
        socket.push({"type": "error", "error": {"message": "bad request"}})

        seen = await collect_until(session.events(), lambda e: isinstance(e, SessionError))
        assert seen[-1].error == {"message": "bad request"}
        session.disconnect()

    @pytest.mark.asyncio
    async def test_function_call_done_requests_tool(self):
        from voice_relay.services.realtime_session import ToolCallRequested

        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()
        socket.push(
            {
                "type": "conversation.item.created",
                "item": {"id": "item_f", "type": "function_call", "name": "get_current_time", "call_id": "call_1"},
            }
        )
        socket.push(
            {
                "type": "response.output_item.done",
                "item": {"id": "item_f", "status": "completed", "arguments": '{"format": "date"}'},
            }
        )

        seen = await collect_until(session.events(), lambda e: isinstance(e, ToolCallRequested))
        assert seen[-1] == ToolCallRequested(call_id="call_1", name="get_current_time", arguments='{"format": "date"}')
        session.disconnect()

    @pytest.mark.asyncio
    async def test_bad_event_does_not_stop_receiver(self):
        from voice_relay.services.realtime_session import SessionError

        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()
        socket.push({"type": "response.text.delta", "item_id": "unknown", "delta": "x"})
        socket.push({"type": "error", "error": {"message": "later"}})

        seen = await collect_until(session.events(), lambda e: isinstance(e, SessionError))
        assert seen[-1].error == {"message": "later"}
        session.disconnect()


class TestInputAudioRetention:
    @pytest.mark.asyncio
    async def test_buffer_stays_bounded_across_vad_turns(self):
        from voice_relay.services.realtime_session import ServerEvent

        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.update_session({"turn_detection": {"type": "server_vad"}})
        await session.connect()
        events = session.events()

        for turn in range(5):
            elapsed_ms = turn * 5000
            chunk = bytes([turn + 1, 0]) * 2400  # 100 ms of one sample value
            for _ in range(50):
                await session.append_input_audio(chunk)

            item_id = f"item_u{turn}"
            response_id = f"resp_{turn}"
            socket.push(
                {"type": "input_audio_buffer.speech_started", "item_id": item_id, "audio_start_ms": elapsed_ms + 500}
            )
            socket.push(
                {"type": "input_audio_buffer.speech_stopped", "item_id": item_id, "audio_end_ms": elapsed_ms + 4500}
            )
            socket.push(
                {
                    "type": "conversation.item.created",
                    "item": {"id": item_id, "type": "message", "role": "user", "content": []},
                }
            )
            socket.push({"type": "response.created", "response": {"id": response_id}})
            socket.push({"type": "response.done", "response": {"id": response_id}})
            await collect_until(
                events, lambda e: isinstance(e, ServerEvent) and e.event_type == "response.done"
            )
            await session.create_response()

            assert len(session.input_audio_buffer) <= 240000
            # 4000 ms of this turn's samples
            assert session.conversation.get_item(item_id)["formatted"]["audio"] == chunk[:2] * 96000

        assert session.conversation._responses == {}
        session.disconnect()

    @pytest.mark.asyncio
    async def test_silence_without_speech_is_capped(self):
        from voice_relay.services.realtime_conversation import ms_to_byte_offset
        from voice_relay.services.realtime_session import MAX_BUFFERED_INPUT_MS

        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.update_session({"turn_detection": {"type": "server_vad"}})
        await session.connect()
        one_second = b"\x00\x00" * 24000

        for _ in range(MAX_BUFFERED_INPUT_MS // 1000 + 1):
            await session.append_input_audio(one_second)

        assert len(session.input_audio_buffer) == ms_to_byte_offset(MAX_BUFFERED_INPUT_MS)
        assert session._input_audio_offset == len(one_second)
        session.disconnect()

    @pytest.mark.asyncio
    async def test_commit_advances_offset_for_later_speech(self):
        from voice_relay.services.realtime_session import ItemCompleted

        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()
        await session.append_input_audio(b"\x01\x00" * 24000)  # 1 s, committed manually
        await session.create_response()
        socket.push(
            {"type": "conversation.item.created", "item": {"id": "item_m", "type": "message", "role": "user"}}
        )
        await session.update_session({"turn_detection": {"type": "server_vad"}})
        await session.append_input_audio(b"\x02\x00" * 24000)

        socket.push({"type": "input_audio_buffer.speech_started", "item_id": "item_v", "audio_start_ms": 1250})
        socket.push({"type": "input_audio_buffer.speech_stopped", "item_id": "item_v", "audio_end_ms": 1750})
        socket.push(
            {"type": "conversation.item.created", "item": {"id": "item_v", "type": "message", "role": "user"}}
        )
        await collect_until(session.events(), lambda e: isinstance(e, ItemCompleted) and e.item["id"] == "item_v")

        assert session.conversation.get_item("item_v")["formatted"]["audio"] == b"\x02\x00" * 12000
        session.disconnect()


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent_and_ends_stream(self):
        from voice_relay.services.realtime_session import SessionClosed

        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()

        task = session.disconnect()
        assert session.disconnect() is task
        await task

        assert socket.closed
        assert not session.is_connected
        events = [event async for event in session.events()]
        assert events == [SessionClosed(reason="disconnected")]

    @pytest.mark.asyncio
    async def test_upstream_drop_closes_session(self):
        from voice_relay.services.realtime_session import SessionClosed

        socket = FakeUpstreamSocket()
        session, _ = make_session(socket)
        await session.connect()

        socket.drop()

        seen = await collect_until(session.events(), lambda e: isinstance(e, SessionClosed))
        assert seen[-1].reason == "upstream closed"
        assert not session.is_connected
