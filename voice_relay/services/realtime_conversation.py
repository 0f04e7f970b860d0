"""
Local mirror of an OpenAI Realtime conversation.

The Realtime API only streams incremental server events. This module folds
them into a list of conversation items so the relay can forward whole items
(and the full item list) to clients.

Each item is the server's item dict plus a ``formatted`` view:
- ``audio``: accumulated PCM16 bytes
- ``text``: accumulated text content
- ``transcript``: accumulated audio transcript
- ``tool``: function call name/call_id/arguments (function_call items)
- ``output``: tool output (function_call_output items)
"""

import base64
import copy
from typing import Any, Callable, Dict, List, Optional, Tuple

from voice_relay.core.errors import UpstreamSessionError
from voice_relay.core.logging import get_logger

logger = get_logger(__name__)

# Realtime API PCM16 sample rate
DEFAULT_FREQUENCY = 24000
BYTES_PER_SAMPLE = 2

ProcessResult = Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]


class ConversationStateError(UpstreamSessionError):
    """A server event referenced an item or response we never saw."""

    code = "CONVERSATION_STATE"


def ms_to_byte_offset(ms: float, frequency: int = DEFAULT_FREQUENCY) -> int:
    return int(ms * frequency / 1000) * BYTES_PER_SAMPLE


def serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Return a JSON-safe copy of an item.

    Raw audio is replaced by its sample count so item snapshots stay small.
    """
    data = copy.deepcopy({key: value for key, value in item.items() if key != "formatted"})
    formatted = item.get("formatted", {})
    data["formatted"] = {key: copy.deepcopy(value) for key, value in formatted.items() if key != "audio"}
    data["formatted"]["audio_length"] = len(formatted.get("audio", b"")) // BYTES_PER_SAMPLE
    return data


def serialize_delta(delta: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if delta is None:
        return None
    data = dict(delta)
    if "audio" in data:
        data["audio"] = base64.b64encode(data["audio"]).decode()
    return data


class RealtimeConversation:
    """Folds Realtime API server events into conversation items."""

    def __init__(self, frequency: int = DEFAULT_FREQUENCY):
        self.frequency = frequency
        self._handlers: Dict[str, Callable[..., ProcessResult]] = {
            "conversation.item.created": self._item_created,
            "conversation.item.truncated": self._item_truncated,
            "conversation.item.deleted": self._item_deleted,
            "conversation.item.input_audio_transcription.completed": self._input_transcription_completed,
            "input_audio_buffer.speech_started": self._speech_started,
            "input_audio_buffer.speech_stopped": self._speech_stopped,
            "response.created": self._response_created,
            "response.done": self._response_done,
            "response.output_item.added": self._output_item_added,
            "response.output_item.done": self._output_item_done,
            "response.content_part.added": self._content_part_added,
            "response.audio_transcript.delta": self._audio_transcript_delta,
            "response.audio.delta": self._audio_delta,
            "response.text.delta": self._text_delta,
            "response.function_call_arguments.delta": self._function_call_arguments_delta,
        }
        self.clear()

    def clear(self) -> None:
        self._items: List[Dict[str, Any]] = []
        self._item_lookup: Dict[str, Dict[str, Any]] = {}
        self._responses: Dict[str, Dict[str, Any]] = {}
        self._queued_speech: Dict[str, Dict[str, Any]] = {}
        self._queued_transcripts: Dict[str, str] = {}
        self._queued_input_audio: Optional[bytes] = None

    def queue_input_audio(self, audio: bytes) -> None:
        """Attach manually committed audio to the next user item."""
        self._queued_input_audio = audio

    def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        return self._item_lookup.get(item_id)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [serialize_item(item) for item in self._items]

    def process_event(
        self,
        event: Dict[str, Any],
        input_audio_buffer: Optional[bytes] = None,
        buffer_offset: int = 0,
    ) -> ProcessResult:
        """
        Apply a server event to the conversation.

        Args:
            event: Parsed Realtime API server event
            input_audio_buffer: Input audio not yet trimmed by the session, used
                to cut the user's speech out on speech_stopped
            buffer_offset: Byte position of input_audio_buffer[0] in the whole
                input audio stream

        Returns:
            (item, delta) where item is the affected item, or (None, None)
            when the event does not change a visible item

        Raises:
            ConversationStateError: the event references unknown state
        """
        event_type = event.get("type", "")
        handler = self._handlers.get(event_type)
        if handler is None:
            return None, None
        if event_type == "input_audio_buffer.speech_stopped":
            return handler(event, input_audio_buffer, buffer_offset)
        return handler(event)

    def _require_item(self, item_id: Optional[str], event_type: str) -> Dict[str, Any]:
        item = self._item_lookup.get(item_id) if item_id else None
        if item is None:
            raise ConversationStateError(f"{event_type}: item {item_id!r} not found")
        return item

    def _item_created(self, event: Dict[str, Any]) -> ProcessResult:
        new_item = copy.deepcopy(event.get("item") or {})
        item_id = new_item.get("id")
        if item_id in self._item_lookup:
            new_item = self._item_lookup[item_id]
        else:
            self._item_lookup[item_id] = new_item
            self._items.append(new_item)

        formatted: Dict[str, Any] = {"audio": b"", "text": "", "transcript": ""}
        new_item["formatted"] = formatted

        speech = self._queued_speech.pop(item_id, None)
        if speech and "audio" in speech:
            formatted["audio"] = speech["audio"]

        for part in new_item.get("content") or []:
            if part.get("type") in ("text", "input_text"):
                formatted["text"] += part.get("text") or ""

        if item_id in self._queued_transcripts:
            formatted["transcript"] = self._queued_transcripts.pop(item_id)

        item_type = new_item.get("type")
        if item_type == "message":
            if new_item.get("role") == "user":
                new_item["status"] = "completed"
                if self._queued_input_audio:
                    formatted["audio"] = self._queued_input_audio
                    self._queued_input_audio = None
            else:
                new_item["status"] = "in_progress"
        elif item_type == "function_call":
            formatted["tool"] = {
                "type": "function",
                "name": new_item.get("name"),
                "call_id": new_item.get("call_id"),
                "arguments": "",
            }
            new_item["status"] = "in_progress"
        elif item_type == "function_call_output":
            new_item["status"] = "completed"
            formatted["output"] = new_item.get("output")

        return new_item, None

    def _item_truncated(self, event: Dict[str, Any]) -> ProcessResult:
        item = self._require_item(event.get("item_id"), "conversation.item.truncated")
        end = ms_to_byte_offset(event.get("audio_end_ms", 0), self.frequency)
        item["formatted"]["transcript"] = ""
        item["formatted"]["audio"] = item["formatted"]["audio"][:end]
        return item, None

    def _item_deleted(self, event: Dict[str, Any]) -> ProcessResult:
        item = self._require_item(event.get("item_id"), "conversation.item.deleted")
        del self._item_lookup[item["id"]]
        self._items = [existing for existing in self._items if existing is not item]
        return item, None

    def _input_transcription_completed(self, event: Dict[str, Any]) -> ProcessResult:
        item_id = event.get("item_id")
        transcript = event.get("transcript") or ""
        # Empty transcripts still mark the item as transcribed
        formatted_transcript = transcript or " "

        item = self._item_lookup.get(item_id)
        if item is None:
            self._queued_transcripts[item_id] = formatted_transcript
            return None, None

        content = item.get("content") or []
        index = event.get("content_index", 0)
        if 0 <= index < len(content):
            content[index]["transcript"] = transcript
        item["formatted"]["transcript"] = formatted_transcript
        return item, {"transcript": transcript}

    def _speech_started(self, event: Dict[str, Any]) -> ProcessResult:
        self._queued_speech[event.get("item_id")] = {"audio_start_ms": event.get("audio_start_ms", 0)}
        return None, None

    def _speech_stopped(
        self, event: Dict[str, Any], input_audio_buffer: Optional[bytes], buffer_offset: int
    ) -> ProcessResult:
        item_id = event.get("item_id")
        audio_end_ms = event.get("audio_end_ms", 0)
        speech = self._queued_speech.setdefault(item_id, {"audio_start_ms": audio_end_ms})
        speech["audio_end_ms"] = audio_end_ms
        if input_audio_buffer:
            start = max(ms_to_byte_offset(speech["audio_start_ms"], self.frequency) - buffer_offset, 0)
            end = max(ms_to_byte_offset(audio_end_ms, self.frequency) - buffer_offset, 0)
            speech["audio"] = bytes(input_audio_buffer[start:end])
        return None, None

    def _response_created(self, event: Dict[str, Any]) -> ProcessResult:
        response = event.get("response") or {}
        response_id = response.get("id")
        if response_id and response_id not in self._responses:
            self._responses[response_id] = {"id": response_id, "output": []}
        return None, None

    def _response_done(self, event: Dict[str, Any]) -> ProcessResult:
        # Output items stay in the item list; only the bookkeeping entry goes
        response_id = (event.get("response") or {}).get("id")
        self._responses.pop(response_id, None)
        return None, None

    def _output_item_added(self, event: Dict[str, Any]) -> ProcessResult:
        response_id = event.get("response_id")
        response = self._responses.get(response_id)
        if response is None:
            raise ConversationStateError(f"response.output_item.added: response {response_id!r} not found")
        response["output"].append((event.get("item") or {}).get("id"))
        return None, None

    def _output_item_done(self, event: Dict[str, Any]) -> ProcessResult:
        done_item = event.get("item")
        if not done_item:
            raise ConversationStateError("response.output_item.done: missing item")
        item = self._require_item(done_item.get("id"), "response.output_item.done")
        item["status"] = done_item.get("status")
        if item.get("type") == "function_call" and "tool" in item["formatted"]:
            # The done event carries the authoritative arguments
            arguments = done_item.get("arguments")
            if arguments is not None:
                item["arguments"] = arguments
                item["formatted"]["tool"]["arguments"] = arguments
        return item, None

    def _content_part_added(self, event: Dict[str, Any]) -> ProcessResult:
        item = self._require_item(event.get("item_id"), "response.content_part.added")
        item.setdefault("content", []).append(copy.deepcopy(event.get("part") or {}))
        return item, None

    def _content_part(self, item: Dict[str, Any], event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        content = item.get("content") or []
        index = event.get("content_index", 0)
        return content[index] if 0 <= index < len(content) else None

    def _audio_transcript_delta(self, event: Dict[str, Any]) -> ProcessResult:
        item = self._require_item(event.get("item_id"), "response.audio_transcript.delta")
        delta = event.get("delta") or ""
        part = self._content_part(item, event)
        if part is not None:
            part["transcript"] = (part.get("transcript") or "") + delta
        item["formatted"]["transcript"] += delta
        return item, {"transcript": delta}

    def _audio_delta(self, event: Dict[str, Any]) -> ProcessResult:
        item = self._require_item(event.get("item_id"), "response.audio.delta")
        audio = base64.b64decode(event.get("delta") or "")
        item["formatted"]["audio"] += audio
        return item, {"audio": audio}

    def _text_delta(self, event: Dict[str, Any]) -> ProcessResult:
        item = self._require_item(event.get("item_id"), "response.text.delta")
        delta = event.get("delta") or ""
        part = self._content_part(item, event)
        if part is not None:
            part["text"] = (part.get("text") or "") + delta
        item["formatted"]["text"] += delta
        return item, {"text": delta}

    def _function_call_arguments_delta(self, event: Dict[str, Any]) -> ProcessResult:
        item = self._require_item(event.get("item_id"), "response.function_call_arguments.delta")
        delta = event.get("delta") or ""
        item["arguments"] = (item.get("arguments") or "") + delta
        if "tool" in item["formatted"]:
            item["formatted"]["tool"]["arguments"] += delta
        return item, {"arguments": delta}
