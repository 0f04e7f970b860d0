"""Relay socket frame schemas.

Client -> server frames are validated with Pydantic models keyed by their
``type`` field. Server -> client frames are built by the ``create_*_frame``
helpers, which return plain dicts ready for JSON serialization.

Every outbound frame carries ``type`` and ``timestamp`` (Unix epoch, ms).
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError

from voice_relay.core.errors import FrameValidationError


def now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Client -> Server Frames
# =============================================================================


class ClientFrame(BaseModel):
    """Base for client frames; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    type: str


class InputAudioFrame(ClientFrame):
    """PCM16 microphone samples."""

    type: Literal["input_audio"] = "input_audio"
    audio_data: Optional[List[int]] = None


class CreateResponseFrame(ClientFrame):
    type: Literal["create_response"] = "create_response"


class CancelResponseFrame(ClientFrame):
    """Interrupt an in-flight response.

    ``sample_count`` is the number of samples the client already played; the
    cancelled item is truncated at that point.
    """

    type: Literal["cancel_response"] = "cancel_response"
    response_id: Optional[str] = None
    sample_count: int = 0


class UserMessageFrame(ClientFrame):
    type: Literal["user_message"] = "user_message"
    text: Optional[str] = None


class UpdateSessionFrame(ClientFrame):
    type: Literal["update_session"] = "update_session"
    session_config: Optional[Dict[str, Any]] = None


class GetMetricsFrame(ClientFrame):
    type: Literal["get_metrics"] = "get_metrics"


CLIENT_FRAME_TYPES: Dict[str, Type[ClientFrame]] = {
    "input_audio": InputAudioFrame,
    "create_response": CreateResponseFrame,
    "cancel_response": CancelResponseFrame,
    "user_message": UserMessageFrame,
    "update_session": UpdateSessionFrame,
    "get_metrics": GetMetricsFrame,
}


def decode_frame(raw: str) -> Dict[str, Any]:
    """Parse a raw socket payload into a JSON object.

    Raises:
        FrameValidationError: payload is not JSON or not a JSON object
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FrameValidationError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise FrameValidationError("Frame must be a JSON object")
    return payload


def parse_client_frame(payload: Dict[str, Any]) -> Optional[ClientFrame]:
    """Validate a decoded frame against its model.

    Returns:
        The typed frame, or None when ``type`` is missing or unknown

    Raises:
        FrameValidationError: ``type`` is known but the fields are invalid
    """
    frame_type = payload.get("type")
    model = CLIENT_FRAME_TYPES.get(frame_type) if isinstance(frame_type, str) else None
    if model is None:
        return None

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise FrameValidationError(f"Invalid {frame_type} frame: {e.error_count()} error(s)") from e


# =============================================================================
# Server -> Client Frames
# =============================================================================


def create_connected_frame(client_id: str) -> Dict[str, Any]:
    return {
        "type": "connected",
        "client_id": client_id,
        "timestamp": now_ms(),
        "message": "Connected to OpenAI Realtime API",
    }


def create_connection_error_frame(error: str) -> Dict[str, Any]:
    return {"type": "connection_error", "error": error, "timestamp": now_ms()}


def create_error_frame(error: Any) -> Dict[str, Any]:
    return {"type": "error", "error": error, "timestamp": now_ms()}


def create_interrupted_frame(total_interruptions: int) -> Dict[str, Any]:
    return {
        "type": "conversation_interrupted",
        "timestamp": now_ms(),
        "metrics": {"total_interruptions": total_interruptions},
    }


def create_conversation_update_frame(
    item: Dict[str, Any],
    delta: Optional[Dict[str, Any]],
    conversation_items: List[Dict[str, Any]],
    audio_length: Optional[int] = None,
) -> Dict[str, Any]:
    """Build a ``conversation_update`` frame.

    Args:
        item: Serialized item that changed
        delta: What changed (``audio`` already base64 encoded), or None
        conversation_items: Serialized snapshot of the whole conversation
        audio_length: Sample count when the delta carries audio
    """
    frame = {
        "type": "conversation_update",
        "item": item,
        "delta": delta,
        "conversation_items": conversation_items,
        "timestamp": now_ms(),
    }
    if audio_length is not None:
        frame["has_audio"] = True
        frame["audio_length"] = audio_length
    return frame


def create_item_completed_frame(item: Dict[str, Any], conversation_turns: int) -> Dict[str, Any]:
    return {
        "type": "conversation_item_completed",
        "item": item,
        "timestamp": now_ms(),
        "metrics": {"conversation_turns": conversation_turns},
    }


def create_realtime_event_frame(event_type: str, event_data: Dict[str, Any], timestamp: Optional[int] = None) -> Dict[str, Any]:
    return {
        "type": "realtime_event",
        "event_type": event_type,
        "timestamp": timestamp if timestamp is not None else now_ms(),
        "event_data": event_data,
    }


def create_metrics_response_frame(metrics: Dict[str, Any], duration_seconds: int) -> Dict[str, Any]:
    return {
        "type": "metrics_response",
        "metrics": {
            **metrics,
            "duration_seconds": duration_seconds,
            "connection_active": True,
        },
        "timestamp": now_ms(),
    }
