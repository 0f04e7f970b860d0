"""
Service layer

This module provides services for:
- OpenAI Realtime API session and conversation mirror
- Per-connection relay and connection registry
- Relay tools exposed to the realtime model
- One-shot text -> speech pipeline
"""

from voice_relay.services.connection_registry import ConnectionMetrics, ConnectionRegistry
from voice_relay.services.realtime_session import RealtimeSession
from voice_relay.services.relay import ConnectionRelay, RelayState
from voice_relay.services.relay_tools import ToolRegistry, build_default_tools
from voice_relay.services.speech_reply import SpeechReplyService

__all__ = [
    "ConnectionMetrics",
    "ConnectionRegistry",
    "ConnectionRelay",
    "RealtimeSession",
    "RelayState",
    "SpeechReplyService",
    "ToolRegistry",
    "build_default_tools",
]
