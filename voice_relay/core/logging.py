"""
Structured logging configuration using structlog

Includes relay-specific logging with configurable verbosity levels:
- MINIMAL: Errors only
- STANDARD: + Connection lifecycle (open/close/state changes, interruptions)
- VERBOSE: + Upstream events worth tracing (speech start/stop, responses)
- DEBUG: + Every socket frame
"""

import logging
import sys
from enum import IntEnum
from typing import Dict, Optional

import structlog


class VoiceLogLevel(IntEnum):
    """Relay logging verbosity levels.

    Higher values include all lower level logs.
    """

    MINIMAL = 1  # Errors only
    STANDARD = 2  # + Connection lifecycle
    VERBOSE = 3  # + Upstream events
    DEBUG = 4  # + Socket frames


_VOICE_LOG_LEVEL_MAP = {
    "MINIMAL": VoiceLogLevel.MINIMAL,
    "STANDARD": VoiceLogLevel.STANDARD,
    "VERBOSE": VoiceLogLevel.VERBOSE,
    "DEBUG": VoiceLogLevel.DEBUG,
}

_voice_log_level: VoiceLogLevel = VoiceLogLevel.STANDARD


def get_voice_log_level() -> VoiceLogLevel:
    """Get the current relay logging level."""
    return _voice_log_level


def set_voice_log_level(level: VoiceLogLevel) -> None:
    """Set the relay logging level (useful for testing)."""
    global _voice_log_level
    _voice_log_level = level


def configure_logging(level: str = "INFO", voice_level: str = "STANDARD", debug: bool = False) -> None:
    """Configure structured logging for the application"""
    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    set_voice_log_level(_VOICE_LOG_LEVEL_MAP.get(voice_level.upper(), VoiceLogLevel.STANDARD))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if not debug else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None):
    """
    Get a structured logger instance

    Args:
        name: Logger name (usually __name__ of the module)

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name)


class VoiceLogger:
    """
    Relay logger with configurable verbosity levels.

    Usage:
        voice_log = get_voice_logger(__name__)

        # Always logged (errors)
        voice_log.error("relay_frame_invalid", session_id=client_id, error=str(e))

        # Logged at STANDARD+
        voice_log.session_start(session_id=client_id)
        voice_log.barge_in(session_id=client_id, source="client_cancel")

        # Logged at VERBOSE+
        voice_log.upstream_event(session_id=client_id, event_type="response.done")

        # Logged at DEBUG only
        voice_log.websocket_message(session_id=client_id, direction="receive", message_type="input_audio", size_bytes=640)
    """

    def __init__(self, name: str):
        self._logger = structlog.get_logger(name)
        self._name = name

    def _should_log(self, min_level: VoiceLogLevel) -> bool:
        return _voice_log_level >= min_level

    # MINIMAL - always logged

    def error(self, event: str, session_id: Optional[str] = None, recoverable: bool = True, **kwargs):
        """Log relay error (always logged at any level)."""
        self._logger.error(
            event,
            session_id=session_id,
            recoverable=recoverable,
            voice_log_level="MINIMAL",
            **kwargs,
        )

    # STANDARD - connection lifecycle

    def session_start(self, session_id: str, **kwargs):
        if not self._should_log(VoiceLogLevel.STANDARD):
            return
        self._logger.info("relay_session_start", session_id=session_id, voice_log_level="STANDARD", **kwargs)

    def session_end(self, session_id: str, duration_ms: float, turn_count: int = 0, **kwargs):
        if not self._should_log(VoiceLogLevel.STANDARD):
            return
        self._logger.info(
            "relay_session_end",
            session_id=session_id,
            duration_ms=round(duration_ms, 2),
            turn_count=turn_count,
            voice_log_level="STANDARD",
            **kwargs,
        )

    def state_change(self, session_id: str, from_state: str, to_state: str, trigger: Optional[str] = None, **kwargs):
        if not self._should_log(VoiceLogLevel.STANDARD):
            return
        self._logger.info(
            "relay_state_change",
            session_id=session_id,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            voice_log_level="STANDARD",
            **kwargs,
        )

    def barge_in(self, session_id: str, source: str, **kwargs):
        """Log an interruption of an in-flight response."""
        if not self._should_log(VoiceLogLevel.STANDARD):
            return
        self._logger.info("relay_barge_in", session_id=session_id, source=source, voice_log_level="STANDARD", **kwargs)

    def info(self, event: str, session_id: Optional[str] = None, **kwargs):
        if not self._should_log(VoiceLogLevel.STANDARD):
            return
        self._logger.info(event, session_id=session_id, voice_log_level="STANDARD", **kwargs)

    # VERBOSE - upstream events

    def upstream_event(self, session_id: str, event_type: str, **kwargs):
        if not self._should_log(VoiceLogLevel.VERBOSE):
            return
        self._logger.info(
            "relay_upstream_event",
            session_id=session_id,
            event_type=event_type,
            voice_log_level="VERBOSE",
            **kwargs,
        )

    # DEBUG - socket frames

    def websocket_message(self, session_id: str, direction: str, message_type: str, size_bytes: int = 0, **kwargs):
        """Log a client socket frame (very verbose)."""
        if not self._should_log(VoiceLogLevel.DEBUG):
            return
        self._logger.debug(
            "relay_ws_message",
            session_id=session_id,
            direction=direction,
            message_type=message_type,
            size_bytes=size_bytes,
            voice_log_level="DEBUG",
            **kwargs,
        )

    def debug(self, event: str, session_id: Optional[str] = None, **kwargs):
        if not self._should_log(VoiceLogLevel.DEBUG):
            return
        self._logger.debug(event, session_id=session_id, voice_log_level="DEBUG", **kwargs)


_voice_loggers: Dict[str, VoiceLogger] = {}


def get_voice_logger(name: str = None) -> VoiceLogger:
    """
    Get a relay logger instance with configurable verbosity.

    Args:
        name: Logger name (usually __name__ of the module)

    Returns:
        VoiceLogger instance
    """
    key = name or "__root__"
    if key not in _voice_loggers:
        _voice_loggers[key] = VoiceLogger(name)
    return _voice_loggers[key]
