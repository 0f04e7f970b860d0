"""
Main FastAPI application

Run with `voice-relay` (see run() below) or point uvicorn at the factory:
    uvicorn voice_relay.main:create_app --factory
"""

import sys
from contextlib import asynccontextmanager
from functools import partial
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from voice_relay.api import health, metrics, realtime, speech, stats
from voice_relay.core.config import Settings, get_settings
from voice_relay.core.errors import add_exception_handlers
from voice_relay.core.logging import configure_logging, get_logger
from voice_relay.core.middleware import MetricsMiddleware, RequestTracingMiddleware
from voice_relay.services.connection_registry import ConnectionRegistry
from voice_relay.services.realtime_session import RealtimeSession
from voice_relay.services.relay import SessionFactory, default_session_config
from voice_relay.services.relay_tools import build_default_tools
from voice_relay.services.speech_reply import SpeechReplyService

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[SessionFactory] = None,
    speech_service: Optional[SpeechReplyService] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    session_factory and speech_service default to the OpenAI-backed
    implementations; tests pass stubs.
    """
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL, settings.VOICE_LOG_LEVEL, debug=settings.DEBUG)

    registry = ConnectionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "application_startup",
            app_name=settings.APP_NAME,
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            debug=settings.DEBUG,
        )
        logger.info("rate_limiting_enabled", default_limit=settings.rate_limit)
        yield
        logger.info("application_shutdown", active_connections=len(registry))
        await registry.close_all()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        description="Voice chat backend: realtime relay to the OpenAI Realtime API and a one-shot text -> speech endpoint.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.registry = registry
    app.state.tools = build_default_tools(registry)
    app.state.session_config = default_session_config(settings)
    app.state.session_factory = session_factory or partial(
        RealtimeSession,
        api_key=settings.OPENAI_API_KEY,
        url=settings.REALTIME_BASE_URL,
        model=settings.REALTIME_MODEL,
        connect_timeout_sec=settings.REALTIME_CONNECT_TIMEOUT_SEC,
    )
    app.state.speech_service = speech_service or SpeechReplyService.from_settings(settings)

    # Fixed window per client address, applied to every HTTP route
    app.state.limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    add_exception_handlers(app)

    # Add custom middleware (order matters!)
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(RequestTracingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID"],
    )

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(stats.router, tags=["stats"])
    app.include_router(metrics.router)
    app.include_router(realtime.router)
    app.include_router(speech.router, tags=["speech"])

    return app


def run() -> None:
    """Console entry point."""
    try:
        settings = get_settings()
    except ValidationError as e:
        configure_logging()
        logger.error("configuration_invalid", error="OPENAI_API_KEY environment variable is required", details=str(e))
        sys.exit(1)

    uvicorn.run(
        "voice_relay.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
    )


if __name__ == "__main__":
    run()
