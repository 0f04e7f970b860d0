"""
One-shot text -> speech endpoint (legacy surface)
"""

from fastapi import APIRouter, Request, Response

from voice_relay.core.errors import InputValidationError
from voice_relay.core.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)

TEXT_REQUIRED_MESSAGE = "Text is required and must be a string"


def validate_text(payload, max_length: int) -> str:
    """Return the request text or raise InputValidationError."""
    text = payload.get("text") if isinstance(payload, dict) else None
    if not isinstance(text, str) or not text:
        raise InputValidationError(TEXT_REQUIRED_MESSAGE)
    if len(text) > max_length:
        raise InputValidationError(f"Text must be less than {max_length} characters")
    return text


@router.post("/", response_class=Response)
async def speak(request: Request):
    """
    Reply to `{"text": ...}` with synthesized speech.

    The body is parsed by hand so that malformed JSON gets the same 400 as a
    missing field instead of FastAPI's 422.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    text = validate_text(payload, request.app.state.settings.MAX_TEXT_LENGTH)
    reply = await request.app.state.speech_service.reply(text)

    return Response(
        content=reply.audio_data,
        media_type=reply.content_type,
        headers={
            "Content-Length": str(len(reply.audio_data)),
            "Cache-Control": "no-cache",
        },
    )
