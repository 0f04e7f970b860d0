"""
One-shot text -> speech pipeline.

Runs a chat completion on the user's text, then synthesizes the reply with
OpenAI TTS and returns the mp3 bytes. Nothing is streamed or retried.
"""

import time
from dataclasses import dataclass
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from voice_relay.core.config import Settings
from voice_relay.core.errors import SpeechPipelineError
from voice_relay.core.logging import get_logger
from voice_relay.core.metrics import speech_pipeline_duration_seconds

logger = get_logger(__name__)


@dataclass
class SpeechReply:
    """Result of one pipeline run."""

    text: str
    audio_data: bytes
    content_type: str = "audio/mpeg"


class SpeechReplyService:
    """
    Chat completion followed by speech synthesis.

    Usage:
        service = SpeechReplyService.from_settings(settings)
        reply = await service.reply("Tell me a joke")
        reply.audio_data  # mp3 bytes
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        chat_model: str = "gpt-4",
        tts_model: str = "tts-1",
        voice: str = "alloy",
    ):
        self.client = client
        self.chat_model = chat_model
        self.tts_model = tts_model
        self.voice = voice

    @classmethod
    def from_settings(cls, settings: Settings) -> "SpeechReplyService":
        client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.OPENAI_TIMEOUT_SEC)
        return cls(
            client,
            chat_model=settings.CHAT_MODEL,
            tts_model=settings.TTS_MODEL,
            voice=settings.TTS_VOICE,
        )

    async def generate_reply(self, text: str) -> str:
        """Single-turn chat completion on the user's text."""
        start = time.time()
        try:
            completion = await self.client.chat.completions.create(
                model=self.chat_model,
                messages=[{"role": "user", "content": text}],
            )
        except OpenAIError as e:
            logger.error("chat_completion_failed", model=self.chat_model, error=str(e))
            raise SpeechPipelineError("Failed to generate response") from e
        finally:
            speech_pipeline_duration_seconds.labels(stage="completion").observe(time.time() - start)

        content: Optional[str] = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise SpeechPipelineError("Failed to generate response: empty completion")
        return content

    async def synthesize(self, text: str) -> bytes:
        """Render text as mp3 audio."""
        start = time.time()
        try:
            response = await self.client.audio.speech.create(
                model=self.tts_model,
                voice=self.voice,
                input=text,
                response_format="mp3",
            )
        except OpenAIError as e:
            logger.error("speech_synthesis_failed", model=self.tts_model, voice=self.voice, error=str(e))
            raise SpeechPipelineError("Failed to synthesize speech") from e
        finally:
            speech_pipeline_duration_seconds.labels(stage="synthesis").observe(time.time() - start)

        return response.content

    async def reply(self, text: str) -> SpeechReply:
        reply_text = await self.generate_reply(text)
        audio = await self.synthesize(reply_text)
        logger.info(
            "speech_reply_generated",
            input_chars=len(text),
            reply_chars=len(reply_text),
            audio_bytes=len(audio),
        )
        return SpeechReply(text=reply_text, audio_data=audio)
