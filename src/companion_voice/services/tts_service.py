import logging
from typing import Optional

import openai

from ..config import Settings
from ..errors import SynthesisError

logger = logging.getLogger(__name__)

_MIME_TYPES = {
    "mp3": "audio/mpeg",
    "opus": "audio/ogg",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "wav": "audio/wav",
    "pcm": "audio/pcm",
}


class SpeechSynthesizer:
    """
    Text-to-speech for response fragments using OpenAI's speech endpoint.

    Each call is independent so many fragments of one reply can be
    synthesized concurrently. Audio is streamed from the provider and
    collected into one buffer per fragment.
    """

    def __init__(self, settings: Settings, client: Optional[openai.AsyncOpenAI] = None):
        self._settings = settings
        api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
        if client is None and api_key:
            client = openai.AsyncOpenAI(api_key=api_key, timeout=settings.request_timeout)
        self._client = client
        if self._client is None:
            logger.warning("OPENAI_API_KEY is not set. Speech synthesis is unavailable.")

    @property
    def mime_type(self) -> str:
        return _MIME_TYPES.get(self._settings.tts_response_format, "application/octet-stream")

    def resolve_voice(self, voice: Optional[str]) -> str:
        """Return ``voice`` if it is allowed, else the configured default."""
        if voice and voice in self._settings.allowed_voices:
            return voice
        return self._settings.default_voice

    async def synthesize(self, text: str, *, voice: Optional[str] = None) -> bytes:
        """Synthesize ``text`` and return the complete audio payload."""
        text = text.strip()
        if not text:
            raise SynthesisError("Nothing to synthesize")
        if self._client is None:
            raise SynthesisError("Speech synthesis is not configured")

        voice = self.resolve_voice(voice)
        logger.debug(f"Synthesizing {len(text)} chars with voice={voice}")
        chunks: list[bytes] = []
        try:
            async with self._client.audio.speech.with_streaming_response.create(
                model=self._settings.tts_model,
                voice=voice,
                input=text,
                speed=self._settings.tts_speed,
                response_format=self._settings.tts_response_format,
            ) as response:
                async for audio_chunk in response.iter_bytes():
                    chunks.append(audio_chunk)
        except openai.APIError as e:
            logger.error(f"OpenAI TTS API error: {e}")
            raise SynthesisError(f"Speech synthesis failed: {e}") from e

        audio = b"".join(chunks)
        if not audio:
            raise SynthesisError("Speech synthesis returned no audio")
        return audio

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


__all__ = ["SpeechSynthesizer"]
