"""Whole-file transcription for the non-streaming voice endpoint."""

from __future__ import annotations

import logging
from typing import Optional

import openai

from ..config import Settings
from ..errors import RecognitionError

logger = logging.getLogger(__name__)


class WhisperTranscriber:
    """Transcribes uploaded recordings with OpenAI's transcription endpoint."""

    def __init__(self, settings: Settings, client: Optional[openai.AsyncOpenAI] = None):
        self._settings = settings
        api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
        if client is None and api_key:
            client = openai.AsyncOpenAI(api_key=api_key, timeout=settings.request_timeout)
        self._client = client

    async def transcribe(
        self,
        audio: bytes,
        *,
        filename: str = "audio.wav",
        content_type: str = "audio/wav",
        language: Optional[str] = None,
    ) -> str:
        if not audio:
            raise RecognitionError("Empty audio upload")
        if self._client is None:
            raise RecognitionError("Transcription is not configured", fatal=True)

        try:
            result = await self._client.audio.transcriptions.create(
                model=self._settings.transcription_model,
                file=(filename, audio, content_type),
                language=language or self._settings.default_language,
            )
        except openai.APIError as exc:
            logger.error(f"Transcription failed: {exc}")
            raise RecognitionError(f"Transcription failed: {exc}") from exc

        text = getattr(result, "text", "") or ""
        return text.strip()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


__all__ = ["WhisperTranscriber"]
