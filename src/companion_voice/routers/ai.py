"""Non-streaming voice and text routes for clients without a WebSocket."""

from __future__ import annotations

import base64
import logging
from typing import Any, Optional

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..errors import RecognitionError, ResponseGenerationError, SynthesisError
from ..services.tts.delivery import OrderedSynthesisDelivery

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/ai", tags=["ai"])


class TextMessageRequest(BaseModel):
    message: str = ""


class TextToSpeechRequest(BaseModel):
    text: str = ""
    voice: Optional[str] = None


def get_services(request: Request) -> Any:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=500, detail="Voice services unavailable")
    return services


def _failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def _audio_url(audio: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(audio).decode('utf-8')}"


async def _generate_reply(services: Any, text: str, *, voice: Optional[str] = None, synthesize: bool = True):
    """Run the reply pipeline once and return ``(reply_text, audio)``."""

    delivery = OrderedSynthesisDelivery(services.synthesizer, voice=voice)
    parts: list[str] = []
    try:
        async for fragment in services.generator.generate(text):
            parts.append(fragment.text)
            if synthesize:
                delivery.submit(fragment)
    except ResponseGenerationError:
        await delivery.cancel()
        raise
    audio = await delivery.collect_audio() if synthesize else b""
    return " ".join(parts), audio


@router.post("/voice")
async def process_voice_message(request: Request, audio: Optional[UploadFile] = File(None)):
    services = get_services(request)
    settings = request.app.state.settings

    if audio is None:
        return _failure(400, "Audio file is required")
    content_type = audio.content_type or ""
    if not content_type.startswith("audio/"):
        return _failure(400, "Only audio files are accepted")

    payload = await audio.read(settings.max_upload_bytes + 1)
    if len(payload) > settings.max_upload_bytes:
        return _failure(413, "Audio file is too large")
    if not payload:
        return _failure(400, "Audio file is empty")

    logger.info(f"Voice message received: {audio.filename} ({len(payload)} bytes, {content_type})")
    try:
        transcription = await services.transcriber.transcribe(
            payload,
            filename=audio.filename or "audio",
            content_type=content_type,
        )
        if not transcription:
            return _failure(400, "No speech detected in the recording")
        reply, audio_bytes = await _generate_reply(services, transcription)
    except (RecognitionError, ResponseGenerationError) as exc:
        logger.error(f"Voice message failed: {exc}")
        return _failure(502, str(exc))
    if not audio_bytes:
        return _failure(502, "Speech synthesis failed")

    return {
        "success": True,
        "data": {
            "transcription": transcription,
            "aiResponse": reply,
            "audioUrl": _audio_url(audio_bytes, services.synthesizer.mime_type),
        },
    }


@router.post("/text")
async def send_text_message(request: Request, body: TextMessageRequest):
    services = get_services(request)
    message = body.message.strip()
    if not message:
        return _failure(400, "Message must not be empty")

    try:
        reply, _ = await _generate_reply(services, message, synthesize=False)
    except ResponseGenerationError as exc:
        logger.error(f"Text message failed: {exc}")
        return _failure(502, str(exc))

    return {"success": True, "data": {"aiResponse": reply}}


@router.post("/tts")
async def text_to_speech(request: Request, body: TextToSpeechRequest):
    services = get_services(request)
    text = body.text.strip()
    if not text:
        return _failure(400, "Text must not be empty")

    try:
        audio_bytes = await services.synthesizer.synthesize(text, voice=body.voice)
    except SynthesisError as exc:
        logger.error(f"Text to speech failed: {exc}")
        return _failure(502, str(exc))

    return {
        "success": True,
        "data": {"audioUrl": _audio_url(audio_bytes, services.synthesizer.mime_type)},
    }


__all__ = ["router"]
