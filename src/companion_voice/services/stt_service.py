"""
Streaming speech recognition bridge.

One RecognitionStream is opened per utterance attempt. Results are not pushed
through callbacks: every stream owns a small channel that the session pipeline
pulls from, either with ``async for event in stream`` or with
``wait_readable()`` followed by ``poll()``.

The Deepgram implementation speaks the live-listen WebSocket protocol directly:
binary frames carry linear16 audio, ``{"type": "CloseStream"}`` asks the server
to flush its last results, and JSON ``Results`` messages come back.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional, Protocol
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidStatus,
)

from ..config import Settings
from ..errors import RecognitionError
from .audio_codec import to_linear16

logger = logging.getLogger(__name__)

# HTTP statuses with which the recognizer refuses a session outright
_FATAL_HANDSHAKE_STATUSES = {400, 401, 402, 403}
# Close codes that end an attempt without involving the user
_RECOVERABLE_CLOSE_CODES = {1000, 1001, 1006, 1008, 1011}


class EventKind(str, Enum):
    INTERIM = "interim"
    FINAL = "final"
    ERROR = "error"


class ErrorKind(str, Enum):
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


@dataclass(frozen=True)
class RecognitionEvent:
    """A single result pulled from a recognition stream."""

    kind: EventKind
    text: str = ""
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def interim(cls, text: str) -> "RecognitionEvent":
        return cls(EventKind.INTERIM, text=text)

    @classmethod
    def final(cls, text: str) -> "RecognitionEvent":
        return cls(EventKind.FINAL, text=text)

    @classmethod
    def error(cls, error_kind: ErrorKind, message: str) -> "RecognitionEvent":
        return cls(EventKind.ERROR, error_kind=error_kind, message=message)

    @property
    def is_error(self) -> bool:
        return self.kind is EventKind.ERROR

    @property
    def is_fatal(self) -> bool:
        return self.error_kind is ErrorKind.FATAL


class RecognitionStream:
    """Base class holding the result channel of one recognition attempt.

    Subclasses call ``_emit`` for every result and ``_end`` once the remote
    side is done. Consumers never block on a closed stream: after ``_end``
    the channel stays readable until drained.
    """

    def __init__(self) -> None:
        self._events: deque[RecognitionEvent] = deque()
        self._readable = asyncio.Event()
        self._ended = False
        self.started_at = time.monotonic()

    def _emit(self, event: RecognitionEvent) -> None:
        if self._ended:
            return
        self._events.append(event)
        self._readable.set()

    def _end(self) -> None:
        self._ended = True
        self._readable.set()

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def exhausted(self) -> bool:
        """True once the stream has ended and every event was consumed."""

        return self._ended and not self._events

    @property
    def age(self) -> float:
        return time.monotonic() - self.started_at

    async def wait_readable(self) -> None:
        await self._readable.wait()

    def poll(self) -> list[RecognitionEvent]:
        """Return every buffered event without waiting."""

        events = list(self._events)
        self._events.clear()
        if not self._ended:
            self._readable.clear()
        return events

    def __aiter__(self) -> AsyncIterator[RecognitionEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[RecognitionEvent]:
        while True:
            await self.wait_readable()
            for event in self.poll():
                yield event
            if self.exhausted:
                return

    async def write_chunk(self, data: bytes) -> None:
        raise NotImplementedError

    async def finish(self) -> None:
        raise NotImplementedError

    async def cancel(self) -> None:
        raise NotImplementedError


class RecognitionBridge(Protocol):
    """Factory for recognition streams."""

    async def open(self, *, language: str) -> RecognitionStream: ...


class DeepgramStream(RecognitionStream):
    """Recognition attempt backed by one Deepgram live WebSocket."""

    def __init__(
        self,
        websocket: ClientConnection,
        *,
        channels: int = 1,
        finish_timeout: float = 5.0,
    ) -> None:
        super().__init__()
        self._ws = websocket
        self._channels = channels
        self._finish_timeout = finish_timeout
        self._input_closed = False
        self._cancelled = False
        self._segments: list[str] = []
        self._reader = asyncio.create_task(self._read_loop())

    async def write_chunk(self, data: bytes) -> None:
        if self._input_closed:
            raise RecognitionError("Recognition stream is already closed")
        pcm = to_linear16(data, channels=self._channels)
        try:
            await self._ws.send(pcm)
        except ConnectionClosed as exc:
            self._input_closed = True
            raise RecognitionError(f"Recognizer connection closed: {exc}") from exc

    async def finish(self) -> None:
        """Ask the recognizer to flush and wait (bounded) for its last results."""

        if self._input_closed:
            return
        self._input_closed = True
        with suppress(ConnectionClosed):
            await self._ws.send(json.dumps({"type": "CloseStream"}))
        try:
            await asyncio.wait_for(asyncio.shield(self._reader), self._finish_timeout)
        except asyncio.TimeoutError:
            logger.warning("Recognizer did not close within %.1fs", self._finish_timeout)
            await self._shutdown()

    async def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._input_closed = True
        await self._shutdown()

    async def _shutdown(self) -> None:
        if not self._reader.done():
            self._reader.cancel()
            with suppress(asyncio.CancelledError):
                await self._reader
        try:
            await self._ws.close()
        except Exception as exc:
            logger.warning(f"Error closing recognizer socket: {exc}")
        self._end()

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                event = self._parse_message(message)
                if event is not None:
                    self._emit(event)
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as exc:
            if not self._cancelled:
                self._emit(self._classify_close(exc))
        finally:
            self._end()

    def _parse_message(self, raw: str) -> Optional[RecognitionEvent]:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON recognizer message")
            return None
        if not isinstance(payload, dict):
            return None

        message_type = payload.get("type")
        if message_type == "Error":
            description = payload.get("description") or payload.get("message") or "Recognizer error"
            return RecognitionEvent.error(ErrorKind.FATAL, str(description))
        if message_type != "Results":
            return None

        try:
            transcript = payload["channel"]["alternatives"][0]["transcript"] or ""
        except (KeyError, IndexError, TypeError):
            return None
        transcript = transcript.strip()

        # Deepgram finals close a segment; later interims start a new one.
        if payload.get("is_final") and transcript:
            self._segments.append(transcript)
            text = " ".join(self._segments)
        else:
            text = " ".join([*self._segments, transcript]).strip()

        if payload.get("speech_final") and text:
            self._segments.clear()
            return RecognitionEvent.final(text)
        if not text:
            return None
        return RecognitionEvent.interim(text)

    @staticmethod
    def _classify_close(exc: ConnectionClosed) -> RecognitionEvent:
        code = exc.rcvd.code if exc.rcvd is not None else 1006
        reason = exc.rcvd.reason if exc.rcvd is not None else ""
        message = f"Recognizer closed the stream ({code} {reason})".strip()
        if code in _RECOVERABLE_CLOSE_CODES:
            return RecognitionEvent.error(ErrorKind.RECOVERABLE, message)
        return RecognitionEvent.error(ErrorKind.FATAL, message)


class DeepgramRecognitionBridge:
    """Opens Deepgram live-listen streams for session pipelines."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._api_key = (
            settings.deepgram_api_key.get_secret_value()
            if settings.deepgram_api_key
            else None
        )
        if not self._api_key:
            logger.warning("DEEPGRAM_API_KEY is not set. Streaming recognition is unavailable.")

    def _build_url(self, language: str) -> str:
        params = {
            "model": self._settings.stt_model,
            "language": language,
            "encoding": "linear16",
            "sample_rate": str(self._settings.stt_sample_rate),
            "channels": "1",
            "interim_results": "true",
            "punctuate": "true",
            "smart_format": "true",
            "endpointing": "300",
        }
        return f"{self._settings.deepgram_listen_url}?{urlencode(params)}"

    async def open(self, *, language: str) -> DeepgramStream:
        if not self._api_key:
            raise RecognitionError("Speech recognition is not configured", fatal=True)

        url = self._build_url(language)
        logger.info(f"Opening Deepgram stream (model={self._settings.stt_model}, language={language})")
        try:
            websocket = await connect(
                url,
                additional_headers={"Authorization": f"Token {self._api_key}"},
                open_timeout=self._settings.stt_connect_timeout_seconds,
                max_size=None,
            )
        except InvalidStatus as exc:
            status_code = exc.response.status_code
            raise RecognitionError(
                f"Recognizer rejected the stream (HTTP {status_code})",
                fatal=status_code in _FATAL_HANDSHAKE_STATUSES,
            ) from exc
        except (InvalidHandshake, OSError, asyncio.TimeoutError) as exc:
            raise RecognitionError(f"Could not reach recognizer: {exc}") from exc

        return DeepgramStream(
            websocket,
            channels=self._settings.stt_channels,
            finish_timeout=self._settings.stt_finish_timeout_seconds,
        )


__all__ = [
    "DeepgramRecognitionBridge",
    "DeepgramStream",
    "ErrorKind",
    "EventKind",
    "RecognitionBridge",
    "RecognitionEvent",
    "RecognitionStream",
]
