"""
Per-session voice pipeline.

Composes ingestion, recognition, segmentation, reply generation and ordered
synthesis for one connection. Everything that changes session state runs as a
task on the session's own FIFO queue:

    binary frame → AudioBatcher ─flush→ queue: _process_audio → RecognitionStream
    RecognitionStream results ─listener→ queue: _drain → UtteranceSegmenter
    finalized utterance → queue: _respond → ResponseGenerator → OrderedSynthesisDelivery

Timers (coalescing window, silence timeout) never touch state directly; they
only submit tasks to the queue.
"""

import asyncio
import base64
import logging
from contextlib import suppress
from functools import partial
from typing import Awaitable, Callable, Dict, Optional, Set

from ..config import Settings
from ..errors import AudioFormatError, RecognitionError, ResponseGenerationError
from ..repository import TrialRepository
from ..schemas.messages import (
    ConfigMessage,
    ControlMessage,
    ControlMessageError,
    ControlType,
    TextMessage,
    UnknownMessageType,
    parse_control_message,
)
from .ingestion import AudioBatcher
from .response_generator import ResponseGenerator
from .segmentation import FinalizeReason, UtteranceSegmenter
from .session import Session, SessionRegistry
from .stt_service import EventKind, RecognitionBridge, RecognitionEvent, RecognitionStream
from .task_queue import SessionTaskQueue
from .trial_meter import TrialMeter
from .tts.delivery import FragmentStatus, OrderedSynthesisDelivery, ResponseFragment, Synthesizer

logger = logging.getLogger(__name__)


class VoicePipeline:
    """Drives one session from raw microphone audio to spoken replies."""

    def __init__(
        self,
        session: Session,
        *,
        bridge: RecognitionBridge,
        generator: ResponseGenerator,
        synthesizer: Synthesizer,
        settings: Settings,
        registry: Optional[SessionRegistry] = None,
        repository: Optional[TrialRepository] = None,
    ):
        self.session = session
        self._bridge = bridge
        self._generator = generator
        self._synthesizer = synthesizer
        self._settings = settings
        self._registry = registry
        self._closed = False
        self._listeners: Set[asyncio.Task] = set()
        self._delivery: Optional[OrderedSynthesisDelivery] = None
        self._finalized_since_speech_end = False

        session.queue = SessionTaskQueue(session.session_id, on_error=self._on_task_error)
        session.batcher = AudioBatcher(
            self._on_batch,
            window_seconds=settings.coalesce_window_seconds,
            min_chunk_bytes=settings.min_chunk_bytes,
            max_hold_seconds=settings.coalesce_max_hold_seconds,
            max_pending_bytes=settings.coalesce_max_bytes,
        )
        session.segmenter = UtteranceSegmenter(
            silence_timeout=settings.silence_timeout_seconds,
            min_terminal_chars=settings.min_terminal_chars,
        )
        if session.user_id and repository is not None:
            session.meter = TrialMeter(
                repository,
                session.user_id,
                send=session.send,
                tick_interval=settings.meter_tick_seconds,
                sync_interval=settings.meter_sync_seconds,
                tolerance_minutes=settings.meter_tolerance_minutes,
            )

        self._control_handlers: Dict[ControlType, Callable[[ControlMessage], Awaitable[None]]] = {
            ControlType.CONFIG: self._on_config,
            ControlType.SPEECH_END: self._on_speech_end,
            ControlType.SPEECH_PAUSE: self._on_speech_pause,
            ControlType.RESET: self._on_reset,
            ControlType.PING: self._on_ping,
            ControlType.TEXT_MESSAGE: self._on_text_message,
        }
        missing = set(ControlType) - set(self._control_handlers)
        assert not missing, f"Unhandled control types: {missing}"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def queue(self) -> SessionTaskQueue:
        assert self.session.queue is not None
        return self.session.queue

    @property
    def batcher(self) -> AudioBatcher:
        assert self.session.batcher is not None
        return self.session.batcher

    @property
    def segmenter(self) -> UtteranceSegmenter:
        assert self.session.segmenter is not None
        return self.session.segmenter

    async def start(self) -> None:
        """Start the session queue and, for trial users, the meter."""

        self.queue.start()
        meter = self.session.meter
        if meter is not None and not await meter.start():
            self.session.meter = None

    # ------------------------------------------------------------------
    # Inbound frames

    def handle_audio(self, data: bytes) -> bool:
        """Buffer one binary frame. Returns False if it was dropped."""

        if self._closed:
            return False
        self.session.update_activity()
        return self.batcher.add(data)

    async def handle_control(self, raw: str | bytes) -> None:
        """Parse one control frame and dispatch it."""

        if self._closed:
            return
        self.session.update_activity()
        try:
            message = parse_control_message(raw)
        except UnknownMessageType as exc:
            logger.warning(f"Session {self.session.session_id}: {exc}")
            await self.session.send({"type": "error", "message": "Unknown message type"})
            return
        except ControlMessageError as exc:
            logger.warning(f"Session {self.session.session_id}: invalid control frame: {exc}")
            await self.session.send({"type": "error", "message": "Invalid control message"})
            return

        handler = self._control_handlers[ControlType(message.type)]
        await handler(message)

    async def _on_config(self, message: ControlMessage) -> None:
        assert isinstance(message, ConfigMessage)
        self.queue.submit(partial(self._configure, message))

    async def _on_speech_end(self, message: ControlMessage) -> None:
        # Whatever audio arrived before speech_end goes ahead of the finalize
        self.batcher.flush()
        self.queue.submit(self._end_of_speech)

    async def _on_speech_pause(self, message: ControlMessage) -> None:
        self.batcher.cancel()
        self.queue.submit(self._pause)

    async def _on_reset(self, message: ControlMessage) -> None:
        self.batcher.cancel()
        self.queue.submit(self._reset)

    async def _on_ping(self, message: ControlMessage) -> None:
        await self.session.send({"type": "pong"})

    async def _on_text_message(self, message: ControlMessage) -> None:
        assert isinstance(message, TextMessage)
        self.queue.submit(partial(self._respond, message.text))

    def _on_batch(self, data: bytes) -> None:
        if self._closed:
            return
        self.queue.submit(partial(self._process_audio, data))

    # ------------------------------------------------------------------
    # Queue tasks: recognition

    async def _process_audio(self, data: bytes) -> None:
        if self._closed:
            return
        recognition = self.session.recognition
        if recognition.stream is not None and recognition.stream.ended:
            # Closed by the recognizer without an error; keep its last results
            logger.info(f"Session {self.session.session_id}: recognition stream ended remotely")
            await self._retire_stream(recognition.stream)
        elif recognition.stream is not None and recognition.stream.age >= self._settings.stt_max_stream_seconds:
            logger.info(f"Session {self.session.session_id}: rotating long-lived recognition stream")
            await self._finish_stream()

        if recognition.stream is None and not await self._open_stream():
            return

        stream = recognition.stream
        assert stream is not None
        try:
            await stream.write_chunk(data)
        except AudioFormatError as exc:
            logger.warning(f"Session {self.session.session_id}: dropping malformed audio: {exc}")
            await self._drop_stream()
        except RecognitionError as exc:
            logger.info(f"Session {self.session.session_id}: recognition stream lost: {exc}")
            await self._drop_stream()

    async def _open_stream(self) -> bool:
        recognition = self.session.recognition
        try:
            stream = await self._bridge.open(language=self.session.language)
        except RecognitionError as exc:
            if exc.fatal:
                logger.error(f"Session {self.session.session_id}: recognizer refused stream: {exc}")
                await self.session.send({"type": "error", "message": str(exc)})
            else:
                logger.warning(f"Session {self.session.session_id}: could not open stream: {exc}")
            return False

        recognition.stream = stream
        recognition.started_at = stream.started_at
        listener = asyncio.create_task(
            self._listen(stream), name=f"recognition-listener-{self.session.session_id}"
        )
        self._listeners.add(listener)
        listener.add_done_callback(self._listeners.discard)
        recognition.listener = listener
        return True

    async def _listen(self, stream: RecognitionStream) -> None:
        """Move results from ``stream`` onto the session queue until it ends."""

        while not stream.exhausted:
            await stream.wait_readable()
            if self.queue.closed:
                return
            await self.queue.run(partial(self._drain, stream))

    async def _drain(self, stream: RecognitionStream) -> None:
        events = stream.poll()
        for event in events:
            if stream is not self.session.recognition.stream:
                return
            await self._handle_event(event)

    async def _handle_event(self, event: RecognitionEvent) -> None:
        session = self.session
        if event.is_error:
            if event.is_fatal:
                logger.error(f"Session {session.session_id}: recognizer error: {event.message}")
                await session.send({"type": "error", "message": event.message or "Speech recognition failed"})
            else:
                logger.info(f"Session {session.session_id}: recoverable recognizer fault: {event.message}")
            await self._drop_stream()
            return

        final = event.kind is EventKind.FINAL
        update = self.segmenter.observe(event.text, final=final)
        if update.accepted:
            recognition = session.recognition
            recognition.interim_transcript = update.transcript
            if update.started:
                self._finalized_since_speech_end = False
                await session.send({"type": "speech_started"})
            if update.transcript != recognition.last_sent:
                recognition.last_sent = update.transcript
                await session.send({"type": "stt_chunk", "text": update.transcript})
            self._arm_silence_timer()

        if final:
            await self._drop_stream()
        if update.finalize is not None:
            await self._finalize(update.finalize)

    async def _finish_stream(self) -> None:
        """Close the current stream gracefully and process its last results."""

        stream = self.session.recognition.stream
        if stream is None:
            return
        try:
            await stream.finish()
        except RecognitionError as exc:
            logger.info(f"Session {self.session.session_id}: finish failed: {exc}")
        await self._retire_stream(stream)

    async def _retire_stream(self, stream: RecognitionStream) -> None:
        if stream is self.session.recognition.stream:
            await self._drain(stream)
        if stream is self.session.recognition.stream:
            await self._drop_stream()

    async def _drop_stream(self) -> None:
        recognition = self.session.recognition
        stream = recognition.stream
        if stream is None:
            return
        recognition.clear()
        self.segmenter.end_attempt()
        try:
            await stream.cancel()
        except Exception as exc:
            logger.warning(f"Session {self.session.session_id}: error cancelling stream: {exc}")

    # ------------------------------------------------------------------
    # Queue tasks: segmentation

    def _arm_silence_timer(self, delay: Optional[float] = None) -> None:
        self._cancel_silence_timer()
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        self.session.silence_timer = loop.call_later(
            self.segmenter.silence_timeout if delay is None else delay,
            self._on_silence_timer,
            self.segmenter.cycle,
        )

    def _cancel_silence_timer(self) -> None:
        timer = self.session.silence_timer
        if timer is not None:
            timer.cancel()
            self.session.silence_timer = None

    def _on_silence_timer(self, cycle: int) -> None:
        self.session.silence_timer = None
        if self._closed:
            return
        self.queue.submit(partial(self._silence_expired, cycle))

    async def _silence_expired(self, cycle: int) -> None:
        segmenter = self.segmenter
        if segmenter.silence_elapsed(cycle):
            await self._finalize(FinalizeReason.SILENCE)
        elif segmenter.recording and segmenter.cycle == cycle and self.session.silence_timer is None:
            self._arm_silence_timer(segmenter.silence_remaining())

    async def _end_of_speech(self) -> None:
        await self._finish_stream()
        if self.segmenter.recording:
            await self._finalize(FinalizeReason.SPEECH_END)
        elif not self._finalized_since_speech_end:
            await self.session.send({"type": "transcription_complete", "text": ""})
        self._finalized_since_speech_end = False

    async def _finalize(self, reason: FinalizeReason) -> None:
        self._cancel_silence_timer()
        text = self.segmenter.finalize()
        await self._drop_stream()
        recognition = self.session.recognition
        recognition.interim_transcript = ""
        recognition.last_sent = ""
        if text is None:
            return

        self._finalized_since_speech_end = True
        logger.info(f"Session {self.session.session_id}: utterance finalized by {reason.value}: {text[:80]}")
        await self.session.send({"type": "transcription_complete", "text": text})
        self.queue.submit(partial(self._respond, text))

    # ------------------------------------------------------------------
    # Queue tasks: control

    async def _configure(self, message: ConfigMessage) -> None:
        session = self.session
        if message.voice is not None:
            if message.voice not in self._settings.allowed_voices:
                await session.send({"type": "error", "message": f"Unsupported voice: {message.voice}"})
            else:
                session.voice = message.voice
        if message.language:
            session.language = message.language
        await session.send({"type": "config_ack", "voice": session.voice, "language": session.language})

    async def _pause(self) -> None:
        await self._drop_stream()
        await self.session.send({"type": "pause_ack"})

    async def _reset(self) -> None:
        self._cancel_silence_timer()
        await self._drop_stream()
        self.segmenter.reset()
        recognition = self.session.recognition
        recognition.interim_transcript = ""
        recognition.last_sent = ""
        self.session.history.clear()
        self._finalized_since_speech_end = False
        await self.session.send({"type": "reset_ack"})

    # ------------------------------------------------------------------
    # Queue tasks: reply

    async def _respond(self, text: str) -> None:
        if self._closed or not text:
            return
        session = self.session
        streaming = self._settings.tts_streaming
        delivery = OrderedSynthesisDelivery(
            self._synthesizer,
            voice=session.voice,
            on_deliver=self._deliver_fragment if streaming else None,
        )
        self._delivery = delivery
        parts: list[str] = []
        error: Optional[ResponseGenerationError] = None

        try:
            try:
                async for fragment in self._generator.generate(text, history=session.history):
                    parts.append(fragment.text)
                    await session.send({"type": "llm_chunk", "index": fragment.index, "text": fragment.text})
                    delivery.submit(fragment)
            except ResponseGenerationError as exc:
                error = exc

            if not parts:
                await session.send({"type": "error", "message": str(error or "No reply generated")})
                return

            reply = " ".join(parts)
            await session.send({"type": "llm_response", "text": reply})
            fragments = await delivery.complete()
            if not streaming:
                await self._deliver_whole_reply(fragments)
            await session.send({"type": "tts_complete", "fragments": len(fragments)})
        finally:
            self._delivery = None

        if error is not None:
            await session.send({"type": "error", "message": str(error)})
        session.remember("user", text, max_turns=self._settings.history_turns)
        session.remember("assistant", reply, max_turns=self._settings.history_turns)

    async def _deliver_fragment(self, fragment: ResponseFragment) -> None:
        if fragment.status is FragmentStatus.READY and fragment.audio:
            await self.session.send(
                {
                    "type": "tts_chunk",
                    "index": fragment.index,
                    "audio": base64.b64encode(fragment.audio).decode("utf-8"),
                    "mimeType": fragment.mime_type,
                }
            )
        else:
            await self.session.send(
                {
                    "type": "error",
                    "index": fragment.index,
                    "message": fragment.error or "Speech synthesis failed",
                }
            )

    async def _deliver_whole_reply(self, fragments: list[ResponseFragment]) -> None:
        audio = b"".join(f.audio for f in fragments if f.audio)
        if not audio:
            await self.session.send({"type": "error", "message": "Speech synthesis failed"})
            return
        await self.session.send(
            {
                "type": "tts_audio",
                "audio": base64.b64encode(audio).decode("utf-8"),
                "mimeType": self._synthesizer.mime_type,
            }
        )

    async def _on_task_error(self, exc: BaseException) -> None:
        await self.session.send({"type": "error", "message": "Failed to process request"})

    # ------------------------------------------------------------------
    # Teardown

    async def close(self) -> None:
        """Release everything the session owns. Safe to call more than once."""

        if self._closed:
            return
        self._closed = True
        session = self.session
        logger.info(f"Closing session {session.session_id}")

        self.batcher.cancel()
        self._cancel_silence_timer()
        # Grab the in-flight reply first; cancelling its task clears the reference
        delivery, self._delivery = self._delivery, None
        await self.queue.close()

        if delivery is not None:
            await delivery.cancel()

        listeners = list(self._listeners)
        for listener in listeners:
            listener.cancel()
        for listener in listeners:
            with suppress(asyncio.CancelledError):
                await listener

        stream = session.recognition.stream
        session.recognition.clear()
        if stream is not None:
            try:
                await stream.cancel()
            except Exception as exc:
                logger.warning(f"Error cancelling stream for {session.session_id}: {exc}")

        if session.meter is not None:
            await session.meter.release()

        session.closed = True
        if self._registry is not None:
            self._registry.remove(session.session_id)


__all__ = ["VoicePipeline"]
