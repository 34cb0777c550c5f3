from __future__ import annotations

import asyncio
import base64
import json

import pytest

from companion_voice.config import Settings
from companion_voice.errors import RecognitionError
from companion_voice.services.response_generator import ResponseGenerator
from companion_voice.services.session import Session, SessionRegistry
from companion_voice.services.stt_service import ErrorKind, RecognitionEvent
from companion_voice.services.voice_pipeline import VoicePipeline
from fakes import (
    FakeBridge,
    FakeConnection,
    FakeLLMClient,
    FakeSynthesizer,
    audio_frame,
    malformed_frame,
    wait_until,
)

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _settings(**overrides) -> Settings:
    values = {
        "silence_timeout_seconds": 0.05,
        "coalesce_window_ms": 5,
        "min_chunk_bytes": 160,
        "history_turns": 2,
        "llm_system_prompt": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class Harness:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        bridge: FakeBridge | None = None,
        llm: FakeLLMClient | None = None,
        synthesizer: FakeSynthesizer | None = None,
    ) -> None:
        self.settings = settings or _settings()
        self.connection = FakeConnection()
        self.bridge = bridge or FakeBridge()
        self.llm = llm or FakeLLMClient()
        self.synthesizer = synthesizer or FakeSynthesizer()
        self.registry = SessionRegistry()
        self.session = Session(
            session_id="s1",
            connection=self.connection,
            voice="alloy",
            language="tr",
        )
        self.pipeline = VoicePipeline(
            self.session,
            bridge=self.bridge,
            generator=ResponseGenerator(self.llm, self.settings),
            synthesizer=self.synthesizer,
            settings=self.settings,
            registry=self.registry,
        )
        self.registry.add(self.session)

    async def control(self, message: dict) -> None:
        await self.pipeline.handle_control(json.dumps(message))

    def count(self, message_type: str) -> int:
        return len(self.connection.of_type(message_type))

    async def wait_for(self, message_type: str, count: int = 1) -> None:
        await wait_until(lambda: self.count(message_type) >= count)


@pytest.fixture
async def harness():
    created: list[Harness] = []

    async def make(**kwargs) -> Harness:
        h = Harness(**kwargs)
        await h.pipeline.start()
        created.append(h)
        return h

    yield make
    for h in created:
        await h.pipeline.close()


async def test_full_turn_from_audio_to_ordered_speech(harness) -> None:
    h = await harness(
        settings=_settings(silence_timeout_seconds=5.0),
        synthesizer=FakeSynthesizer(delays=[0.05, 0.0]),
    )

    h.pipeline.handle_audio(audio_frame("Merhaba,"))
    await h.wait_for("stt_chunk")
    h.pipeline.handle_audio(audio_frame(" nasılsın?"))
    await h.wait_for("tts_complete")

    types = h.connection.types()
    assert types[0] == "speech_started"
    assert types.index("stt_chunk") < types.index("transcription_complete")
    assert types.index("transcription_complete") < types.index("llm_chunk")
    assert types.index("llm_response") < types.index("tts_complete")
    assert types[-1] == "tts_complete"

    assert [m["text"] for m in h.connection.of_type("transcription_complete")] == [
        "Merhaba, nasılsın?"
    ]
    assert h.connection.of_type("llm_response")[0]["text"] == "İyiyim, teşekkürler! Sen nasılsın?"
    chunks = h.connection.of_type("tts_chunk")
    assert [c["index"] for c in chunks] == [0, 1]
    assert base64.b64decode(chunks[0]["audio"]) == "audio:İyiyim, teşekkürler!".encode("utf-8")
    assert chunks[0]["mimeType"] == "audio/mpeg"
    assert h.connection.of_type("tts_complete")[0]["fragments"] == 2
    assert h.bridge.languages == ["tr"]


async def test_silence_finalizes_exactly_once(harness) -> None:
    h = await harness()

    h.pipeline.handle_audio(audio_frame("Merhaba dünya"))
    await h.wait_for("tts_complete")
    await asyncio.sleep(0.2)

    assert [m["text"] for m in h.connection.of_type("transcription_complete")] == [
        "Merhaba dünya"
    ]
    assert h.count("speech_started") == 1
    assert len(h.llm.calls) == 1


async def test_speech_end_finalizes_pending_utterance(harness) -> None:
    h = await harness(settings=_settings(silence_timeout_seconds=5.0))

    h.pipeline.handle_audio(audio_frame("Merhaba dünya"))
    await h.control({"type": "speech_end"})
    await h.wait_for("tts_complete")

    assert [m["text"] for m in h.connection.of_type("transcription_complete")] == [
        "Merhaba dünya"
    ]
    assert h.bridge.streams[0].finish_calls == 1


async def test_speech_end_without_speech_reports_empty_transcript(harness) -> None:
    h = await harness()

    await h.control({"type": "speech_end"})
    await h.wait_for("transcription_complete")

    assert h.connection.of_type("transcription_complete") == [
        {"type": "transcription_complete", "text": ""}
    ]
    assert h.bridge.streams == []


async def test_speech_end_after_punctuation_does_not_repeat(harness) -> None:
    h = await harness()

    h.pipeline.handle_audio(audio_frame("Merhaba, nasılsın?"))
    await h.wait_for("transcription_complete")
    await h.control({"type": "speech_end"})
    await h.wait_for("tts_complete")
    await h.pipeline.queue.drain()

    assert h.count("transcription_complete") == 1


async def test_filler_is_not_speech(harness) -> None:
    h = await harness()

    h.pipeline.handle_audio(audio_frame("hmm"))
    await wait_until(lambda: bool(h.bridge.streams) and bool(h.bridge.streams[0].writes))
    await h.control({"type": "speech_end"})
    await h.wait_for("transcription_complete")

    assert h.count("speech_started") == 0
    assert h.count("stt_chunk") == 0
    assert h.connection.of_type("transcription_complete")[0]["text"] == ""
    assert h.llm.calls == []


async def test_undersized_audio_is_dropped(harness) -> None:
    h = await harness()

    assert h.pipeline.handle_audio(b"\x01\x02") is False
    await asyncio.sleep(0.03)

    assert h.bridge.streams == []


async def test_recoverable_error_reopens_on_next_chunk(harness) -> None:
    h = await harness(settings=_settings(silence_timeout_seconds=5.0))

    h.pipeline.handle_audio(audio_frame("Merhaba"))
    await h.wait_for("stt_chunk")
    h.bridge.streams[0].inject(RecognitionEvent.error(ErrorKind.RECOVERABLE, "socket closed"))
    await wait_until(lambda: h.bridge.streams[0].cancel_calls == 1)

    h.pipeline.handle_audio(audio_frame("dünya"))
    await h.wait_for("stt_chunk", 2)

    assert len(h.bridge.streams) == 2
    assert h.connection.of_type("stt_chunk")[-1]["text"] == "Merhaba dünya"
    assert h.count("error") == 0
    assert h.count("speech_started") == 1


async def test_fatal_stream_error_is_reported(harness) -> None:
    h = await harness(settings=_settings(silence_timeout_seconds=5.0))

    h.pipeline.handle_audio(audio_frame("Merhaba"))
    await h.wait_for("stt_chunk")
    h.bridge.streams[0].inject(RecognitionEvent.error(ErrorKind.FATAL, "Invalid credentials"))
    await h.wait_for("error")

    assert h.connection.of_type("error")[0]["message"] == "Invalid credentials"
    assert h.bridge.streams[0].cancel_calls == 1


async def test_fatal_open_failure_is_reported(harness) -> None:
    h = await harness(bridge=FakeBridge(error=RecognitionError("Payment required", fatal=True)))

    h.pipeline.handle_audio(audio_frame("Merhaba"))
    await h.wait_for("error")

    assert h.connection.of_type("error") == [{"type": "error", "message": "Payment required"}]


async def test_transient_open_failure_is_silent(harness) -> None:
    h = await harness(bridge=FakeBridge(error=RecognitionError("timeout")))

    h.pipeline.handle_audio(audio_frame("Merhaba"))
    await wait_until(lambda: len(h.bridge.languages) == 1)
    await h.pipeline.queue.drain()

    assert h.connection.sent == []


async def test_text_message_runs_reply_and_keeps_history(harness) -> None:
    h = await harness()

    await h.control({"type": "text_message", "text": "Merhaba"})
    await h.wait_for("tts_complete")
    await h.control({"type": "text_message", "text": "Tekrar"})
    await h.wait_for("tts_complete", 2)

    assert h.count("transcription_complete") == 0
    second_call = h.llm.calls[1]
    assert [m["content"] for m in second_call] == [
        "Merhaba",
        "İyiyim, teşekkürler! Sen nasılsın?",
        "Tekrar",
    ]
    assert len(h.session.history) == 4


async def test_llm_failure_before_any_fragment(harness) -> None:
    h = await harness(llm=FakeLLMClient(fail_after=0))

    await h.control({"type": "text_message", "text": "Merhaba"})
    await h.wait_for("error")
    await h.pipeline.queue.drain()

    assert h.count("llm_response") == 0
    assert h.count("tts_complete") == 0
    assert "Language model" in h.connection.of_type("error")[0]["message"]
    assert h.session.history == []


async def test_llm_failure_mid_reply_delivers_partial_speech(harness) -> None:
    h = await harness(llm=FakeLLMClient(fail_after=4))

    await h.control({"type": "text_message", "text": "Merhaba"})
    await h.wait_for("error")

    types = h.connection.types()
    assert h.connection.of_type("llm_response")[0]["text"] == "İyiyim, teşekkürler!"
    assert [c["index"] for c in h.connection.of_type("tts_chunk")] == [0]
    assert types.index("tts_complete") < types.index("error")


async def test_failed_fragment_is_reported_with_index(harness) -> None:
    h = await harness(synthesizer=FakeSynthesizer(fail_on=["İyiyim, teşekkürler!"]))

    await h.control({"type": "text_message", "text": "Merhaba"})
    await h.wait_for("tts_complete")

    errors = h.connection.of_type("error")
    assert [e["index"] for e in errors] == [0]
    assert [c["index"] for c in h.connection.of_type("tts_chunk")] == [1]
    assert h.connection.of_type("tts_complete")[0]["fragments"] == 2


async def test_config_updates_voice_and_language(harness) -> None:
    h = await harness()

    await h.control({"type": "config", "voice": "nova", "language": "en"})
    await h.wait_for("config_ack")
    await h.control({"type": "config", "voice": "robot"})
    await h.wait_for("config_ack", 2)

    acks = h.connection.of_type("config_ack")
    assert acks[0] == {"type": "config_ack", "voice": "nova", "language": "en"}
    assert acks[1]["voice"] == "nova"
    assert h.connection.of_type("error")[0]["message"] == "Unsupported voice: robot"

    h.pipeline.handle_audio(audio_frame("Hello there?"))
    await h.wait_for("tts_complete")
    assert h.bridge.languages == ["en"]
    assert {voice for _, voice in h.synthesizer.calls} == {"nova"}


async def test_ping_unknown_and_invalid_control(harness) -> None:
    h = await harness()

    await h.control({"type": "ping"})
    await h.control({"type": "dance"})
    await h.control({"type": "text_message", "text": ""})
    await h.pipeline.handle_control("not json")

    assert h.connection.sent == [
        {"type": "pong"},
        {"type": "error", "message": "Unknown message type"},
        {"type": "error", "message": "Invalid control message"},
        {"type": "error", "message": "Invalid control message"},
    ]


async def test_pause_and_reset(harness) -> None:
    h = await harness(settings=_settings(silence_timeout_seconds=5.0))

    h.pipeline.handle_audio(audio_frame("Merhaba"))
    await h.wait_for("stt_chunk")
    await h.control({"type": "speech_pause"})
    await h.wait_for("pause_ack")
    assert h.bridge.streams[0].cancel_calls == 1
    assert h.pipeline.segmenter.recording

    h.session.history.append({"role": "user", "content": "eski"})
    await h.control({"type": "reset"})
    await h.wait_for("reset_ack")

    assert not h.pipeline.segmenter.recording
    assert h.session.history == []
    await h.control({"type": "speech_end"})
    await h.wait_for("transcription_complete")
    assert h.connection.of_type("transcription_complete")[0]["text"] == ""


async def test_close_is_idempotent_and_releases_resources(harness) -> None:
    h = await harness(settings=_settings(silence_timeout_seconds=5.0))

    h.pipeline.handle_audio(audio_frame("Merhaba"))
    await h.wait_for("stt_chunk")
    stream = h.bridge.streams[0]

    await h.pipeline.close()
    await h.pipeline.close()

    assert stream.cancel_calls == 1
    assert h.session.closed
    assert "s1" not in h.registry
    assert h.session.silence_timer is None
    assert h.pipeline.queue.closed
    assert h.pipeline.handle_audio(audio_frame("sonra")) is False


async def test_whole_reply_audio_when_streaming_is_off(harness) -> None:
    h = await harness(
        settings=_settings(tts_streaming=False),
        synthesizer=FakeSynthesizer(delays=[0.03, 0.0]),
    )

    await h.control({"type": "text_message", "text": "Merhaba"})
    await h.wait_for("tts_complete")

    assert h.count("tts_chunk") == 0
    (payload,) = h.connection.of_type("tts_audio")
    assert base64.b64decode(payload["audio"]) == (
        "audio:İyiyim, teşekkürler!audio:Sen nasılsın?".encode("utf-8")
    )
    assert payload["mimeType"] == "audio/mpeg"
    types = h.connection.types()
    assert types.index("tts_audio") < types.index("tts_complete")


async def test_stream_closed_by_recognizer_reopens_on_next_chunk(harness) -> None:
    h = await harness(settings=_settings(silence_timeout_seconds=5.0))

    h.pipeline.handle_audio(audio_frame("Merhaba"))
    await h.wait_for("stt_chunk")
    h.bridge.streams[0].end_remotely()

    h.pipeline.handle_audio(audio_frame("dünya"))
    await h.wait_for("stt_chunk", 2)

    assert len(h.bridge.streams) == 2
    assert h.bridge.streams[0].cancel_calls == 1
    assert h.bridge.streams[1].writes == [audio_frame("dünya")]
    assert h.connection.of_type("stt_chunk")[-1]["text"] == "Merhaba dünya"
    assert h.count("error") == 0


async def test_malformed_chunk_cancels_only_the_stream(harness) -> None:
    h = await harness(settings=_settings(silence_timeout_seconds=5.0))

    h.pipeline.handle_audio(audio_frame("Merhaba"))
    await h.wait_for("stt_chunk")
    h.pipeline.handle_audio(malformed_frame())
    await wait_until(lambda: h.bridge.streams[0].cancel_calls == 1)

    assert h.count("error") == 0
    assert h.session.recognition.stream is None
    assert not h.pipeline.closed
    assert h.pipeline.segmenter.recording

    h.pipeline.handle_audio(audio_frame("dünya"))
    await h.wait_for("stt_chunk", 2)

    assert len(h.bridge.streams) == 2
    assert h.connection.of_type("stt_chunk")[-1]["text"] == "Merhaba dünya"
    assert h.count("error") == 0
    assert h.count("speech_started") == 1


async def test_whitespace_text_message_is_rejected(harness) -> None:
    h = await harness()

    await h.control({"type": "text_message", "text": "   \n"})

    assert h.connection.sent == [{"type": "error", "message": "Invalid control message"}]
    await h.pipeline.queue.drain()
    assert h.llm.calls == []
