from __future__ import annotations

import pytest

from companion_voice.config import Settings
from companion_voice.errors import ResponseGenerationError
from companion_voice.services.response_generator import ResponseGenerator
from fakes import FakeLLMClient

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, llm_system_prompt="Kısa cevap ver.", history_turns=1)


async def _collect(generator: ResponseGenerator, utterance: str, **kwargs):
    return [fragment async for fragment in generator.generate(utterance, **kwargs)]


async def test_fragments_carry_increasing_indexes(settings: Settings) -> None:
    generator = ResponseGenerator(FakeLLMClient(), settings)

    fragments = await _collect(generator, "Merhaba, nasılsın?")

    assert [(f.index, f.text) for f in fragments] == [
        (0, "İyiyim, teşekkürler!"),
        (1, "Sen nasılsın?"),
    ]


async def test_remainder_becomes_final_fragment(settings: Settings) -> None:
    generator = ResponseGenerator(FakeLLMClient(["Bir cümle.", " Ve devamı"]), settings)

    fragments = await _collect(generator, "Anlat")

    assert [f.text for f in fragments] == ["Bir cümle.", "Ve devamı"]


async def test_messages_include_prompt_and_bounded_history(settings: Settings) -> None:
    llm = FakeLLMClient()
    generator = ResponseGenerator(llm, settings)
    history = [
        {"role": "user", "content": "eski soru"},
        {"role": "assistant", "content": "eski cevap"},
        {"role": "user", "content": "son soru"},
        {"role": "assistant", "content": "son cevap"},
    ]

    await _collect(generator, "Yeni soru", history=history)

    messages = llm.calls[0]
    assert messages[0] == {"role": "system", "content": "Kısa cevap ver."}
    assert [m["content"] for m in messages[1:]] == ["son soru", "son cevap", "Yeni soru"]


async def test_failure_before_any_token_emits_nothing(settings: Settings) -> None:
    generator = ResponseGenerator(FakeLLMClient(fail_after=0), settings)
    received = []

    with pytest.raises(ResponseGenerationError) as excinfo:
        async for fragment in generator.generate("Merhaba"):
            received.append(fragment)

    assert received == []
    assert excinfo.value.fragments_emitted == 0


async def test_failure_mid_stream_keeps_emitted_fragments(settings: Settings) -> None:
    generator = ResponseGenerator(FakeLLMClient(fail_after=4), settings)
    received = []

    with pytest.raises(ResponseGenerationError) as excinfo:
        async for fragment in generator.generate("Merhaba"):
            received.append(fragment)

    assert [f.text for f in received] == ["İyiyim, teşekkürler!"]
    assert excinfo.value.fragments_emitted == 1


async def test_empty_reply_is_an_error(settings: Settings) -> None:
    generator = ResponseGenerator(FakeLLMClient([]), settings)

    with pytest.raises(ResponseGenerationError):
        await _collect(generator, "Merhaba")


async def test_empty_utterance_is_rejected(settings: Settings) -> None:
    generator = ResponseGenerator(FakeLLMClient(), settings)

    with pytest.raises(ResponseGenerationError):
        await _collect(generator, "   ")
