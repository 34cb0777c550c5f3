import pytest

from companion_voice.schemas.messages import (
    ConfigMessage,
    ControlMessageError,
    TextMessage,
    UnknownMessageType,
    classify_frame,
    parse_control_message,
)


def test_parses_known_messages() -> None:
    config = parse_control_message('{"type": "config", "voice": "nova", "extra": 1}')
    text = parse_control_message(b'{"type": "text_message", "text": "Merhaba"}')

    assert isinstance(config, ConfigMessage)
    assert config.voice == "nova"
    assert config.language is None
    assert isinstance(text, TextMessage)
    assert text.text == "Merhaba"


def test_text_message_is_stripped() -> None:
    message = parse_control_message('{"type": "text_message", "text": "  Merhaba \\n"}')

    assert message.text == "Merhaba"


def test_unknown_type_is_distinguished() -> None:
    with pytest.raises(UnknownMessageType) as excinfo:
        parse_control_message({"type": "dance"})

    assert excinfo.value.message_type == "dance"


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        '{"type": "text_message"}',
        '{"type": "text_message", "text": " \\t "}',
        b"\xff\xfe",
    ],
)
def test_malformed_frames_are_rejected(raw) -> None:
    with pytest.raises(ControlMessageError):
        parse_control_message(raw)


def test_classify_frame() -> None:
    assert classify_frame(b' {"type": "ping"}', min_chunk_bytes=160) == ' {"type": "ping"}'
    assert classify_frame(b"ping", min_chunk_bytes=160) == "ping"
    assert classify_frame(b"\x00\x01\x02", min_chunk_bytes=160) is None
    assert classify_frame(b"a" * 200, min_chunk_bytes=160) is None
    assert classify_frame(b"{\xff\xfe", min_chunk_bytes=160) is None
