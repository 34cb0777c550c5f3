"""Inbound control messages of the voice WebSocket."""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
)


class ControlType(str, Enum):
    CONFIG = "config"
    SPEECH_END = "speech_end"
    SPEECH_PAUSE = "speech_pause"
    RESET = "reset"
    PING = "ping"
    TEXT_MESSAGE = "text_message"


class ControlMessageError(ValueError):
    """Raised when a control frame cannot be parsed."""


class UnknownMessageType(ControlMessageError):
    """Raised for a well-formed frame with an unrecognised ``type``."""

    def __init__(self, message_type: Any):
        super().__init__(f"Unknown message type: {message_type}")
        self.message_type = message_type


class _Control(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ConfigMessage(_Control):
    type: Literal["config"] = "config"
    voice: Optional[str] = None
    language: Optional[str] = None


class SpeechEndMessage(_Control):
    type: Literal["speech_end"] = "speech_end"


class SpeechPauseMessage(_Control):
    type: Literal["speech_pause"] = "speech_pause"


class ResetMessage(_Control):
    type: Literal["reset"] = "reset"


class PingMessage(_Control):
    type: Literal["ping"] = "ping"


class TextMessage(_Control):
    type: Literal["text_message"] = "text_message"
    text: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


ControlMessage = Annotated[
    Union[
        ConfigMessage,
        SpeechEndMessage,
        SpeechPauseMessage,
        ResetMessage,
        PingMessage,
        TextMessage,
    ],
    Field(discriminator="type"),
]

_control_adapter: TypeAdapter[ControlMessage] = TypeAdapter(ControlMessage)
_KNOWN_TYPES = {member.value for member in ControlType}


def parse_control_message(raw: str | bytes | dict[str, Any]) -> ControlMessage:
    """Decode and validate one control frame.

    Raises:
        UnknownMessageType: if ``type`` is not a recognised control type
        ControlMessageError: for anything else that is not a valid message
    """

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ControlMessageError("Control frame is not UTF-8") from exc
    if isinstance(raw, str):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ControlMessageError(f"Control frame is not JSON: {exc.msg}") from exc
    else:
        payload = raw

    if not isinstance(payload, dict):
        raise ControlMessageError("Control frame must be a JSON object")
    message_type = payload.get("type")
    if message_type not in _KNOWN_TYPES:
        raise UnknownMessageType(message_type)

    try:
        return _control_adapter.validate_python(payload)
    except ValidationError as exc:
        raise ControlMessageError(f"Invalid {message_type} message") from exc


def classify_frame(data: bytes, *, min_chunk_bytes: int) -> Optional[str]:
    """Return the text of a binary frame that is really a control message.

    Some transports deliver everything as binary. A payload that looks like a
    JSON object, or one too short to be audio that decodes as text, is
    treated as control. Anything else is audio and ``None`` is returned.
    """

    stripped = data.lstrip()
    if stripped.startswith(b"{"):
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if len(data) < min_chunk_bytes and data:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return None
        if text.strip() and text.isprintable():
            return text
    return None


__all__ = [
    "ConfigMessage",
    "ControlMessage",
    "ControlMessageError",
    "ControlType",
    "PingMessage",
    "ResetMessage",
    "SpeechEndMessage",
    "SpeechPauseMessage",
    "TextMessage",
    "UnknownMessageType",
    "classify_frame",
    "parse_control_message",
]
