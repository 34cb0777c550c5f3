"""Exception hierarchy shared by the voice pipeline services."""

from __future__ import annotations


class VoicePipelineError(Exception):
    """Base class for failures raised inside a session pipeline."""


class AudioFormatError(VoicePipelineError):
    """Raised when an inbound audio buffer cannot be transcoded."""


class RecognitionError(VoicePipelineError):
    """Raised when the streaming recognizer cannot be used."""

    def __init__(self, message: str, *, fatal: bool = False):
        super().__init__(message)
        self.fatal = fatal


class ResponseGenerationError(VoicePipelineError):
    """Raised when the language model fails to produce a reply."""

    def __init__(self, message: str, *, fragments_emitted: int = 0):
        super().__init__(message)
        self.fragments_emitted = fragments_emitted


class SynthesisError(VoicePipelineError):
    """Raised when a fragment cannot be synthesized."""


__all__ = [
    "AudioFormatError",
    "RecognitionError",
    "ResponseGenerationError",
    "SynthesisError",
    "VoicePipelineError",
]
