"""
Voice-activity based utterance segmentation.

A small per-session state machine fed with recognizer results::

    IDLE --speech-bearing result--> RECORDING --finalize--> IDLE

The segmenter never owns timers. It records when speech was last heard and
hands the pipeline a cycle id; the pipeline arms the silence timer and asks
``silence_elapsed(cycle)`` when it fires, so a stale timer from an earlier
cycle can never finalize the current one.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

TERMINAL_MARKS = (".", "!", "?", "…")

DEFAULT_FILLERS = frozenset(
    {
        "aa",
        "ah",
        "ee",
        "eh",
        "er",
        "hm",
        "hmm",
        "hı",
        "hıı",
        "mhm",
        "mm",
        "şey",
        "uh",
        "um",
        "umm",
        "ıı",
        "ııı",
    }
)

_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w]+", re.UNICODE)


def normalize_transcript(text: str) -> str:
    """Collapse whitespace the way transcripts are shown to the client."""

    return _WHITESPACE.sub(" ", text or "").strip()


class SegmenterState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"


class FinalizeReason(str, Enum):
    SPEECH_END = "speech_end"
    PUNCTUATION = "punctuation"
    SILENCE = "silence"


@dataclass(frozen=True)
class SegmentUpdate:
    """Outcome of feeding one result to the segmenter."""

    accepted: bool
    started: bool = False
    transcript: str = ""
    finalize: Optional[FinalizeReason] = None


class UtteranceSegmenter:
    """Decides when an utterance starts and when it is complete."""

    def __init__(
        self,
        *,
        silence_timeout: float = 1.8,
        min_terminal_chars: int = 8,
        fillers: Optional[Iterable[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.silence_timeout = silence_timeout
        self.min_terminal_chars = min_terminal_chars
        self.fillers = frozenset(f.lower() for f in (fillers or DEFAULT_FILLERS))
        self._clock = clock
        self.state = SegmenterState.IDLE
        self.cycle = 0
        self.last_speech_at: Optional[float] = None
        self._committed: list[str] = []
        self._current = ""

    def is_trivial(self, text: str) -> bool:
        """Return True for noise: very short, pure punctuation or filler."""

        normalized = normalize_transcript(text)
        if len(normalized) < 2:
            return True
        words = _PUNCTUATION.sub(" ", normalized.lower()).split()
        if not words:
            return True
        return all(word in self.fillers for word in words)

    @property
    def transcript(self) -> str:
        return normalize_transcript(" ".join([*self._committed, self._current]))

    @property
    def recording(self) -> bool:
        return self.state is SegmenterState.RECORDING

    def observe(self, text: str, *, final: bool = False) -> SegmentUpdate:
        """Feed the latest text of the current recognition attempt.

        ``final`` marks the attempt's authoritative result; its text is
        committed so a later attempt within the same utterance appends to it.
        """

        text = normalize_transcript(text)
        if self.is_trivial(text):
            return SegmentUpdate(accepted=False, transcript=self.transcript)

        started = False
        if self.state is SegmenterState.IDLE:
            self.state = SegmenterState.RECORDING
            self.cycle += 1
            started = True

        self.last_speech_at = self._clock()
        if final:
            self._committed.append(text)
            self._current = ""
        else:
            self._current = text

        transcript = self.transcript
        finalize = FinalizeReason.PUNCTUATION if self._is_complete(transcript) else None
        return SegmentUpdate(
            accepted=True, started=started, transcript=transcript, finalize=finalize
        )

    def end_attempt(self) -> None:
        """Commit the current attempt's text when a stream is torn down."""

        if self._current:
            self._committed.append(self._current)
            self._current = ""

    def silence_elapsed(self, cycle: int) -> bool:
        """True if ``cycle`` is still recording and the threshold has passed."""

        if cycle != self.cycle or self.state is not SegmenterState.RECORDING:
            return False
        if self.last_speech_at is None:
            return False
        return self._clock() - self.last_speech_at >= self.silence_timeout

    def silence_remaining(self) -> float:
        if self.last_speech_at is None:
            return self.silence_timeout
        return max(0.0, self.silence_timeout - (self._clock() - self.last_speech_at))

    def finalize(self) -> Optional[str]:
        """Close the current cycle and return its utterance, at most once."""

        transcript = self.transcript
        was_recording = self.state is SegmenterState.RECORDING
        self.reset()
        if not was_recording or not transcript:
            return None
        return transcript

    def reset(self) -> None:
        self.state = SegmenterState.IDLE
        self.last_speech_at = None
        self._committed.clear()
        self._current = ""

    def _is_complete(self, transcript: str) -> bool:
        return (
            len(transcript) >= self.min_terminal_chars
            and transcript.endswith(TERMINAL_MARKS)
        )


__all__ = [
    "DEFAULT_FILLERS",
    "FinalizeReason",
    "SegmentUpdate",
    "SegmenterState",
    "TERMINAL_MARKS",
    "UtteranceSegmenter",
    "normalize_transcript",
]
