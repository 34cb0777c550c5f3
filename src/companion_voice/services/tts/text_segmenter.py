"""
Response fragmenter for the streaming synthesis pipeline.

Splits streamed model tokens into speakable fragments so synthesis of the
first sentence can start while the model is still generating the rest.

Architecture:
    LLM tokens → ResponseFragmenter.consume() → OrderedSynthesisDelivery

Usage:
    fragmenter = ResponseFragmenter()

    # During LLM streaming:
    async for token in tokens:
        for text in fragmenter.consume(token):
            delivery.submit(ResponseFragment(index=..., text=text))

    # After streaming completes:
    final = fragmenter.flush()
"""

import re
from typing import Iterator, Optional, Sequence

DEFAULT_TERMINATORS = (".", "!", "?", "…")


class ResponseFragmenter:
    """
    Stateful splitter that turns a token stream into sentence fragments.

    A split happens wherever a run of terminating marks is followed by
    whitespace or sits at the very end of the rolling buffer. Text before
    ``min_chars`` is never split, so very short sentences merge with the next.

    Attributes:
        min_chars: Minimum fragment length before a split is allowed (default: 0)
        terminators: Sentence-terminating marks
    """

    def __init__(
        self,
        min_chars: int = 0,
        terminators: Optional[Sequence[str]] = None,
    ):
        """
        Initialize the fragmenter.

        Args:
            min_chars: Minimum characters required before emitting a fragment.
            terminators: Sentence-terminating marks. Defaults to ``. ! ? …``.
        """
        self.min_chars = min_chars
        self.terminators = tuple(terminators or DEFAULT_TERMINATORS)
        self._buffer = ""
        self._pattern = self._compile_pattern(self.terminators)
        self._emitted = 0

    @staticmethod
    def _compile_pattern(terminators: Sequence[str]) -> re.Pattern:
        """Compile a pattern matching a terminator run at a boundary."""
        marks = "".join(re.escape(mark) for mark in terminators)
        return re.compile(rf"[{marks}]+[\"'”’)]*(?=\s|$)")

    def consume(self, token: str) -> Iterator[str]:
        """
        Consume a token and yield any complete fragments.

        Args:
            token: Text delta from the model stream

        Yields:
            Fragments ready for synthesis, already stripped
        """
        if not token:
            return

        self._buffer += token

        while True:
            match = self._find_split(self._buffer)
            if match is None:
                break
            fragment = self._buffer[: match.end()].strip()
            self._buffer = self._buffer[match.end():]
            if fragment:
                self._emitted += 1
                yield fragment

    def _find_split(self, text: str) -> Optional[re.Match]:
        for match in self._pattern.finditer(text):
            if len(text[: match.end()].strip()) >= self.min_chars:
                return match
        return None

    def flush(self) -> Optional[str]:
        """
        Flush any remaining buffered text.

        Returns:
            Remaining text if any, None otherwise
        """
        remainder = self._buffer.strip()
        self._buffer = ""
        if remainder:
            self._emitted += 1
            return remainder
        return None

    def reset(self) -> None:
        """Reset fragmenter state for reuse."""
        self._buffer = ""
        self._emitted = 0

    @property
    def fragments_emitted(self) -> int:
        """Number of fragments produced since the last reset."""
        return self._emitted

    @property
    def buffer_size(self) -> int:
        """Current buffer size in characters."""
        return len(self._buffer)


__all__ = ["DEFAULT_TERMINATORS", "ResponseFragmenter"]
