"""Turns a finalized utterance into a stream of speakable reply fragments."""

from __future__ import annotations

import logging
import time
from typing import Any, AsyncGenerator, Optional, Sequence

from ..config import Settings
from ..errors import ResponseGenerationError
from ..llm_client import ChatCompletionClient, LLMError
from .tts.delivery import ResponseFragment
from .tts.text_segmenter import ResponseFragmenter

logger = logging.getLogger(__name__)


class ResponseGenerator:
    """Streams model tokens and cuts them into indexed fragments."""

    def __init__(self, llm_client: ChatCompletionClient, settings: Settings):
        self._llm = llm_client
        self._settings = settings

    def build_messages(
        self, utterance: str, history: Optional[Sequence[dict[str, Any]]] = None
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self._settings.llm_system_prompt:
            messages.append({"role": "system", "content": self._settings.llm_system_prompt})
        if history:
            limit = self._settings.history_turns * 2
            recent = list(history)[-limit:] if limit else []
            messages.extend(recent)
        messages.append({"role": "user", "content": utterance})
        return messages

    async def generate(
        self,
        utterance: str,
        *,
        history: Optional[Sequence[dict[str, Any]]] = None,
    ) -> AsyncGenerator[ResponseFragment, None]:
        """Yield fragments with increasing indexes as the reply streams in.

        Raises:
            ResponseGenerationError: when the model fails. ``fragments_emitted``
                tells the caller whether part of the reply already went out.
        """

        utterance = utterance.strip()
        if not utterance:
            raise ResponseGenerationError("Cannot respond to an empty utterance")

        fragmenter = ResponseFragmenter(min_chars=self._settings.fragment_min_chars)
        messages = self.build_messages(utterance, history)
        started = time.monotonic()
        index = 0

        try:
            async for token in self._llm.stream_tokens(messages):
                for text in fragmenter.consume(token):
                    if index == 0:
                        elapsed = (time.monotonic() - started) * 1000
                        logger.info(f"First reply fragment in {elapsed:.0f}ms")
                    yield ResponseFragment(index=index, text=text)
                    index += 1
        except LLMError as exc:
            logger.error(f"Model stream failed after {index} fragment(s): {exc.detail}")
            raise ResponseGenerationError(
                f"Language model request failed: {exc}", fragments_emitted=index
            ) from exc

        remainder = fragmenter.flush()
        if remainder:
            yield ResponseFragment(index=index, text=remainder)
            index += 1

        if index == 0:
            raise ResponseGenerationError("Language model returned an empty reply")
        logger.debug(f"Reply complete with {index} fragment(s)")


__all__ = ["ResponseGenerator"]
