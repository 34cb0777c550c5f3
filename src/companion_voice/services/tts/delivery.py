"""
Ordered synthesis delivery for streamed replies.

Every fragment is submitted to the synthesizer the moment it is produced, so
several fragments of one reply synthesize concurrently. Completions are stored
at their own index and forwarded strictly in index order: a fragment that
finishes early waits until every lower index has been delivered.

Architecture:
    ResponseFragmenter → submit() → N synthesis tasks → _flush() → on_deliver

Usage:
    delivery = OrderedSynthesisDelivery(synthesizer, voice="alloy", on_deliver=send)

    for fragment in fragments:
        delivery.submit(fragment)

    fragments = await delivery.complete()
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class FragmentStatus(str, Enum):
    PENDING = "pending"
    SYNTHESIZING = "synthesizing"
    READY = "ready"
    FAILED = "failed"


@dataclass
class ResponseFragment:
    """A speakable slice of a generated reply."""

    index: int
    text: str
    audio: Optional[bytes] = None
    mime_type: Optional[str] = None
    status: FragmentStatus = FragmentStatus.PENDING
    error: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.status in (FragmentStatus.READY, FragmentStatus.FAILED)


class Synthesizer(Protocol):
    mime_type: str

    async def synthesize(self, text: str, *, voice: Optional[str] = None) -> bytes: ...


DeliverCallback = Callable[[ResponseFragment], Awaitable[None]]


class OrderedSynthesisDelivery:
    """
    Fan-out synthesis with in-order fan-in.

    Attributes:
        voice: Voice identifier passed to the synthesizer
        delivered: Fragments forwarded so far, in index order
    """

    def __init__(
        self,
        synthesizer: Synthesizer,
        *,
        voice: Optional[str] = None,
        on_deliver: Optional[DeliverCallback] = None,
        first_index: int = 0,
    ):
        """
        Initialize the delivery.

        Args:
            synthesizer: Object exposing ``synthesize(text, voice=...)``
            voice: Voice used for every fragment of this reply
            on_deliver: Awaited once per fragment, in index order
            first_index: Index of the first fragment that will be submitted
        """
        self._synthesizer = synthesizer
        self.voice = voice
        self._on_deliver = on_deliver
        self._fragments: dict[int, ResponseFragment] = {}
        self._tasks: list[asyncio.Task] = []
        self._next_index = first_index
        self._flush_lock = asyncio.Lock()
        self._started_at = time.monotonic()
        self.delivered: list[ResponseFragment] = []

    @property
    def submitted(self) -> int:
        return len(self._fragments)

    @property
    def next_index(self) -> int:
        """Index of the next fragment to be delivered."""
        return self._next_index

    def submit(self, fragment: ResponseFragment) -> asyncio.Task:
        """
        Start synthesizing ``fragment`` immediately.

        Raises:
            ValueError: if a fragment with the same index was already submitted
        """
        if fragment.index in self._fragments:
            raise ValueError(f"Fragment {fragment.index} was already submitted")

        fragment.status = FragmentStatus.SYNTHESIZING
        self._fragments[fragment.index] = fragment
        task = asyncio.create_task(
            self._synthesize(fragment), name=f"synthesize-fragment-{fragment.index}"
        )
        self._tasks.append(task)
        return task

    async def _synthesize(self, fragment: ResponseFragment) -> None:
        try:
            audio = await self._synthesizer.synthesize(fragment.text, voice=self.voice)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Synthesis failed for fragment {fragment.index}: {e}")
            fragment.status = FragmentStatus.FAILED
            fragment.error = str(e) or e.__class__.__name__
        else:
            fragment.audio = audio
            fragment.mime_type = self._synthesizer.mime_type
            fragment.status = FragmentStatus.READY
            elapsed = (time.monotonic() - self._started_at) * 1000
            logger.debug(f"Fragment {fragment.index} synthesized in {elapsed:.0f}ms")

        await self._flush()

    async def _flush(self) -> None:
        """Forward every settled fragment whose predecessors were delivered."""
        async with self._flush_lock:
            while True:
                fragment = self._fragments.get(self._next_index)
                if fragment is None or not fragment.settled:
                    return
                self._next_index += 1
                self.delivered.append(fragment)
                if self._on_deliver is None:
                    continue
                try:
                    await self._on_deliver(fragment)
                except Exception as e:
                    logger.error(f"Failed to deliver fragment {fragment.index}: {e}")

    async def complete(self) -> list[ResponseFragment]:
        """
        Wait until every submitted fragment is ready or failed.

        Returns:
            All submitted fragments in index order
        """
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._flush()
        return [self._fragments[index] for index in sorted(self._fragments)]

    async def collect_audio(self) -> bytes:
        """Concatenate the audio of all fragments strictly in index order."""
        fragments = await self.complete()
        return b"".join(f.audio for f in fragments if f.audio)

    async def cancel(self) -> None:
        """Stop outstanding synthesis tasks."""
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info(f"Cancelled {len(pending)} pending synthesis task(s)")


__all__ = [
    "DeliverCallback",
    "FragmentStatus",
    "OrderedSynthesisDelivery",
    "ResponseFragment",
    "Synthesizer",
]
