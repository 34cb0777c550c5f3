"""Audio chunk batching ahead of the recognition bridge.

Mobile clients send many tiny microphone buffers. Forwarding each one would
mean one recognizer write (and one queued task) per buffer, so chunks are held
for a short coalescing window that restarts on every arrival. When the window
expires the pending chunks are concatenated in arrival order and handed over
as one unit.

A client that keeps streaming would restart the window forever, so the hold is
also bounded: once the oldest pending chunk has waited ``max_hold_seconds`` or
the pending bytes reach ``max_pending_bytes``, the batch is flushed anyway.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioChunk:
    """Raw microphone bytes tagged with their arrival order."""

    seq: int
    data: bytes


class AudioBatcher:
    """Coalesces audio chunks and flushes them after a quiet window."""

    def __init__(
        self,
        on_flush: Callable[[bytes], None],
        *,
        window_seconds: float = 0.04,
        min_chunk_bytes: int = 160,
        max_hold_seconds: float = 0.2,
        max_pending_bytes: int = 32000,
    ):
        self._on_flush = on_flush
        self.window_seconds = window_seconds
        self.min_chunk_bytes = min_chunk_bytes
        self.max_hold_seconds = max_hold_seconds
        self.max_pending_bytes = max_pending_bytes
        self._pending: list[AudioChunk] = []
        self._pending_size = 0
        self._oldest_at = 0.0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._seq = 0
        self.dropped = 0

    @property
    def pending_bytes(self) -> int:
        return self._pending_size

    @property
    def timer_active(self) -> bool:
        return self._timer is not None

    def add(self, data: bytes) -> bool:
        """Buffer ``data``; returns False when it was dropped as noise."""

        if len(data) < self.min_chunk_bytes:
            self.dropped += 1
            logger.debug(f"Dropping {len(data)}-byte audio frame below minimum size")
            return False

        loop = asyncio.get_running_loop()
        if not self._pending:
            self._oldest_at = loop.time()
        self._seq += 1
        self._pending.append(AudioChunk(seq=self._seq, data=bytes(data)))
        self._pending_size += len(data)

        if self._pending_size >= self.max_pending_bytes:
            self.flush()
        else:
            self._restart_timer(loop)
        return True

    def flush(self) -> int:
        """Hand all pending chunks over as one buffer. Returns bytes flushed."""

        self._cancel_timer()
        if not self._pending:
            return 0
        chunks = sorted(self._pending, key=lambda chunk: chunk.seq)
        self._pending.clear()
        self._pending_size = 0
        data = b"".join(chunk.data for chunk in chunks)
        if not data:
            return 0
        self._on_flush(data)
        return len(data)

    def cancel(self) -> None:
        """Discard pending chunks and stop the coalescing timer."""

        self._cancel_timer()
        self._pending.clear()
        self._pending_size = 0

    def _restart_timer(self, loop: asyncio.AbstractEventLoop) -> None:
        self._cancel_timer()
        # Never wait past the hold limit of the oldest chunk
        held = loop.time() - self._oldest_at
        delay = min(self.window_seconds, max(0.0, self.max_hold_seconds - held))
        self._timer = loop.call_later(delay, self._on_window_expired)

    def _on_window_expired(self) -> None:
        self._timer = None
        self.flush()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


__all__ = ["AudioBatcher", "AudioChunk"]
