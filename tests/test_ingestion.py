from __future__ import annotations

import asyncio

import pytest

from companion_voice.services.ingestion import AudioBatcher


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_chunks_within_window_flush_as_one_unit() -> None:
    flushed: list[bytes] = []
    batcher = AudioBatcher(flushed.append, window_seconds=0.1, min_chunk_bytes=4)

    assert batcher.add(b"aaaa")
    await asyncio.sleep(0.01)
    assert batcher.add(b"bbbb")
    await asyncio.sleep(0.01)
    assert batcher.add(b"cccc")
    assert flushed == []

    await asyncio.sleep(0.25)

    assert flushed == [b"aaaabbbbcccc"]
    assert batcher.pending_bytes == 0
    assert not batcher.timer_active


@pytest.mark.anyio
async def test_undersized_chunks_are_dropped() -> None:
    flushed: list[bytes] = []
    batcher = AudioBatcher(flushed.append, window_seconds=0.01, min_chunk_bytes=160)

    assert not batcher.add(b"\x00" * 10)
    assert batcher.dropped == 1
    assert not batcher.timer_active

    await asyncio.sleep(0.03)
    assert flushed == []


@pytest.mark.anyio
async def test_eager_flush_and_empty_flush() -> None:
    flushed: list[bytes] = []
    batcher = AudioBatcher(flushed.append, window_seconds=10, min_chunk_bytes=1)

    assert batcher.flush() == 0
    batcher.add(b"xy")
    assert batcher.flush() == 2
    assert flushed == [b"xy"]
    assert not batcher.timer_active


@pytest.mark.anyio
async def test_cancel_discards_pending_audio() -> None:
    flushed: list[bytes] = []
    batcher = AudioBatcher(flushed.append, window_seconds=0.01, min_chunk_bytes=1)

    batcher.add(b"xyz")
    batcher.cancel()
    await asyncio.sleep(0.03)

    assert flushed == []
    assert batcher.pending_bytes == 0


@pytest.mark.anyio
async def test_continuous_stream_is_flushed_by_max_hold() -> None:
    flushed: list[bytes] = []
    batcher = AudioBatcher(
        flushed.append, window_seconds=0.04, min_chunk_bytes=4, max_hold_seconds=0.1
    )
    chunks = [bytes([i]) * 640 for i in range(25)]

    # Frames every 20 ms never leave the 40 ms window quiet
    for chunk in chunks:
        assert batcher.add(chunk)
        await asyncio.sleep(0.02)

    assert len(flushed) >= 2
    assert all(len(batch) < 25 * 640 for batch in flushed)

    batcher.flush()
    assert b"".join(flushed) == b"".join(chunks)
    assert batcher.pending_bytes == 0


@pytest.mark.anyio
async def test_pending_byte_cap_flushes_immediately() -> None:
    flushed: list[bytes] = []
    batcher = AudioBatcher(
        flushed.append, window_seconds=10, min_chunk_bytes=1, max_pending_bytes=1000
    )

    batcher.add(b"a" * 400)
    batcher.add(b"b" * 400)
    assert flushed == []
    assert batcher.pending_bytes == 800

    batcher.add(b"c" * 400)

    assert flushed == [b"a" * 400 + b"b" * 400 + b"c" * 400]
    assert batcher.pending_bytes == 0
    assert not batcher.timer_active
