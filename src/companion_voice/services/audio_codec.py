"""Transcode client audio into the linear16 PCM the recognizer expects.

Clients stream raw 16-bit little-endian PCM. Some recorders prepend a RIFF/WAV
header to the first buffer and some capture interleaved stereo; both are
normalized here so the recognizer always receives mono linear16.
"""

from __future__ import annotations

import io
import struct
import sys
import wave
from array import array

from ..errors import AudioFormatError

SAMPLE_WIDTH = 2


def _parse_wav(data: bytes) -> tuple[bytes, int]:
    """Return the PCM payload and channel count of a WAV buffer.

    Everything after the ``data`` chunk header is returned. Streaming
    recorders write placeholder sizes, and batched buffers carry the
    header-less chunks that followed the first one.
    """

    if len(data) < 12 or data[8:12] != b"WAVE":
        raise AudioFormatError("RIFF buffer is not a WAVE file")

    # The RIFF size may be a placeholder too; point it at the whole buffer
    header = bytearray(data)
    struct.pack_into("<I", header, 4, len(data) - 8)
    buffer = io.BytesIO(bytes(header))
    try:
        with wave.open(buffer, "rb") as reader:
            channels = reader.getnchannels()
            sample_width = reader.getsampwidth()
            data_start = buffer.tell()
    except (wave.Error, EOFError) as exc:
        raise AudioFormatError(f"Unsupported WAV buffer: {exc}") from exc

    if sample_width != SAMPLE_WIDTH:
        raise AudioFormatError(f"Unsupported WAV sample width of {sample_width * 8} bits")
    return data[data_start:], channels


def _downmix(pcm: bytes, channels: int) -> bytes:
    samples = array("h")
    samples.frombytes(pcm)
    if sys.byteorder != "little":
        samples.byteswap()
    mono = array(
        "h",
        (
            int(sum(samples[i : i + channels]) / channels)
            for i in range(0, len(samples), channels)
        ),
    )
    if sys.byteorder != "little":
        mono.byteswap()
    return mono.tobytes()


def to_linear16(data: bytes, *, channels: int = 1) -> bytes:
    """Normalize ``data`` to mono 16-bit little-endian PCM.

    Raises:
        AudioFormatError: if the buffer is empty, misaligned or an unsupported
            WAV variant.
    """

    if not data:
        raise AudioFormatError("Empty audio buffer")

    if data[:4] == b"RIFF":
        data, channels = _parse_wav(data)
        if not data:
            raise AudioFormatError("WAV buffer carries no samples")

    frame_width = SAMPLE_WIDTH * channels
    if len(data) % frame_width:
        raise AudioFormatError(
            f"Audio buffer of {len(data)} bytes is not aligned to {frame_width}-byte frames"
        )

    if channels > 1:
        return _downmix(data, channels)
    return bytes(data)


__all__ = ["SAMPLE_WIDTH", "to_linear16"]
