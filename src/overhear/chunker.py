"""
Fixed-duration framing of a raw PCM16 byte stream.

The Chunker is a pure transformation: bytes in, frames out. Every full chunk is
emitted as soon as it is available, and whatever is left at end of stream becomes
one final, possibly shorter, frame.
"""

import base64
import math
from collections.abc import AsyncIterator
from dataclasses import dataclass

from overhear.audio import AudioSource
from overhear.messages import AudioAppendMessage, serialize_message

BYTES_PER_SAMPLE = 2


def chunk_size_bytes(
  sample_rate: int, chunk_ms: int, bytes_per_sample: int = BYTES_PER_SAMPLE
) -> int:
  """
  Byte size of one frame, rounded half up, never less than one byte.

  16 kHz mono PCM16 at 20 ms is 640 bytes.
  """
  exact = sample_rate * bytes_per_sample * chunk_ms / 1000
  return max(1, math.floor(exact + 0.5))


@dataclass(frozen=True)
class Frame:
  """One fixed-duration slice of raw audio."""

  payload: bytes
  sequence: int

  def __len__(self) -> int:
    return len(self.payload)

  def to_message(self) -> AudioAppendMessage:
    return AudioAppendMessage(audio=base64.b64encode(self.payload).decode("ascii"))

  def to_record(self) -> str:
    """NDJSON record for this frame, without the trailing newline."""
    return serialize_message(self.to_message())


class Chunker:
  """Buffers incoming bytes and cuts them into frames of exactly ``chunk_bytes``."""

  def __init__(self, chunk_bytes: int) -> None:
    if chunk_bytes < 1:
      raise ValueError(f"chunk_bytes must be at least 1, got {chunk_bytes}")
    self.chunk_bytes = chunk_bytes
    self._buffer = bytearray()
    self._sequence = 0

  @classmethod
  def for_audio(cls, sample_rate: int, chunk_ms: int) -> "Chunker":
    return cls(chunk_size_bytes(sample_rate, chunk_ms))

  @property
  def buffered(self) -> int:
    """Bytes held back waiting for a full frame."""
    return len(self._buffer)

  @property
  def frames_emitted(self) -> int:
    return self._sequence

  def feed(self, data: bytes) -> list[Frame]:
    """Append bytes and return every full frame now available."""
    self._buffer.extend(data)
    frames: list[Frame] = []
    offset = 0
    while len(self._buffer) - offset >= self.chunk_bytes:
      frames.append(self._make_frame(bytes(self._buffer[offset : offset + self.chunk_bytes])))
      offset += self.chunk_bytes
    if offset:
      del self._buffer[:offset]
    return frames

  def flush(self) -> Frame | None:
    """Emit the non-empty remainder as the final frame."""
    if not self._buffer:
      return None
    frame = self._make_frame(bytes(self._buffer))
    self._buffer.clear()
    return frame

  def _make_frame(self, payload: bytes) -> Frame:
    frame = Frame(payload=payload, sequence=self._sequence)
    self._sequence += 1
    return frame


async def iter_frames(source: AudioSource, chunker: Chunker) -> AsyncIterator[Frame]:
  """
  Drive ``source`` to end of stream, yielding frames as they fill.

  I/O errors raised by the source propagate to the caller.
  """
  while True:
    data = await source.read()
    if not data:
      break
    for frame in chunker.feed(data):
      yield frame

  if final := chunker.flush():
    yield final
