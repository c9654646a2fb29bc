"""NDJSON line I/O for the stage commands (``chunk``, ``bridge``, ``forward``)."""

import asyncio
import sys
from collections.abc import AsyncIterator
from typing import TextIO

# Audio records for 20 ms frames are under 1 KiB; leave headroom for long transcripts
MAX_LINE_BYTES = 4 * 1024 * 1024


async def open_stdin_reader(limit: int = MAX_LINE_BYTES) -> asyncio.StreamReader:
  loop = asyncio.get_running_loop()
  reader = asyncio.StreamReader(limit=limit)
  protocol = asyncio.StreamReaderProtocol(reader)
  await loop.connect_read_pipe(lambda: protocol, sys.stdin.buffer)
  return reader


async def iter_lines(reader: asyncio.StreamReader) -> AsyncIterator[str]:
  """
  Yield each non-blank line, stripped, until end of stream.

  Lines longer than the reader's limit are skipped rather than ending the stream.
  """
  while True:
    try:
      raw = await reader.readline()
    except ValueError:
      # Oversized line; the reader has already discarded it
      continue
    if not raw:
      return
    line = raw.decode("utf-8", errors="replace").strip()
    if line:
      yield line


class LineWriter:
  """Writes one record per line and flushes, so downstream stages see it at once."""

  def __init__(self, out: TextIO | None = None) -> None:
    self.out = out or sys.stdout
    self.lines_written = 0

  def write(self, record: str) -> None:
    self.out.write(record.rstrip("\n") + "\n")
    self.out.flush()
    self.lines_written += 1

  async def awrite(self, record: str) -> None:
    self.write(record)
