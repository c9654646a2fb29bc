"""
Audio byte sources feeding the Chunker.

Audio Processing Chain:
  capture (stdin pipe or ffmpeg/parec subprocess) → AudioSource → Chunker → Bridge

Audio format:
  - Input: raw 16-bit signed PCM, little-endian, mono, at the configured sample rate
  - Output: bytes exactly as received; framing is the Chunker's job
"""

import asyncio
import sys
from typing import Protocol

from overhear.logs import get_logger

READ_SIZE = 4096


class AudioInputError(RuntimeError):
  """The audio source failed before the stream ended."""


class AudioSource(Protocol):
  """
  Protocol for audio input sources.

  Implementations provide raw PCM16 bytes to the pipeline.
  """

  async def read(self) -> bytes:
    """
    Read the next available bytes.

    :returns: Audio bytes, or empty bytes at end of stream.
    """
    ...

  def close(self) -> None:
    """Stop producing audio. Subsequent reads return end of stream."""
    ...


class StreamAudioSource(AudioSource):
  """Reads audio from an ``asyncio.StreamReader`` such as a stdin pipe."""

  def __init__(self, reader: asyncio.StreamReader, read_size: int = READ_SIZE) -> None:
    self.reader = reader
    self.read_size = read_size
    self._closed = asyncio.Event()

  async def read(self) -> bytes:
    if self._closed.is_set():
      return b""

    read_task = asyncio.ensure_future(self.reader.read(self.read_size))
    closed_task = asyncio.ensure_future(self._closed.wait())
    done, _ = await asyncio.wait([read_task, closed_task], return_when=asyncio.FIRST_COMPLETED)

    if read_task in done:
      closed_task.cancel()
      return read_task.result()

    read_task.cancel()
    return b""

  def close(self) -> None:
    self._closed.set()


async def open_stdin_source(read_size: int = READ_SIZE) -> StreamAudioSource:
  """Wrap the process's stdin in a non-blocking audio source."""
  loop = asyncio.get_running_loop()
  reader = asyncio.StreamReader(limit=1024 * 1024)
  protocol = asyncio.StreamReaderProtocol(reader)
  await loop.connect_read_pipe(lambda: protocol, sys.stdin.buffer)
  return StreamAudioSource(reader, read_size)


class CommandAudioSource(AudioSource):
  """
  Spawns a capture command and reads s16le PCM from its stdout.

  The command's stderr is logged line by line. Closing the source terminates the
  process gracefully, force killing it if it does not exit within the grace period.
  """

  def __init__(self, command: list[str], read_size: int = READ_SIZE, grace_s: float = 5.0):
    if not command:
      raise ValueError("Capture command must not be empty")
    self.command = command
    self.read_size = read_size
    self.grace_s = grace_s
    self.process: asyncio.subprocess.Process | None = None
    self.logger = get_logger("audio/cmd")
    self.total_bytes = 0
    self._stderr_task: asyncio.Task | None = None
    self._closed = False

  async def start(self) -> None:
    self.logger.debug("Starting capture process", command=" ".join(self.command))
    self.process = await asyncio.create_subprocess_exec(
      *self.command,
      stdout=asyncio.subprocess.PIPE,
      stderr=asyncio.subprocess.PIPE,
      limit=1024 * 1024,
    )
    self._stderr_task = asyncio.create_task(self._monitor_stderr())
    self.logger.info("Capture process started", pid=self.process.pid)

  async def read(self) -> bytes:
    if self._closed or not self.process or not self.process.stdout:
      return b""

    chunk = await self.process.stdout.read(self.read_size)
    if not chunk:
      exit_code = await self.process.wait()
      self.logger.info("Capture stream ended", exit_code=exit_code, total_bytes=self.total_bytes)
      return b""

    self.total_bytes += len(chunk)
    return chunk

  async def _monitor_stderr(self) -> None:
    if not self.process or not self.process.stderr:
      return
    try:
      while line := await self.process.stderr.readline():
        message = line.decode("utf-8", errors="replace").strip()
        if message:
          self.logger.debug("Capture output", message=message)
    except asyncio.CancelledError:
      raise
    except (asyncio.LimitOverrunError, ValueError) as e:
      self.logger.warning("Capture stderr overflow, no longer monitoring", error=str(e))

  def close(self) -> None:
    """Request termination. The process is reaped by ``aclose``."""
    self._closed = True
    if self.process and self.process.returncode is None:
      try:
        self.process.terminate()
      except ProcessLookupError:
        pass

  async def aclose(self) -> None:
    """Terminate the capture process, force killing it after the grace period."""
    self.close()
    if self._stderr_task:
      self._stderr_task.cancel()

    if not self.process:
      return

    try:
      await asyncio.wait_for(self.process.wait(), timeout=self.grace_s)
    except asyncio.TimeoutError:
      self.logger.warning("Capture process did not terminate gracefully, force killing")
      try:
        self.process.kill()
      except ProcessLookupError:
        pass
      await self.process.wait()
    self.logger.debug("Capture process finished", exit_code=self.process.returncode)
