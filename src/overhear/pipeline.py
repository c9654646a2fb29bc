"""
In-process composition of the transcription pipeline for one session.

Audio Processing Chain:
  AudioSource → Chunker → TranscriptionBridge → TranscriptForwarder → sink socket

Shutdown is the same whether input ends or a stop is requested: the source is closed,
the Chunker flushes its final frame, the Bridge makes the final commit decision and
drains, then the Forwarder drains its queue into the sink.
"""

import asyncio
import signal

from overhear.audio import AudioInputError, AudioSource, CommandAudioSource, open_stdin_source
from overhear.bridge import TranscriptionBridge, UpstreamClosedError
from overhear.chunker import Chunker, iter_frames
from overhear.config import OverhearConfig
from overhear.forwarder import TranscriptForwarder
from overhear.logs import get_logger


class TranscriptionPipeline:
  def __init__(
    self,
    config: OverhearConfig,
    session_id: str | None = None,
    source: AudioSource | None = None,
    bridge: TranscriptionBridge | None = None,
    forwarder: TranscriptForwarder | None = None,
  ) -> None:
    self.config = config
    self.session_id = session_id
    self.source = source
    self.forwarder = forwarder or TranscriptForwarder(config.forwarder, session_id)
    self.bridge = bridge or TranscriptionBridge(
      config.bridge, config.audio.chunk_ms, on_event=self._on_event
    )
    self.chunker = Chunker.for_audio(config.audio.sample_rate, config.audio.chunk_ms)
    self.stopping = False
    self.logger = get_logger("pipeline")

  async def _on_event(self, raw: str) -> None:
    await self.forwarder.handle_raw(raw)

  async def _open_source(self) -> AudioSource:
    command = self.config.audio.source_command
    if command:
      source = CommandAudioSource(command)
      await source.start()
      return source
    return await open_stdin_source()

  def request_stop(self) -> None:
    """Stop reading audio. The pipeline then shuts down exactly as at end of input."""
    if self.stopping:
      return
    self.stopping = True
    self.logger.info("Stop requested")
    if self.source is not None:
      self.source.close()

  def install_signal_handlers(self) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
      loop.add_signal_handler(sig, self.request_stop)

  async def _pump(self) -> None:
    assert self.source is not None
    async for frame in iter_frames(self.source, self.chunker):
      await self.bridge.send_frame(frame)
    self.logger.info(
      "Audio input ended", frames=self.chunker.frames_emitted, stopped=self.stopping
    )

  async def run(self) -> None:
    """
    Run until input ends or a stop is requested.

    :raises ConfigurationError: If the Bridge cannot obtain credentials.
    :raises UpstreamClosedError: If the transcription socket fails to open or drops.
    :raises AudioInputError: If reading audio failed. Raised after the drain.
    """
    self.logger.info("Starting pipeline", session=self.session_id)
    await self.forwarder.start()

    try:
      await self.bridge.start()
    except BaseException:
      await self.forwarder.stop(drain_timeout=0)
      raise

    if self.source is None:
      self.source = await self._open_source()

    pump_task = asyncio.create_task(self._pump())
    closed_task = asyncio.create_task(self.bridge.wait_closed())
    try:
      await asyncio.wait([pump_task, closed_task], return_when=asyncio.FIRST_COMPLETED)
    finally:
      if not pump_task.done():
        self.source.close()
        pump_task.cancel()
      await asyncio.gather(pump_task, return_exceptions=True)
      closed_task.cancel()
      await asyncio.gather(closed_task, return_exceptions=True)
      if isinstance(self.source, CommandAudioSource):
        await self.source.aclose()

    input_error = None
    if pump_task.done() and not pump_task.cancelled():
      input_error = pump_task.exception()
    if input_error is not None:
      self.logger.error("Audio input failed", error=str(input_error))

    upstream_lost = self.bridge.closed_unexpectedly
    if not upstream_lost:
      await self.bridge.finish()
      upstream_lost = self.bridge.closed_unexpectedly

    await self.forwarder.stop()

    if upstream_lost:
      raise UpstreamClosedError("Transcription socket closed before the stream ended")
    if input_error is not None:
      raise AudioInputError(f"Audio input failed: {input_error}") from input_error
    self.logger.info("Pipeline finished", session=self.session_id)
