"""
Bridge between framed audio records and the upstream transcription socket.

Connection lifecycle:
  connecting → ready → draining → closed

  - connecting: socket open, ``transcription_session.update`` sent, waiting for the
    provider to acknowledge with ``transcription_session.updated``. Audio is dropped
    (or buffered, per ``pre_ready_policy``) in this state.
  - ready: audio records are forwarded; in manual-commit mode a commit is sent every
    ``ceil(min_commit_ms / chunk_ms)`` records.
  - draining: input has ended and the final commit decision has been made; waiting,
    within the drain budget, for outstanding turns to finish transcribing.
  - closed: socket closed, by request or by the provider.

The Bridge does not reconnect. An upstream close that nobody asked for is surfaced to
the caller so that an external supervisor can restart the pipeline.
"""

import asyncio
import math
from collections import deque
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from overhear.chunker import Frame
from overhear.config import BridgeConfig, ConfigurationError, resolve_api_key
from overhear.logs import get_logger
from overhear.messages import (
  TRANSCRIPT_EVENT_TYPES,
  AudioCommitMessage,
  InputAudioTranscription,
  ServerVad,
  SessionUpdateMessage,
  TranscriptionSession,
  UpstreamEventType,
  event_item_id,
  parse_json_object,
  serialize_message,
)


type EventSink = Callable[[str], Awaitable[None]]


class CredentialError(ConfigurationError):
  """The control endpoint did not issue a usable client secret."""


class UpstreamClosedError(RuntimeError):
  """The upstream transcription socket failed to open or closed unexpectedly."""


class BridgeState(StrEnum):
  CONNECTING = "connecting"
  READY = "ready"
  DRAINING = "draining"
  CLOSED = "closed"


class CommitScheduler:
  """
  Counts forwarded frames and decides when an audio turn should be committed.

  Mid-stream, a commit is due every ``chunks_per_commit`` frames. At end of stream,
  the trailing partial turn earns one final commit only if it holds at least
  ``min_tail_chunks`` frames; shorter tails are discarded so the provider is never
  asked to transcribe a near-empty buffer.
  """

  def __init__(self, chunk_ms: int, min_commit_ms: int, tail_commit_ms: int) -> None:
    self.chunk_ms = max(1, chunk_ms)
    self.min_commit_ms = max(self.chunk_ms, min_commit_ms)
    self.tail_commit_ms = max(0, tail_commit_ms)
    self.chunks_per_commit = max(1, math.ceil(self.min_commit_ms / self.chunk_ms))
    self.min_tail_chunks = max(1, math.ceil(self.tail_commit_ms / self.chunk_ms))
    self.chunks_since_commit = 0
    self.commits = 0

  def record_append(self) -> bool:
    """Count one forwarded frame. Returns True when a commit is due now."""
    self.chunks_since_commit += 1
    if self.chunks_since_commit >= self.chunks_per_commit:
      self.chunks_since_commit = 0
      self.commits += 1
      return True
    return False

  def finish(self) -> bool:
    """Decide the fate of the trailing turn. Returns True when it should be committed."""
    tail = self.chunks_since_commit
    self.chunks_since_commit = 0
    if tail >= self.min_tail_chunks:
      self.commits += 1
      return True
    return False


def build_session_update(config: BridgeConfig) -> SessionUpdateMessage:
  """Session configuration sent as the first upstream message."""
  turn_detection = None
  if not config.manual_commit:
    turn_detection = ServerVad(**config.turn_detection.model_dump())

  return SessionUpdateMessage(
    session=TranscriptionSession(
      input_audio_transcription=InputAudioTranscription(
        model=config.model, language=config.language
      ),
      turn_detection=turn_detection,
    )
  )


async def fetch_client_secret(
  api_key: str,
  session_url: str,
  timeout: float = 10.0,
  transport: httpx.AsyncBaseTransport | None = None,
) -> str:
  """
  Exchange the long-lived API key for a short-lived client secret.

  :raises CredentialError: If the endpoint is unreachable, refuses the request, or
      returns a body without ``client_secret.value``.
  """
  try:
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
      response = await client.post(
        session_url,
        headers={"Authorization": f"Bearer {api_key}"},
        json={},
      )
      response.raise_for_status()
      body = response.json()
  except httpx.HTTPStatusError as e:
    raise CredentialError(
      f"Control endpoint rejected the request ({e.response.status_code}): {e.response.text}"
    ) from e
  except httpx.HTTPError as e:
    raise CredentialError(f"Control endpoint unreachable: {e}") from e
  except ValueError as e:
    raise CredentialError(f"Control endpoint returned invalid JSON: {e}") from e

  secret = body.get("client_secret") if isinstance(body, dict) else None
  value = secret.get("value") if isinstance(secret, dict) else None
  if not isinstance(value, str) or not value:
    raise CredentialError("Control endpoint response has no client_secret.value")
  return value


class TranscriptionBridge:
  """
  Owns the upstream transcription socket for one pipeline.

  Audio goes in through ``send_record``/``send_frame``; transcript events come out,
  raw and unchanged, through the ``on_event`` coroutine in the order received.
  """

  def __init__(
    self,
    config: BridgeConfig,
    chunk_ms: int,
    on_event: EventSink,
    connect_func: Callable[..., Awaitable[ClientConnection]] = connect,
  ) -> None:
    self.config = config
    self.on_event = on_event
    self._connect = connect_func
    self.logger = get_logger("bridge")

    self.scheduler: CommitScheduler | None = None
    if config.manual_commit:
      self.scheduler = CommitScheduler(chunk_ms, config.min_commit_ms, config.tail_commit_ms)

    self.state = BridgeState.CONNECTING
    self._connection: ClientConnection | None = None
    self._receive_task: asyncio.Task | None = None
    self._send_lock = asyncio.Lock()
    self._pending: deque[str] = deque()
    self._ready = asyncio.Event()
    self._settled = asyncio.Event()
    self._close_requested = False

    # Turn bookkeeping for the drain phase
    self._unacked_commits = 0
    self._open_items: set[str] = set()

    # Statistics
    self.frames_sent = 0
    self.frames_dropped = 0
    self.events_published = 0
    self.closed_unexpectedly = False

  @property
  def is_ready(self) -> bool:
    return self.state is BridgeState.READY

  async def start(self) -> None:
    """
    Obtain a credential, open the upstream socket and send the session configuration.

    :raises ConfigurationError: If no API key is available.
    :raises CredentialError: If the control endpoint does not issue a client secret.
    :raises UpstreamClosedError: If the upstream socket cannot be opened.
    """
    api_key = resolve_api_key(self.config)
    if self.config.use_ephemeral_token:
      self.logger.info("Requesting client secret", url=self.config.session_url)
      token = await fetch_client_secret(
        api_key, self.config.session_url, self.config.credential_timeout_s
      )
    else:
      token = api_key

    headers = {"Authorization": f"Bearer {token}", "OpenAI-Beta": "realtime=v1"}
    self.logger.info("Connecting to transcription service", url=self.config.ws_url)
    try:
      connection = await self._connect(
        self.config.ws_url,
        additional_headers=headers,
        open_timeout=self.config.open_timeout_s,
      )
    except (OSError, InvalidHandshake, InvalidURI, TimeoutError) as e:
      raise UpstreamClosedError(f"Could not open transcription socket: {e}") from e

    await self.attach(connection)

  async def attach(self, connection: ClientConnection) -> None:
    """Adopt an open upstream connection and configure the transcription session."""
    self._connection = connection
    self.state = BridgeState.CONNECTING
    self.logger.debug("Upstream connected, configuring session", manual=bool(self.scheduler))
    await connection.send(serialize_message(build_session_update(self.config)))
    self._receive_task = asyncio.create_task(self._receive_loop())
    self._receive_task.set_name("bridge_receive")

  async def wait_ready(self, timeout: float | None = None) -> bool:
    """Wait for the provider to acknowledge the session configuration."""
    try:
      await asyncio.wait_for(self._ready.wait(), timeout)
    except asyncio.TimeoutError:
      return False
    return self.is_ready

  async def wait_closed(self) -> None:
    """Wait until the upstream socket is closed, for whatever reason."""
    if self._receive_task:
      await asyncio.shield(self._receive_task)

  async def send_frame(self, frame: Frame) -> bool:
    return await self.send_record(frame.to_record())

  async def send_record(self, record: str) -> bool:
    """
    Forward one NDJSON audio record.

    :returns: True if the record was sent upstream immediately.
    """
    line = record.strip()
    message = parse_json_object(line)
    if (
      message is None
      or message.get("type") != UpstreamEventType.AUDIO_APPEND
      or not isinstance(message.get("audio"), str)
    ):
      self.logger.debug("Discarding malformed audio record", record=line[:80])
      return False

    match self.state:
      case BridgeState.CONNECTING:
        if self.config.pre_ready_policy == "buffer":
          self._pending.append(line)
        else:
          if not self.frames_dropped:
            self.logger.info("Dropping audio until the session is configured")
          self.frames_dropped += 1
        return False

      case BridgeState.READY:
        async with self._send_lock:
          return await self._forward(line)

      case _:
        self.frames_dropped += 1
        return False

  async def _forward(self, line: str) -> bool:
    """Send one record and issue a commit when one is due. Caller holds the send lock."""
    assert self._connection is not None
    try:
      await self._connection.send(line)
      self.frames_sent += 1
      if self.scheduler and self.scheduler.record_append():
        await self._send_commit()
      return True
    except ConnectionClosed as e:
      if not self.frames_dropped:
        self.logger.warning("Upstream closed while sending audio", error=str(e))
      self.frames_dropped += 1
      return False

  async def _send_commit(self, final: bool = False) -> None:
    assert self._connection is not None
    await self._connection.send(serialize_message(AudioCommitMessage()))
    self._unacked_commits += 1
    self.logger.debug("Committed audio turn", final=final, frames_sent=self.frames_sent)

  async def _mark_ready(self) -> None:
    async with self._send_lock:
      if self.state is not BridgeState.CONNECTING:
        return
      self.state = BridgeState.READY
      self._ready.set()
      self.logger.info(
        "Transcription session configured",
        dropped_before_ready=self.frames_dropped,
        buffered_before_ready=len(self._pending),
      )
      while self._pending:
        if not await self._forward(self._pending.popleft()):
          break

  async def _receive_loop(self) -> None:
    assert self._connection is not None
    try:
      async for raw in self._connection:
        await self._handle_message(raw)
    except ConnectionClosed as e:
      self.logger.warning("Upstream connection lost", close=str(e.rcvd) if e.rcvd else None)
    except Exception:
      self.logger.exception("Upstream receive loop failed")
    finally:
      if not self._close_requested and self.state is not BridgeState.DRAINING:
        self.closed_unexpectedly = True
        self.logger.error("Transcription socket closed unexpectedly", state=str(self.state))
      self.state = BridgeState.CLOSED
      self._ready.set()
      self._settled.set()

  async def _handle_message(self, raw: str | bytes) -> None:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    event = parse_json_object(text)
    if event is None:
      self.logger.debug("Discarding unparseable upstream message")
      return

    event_type = event.get("type")
    if event_type == UpstreamEventType.SESSION_UPDATED:
      await self._mark_ready()
      return

    self._track_turn(event_type, event)

    if event_type == "error":
      self.logger.warning("Upstream reported an error", error=event.get("error"))

    is_transcript = isinstance(event_type, str) and event_type in TRANSCRIPT_EVENT_TYPES
    if self.config.forward_all or is_transcript:
      self.events_published += 1
      await self.on_event(text)

  def _track_turn(self, event_type: Any, event: dict[str, Any]) -> None:
    match event_type:
      case UpstreamEventType.AUDIO_COMMITTED:
        if self._unacked_commits:
          self._unacked_commits -= 1
        if item_id := event_item_id(event):
          self._open_items.add(item_id)
      case UpstreamEventType.TRANSCRIPT_COMPLETED | UpstreamEventType.TRANSCRIPT_FAILED:
        if item_id := event_item_id(event):
          self._open_items.discard(item_id)
      case _:
        return
    self._check_settled()

  def _check_settled(self) -> None:
    if self.state is BridgeState.DRAINING and not self._unacked_commits and not self._open_items:
      self._settled.set()

  async def finish(self) -> None:
    """
    End of input: make the final commit decision, drain outstanding turns, close.

    Waits at most ``drain_timeout_s`` for outstanding transcripts.
    """
    if self.state is BridgeState.CLOSED:
      return

    async with self._send_lock:
      if self.state is BridgeState.READY and self.scheduler:
        tail = self.scheduler.chunks_since_commit
        if self.scheduler.finish():
          try:
            await self._send_commit(final=True)
          except ConnectionClosed as e:
            self.logger.warning("Could not send final commit", error=str(e))
        elif tail:
          self.logger.debug(
            "Discarding short trailing turn",
            frames=tail,
            min_tail_frames=self.scheduler.min_tail_chunks,
          )
      if self._pending:
        self.logger.warning(
          "Discarding audio buffered before readiness", records=len(self._pending)
        )
        self._pending.clear()
      if self.state is not BridgeState.CLOSED:
        self.state = BridgeState.DRAINING

    self._check_settled()
    if self.config.drain_timeout_s > 0 and not self._settled.is_set():
      try:
        await asyncio.wait_for(self._settled.wait(), self.config.drain_timeout_s)
      except asyncio.TimeoutError:
        self.logger.warning(
          "Drain budget exhausted with turns outstanding",
          unacked_commits=self._unacked_commits,
          open_items=len(self._open_items),
        )

    await self.close()

  async def close(self) -> None:
    """Close the upstream socket and wait for the receive loop to finish."""
    self._close_requested = True
    if self._connection and self.state is not BridgeState.CLOSED:
      self.state = BridgeState.DRAINING
      await self._connection.close()
    if self._receive_task:
      await asyncio.gather(self._receive_task, return_exceptions=True)
    self.state = BridgeState.CLOSED
    self.logger.info(
      "Bridge closed",
      frames_sent=self.frames_sent,
      frames_dropped=self.frames_dropped,
      commits=self.scheduler.commits if self.scheduler else None,
      events_published=self.events_published,
    )
