"""
Transcript normalization and delivery to the sink socket.

Provider events are reshaped into the stable downstream schema (``delta`` and
``completed``) and handed to a SinkLink, which owns the outbound connection. While
the sink is unreachable, events wait in an unbounded FIFO queue; the link reconnects
indefinitely and flushes the queue, oldest first, every time it comes back.
"""

import asyncio
import sys
from collections import deque
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, TextIO
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.protocol import State

from overhear.config import ConfigurationError, ForwarderConfig
from overhear.logs import get_logger
from overhear.messages import (
  CompletedEvent,
  DeltaEvent,
  TranscriptEvent,
  UpstreamEventType,
  event_item_id,
  parse_json_object,
  serialize_message,
)
from overhear.retry import BackoffPolicy
from overhear.stitching import TextStitcher


def url_session_id(url: str) -> str | None:
  """The non-empty ``sessionId`` query value of ``url``, if any."""
  for key, value in parse_qsl(urlsplit(url).query):
    if key == "sessionId" and value.strip():
      return value
  return None


def with_session_id(url: str, session_id: str | None) -> str:
  """Append ``sessionId`` to the query string unless the URL already carries one."""
  if not session_id:
    return url
  parts = urlsplit(url)
  query = parse_qsl(parts.query, keep_blank_values=True)
  if any(key == "sessionId" for key, _ in query):
    return url
  query.append(("sessionId", session_id))
  return urlunsplit(parts._replace(query=urlencode(query)))


def _text(value: Any) -> str:
  return value if isinstance(value, str) else ""


def normalize(event: dict[str, Any]) -> TranscriptEvent | None:
  """
  Reshape one provider event into a downstream transcript event.

  :returns: A DeltaEvent or CompletedEvent, or None for any other event type.
  """
  match event.get("type"):
    case UpstreamEventType.TRANSCRIPT_DELTA:
      return DeltaEvent(text=_text(event.get("delta")), item_id=event_item_id(event))
    case UpstreamEventType.TRANSCRIPT_COMPLETED:
      text = event.get("transcript")
      if not isinstance(text, str):
        text = event.get("text")
      return CompletedEvent(text=_text(text), item_id=event_item_id(event))
    case _:
      return None


class LinkState(StrEnum):
  DISCONNECTED = "disconnected"
  CONNECTING = "connecting"
  READY = "ready"
  STOPPED = "stopped"


class SinkLink:
  """
  Outbound socket with an ordered queue and indefinite reconnect.

  A payload is sent immediately only when the link is ready and nothing is queued
  ahead of it, so delivery order always matches submission order.
  """

  def __init__(
    self,
    url: str,
    backoff: BackoffPolicy | None = None,
    connect_func: Callable[..., Awaitable[ClientConnection]] = connect,
    open_timeout: float = 10.0,
  ) -> None:
    self.url = url
    self.backoff = backoff or BackoffPolicy()
    self.open_timeout = open_timeout
    self._connect = connect_func
    self.logger = get_logger("fwd/link")

    self.state = LinkState.DISCONNECTED
    self.queue: deque[str] = deque()
    self._connection: ClientConnection | None = None
    self._send_lock = asyncio.Lock()
    self._empty = asyncio.Event()
    self._empty.set()
    self._run_task: asyncio.Task | None = None

    self.reconnect_count = 0
    self.sent_count = 0

  @property
  def is_ready(self) -> bool:
    return (
      self.state is LinkState.READY
      and self._connection is not None
      and self._connection.state is State.OPEN
    )

  def start(self) -> asyncio.Task:
    if self._run_task is None:
      self._run_task = asyncio.create_task(self.run())
      self._run_task.set_name("sink_link")
    return self._run_task

  async def send(self, payload: str) -> bool:
    """
    Deliver ``payload`` now if possible, else queue it.

    :returns: True if the payload went out immediately.
    """
    async with self._send_lock:
      if self.is_ready and not self.queue:
        assert self._connection is not None
        try:
          await self._connection.send(payload)
          self.sent_count += 1
          return True
        except (ConnectionClosed, OSError) as e:
          self.logger.warning("Sink send failed, queueing", error=str(e))

      self.queue.append(payload)
      self._empty.clear()
      return False

  async def attach(self, connection: ClientConnection) -> None:
    """Adopt a freshly opened connection and flush the queue into it."""
    async with self._send_lock:
      self._connection = connection
      self.state = LinkState.READY
      self.backoff.reset()
      if self.queue:
        self.logger.info("Flushing queued events", queued=len(self.queue))
      while self.queue:
        payload = self.queue.popleft()
        try:
          await connection.send(payload)
          self.sent_count += 1
        except (ConnectionClosed, OSError) as e:
          self.queue.appendleft(payload)
          self.logger.warning("Sink send failed during flush", error=str(e), queued=len(self.queue))
          break
      if not self.queue:
        self._empty.set()

  async def run(self) -> None:
    """Connect, stay connected until the sink goes away, wait, repeat. Runs until closed."""
    self.logger.info("Starting sink link", url=self.url)

    while self.state is not LinkState.STOPPED:
      try:
        self.state = LinkState.CONNECTING
        if self.reconnect_count > 0:
          self.logger.info("Reconnecting to sink", attempt=self.reconnect_count + 1)
        connection = await self._connect(self.url, open_timeout=self.open_timeout)
        self.logger.info("Sink connected", url=self.url)
        await self.attach(connection)
        await connection.wait_closed()
        if self.state is not LinkState.STOPPED:
          self.logger.warning(
            "Sink connection closed", code=connection.close_code, reason=connection.close_reason
          )
      except (OSError, InvalidHandshake, InvalidURI, TimeoutError) as e:
        self.logger.warning("Sink connection attempt failed", error=str(e))
      except asyncio.CancelledError:
        break
      except Exception:
        self.logger.exception("Sink link failed unexpectedly")
      finally:
        self._connection = None
        if self.state is not LinkState.STOPPED:
          self.state = LinkState.DISCONNECTED

      if self.state is LinkState.STOPPED:
        break

      self.reconnect_count += 1
      delay = self.backoff.next_delay()
      self.logger.info("Retrying sink connection", delay_s=delay, queued=len(self.queue))
      try:
        await asyncio.sleep(delay)
      except asyncio.CancelledError:
        self.logger.info("Reconnection wait interrupted")
        break

    self.logger.info("Sink link stopped", sent=self.sent_count, undelivered=len(self.queue))

  async def drain(self, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for the queue to empty. Returns True if it did."""
    if self._empty.is_set():
      return True
    try:
      await asyncio.wait_for(self._empty.wait(), timeout)
    except asyncio.TimeoutError:
      return False
    return True

  async def close(self) -> None:
    """Stop reconnecting and close the sink connection. Safe to call multiple times."""
    if self.state is LinkState.STOPPED:
      return
    self.state = LinkState.STOPPED
    if self._connection is not None:
      await self._connection.close()
    if self._run_task is not None:
      self._run_task.cancel()
      await asyncio.gather(self._run_task, return_exceptions=True)


class TranscriptForwarder:
  """
  Normalizes provider events and hands the result to the sink link.

  ``output_mode`` selects which event classes are delivered. With ``smart_spacing``
  on, delta text is stitched so adjacent fragments do not glue words together; every
  completed event starts a new line for the stitcher.

  :raises ConfigurationError: If the sink URL ends up without a ``sessionId``, which the
    broadcast server would reject.
  """

  def __init__(
    self,
    config: ForwarderConfig,
    session_id: str | None = None,
    link: SinkLink | None = None,
    out: TextIO | None = None,
  ) -> None:
    self.config = config
    self.sink_url = with_session_id(config.sink_url, session_id)
    if url_session_id(self.sink_url) is None:
      raise ConfigurationError(
        f"Sink URL {self.sink_url} has no sessionId; pass --session-id or add it to the URL"
      )
    self.link = link or SinkLink(self.sink_url, BackoffPolicy.from_config(config.retry))
    self.stitcher = TextStitcher()
    self.out = out or sys.stdout
    self.logger = get_logger("fwd")

    self.forwarded = 0
    self.discarded = 0

  async def start(self) -> None:
    self.link.start()

  async def handle_raw(self, raw: str | bytes) -> TranscriptEvent | None:
    """Process one raw provider message. Malformed input is discarded."""
    event = parse_json_object(raw)
    if event is None:
      self.discarded += 1
      self.logger.debug("Discarding malformed transcript line")
      return None
    try:
      return await self.handle_event(event)
    except ValidationError as e:
      self.discarded += 1
      self.logger.debug("Discarding invalid transcript event", error=str(e))
      return None

  async def handle_event(self, event: dict[str, Any]) -> TranscriptEvent | None:
    """
    Normalize, filter, stitch and forward one provider event.

    :returns: The event as delivered, or None if it was ignored or filtered out.
    """
    normalized = normalize(event)
    if normalized is None:
      return None

    mode = self.config.output_mode
    match normalized:
      case CompletedEvent():
        self.stitcher.reset()
        if mode == "delta":
          return None
        if self.config.mirror_stdout:
          self._mirror("\n")
      case DeltaEvent():
        if mode == "completed":
          return None
        if self.config.smart_spacing:
          normalized.text = self.stitcher.stitch(normalized.text)
        if self.config.mirror_stdout:
          self._mirror(normalized.text)

    self.logger.debug("Forwarding", kind=normalized.type, text=normalized.text)
    await self.link.send(serialize_message(normalized))
    self.forwarded += 1
    return normalized

  def _mirror(self, text: str) -> None:
    self.out.write(text)
    self.out.flush()

  async def stop(self, drain_timeout: float | None = None) -> None:
    """Wait, within the drain budget, for queued events to go out, then close the link."""
    timeout = self.config.drain_timeout_s if drain_timeout is None else drain_timeout
    if timeout > 0 and not await self.link.drain(timeout):
      self.logger.warning("Sink drain budget exhausted", undelivered=len(self.link.queue))
    await self.link.close()
    self.logger.info("Forwarder stopped", forwarded=self.forwarded, discarded=self.discarded)
