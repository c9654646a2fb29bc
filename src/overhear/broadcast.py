"""
Session-scoped fan-out of transcript events to websocket subscribers.

Two kinds of connection arrive at the server, both tagged with ``?sessionId=``:

  - subscribers (any path other than the ingest path) receive a ``connected``
    acknowledgment, then every event published for their session;
  - ingest connections (the forwarder's sink, at ``/ingest``) publish events; every
    text frame that parses as a JSON object is relayed verbatim to the session.
"""

import asyncio
import json
from typing import Any
from urllib.parse import parse_qs, urlsplit

from pydantic import BaseModel
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed, InvalidMessage
from websockets.frames import CloseCode
from websockets.protocol import State

from overhear.config import BroadcastConfig
from overhear.logs import get_logger
from overhear.messages import ConnectedMessage, parse_json_object, serialize_message

SESSION_REQUIRED_REASON = "sessionId required"


class Subscriber:
  """
  One subscriber connection and its outbound queue.

  A dedicated writer task drains the queue, so a subscriber that stops reading only
  ever delays itself.
  """

  def __init__(self, websocket: ServerConnection, max_pending: int) -> None:
    self.websocket = websocket
    self.outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=max_pending)
    self.writer: asyncio.Task | None = None
    self.delivered = 0
    self.dropped = 0

  @property
  def is_open(self) -> bool:
    return (
      self.websocket.state is State.OPEN and self.writer is not None and not self.writer.done()
    )


class SessionRegistry:
  """
  Owns the session → subscribers table.

  A session exists exactly while it has at least one subscriber: it appears with the
  first ``connect`` and is removed by the ``disconnect`` of its last subscriber.
  Mutations run synchronously on the event loop; ``broadcast`` works on a snapshot,
  so subscribers joining or leaving mid-broadcast never disturb it.
  """

  def __init__(self, max_pending: int = 256) -> None:
    self.max_pending = max_pending
    self._sessions: dict[str, dict[ServerConnection, Subscriber]] = {}
    self.logger = get_logger("bcast/registry")

  def connect(self, session_id: str, websocket: ServerConnection) -> int:
    """
    Add a subscriber to a session, creating the session if needed.

    Must be called from the event loop; the subscriber's writer task starts here.

    :returns: The session's subscriber count after the addition.
    :raises ValueError: If ``session_id`` is empty.
    """
    if not session_id:
      raise ValueError("session_id must not be empty")
    subscribers = self._sessions.setdefault(session_id, {})
    if websocket not in subscribers:
      subscriber = Subscriber(websocket, self.max_pending)
      subscriber.writer = asyncio.create_task(self._write(session_id, subscriber))
      subscriber.writer.set_name(f"subscriber_writer_{id(websocket)}")
      subscribers[websocket] = subscriber
    self.logger.info("Subscriber joined session", session=session_id, total=len(subscribers))
    return len(subscribers)

  def disconnect(self, session_id: str, websocket: ServerConnection) -> bool:
    """
    Remove a subscriber and stop its writer. Drops the session entry when it was the last one.

    :returns: True if the subscriber was registered.
    """
    subscribers = self._sessions.get(session_id)
    if not subscribers or websocket not in subscribers:
      return False
    subscriber = subscribers.pop(websocket)
    if subscriber.writer is not None:
      subscriber.writer.cancel()
    if not subscribers:
      del self._sessions[session_id]
      self.logger.info("Session has no more subscribers", session=session_id)
    else:
      self.logger.info("Subscriber left session", session=session_id, remaining=len(subscribers))
    return True

  async def broadcast(self, session_id: str, payload: str) -> int:
    """
    Queue ``payload`` for every open subscriber of the session.

    Never waits on a subscriber's socket. A subscriber whose queue is full misses
    this event; a subscriber whose socket failed is skipped.

    :returns: Number of subscribers the payload was queued for.
    """
    reached = 0
    for subscriber in list(self._sessions.get(session_id, {}).values()):
      if not subscriber.is_open:
        continue
      try:
        subscriber.outbox.put_nowait(payload)
      except asyncio.QueueFull:
        subscriber.dropped += 1
        self.logger.warning(
          "Subscriber is not keeping up, dropping event",
          session=session_id,
          client=id(subscriber.websocket),
          pending=subscriber.outbox.qsize(),
          dropped=subscriber.dropped,
        )
        continue
      reached += 1
    return reached

  async def _write(self, session_id: str, subscriber: Subscriber) -> None:
    while True:
      payload = await subscriber.outbox.get()
      try:
        await subscriber.websocket.send(payload)
      except (ConnectionClosed, OSError) as e:
        self.logger.warning(
          "Failed to send to subscriber",
          session=session_id,
          client=id(subscriber.websocket),
          error=str(e),
        )
        return
      subscriber.delivered += 1

  def subscriber_count(self, session_id: str) -> int:
    return len(self._sessions.get(session_id, ()))

  def active_sessions(self) -> list[str]:
    return list(self._sessions)


def parse_request_target(path: str) -> tuple[str, str | None]:
  """Split a request target into its path and ``sessionId`` query value."""
  parts = urlsplit(path)
  values = parse_qs(parts.query).get("sessionId", [])
  session_id = values[0].strip() if values else ""
  return parts.path or "/", session_id or None


class BroadcastServer:
  """Websocket front end for the SessionRegistry."""

  def __init__(self, config: BroadcastConfig, registry: SessionRegistry | None = None) -> None:
    self.config = config
    self.registry = registry or SessionRegistry(config.subscriber_queue_size)
    self.server: Server | None = None
    self.logger = get_logger("bcast/server")

  @property
  def port(self) -> int:
    """The bound port, which differs from the configured one when that was 0."""
    if self.server is None or not self.server.sockets:
      return self.config.port
    return self.server.sockets[0].getsockname()[1]

  async def start(self) -> Server:
    """Bind and start accepting connections in the background."""
    self.server = await serve(self.error_handling_wrapper, self.config.host, self.config.port)
    self.logger.info(
      "Broadcast server listening",
      host=self.config.host,
      port=self.port,
      ingest_path=self.config.ingest_path,
    )
    return self.server

  async def serve_forever(self) -> None:
    if self.server is None:
      await self.start()
    assert self.server is not None
    await self.server.serve_forever()

  async def close(self) -> None:
    if self.server is None:
      return
    self.server.close()
    await self.server.wait_closed()
    self.logger.info("Broadcast server stopped")

  async def broadcast_to_session(
    self, session_id: str, data: str | dict[str, Any] | BaseModel
  ) -> int:
    """Publish ``data`` to a session from inside the process."""
    match data:
      case str():
        payload = data
      case BaseModel():
        payload = serialize_message(data)  # type: ignore[arg-type]
      case _:
        payload = json.dumps(data)
    return await self.registry.broadcast(session_id, payload)

  async def error_handling_wrapper(self, websocket: ServerConnection) -> None:
    """Catch and log connection errors without taking the server down."""
    try:
      self.logger.debug(
        "Connection begin", address=websocket.remote_address, websocket_id=websocket.id
      )
      await self.handle_connection(websocket)
    except (EOFError, InvalidMessage):
      self.logger.debug(
        "Connection from failed handshake (likely port scan/health check)",
        websocket_id=websocket.id,
      )
    except ConnectionClosed as e:
      self.logger.debug("Connection closed", error=e, websocket_id=websocket.id)
    except (KeyboardInterrupt, SystemExit):
      raise
    except Exception:
      self.logger.exception("Connection unexpected error", websocket_id=websocket.id)

  async def handle_connection(self, websocket: ServerConnection) -> None:
    target = websocket.request.path if websocket.request else "/"
    path, session_id = parse_request_target(target)

    if not session_id:
      self.logger.info("No sessionId provided, closing connection", path=path)
      await websocket.close(CloseCode.POLICY_VIOLATION, SESSION_REQUIRED_REASON)
      return

    if path == self.config.ingest_path:
      await self._handle_ingest(websocket, session_id)
    else:
      await self._handle_subscriber(websocket, session_id)

  async def _handle_subscriber(self, websocket: ServerConnection, session_id: str) -> None:
    # Acknowledge before registering so the ack always precedes session data
    await websocket.send(serialize_message(ConnectedMessage(session_id=session_id)))
    self.registry.connect(session_id, websocket)
    try:
      async for message in websocket:
        self.logger.debug(
          "Ignoring message from subscriber",
          session=session_id,
          client=id(websocket),
          message=message[:100] if isinstance(message, str) else str(type(message)),
        )
    finally:
      self.registry.disconnect(session_id, websocket)

  async def _handle_ingest(self, websocket: ServerConnection, session_id: str) -> None:
    self.logger.info("Ingest connected", session=session_id)
    relayed = 0
    try:
      async for message in websocket:
        text = message.decode("utf-8", errors="replace") if isinstance(message, bytes) else message
        if parse_json_object(text) is None:
          self.logger.debug("Discarding non-object ingest frame", session=session_id)
          continue
        await self.registry.broadcast(session_id, text)
        relayed += 1
    finally:
      self.logger.info("Ingest disconnected", session=session_id, relayed=relayed)
