"""Tests for the session registry and broadcast server."""

import asyncio
import json

import pytest
from fakes import FakeConnection, wait_until
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from overhear.broadcast import BroadcastServer, SessionRegistry, parse_request_target
from overhear.config import BroadcastConfig
from overhear.messages import DeltaEvent


class StalledConnection(FakeConnection):
  """Subscriber that stopped reading: its first send never completes."""

  def __init__(self, **kwargs):
    super().__init__(**kwargs)
    self.attempted: list[str] = []

  async def send(self, message: str) -> None:
    self.attempted.append(message)
    await asyncio.Event().wait()


class TestSessionRegistry:
  def test_session_lifecycle(self):
    """A session exists exactly while it has subscribers."""

    async def scenario():
      registry = SessionRegistry()
      a, b = FakeConnection(), FakeConnection()

      assert registry.active_sessions() == []
      assert registry.connect("s1", a) == 1
      assert registry.connect("s1", b) == 2
      assert registry.active_sessions() == ["s1"]

      assert registry.disconnect("s1", a) is True
      assert registry.subscriber_count("s1") == 1
      assert registry.active_sessions() == ["s1"]

      assert registry.disconnect("s1", b) is True
      assert registry.subscriber_count("s1") == 0
      assert registry.active_sessions() == []

      assert registry.disconnect("s1", b) is False

    asyncio.run(scenario())

  def test_empty_session_id_rejected(self):
    async def scenario():
      SessionRegistry().connect("", FakeConnection())

    with pytest.raises(ValueError):
      asyncio.run(scenario())

  def test_broadcast_reaches_only_the_session(self):
    async def scenario():
      registry = SessionRegistry()
      a, b, other = FakeConnection(), FakeConnection(), FakeConnection()
      registry.connect("s1", a)
      registry.connect("s1", b)
      registry.connect("s2", other)

      reached = await registry.broadcast("s1", '{"type":"delta"}')
      await wait_until(lambda: a.sent and b.sent)
      return reached, a, b, other

    reached, a, b, other = asyncio.run(scenario())

    assert reached == 2
    assert a.sent == b.sent == ['{"type":"delta"}']
    assert other.sent == []

  def test_one_failure_does_not_affect_the_rest(self):
    async def scenario():
      registry = SessionRegistry()
      healthy, broken, closed = FakeConnection(), FakeConnection(fail_after=0), FakeConnection()
      await closed.close()
      for connection in (healthy, broken, closed):
        registry.connect("s1", connection)

      first = await registry.broadcast("s1", "{}")
      await wait_until(lambda: healthy.sent and broken.state is State.CLOSED)
      second = await registry.broadcast("s1", "{}")
      await wait_until(lambda: len(healthy.sent) == 2)
      return first, second, healthy

    first, second, healthy = asyncio.run(scenario())

    assert first == 2
    assert second == 1
    assert healthy.sent == ["{}", "{}"]

  def test_stalled_subscriber_does_not_hold_back_the_others(self):
    async def scenario():
      registry = SessionRegistry(max_pending=2)
      stalled, fast = StalledConnection(), FakeConnection()
      registry.connect("s1", stalled)
      registry.connect("s1", fast)

      reached = []
      for n in range(4):
        reached.append(await registry.broadcast("s1", f"m{n}"))
        await asyncio.sleep(0.01)
      await wait_until(lambda: len(fast.sent) == 4)
      return reached, fast, stalled

    reached, fast, stalled = asyncio.run(scenario())

    assert fast.sent == ["m0", "m1", "m2", "m3"]
    # m0 is stuck in the stalled socket, m1 and m2 fill its queue, m3 is dropped for it
    assert reached == [2, 2, 2, 1]
    assert stalled.attempted == ["m0"]

  def test_disconnect_stops_the_writer(self):
    async def scenario():
      registry = SessionRegistry()
      connection = FakeConnection()
      registry.connect("s1", connection)
      registry.disconnect("s1", connection)
      reached = await registry.broadcast("s1", "{}")
      await asyncio.sleep(0.01)
      return reached, connection

    reached, connection = asyncio.run(scenario())

    assert reached == 0
    assert connection.sent == []

  def test_broadcast_to_unknown_session(self):
    assert asyncio.run(SessionRegistry().broadcast("nobody", "{}")) == 0


class TestRequestTarget:
  def test_parse(self):
    assert parse_request_target("/?sessionId=abc") == ("/", "abc")
    assert parse_request_target("/ingest?sessionId=abc&x=1") == ("/ingest", "abc")
    assert parse_request_target("/") == ("/", None)
    assert parse_request_target("/?sessionId=") == ("/", None)
    assert parse_request_target("/?sessionId=%20") == ("/", None)


class TestConnectionHandling:
  def test_sessionless_subscriber_is_rejected(self):
    async def scenario():
      server = BroadcastServer(BroadcastConfig())
      connection = FakeConnection(path="/")
      await server.handle_connection(connection)
      return server, connection

    server, connection = asyncio.run(scenario())

    assert connection.close_code == 1008
    assert connection.close_reason == "sessionId required"
    assert connection.sent == []
    assert server.registry.active_sessions() == []

  def test_subscriber_is_acknowledged_then_registered(self):
    async def scenario():
      server = BroadcastServer(BroadcastConfig())
      connection = FakeConnection(path="/?sessionId=s1")
      task = asyncio.create_task(server.handle_connection(connection))
      await wait_until(lambda: server.registry.subscriber_count("s1") == 1)

      ack = connection.sent_json[0]
      connection.feed("hello from the subscriber")
      await asyncio.sleep(0.01)
      sent_after_inbound = len(connection.sent)

      await connection.close()
      await asyncio.wait_for(task, 1.0)
      return server, ack, sent_after_inbound

    server, ack, sent_after_inbound = asyncio.run(scenario())

    assert ack["type"] == "connected"
    assert ack["sessionId"] == "s1"
    assert ack["message"] == "Connected to transcription stream"
    assert isinstance(ack["timestamp"], int)
    assert sent_after_inbound == 1
    assert server.registry.active_sessions() == []

  def test_ingest_relays_json_objects_verbatim(self):
    async def scenario():
      server = BroadcastServer(BroadcastConfig())
      subscriber = FakeConnection()
      server.registry.connect("s1", subscriber)

      ingest = FakeConnection(path="/ingest?sessionId=s1")
      task = asyncio.create_task(server.handle_connection(ingest))
      ingest.feed('{"type": "delta", "text": "hi"}')
      ingest.feed("not json")
      ingest.feed("[1, 2]")
      ingest.feed('{"type": "completed", "text": "hi"}')
      await ingest.close()
      await asyncio.wait_for(task, 1.0)
      await wait_until(lambda: len(subscriber.sent) == 2)
      return subscriber

    assert asyncio.run(scenario()).sent == [
      '{"type": "delta", "text": "hi"}',
      '{"type": "completed", "text": "hi"}',
    ]

  def test_broadcast_to_session_accepts_models_and_dicts(self):
    async def scenario():
      server = BroadcastServer(BroadcastConfig())
      subscriber = FakeConnection()
      server.registry.connect("s1", subscriber)
      await server.broadcast_to_session("s1", {"type": "completed", "text": "a"})
      await server.broadcast_to_session("s1", DeltaEvent(text="b", item_id="i", t=1))
      await wait_until(lambda: len(subscriber.sent) == 2)
      return subscriber

    sent = asyncio.run(scenario()).sent_json
    assert sent[0] == {"type": "completed", "text": "a"}
    assert sent[1] == {"type": "delta", "text": "b", "item_id": "i", "t": 1}


class TestLoopback:
  def test_subscriber_receives_ingested_events(self):
    async def scenario():
      server = BroadcastServer(BroadcastConfig(host="127.0.0.1", port=0))
      await server.start()
      base = f"ws://127.0.0.1:{server.port}"
      try:
        async with connect(f"{base}/?sessionId=s1") as subscriber:
          ack = json.loads(await asyncio.wait_for(subscriber.recv(), 2.0))
          await wait_until(lambda: server.registry.subscriber_count("s1") == 1)

          async with connect(f"{base}/ingest?sessionId=s1") as ingest:
            await ingest.send('{"type":"delta","text":"hello","item_id":"i1","t":1}')
            relayed = json.loads(await asyncio.wait_for(subscriber.recv(), 2.0))

        await wait_until(lambda: server.registry.active_sessions() == [])
      finally:
        await server.close()
      return ack, relayed

    ack, relayed = asyncio.run(scenario())

    assert ack["type"] == "connected"
    assert relayed == {"type": "delta", "text": "hello", "item_id": "i1", "t": 1}

  def test_sessionless_subscriber_is_closed_with_policy_violation(self):
    async def scenario():
      server = BroadcastServer(BroadcastConfig(host="127.0.0.1", port=0))
      await server.start()
      try:
        async with connect(f"ws://127.0.0.1:{server.port}/") as subscriber:
          with pytest.raises(ConnectionClosed):
            await asyncio.wait_for(subscriber.recv(), 2.0)
          return subscriber.close_code, subscriber.close_reason, server.registry.active_sessions()
      finally:
        await server.close()

    code, reason, sessions = asyncio.run(scenario())

    assert code == 1008
    assert reason == "sessionId required"
    assert sessions == []
