"""Tests for the upstream transcription bridge."""

import asyncio
import json

import httpx
import pytest
from fakes import FakeConnection, FakeConnector, RecordingLink, wait_until

from overhear.bridge import (
  BridgeState,
  CommitScheduler,
  CredentialError,
  TranscriptionBridge,
  UpstreamClosedError,
  build_session_update,
  fetch_client_secret,
)
from overhear.chunker import Frame
from overhear.config import BridgeConfig, ConfigurationError, ForwarderConfig
from overhear.forwarder import TranscriptForwarder
from overhear.messages import serialize_message

SESSION_UPDATED = {"type": "transcription_session.updated"}
DELTA = "conversation.item.input_audio_transcription.delta"


def make_bridge(**overrides) -> tuple[TranscriptionBridge, list[dict]]:
  events: list[dict] = []

  async def on_event(raw: str) -> None:
    events.append(json.loads(raw))

  settings = {"api_key": "sk-test", "use_ephemeral_token": False, "drain_timeout_s": 0}
  settings.update(overrides)
  return TranscriptionBridge(BridgeConfig(**settings), 20, on_event), events


def record(n: int = 0) -> str:
  return Frame(payload=bytes([n % 256]) * 640, sequence=n).to_record()


async def ready_bridge(**overrides) -> tuple[TranscriptionBridge, FakeConnection, list[dict]]:
  bridge, events = make_bridge(**overrides)
  connection = FakeConnection()
  await bridge.attach(connection)
  connection.feed(SESSION_UPDATED)
  assert await bridge.wait_ready(1.0)
  return bridge, connection, events


class TestCommitScheduler:
  def test_commit_cadence(self):
    scheduler = CommitScheduler(chunk_ms=20, min_commit_ms=800, tail_commit_ms=120)

    assert scheduler.chunks_per_commit == 40
    assert scheduler.min_tail_chunks == 6

    due = [scheduler.record_append() for _ in range(50)]
    assert due.count(True) == 1
    assert due.index(True) == 39

  def test_tail_commit_when_threshold_met(self):
    scheduler = CommitScheduler(chunk_ms=20, min_commit_ms=800, tail_commit_ms=120)
    for _ in range(46):
      scheduler.record_append()

    assert scheduler.finish() is True
    assert scheduler.commits == 2

  def test_short_tail_is_discarded(self):
    scheduler = CommitScheduler(chunk_ms=20, min_commit_ms=800, tail_commit_ms=120)
    for _ in range(45):
      scheduler.record_append()

    assert scheduler.finish() is False
    assert scheduler.commits == 1

  def test_empty_tail_never_commits(self):
    scheduler = CommitScheduler(chunk_ms=20, min_commit_ms=800, tail_commit_ms=0)
    for _ in range(40):
      scheduler.record_append()
    assert scheduler.finish() is False

  def test_minimum_below_chunk_commits_every_frame(self):
    scheduler = CommitScheduler(chunk_ms=20, min_commit_ms=5, tail_commit_ms=5)
    assert scheduler.chunks_per_commit == 1
    assert all(scheduler.record_append() for _ in range(3))


class TestSessionUpdate:
  def test_server_vad_by_default(self):
    message = json.loads(serialize_message(build_session_update(BridgeConfig())))

    assert message["type"] == "transcription_session.update"
    session = message["session"]
    assert session["input_audio_format"] == "pcm16"
    assert session["input_audio_transcription"] == {"model": "gpt-4o-transcribe", "language": "en"}
    assert session["turn_detection"] == {
      "type": "server_vad",
      "threshold": 0.5,
      "prefix_padding_ms": 300,
      "silence_duration_ms": 200,
    }

  def test_manual_commit_disables_turn_detection(self):
    message = json.loads(serialize_message(build_session_update(BridgeConfig(manual_commit=True))))
    assert message["session"]["turn_detection"] is None


class TestClientSecret:
  def test_returns_client_secret_value(self):
    def handler(request: httpx.Request) -> httpx.Response:
      assert request.headers["Authorization"] == "Bearer sk-test"
      return httpx.Response(200, json={"client_secret": {"value": "ek_123"}})

    secret = asyncio.run(
      fetch_client_secret(
        "sk-test", "https://control.test/sessions", transport=httpx.MockTransport(handler)
      )
    )
    assert secret == "ek_123"

  def test_rejected_request(self):
    transport = httpx.MockTransport(lambda request: httpx.Response(401, text="bad key"))

    with pytest.raises(CredentialError, match="401"):
      asyncio.run(fetch_client_secret("sk-test", "https://control.test/s", transport=transport))

  def test_response_without_secret(self):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"id": "sess"}))

    with pytest.raises(CredentialError, match="client_secret"):
      asyncio.run(fetch_client_secret("sk-test", "https://control.test/s", transport=transport))

  def test_credential_error_is_configuration_error(self):
    assert issubclass(CredentialError, ConfigurationError)


class TestBridgeStartup:
  def test_start_sends_auth_headers_and_session_update(self):
    async def scenario():
      connection = FakeConnection()
      connector = FakeConnector(connection)
      bridge = TranscriptionBridge(
        BridgeConfig(api_key="sk-test", use_ephemeral_token=False),
        20,
        on_event=lambda raw: asyncio.sleep(0),
        connect_func=connector,
      )
      await bridge.start()
      await bridge.close()
      return connector, connection

    connector, connection = asyncio.run(scenario())

    url, kwargs = connector.calls[0]
    assert url.startswith("wss://")
    assert kwargs["additional_headers"]["Authorization"] == "Bearer sk-test"
    assert kwargs["additional_headers"]["OpenAI-Beta"] == "realtime=v1"
    assert connection.sent_types() == ["transcription_session.update"]

  def test_failed_connect_raises_upstream_closed(self):
    async def scenario():
      bridge = TranscriptionBridge(
        BridgeConfig(api_key="sk-test", use_ephemeral_token=False),
        20,
        on_event=lambda raw: asyncio.sleep(0),
        connect_func=FakeConnector(OSError("connection refused")),
      )
      await bridge.start()

    with pytest.raises(UpstreamClosedError):
      asyncio.run(scenario())

  def test_missing_api_key_is_configuration_error(self, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    async def scenario():
      bridge = TranscriptionBridge(
        BridgeConfig(api_key_file=None), 20, on_event=lambda raw: asyncio.sleep(0)
      )
      await bridge.start()

    with pytest.raises(ConfigurationError):
      asyncio.run(scenario())


class TestPreReadyPolicy:
  def test_audio_before_ready_is_dropped(self):
    async def scenario():
      bridge, events = make_bridge()
      connection = FakeConnection()
      await bridge.attach(connection)

      results = [await bridge.send_record(record(i)) for i in range(3)]
      connection.feed(SESSION_UPDATED)
      await bridge.wait_ready(1.0)
      results.append(await bridge.send_record(record(3)))
      await bridge.close()
      return bridge, connection, results

    bridge, connection, results = asyncio.run(scenario())

    assert results == [False, False, False, True]
    assert bridge.frames_dropped == 3
    assert connection.sent_types() == ["transcription_session.update", "input_audio_buffer.append"]

  def test_audio_before_ready_is_buffered(self):
    async def scenario():
      bridge, events = make_bridge(pre_ready_policy="buffer")
      connection = FakeConnection()
      await bridge.attach(connection)

      for i in range(3):
        await bridge.send_record(record(i))
      connection.feed(SESSION_UPDATED)
      await bridge.wait_ready(1.0)
      await bridge.send_record(record(3))
      await bridge.close()
      return connection

    connection = asyncio.run(scenario())

    appends = connection.sent_json[1:]
    assert [a["type"] for a in appends] == ["input_audio_buffer.append"] * 4
    assert [a["audio"] for a in appends] == [json.loads(record(i))["audio"] for i in range(4)]

  def test_malformed_records_are_discarded(self):
    async def scenario():
      bridge, connection, _ = await ready_bridge()
      results = [
        await bridge.send_record("not json"),
        await bridge.send_record('{"type": "input_audio_buffer.commit"}'),
        await bridge.send_record('{"type": "input_audio_buffer.append", "audio": 7}'),
        await bridge.send_record(record(0) + "\n"),
      ]
      await bridge.close()
      return connection, results

    connection, results = asyncio.run(scenario())

    assert results == [False, False, False, True]
    assert connection.sent_types()[1:] == ["input_audio_buffer.append"]


class TestManualCommit:
  def test_commits_per_turn_and_tail(self):
    """50 frames at 40 per turn: one mid-stream commit plus a tail commit for 10 frames."""

    async def scenario():
      bridge, connection, _ = await ready_bridge(manual_commit=True)
      for i in range(50):
        await bridge.send_record(record(i))
      await bridge.finish()
      return bridge, connection

    bridge, connection = asyncio.run(scenario())
    types = connection.sent_types()

    assert types.count("input_audio_buffer.append") == 50
    assert types.count("input_audio_buffer.commit") == 2
    # First commit directly follows the 40th append
    assert types.index("input_audio_buffer.commit") == 41
    assert types[-1] == "input_audio_buffer.commit"
    assert bridge.state is BridgeState.CLOSED
    assert bridge.closed_unexpectedly is False

  def test_short_tail_gets_no_commit(self):
    async def scenario():
      bridge, connection, _ = await ready_bridge(manual_commit=True)
      for i in range(45):
        await bridge.send_record(record(i))
      await bridge.finish()
      return connection

    types = asyncio.run(scenario()).sent_types()

    assert types.count("input_audio_buffer.commit") == 1
    assert types[-1] == "input_audio_buffer.append"

  def test_server_vad_mode_never_commits(self):
    async def scenario():
      bridge, connection, _ = await ready_bridge()
      for i in range(100):
        await bridge.send_record(record(i))
      await bridge.finish()
      return connection

    assert "input_audio_buffer.commit" not in asyncio.run(scenario()).sent_types()


class TestEventRepublishing:
  def test_only_transcript_events_are_published_in_order(self):
    async def scenario():
      bridge, connection, events = await ready_bridge()
      connection.feed({"type": "conversation.item.input_audio_transcription.delta", "delta": "he"})
      connection.feed("garbage")
      connection.feed({"type": "input_audio_buffer.speech_started"})
      connection.feed("[1, 2, 3]")
      connection.feed({"type": "conversation.item.input_audio_transcription.delta", "delta": "y"})
      connection.feed(
        {"type": "conversation.item.input_audio_transcription.completed", "transcript": "hey"}
      )
      await wait_until(lambda: len(events) == 3)
      await bridge.close()
      return events

    events = asyncio.run(scenario())

    assert [e["type"].rsplit(".", 1)[-1] for e in events] == ["delta", "delta", "completed"]
    assert [e.get("delta") for e in events[:2]] == ["he", "y"]

  def test_forward_all_republishes_every_object(self):
    async def scenario():
      bridge, connection, events = await ready_bridge(forward_all=True)
      connection.feed({"type": "input_audio_buffer.speech_started"})
      connection.feed("garbage")
      connection.feed({"type": "conversation.item.input_audio_transcription.delta", "delta": "x"})
      await wait_until(lambda: len(events) == 2)
      await bridge.close()
      return events

    events = asyncio.run(scenario())
    assert events[0]["type"] == "input_audio_buffer.speech_started"


  def test_odd_fields_do_not_stop_the_receive_loop(self):
    async def scenario():
      link = RecordingLink()
      forwarder = TranscriptForwarder(ForwarderConfig(), "s1", link=link)  # type: ignore[arg-type]
      bridge = TranscriptionBridge(
        BridgeConfig(api_key="sk-test", use_ephemeral_token=False, drain_timeout_s=0),
        20,
        forwarder.handle_raw,  # type: ignore[arg-type]
      )
      connection = FakeConnection()
      await bridge.attach(connection)
      connection.feed(SESSION_UPDATED)
      await bridge.wait_ready(1.0)

      connection.feed({"type": DELTA, "delta": "a", "item_id": 5})
      connection.feed({"type": "input_audio_buffer.committed", "item_id": {"id": 1}})
      connection.feed({"type": ["not", "a", "tag"]})
      connection.feed({"type": DELTA, "delta": "b", "item_id": "item_2"})
      await wait_until(lambda: len(link.events) == 2)
      state, unexpected = bridge.state, bridge.closed_unexpectedly
      await bridge.close()
      return link.events, state, unexpected

    events, state, unexpected = asyncio.run(scenario())

    assert [(e["text"], e["item_id"]) for e in events] == [("a", "5"), ("b", "item_2")]
    assert state is BridgeState.READY
    assert unexpected is False


class TestDrain:
  def test_finish_waits_for_outstanding_transcript(self):
    async def scenario():
      bridge, connection, events = await ready_bridge(manual_commit=True, drain_timeout_s=5.0)
      for i in range(10):
        await bridge.send_record(record(i))

      finish_task = asyncio.create_task(bridge.finish())
      await wait_until(lambda: "input_audio_buffer.commit" in connection.sent_types())
      assert bridge.state is BridgeState.DRAINING

      connection.feed({"type": "input_audio_buffer.committed", "item_id": "item_1"})
      await asyncio.sleep(0.05)
      assert not finish_task.done()

      connection.feed(
        {
          "type": "conversation.item.input_audio_transcription.completed",
          "item_id": "item_1",
          "transcript": "all done",
        }
      )
      await asyncio.wait_for(finish_task, 1.0)
      return bridge, events

    bridge, events = asyncio.run(scenario())

    assert events[-1]["transcript"] == "all done"
    assert bridge.state is BridgeState.CLOSED
    assert bridge.closed_unexpectedly is False

  def test_drain_budget_bounds_the_wait(self):
    async def scenario():
      bridge, connection, _ = await ready_bridge(manual_commit=True, drain_timeout_s=0.1)
      for i in range(10):
        await bridge.send_record(record(i))
      await asyncio.wait_for(bridge.finish(), 1.0)
      return bridge

    assert asyncio.run(scenario()).state is BridgeState.CLOSED


class TestUpstreamLoss:
  def test_unexpected_close_is_flagged(self):
    async def scenario():
      bridge, connection, _ = await ready_bridge()
      connection.drop()
      await wait_until(lambda: bridge.state is BridgeState.CLOSED)
      sent = await bridge.send_record(record(0))
      return bridge, sent

    bridge, sent = asyncio.run(scenario())

    assert bridge.closed_unexpectedly is True
    assert sent is False
