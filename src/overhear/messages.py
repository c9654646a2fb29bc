"""
Pydantic message models for every socket the pipeline touches.

Upstream messages follow the provider's realtime transcription protocol. Downstream
messages are the stable schema delivered to the sink and to session subscribers.
"""

import json
import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def now_ms() -> int:
  """Milliseconds since the epoch."""
  return int(time.time() * 1000)


class UpstreamEventType(StrEnum):
  """Provider event tags the pipeline reacts to."""

  SESSION_UPDATE = "transcription_session.update"
  SESSION_UPDATED = "transcription_session.updated"
  AUDIO_APPEND = "input_audio_buffer.append"
  AUDIO_COMMIT = "input_audio_buffer.commit"
  AUDIO_COMMITTED = "input_audio_buffer.committed"
  TRANSCRIPT_DELTA = "conversation.item.input_audio_transcription.delta"
  TRANSCRIPT_COMPLETED = "conversation.item.input_audio_transcription.completed"
  TRANSCRIPT_FAILED = "conversation.item.input_audio_transcription.failed"


TRANSCRIPT_EVENT_TYPES = frozenset(
  {UpstreamEventType.TRANSCRIPT_DELTA, UpstreamEventType.TRANSCRIPT_COMPLETED}
)


# Upstream (client -> provider)


class AudioAppendMessage(BaseModel):
  """One framed audio record. Also the Chunker's NDJSON record format."""

  type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
  audio: str = Field(description="Base64-encoded PCM16 bytes")


class AudioCommitMessage(BaseModel):
  """Close the current audio turn."""

  type: Literal["input_audio_buffer.commit"] = "input_audio_buffer.commit"


class ServerVad(BaseModel):
  type: Literal["server_vad"] = "server_vad"
  threshold: float
  prefix_padding_ms: int
  silence_duration_ms: int


class InputAudioTranscription(BaseModel):
  model: str
  language: str


class TranscriptionSession(BaseModel):
  input_audio_format: Literal["pcm16"] = "pcm16"
  input_audio_transcription: InputAudioTranscription
  turn_detection: ServerVad | None = Field(
    description="Server VAD settings, or null when turns are committed manually"
  )


class SessionUpdateMessage(BaseModel):
  """Sent once on open to configure audio format, model, language and turn detection."""

  type: Literal["transcription_session.update"] = "transcription_session.update"
  session: TranscriptionSession


# Downstream (forwarder -> sink -> subscribers)


class BaseEvent(BaseModel):
  """Base for normalized transcript events."""

  text: str = ""
  item_id: str | None = None
  t: int = Field(default_factory=now_ms, description="Emission time, ms since epoch")


class DeltaEvent(BaseEvent):
  """Incremental, in-progress text for an utterance."""

  type: Literal["delta"] = "delta"


class CompletedEvent(BaseEvent):
  """Final text for an utterance."""

  type: Literal["completed"] = "completed"


class ConnectedMessage(BaseModel):
  """Acknowledgment pushed to a subscriber as soon as its subscription is live."""

  model_config = ConfigDict(populate_by_name=True)

  type: Literal["connected"] = "connected"
  session_id: str = Field(alias="sessionId")
  timestamp: int = Field(default_factory=now_ms)
  message: str = "Connected to transcription stream"


TranscriptEvent = DeltaEvent | CompletedEvent

type Message = (
  AudioAppendMessage
  | AudioCommitMessage
  | SessionUpdateMessage
  | DeltaEvent
  | CompletedEvent
  | ConnectedMessage
)


def serialize_message(message: Message) -> str:
  """
  Serialize a message to its JSON wire form.

  :param message: Any message instance.
  :returns: Compact JSON string, field aliases applied.
  """
  adapter = TypeAdapter(type(message))
  return adapter.dump_json(message, by_alias=True).decode("utf-8")


def parse_json_object(raw: str | bytes) -> dict[str, Any] | None:
  """
  Parse a text frame into a JSON object.

  Returns None for anything that is not a JSON object; callers discard those frames.
  """
  try:
    value = json.loads(raw)
  except (ValueError, UnicodeDecodeError):
    return None
  return value if isinstance(value, dict) else None


def _as_item_id(value: Any) -> str | None:
  if isinstance(value, bool) or not isinstance(value, str | int):
    return None
  return str(value) or None


def event_item_id(event: dict[str, Any]) -> str | None:
  """
  Utterance id of a provider event: ``item.id``, else ``item_id``, else None.

  Integer ids are converted to strings; any other non-string value counts as absent.
  """
  item = event.get("item")
  if isinstance(item, dict) and (item_id := _as_item_id(item.get("id"))):
    return item_id
  return _as_item_id(event.get("item_id"))
