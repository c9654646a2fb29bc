import json
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator, validate_call
from pydantic.types import FilePath

from overhear.logs import get_logger

logger = get_logger("cfg")

DEFAULT_UPSTREAM_URL = "wss://api.openai.com/v1/realtime?intent=transcription"
DEFAULT_SESSION_URL = "https://api.openai.com/v1/realtime/transcription_sessions"
DEFAULT_SINK_URL = "ws://127.0.0.1:9090/ingest"


class ConfigurationError(ValueError):
  """Raised when the pipeline cannot start because its configuration is unusable."""


class AudioConfig(BaseModel):
  """Configuration for the raw audio input and its framing."""

  sample_rate: int = Field(default=16000, gt=0)
  """Sample rate of the incoming PCM16 stream in Hz."""

  chunk_ms: int = Field(default=20, gt=0)
  """Duration of each frame in milliseconds."""

  source_command: list[str] | None = None
  """Capture command whose stdout is s16le PCM. Audio is read from stdin when unset."""


class TurnDetectionConfig(BaseModel):
  """Server-side voice activity detection parameters."""

  threshold: float = Field(default=0.5, ge=0.0, le=1.0)
  prefix_padding_ms: int = Field(default=300, ge=0)
  silence_duration_ms: int = Field(default=200, ge=0)


class BridgeConfig(BaseModel):
  """Configuration for the upstream transcription socket."""

  ws_url: str = DEFAULT_UPSTREAM_URL
  """Websocket URL of the transcription provider."""

  session_url: str = DEFAULT_SESSION_URL
  """Control endpoint issuing short-lived client secrets."""

  use_ephemeral_token: bool = True
  """Exchange the API key for a client secret before connecting."""

  model: str = "gpt-4o-transcribe"
  language: str = "en"

  api_key: SecretStr | None = None
  """API key. Falls back to OPENAI_API_KEY, then to api_key_file."""

  api_key_file: Path | None = Path("data.json")
  """JSON file holding {"API_KEY": "..."}."""

  manual_commit: bool = False
  """Commit audio turns client-side instead of using server VAD."""

  min_commit_ms: int = Field(default=800, ge=0)
  """Minimum accumulated audio before a manual commit."""

  tail_commit_ms: int = Field(default=120, ge=0)
  """Minimum trailing audio that still earns a final commit at stream end."""

  turn_detection: TurnDetectionConfig = Field(default_factory=TurnDetectionConfig)

  pre_ready_policy: Literal["drop", "buffer"] = "drop"
  """What to do with audio records that arrive before the session is configured."""

  forward_all: bool = False
  """Republish every upstream message verbatim, for diagnostics."""

  open_timeout_s: float = Field(default=10.0, gt=0.0)
  credential_timeout_s: float = Field(default=10.0, gt=0.0)

  drain_timeout_s: float = Field(default=5.0, ge=0.0)
  """How long to wait for outstanding transcripts after the final commit."""


class RetryConfig(BaseModel):
  """Reconnect backoff for the sink connection."""

  interval_s: float = Field(default=1.0, ge=0.25)
  multiplier: float = Field(default=1.0, ge=1.0)
  max_interval_s: float = Field(default=30.0, gt=0.0)

  @model_validator(mode="after")
  def validate_interval_relationship(self) -> "RetryConfig":
    if self.max_interval_s < self.interval_s:
      raise ValueError(
        f"max_interval_s ({self.max_interval_s}s) must not be less than "
        f"interval_s ({self.interval_s}s)"
      )
    return self


class ForwarderConfig(BaseModel):
  """Configuration for transcript normalization and sink delivery."""

  sink_url: str = DEFAULT_SINK_URL
  """Websocket URL receiving normalized events. sessionId is appended when missing."""

  retry: RetryConfig = Field(default_factory=RetryConfig)

  output_mode: Literal["both", "delta", "completed"] = "both"
  """Which event classes reach the sink."""

  smart_spacing: bool = False
  """Synthesize spaces between adjacent delta fragments."""

  mirror_stdout: bool = False
  """Echo transcript text to stdout as it is forwarded."""

  drain_timeout_s: float = Field(default=5.0, ge=0.0)
  """How long to wait for the outbound queue to empty on shutdown."""


class BroadcastConfig(BaseModel):
  """Configuration for the session broadcast server."""

  host: str = "0.0.0.0"
  port: int = Field(default=9090, ge=0, le=65535)
  ingest_path: str = "/ingest"
  subscriber_queue_size: int = Field(
    default=256, ge=1, description="Events held per subscriber before new ones are dropped"
  )

  @model_validator(mode="after")
  def validate_ingest_path(self) -> "BroadcastConfig":
    if not self.ingest_path.startswith("/") or self.ingest_path == "/":
      raise ValueError(f"ingest_path must be an absolute, non-root path: {self.ingest_path!r}")
    return self


class OverhearConfig(BaseModel):
  """Top-level Overhear configuration."""

  audio: AudioConfig = Field(default_factory=AudioConfig)
  bridge: BridgeConfig = Field(default_factory=BridgeConfig)
  forwarder: ForwarderConfig = Field(default_factory=ForwarderConfig)
  broadcast: BroadcastConfig = Field(default_factory=BroadcastConfig)

  def pretty_print(self) -> None:
    """Log every configuration value at INFO level, defaults included."""
    logger.info("=" * 60)
    logger.info("OVERHEAR CONFIGURATION")
    logger.info("=" * 60)

    logger.info("AUDIO SETTINGS:")
    logger.info(f"  Sample Rate: {self.audio.sample_rate}")
    logger.info(f"  Chunk Duration: {self.audio.chunk_ms}ms")
    logger.info(f"  Source Command: {self.audio.source_command or 'stdin'}")

    bridge = self.bridge
    logger.info("BRIDGE SETTINGS:")
    logger.info(f"  Upstream URL: {bridge.ws_url}")
    logger.info(f"  Session URL: {bridge.session_url}")
    logger.info(f"  Ephemeral Token: {bridge.use_ephemeral_token}")
    logger.info(f"  Model: {bridge.model}")
    logger.info(f"  Language: {bridge.language}")
    logger.info(f"  Manual Commit: {bridge.manual_commit}")
    if bridge.manual_commit:
      logger.info(f"  Min Commit: {bridge.min_commit_ms}ms")
      logger.info(f"  Tail Commit: {bridge.tail_commit_ms}ms")
    else:
      vad = bridge.turn_detection
      logger.info(f"  VAD Threshold: {vad.threshold}")
      logger.info(f"  VAD Prefix Padding: {vad.prefix_padding_ms}ms")
      logger.info(f"  VAD Silence Duration: {vad.silence_duration_ms}ms")
    logger.info(f"  Pre-ready Policy: {bridge.pre_ready_policy}")
    logger.info(f"  Forward All: {bridge.forward_all}")
    logger.info(f"  Drain Timeout: {bridge.drain_timeout_s}s")

    forwarder = self.forwarder
    logger.info("FORWARDER SETTINGS:")
    logger.info(f"  Sink URL: {forwarder.sink_url}")
    logger.info(f"  Output Mode: {forwarder.output_mode}")
    logger.info(f"  Smart Spacing: {forwarder.smart_spacing}")
    logger.info(f"  Mirror Stdout: {forwarder.mirror_stdout}")
    logger.info(f"  Retry Interval: {forwarder.retry.interval_s}s")
    logger.info(f"  Retry Multiplier: {forwarder.retry.multiplier}")
    logger.info(f"  Retry Max Interval: {forwarder.retry.max_interval_s}s")
    logger.info(f"  Drain Timeout: {forwarder.drain_timeout_s}s")

    logger.info("BROADCAST SETTINGS:")
    logger.info(f"  Listen: {self.broadcast.host}:{self.broadcast.port}")
    logger.info(f"  Ingest Path: {self.broadcast.ingest_path}")
    logger.info(f"  Subscriber Queue: {self.broadcast.subscriber_queue_size}")

    logger.info("=" * 60)


@validate_call
def load_config_from_file(config_path: FilePath) -> OverhearConfig:
  """Load and validate Overhear configuration from YAML file."""

  logger.info("Loading Overhear configuration", path=str(config_path))

  try:
    with open(config_path, "r", encoding="utf-8") as file:
      config_data = yaml.safe_load(file)

  except yaml.YAMLError as e:
    raise ValueError(f"Invalid YAML in configuration file: {e}") from e
  except Exception as e:
    raise ValueError(f"Error reading configuration file: {e}") from e

  if config_data is None:
    raise ValueError("Configuration file is empty")

  if not isinstance(config_data, dict):
    raise ValueError("Configuration file must contain a YAML dictionary")

  config = OverhearConfig.model_validate(config_data)
  config.pretty_print()

  return config


def load_config(config_path: str | Path | None) -> OverhearConfig:
  """Load configuration from a file when one is given, else use defaults."""
  if config_path is None:
    logger.info("No configuration file given, using defaults")
    return OverhearConfig()
  return load_config_from_file(Path(config_path))


def resolve_api_key(config: BridgeConfig) -> str:
  """
  Find the provider API key.

  Precedence: explicit config value, then OPENAI_API_KEY, then the JSON key file.

  :raises ConfigurationError: If no key can be found.
  """
  if config.api_key is not None and config.api_key.get_secret_value():
    return config.api_key.get_secret_value()

  if env_key := os.getenv("OPENAI_API_KEY"):
    return env_key

  if config.api_key_file is None:
    raise ConfigurationError("No API key configured and OPENAI_API_KEY is not set")

  try:
    with open(config.api_key_file, "r", encoding="utf-8") as file:
      key_data = json.load(file)
  except FileNotFoundError as e:
    raise ConfigurationError(f"API key file not found: {config.api_key_file}") from e
  except (OSError, json.JSONDecodeError) as e:
    raise ConfigurationError(f"Could not read API key file {config.api_key_file}: {e}") from e

  api_key = key_data.get("API_KEY") if isinstance(key_data, dict) else None
  if not api_key:
    raise ConfigurationError(f"Missing API_KEY in {config.api_key_file}")
  return api_key


def get_env_or_default(env_var: str, default, var_type: type = str):
  """Get environment variable with type conversion and default fallback."""
  value = os.getenv(env_var)
  if value is None:
    return default

  if var_type is bool:
    return value.lower() in ("true", "1", "yes", "on")
  elif var_type is int:
    try:
      return int(value)
    except ValueError:
      return default
  else:
    return value
