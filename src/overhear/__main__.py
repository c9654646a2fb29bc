import argparse
import asyncio
import os
import shlex
import sys

from overhear.config import (
  ConfigurationError,
  OverhearConfig,
  get_env_or_default,
  load_config,
)
from overhear.logs import get_logger, setup_logging

EXIT_UPSTREAM_CLOSED = 1
EXIT_CONFIGURATION = 2
EXIT_AUDIO_INPUT = 3


def build_parser() -> argparse.ArgumentParser:
  common = argparse.ArgumentParser(add_help=False)
  common.add_argument(
    "--config",
    type=str,
    default=get_env_or_default("OVERHEAR_CONFIG", None),
    help="Path to the YAML configuration file. Defaults apply when omitted. (Env: OVERHEAR_CONFIG)",
  )
  common.add_argument(
    "--json-logs",
    action="store_true",
    default=get_env_or_default("JSON_LOGS", False, bool),
    help="Output logs in JSON format. (Env: JSON_LOGS)",
  )
  common.add_argument(
    "--session-id",
    type=str,
    default=get_env_or_default("SESSION_ID", None),
    help="Session the transcript belongs to; bound into every log line. (Env: SESSION_ID)",
  )

  parser = argparse.ArgumentParser(
    prog="overhear", description="Live audio transcription relay with session broadcast."
  )
  commands = parser.add_subparsers(dest="command", required=True)

  serve = commands.add_parser("serve", parents=[common], help="Run the broadcast server.")
  serve.add_argument(
    "--port",
    "-p",
    type=int,
    default=get_env_or_default("OVERHEAR_PORT", None, int),
    help="Websocket port to listen on. (Env: OVERHEAR_PORT)",
  )
  serve.add_argument("--host", type=str, default=None, help="Interface to bind.")

  pipeline = commands.add_parser(
    "pipeline", parents=[common], help="Transcribe audio for one session and forward events."
  )
  pipeline.add_argument(
    "--source-command",
    type=str,
    default=None,
    help="Capture command producing s16le PCM on stdout, e.g. 'parec --format=s16le ...'. "
    "Audio is read from stdin when omitted.",
  )
  pipeline.add_argument("--sink-url", type=str, default=None, help="Override the sink URL.")

  commands.add_parser(
    "chunk", parents=[common], help="Frame raw PCM16 from stdin into NDJSON audio records."
  )
  commands.add_parser(
    "bridge",
    parents=[common],
    help="Send NDJSON audio records from stdin upstream; print transcript events.",
  )
  forward = commands.add_parser(
    "forward", parents=[common], help="Normalize NDJSON transcript events from stdin to the sink."
  )
  forward.add_argument("--sink-url", type=str, default=None, help="Override the sink URL.")

  return parser


def apply_overrides(config: OverhearConfig, args: argparse.Namespace) -> OverhearConfig:
  """Command line values take precedence over the configuration file."""
  if getattr(args, "port", None) is not None:
    config.broadcast.port = args.port
  if getattr(args, "host", None):
    config.broadcast.host = args.host
  if getattr(args, "sink_url", None):
    config.forwarder.sink_url = args.sink_url
  if getattr(args, "source_command", None):
    config.audio.source_command = shlex.split(args.source_command)
  return config


async def run_serve(config: OverhearConfig) -> None:
  from overhear.broadcast import BroadcastServer

  server = BroadcastServer(config.broadcast)
  await server.serve_forever()


async def run_pipeline(config: OverhearConfig, session_id: str | None) -> None:
  from overhear.pipeline import TranscriptionPipeline

  pipeline = TranscriptionPipeline(config, session_id)
  pipeline.install_signal_handlers()
  await pipeline.run()


async def run_chunk(config: OverhearConfig) -> None:
  from overhear.audio import AudioInputError, open_stdin_source
  from overhear.chunker import Chunker, iter_frames
  from overhear.stdio import LineWriter

  chunker = Chunker.for_audio(config.audio.sample_rate, config.audio.chunk_ms)
  source = await open_stdin_source()
  writer = LineWriter()
  try:
    async for frame in iter_frames(source, chunker):
      writer.write(frame.to_record())
  except OSError as e:
    raise AudioInputError(f"Audio input failed: {e}") from e
  get_logger("chunk").info(
    "Audio input ended", frames=chunker.frames_emitted, chunk_bytes=chunker.chunk_bytes
  )


async def run_bridge(config: OverhearConfig) -> None:
  from overhear.bridge import TranscriptionBridge, UpstreamClosedError
  from overhear.stdio import LineWriter, iter_lines, open_stdin_reader

  writer = LineWriter()
  bridge = TranscriptionBridge(config.bridge, config.audio.chunk_ms, on_event=writer.awrite)
  await bridge.start()

  reader = await open_stdin_reader()
  async for line in iter_lines(reader):
    if bridge.closed_unexpectedly:
      break
    await bridge.send_record(line)

  if not bridge.closed_unexpectedly:
    await bridge.finish()
  if bridge.closed_unexpectedly:
    raise UpstreamClosedError("Transcription socket closed before the stream ended")


async def run_forward(config: OverhearConfig, session_id: str | None) -> None:
  from overhear.forwarder import TranscriptForwarder
  from overhear.stdio import iter_lines, open_stdin_reader

  forwarder = TranscriptForwarder(config.forwarder, session_id)
  await forwarder.start()
  try:
    reader = await open_stdin_reader()
    async for line in iter_lines(reader):
      await forwarder.handle_raw(line)
  finally:
    await forwarder.stop()


async def main(argv: list[str] | None = None) -> int:
  args = build_parser().parse_args(argv)

  # Setup structured logging
  log_level = os.getenv("LOG_LEVEL", "INFO").upper()
  setup_logging(level=log_level, json_output=args.json_logs, session_id=args.session_id)
  logger = get_logger("main")

  from overhear.audio import AudioInputError
  from overhear.bridge import UpstreamClosedError

  try:
    config = apply_overrides(load_config(args.config), args)
  except ValueError as e:
    logger.error("Configuration validation failed", error=str(e), config_path=args.config)
    return EXIT_CONFIGURATION

  try:
    logger.info("Starting Overhear", command=args.command, config_path=args.config)

    match args.command:
      case "serve":
        await run_serve(config)
      case "pipeline":
        await run_pipeline(config, args.session_id)
      case "chunk":
        await run_chunk(config)
      case "bridge":
        await run_bridge(config)
      case "forward":
        await run_forward(config, args.session_id)

  except ConfigurationError as e:
    logger.error("Configuration error", error=str(e))
    return EXIT_CONFIGURATION
  except UpstreamClosedError as e:
    logger.error("Transcription upstream lost", error=str(e))
    return EXIT_UPSTREAM_CLOSED
  except AudioInputError as e:
    logger.error("Audio input failed", error=str(e))
    return EXIT_AUDIO_INPUT

  return 0


def cli() -> None:
  try:
    sys.exit(asyncio.run(main()))
  except KeyboardInterrupt:
    pass


if __name__ == "__main__":
  cli()
