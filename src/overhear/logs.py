"""Centralized logging configuration for Overhear using structlog."""

import logging
import sys
import time
from typing import Any

import structlog
from structlog.dev import BRIGHT, DIM, RESET_ALL, Column, ConsoleRenderer, KeyValueColumnFormatter
from structlog.typing import EventDict, Processor, WrappedLogger

_PROGRAM_START_TIME = time.time()


def hex_to_ansi_fg(hex_color: int) -> str:
  """Convert hex color (e.g., 0x9ccfd8) to ANSI 24-bit foreground escape code."""
  r = (hex_color >> 16) & 0xFF
  g = (hex_color >> 8) & 0xFF
  b = hex_color & 0xFF
  return f"\x1b[38;2;{r};{g};{b}m"


_LEVEL_LABELS = {
  "debug": ("dbug", 0x908CAA),
  "info": ("info", 0x9CCFD8),
  "warning": ("warn", 0xF6C177),
  "error": ("eror", 0xEB6F92),
  "exception": ("exc!", 0xEB6F92),
  "critical": ("crit", 0xEB6F92),
}


def _relative_time_processor(_logger: WrappedLogger, _method_name: str, event_dict: EventDict):
  """Stamp each line with the time elapsed since the process started."""
  elapsed = time.time() - _PROGRAM_START_TIME
  minutes, seconds = divmod(elapsed, 60)
  if minutes:
    event_dict["timestamp"] = f"+{int(minutes):02d}:{seconds:06.3f}"
  else:
    event_dict["timestamp"] = f"+{seconds:06.3f}"
  return event_dict


def _compact_level_processor(_logger: WrappedLogger, _method_name: str, event_dict: EventDict):
  """Render the level as a colored four-character tag."""
  level = event_dict.get("level")
  if level in _LEVEL_LABELS:
    label, color = _LEVEL_LABELS[level]
    event_dict["level"] = f"[{hex_to_ansi_fg(color)}{label}{RESET_ALL}]"
  return event_dict


def _build_console_renderer() -> ConsoleRenderer:
  logger_name_formatter = KeyValueColumnFormatter(
    key_style=None,
    value_style=hex_to_ansi_fg(0x7D6B95),
    reset_style=RESET_ALL,
    value_repr=str,
    prefix="[",
    postfix="]",
  )
  plain = KeyValueColumnFormatter(
    key_style=None, value_style="", reset_style=RESET_ALL, value_repr=str
  )

  return ConsoleRenderer(
    colors=True,
    columns=[
      Column(
        "",
        KeyValueColumnFormatter(
          key_style=hex_to_ansi_fg(0x6E6A86),
          value_style=hex_to_ansi_fg(0xF6C177),
          reset_style=RESET_ALL,
          value_repr=str,
        ),
      ),
      Column(
        "timestamp",
        KeyValueColumnFormatter(
          key_style=None, value_style=DIM, reset_style=RESET_ALL, value_repr=str
        ),
      ),
      Column("level", plain),
      Column("logger_name", logger_name_formatter),
      Column("logger", logger_name_formatter),
      Column(
        "event",
        KeyValueColumnFormatter(
          key_style=None, value_style=BRIGHT, reset_style=RESET_ALL, value_repr=str, width=30
        ),
      ),
    ],
  )


def setup_logging(
  level: str = "INFO", json_output: bool = False, session_id: str | None = None
) -> None:
  """Configure structured logging for the application.

  Output goes to stderr; stdout is reserved for the NDJSON stage protocol.
  """
  shared_processors: list[Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.stdlib.ExtraAdder(),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
  ]

  if session_id:
    structlog.contextvars.bind_contextvars(session_id=session_id)

  if json_output:
    shared_processors.insert(4, structlog.processors.TimeStamper(fmt="iso"))
    log_renderer: Processor = structlog.processors.JSONRenderer()
  else:
    shared_processors.insert(4, _compact_level_processor)
    shared_processors.insert(5, _relative_time_processor)
    log_renderer = _build_console_renderer()

  structlog.configure(
    processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
  )

  formatter = structlog.stdlib.ProcessorFormatter(
    foreign_pre_chain=shared_processors,
    processors=[
      structlog.stdlib.ProcessorFormatter.remove_processors_meta,
      log_renderer,
    ],
  )

  handler = logging.StreamHandler(sys.stderr)
  handler.setFormatter(formatter)
  root_logger = logging.getLogger()
  root_logger.handlers.clear()
  root_logger.addHandler(handler)
  root_logger.setLevel(level)

  # Library chatter is only interesting when something goes wrong
  for liblog in [logging.getLogger(_liblog) for _liblog in ["websockets", "httpx", "httpcore"]]:
    liblog.handlers.clear()
    liblog.setLevel(logging.WARNING)
    liblog.propagate = True


def get_logger(
  name: str | None = None, *args: Any, **initial_values: Any
) -> structlog.stdlib.BoundLogger:
  """Get a structured logger instance."""
  return structlog.get_logger(*([name] + list(args)), **initial_values)
