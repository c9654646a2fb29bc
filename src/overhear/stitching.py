"""Spacing repair across adjacent transcript delta fragments.

Providers stream deltas as raw token text, so a fragment boundary can fall between
two words with no whitespace on either side. The stitcher remembers the last emitted
character and synthesizes one space where the boundary would otherwise glue words
together.
"""

LINE_START = "\n"
SENTENCE_TERMINATORS = frozenset(".!?")
CLOSERS = frozenset(")\"'")


def needs_space(prev: str, next_first: str) -> bool:
  """Whether a space belongs between ``prev`` and ``next_first``."""
  if not prev or not next_first:
    return False
  if prev.isspace():
    return False
  if not next_first.isalnum():
    return False
  return prev in SENTENCE_TERMINATORS or prev.isalnum() or prev in CLOSERS


class TextStitcher:
  """Tracks the last emitted character for one transcript stream."""

  def __init__(self) -> None:
    self.last_char = LINE_START

  def stitch(self, fragment: str) -> str:
    """Return ``fragment``, space-prefixed when the boundary needs it."""
    out = f" {fragment}" if needs_space(self.last_char, fragment[:1]) else fragment
    if out:
      self.last_char = out[-1]
    return out

  def reset(self) -> None:
    """Return to line start. Called at every utterance boundary."""
    self.last_char = LINE_START
