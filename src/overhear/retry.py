"""
Reconnect backoff policy.

Holds no timers and performs no I/O; the caller asks for the next delay and sleeps.
"""

from dataclasses import dataclass, field

from overhear.config import RetryConfig


@dataclass
class BackoffPolicy:
  """
  Delay schedule for consecutive reconnect attempts.

  With ``multiplier == 1`` this is a fixed interval. Otherwise each attempt waits
  ``interval_s * multiplier ** n``, capped at ``max_interval_s``. ``reset()`` after a
  successful connection starts the schedule over.
  """

  interval_s: float = 1.0
  multiplier: float = 1.0
  max_interval_s: float = 30.0
  attempt: int = field(default=0, init=False)

  def __post_init__(self) -> None:
    if self.interval_s < 0:
      raise ValueError(f"interval_s must not be negative, got {self.interval_s}")
    if self.multiplier < 1.0:
      raise ValueError(f"multiplier must be at least 1.0, got {self.multiplier}")
    if self.max_interval_s < self.interval_s:
      raise ValueError("max_interval_s must not be less than interval_s")

  @classmethod
  def from_config(cls, config: RetryConfig) -> "BackoffPolicy":
    return cls(
      interval_s=config.interval_s,
      multiplier=config.multiplier,
      max_interval_s=config.max_interval_s,
    )

  def peek_delay(self) -> float:
    """Delay the next call to ``next_delay`` would return."""
    return min(self.interval_s * self.multiplier**self.attempt, self.max_interval_s)

  def next_delay(self) -> float:
    delay = self.peek_delay()
    self.attempt += 1
    return delay

  def reset(self) -> None:
    self.attempt = 0
