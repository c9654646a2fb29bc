"""Overhear: live audio transcription relay with per-session broadcast."""

__version__ = "0.1.0"
