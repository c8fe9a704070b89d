"""Keyframe-gated output control with event-triggered recording."""

__version__ = "0.1.0"
