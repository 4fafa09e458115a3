"""Autonomous plan/build/eval development loop."""

__version__ = "0.3.0"
