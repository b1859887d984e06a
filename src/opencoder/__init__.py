"""Autonomous plan, build and eval loop driven by the opencode CLI."""

__version__ = "0.1.0"
