"""Switchboard: agent delegation, messaging and resilience core."""

__version__ = "0.1.0"
