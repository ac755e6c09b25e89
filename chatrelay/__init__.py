"""Realtime chat relay: global room, direct messages, nickname registry."""

__version__ = "0.1.0"
