"""Parley: real-time room and direct-message chat service."""

__version__ = "0.1.0"
