"""Compass: mirrors Google Calendar into a local event store."""

__version__ = "0.1.0"
