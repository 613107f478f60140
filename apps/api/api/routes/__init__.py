"""API routes module."""

from . import archives, convert, device, health, opds, settings

__all__ = ["archives", "convert", "device", "health", "opds", "settings"]
