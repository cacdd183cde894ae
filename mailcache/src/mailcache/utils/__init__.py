"""Shared helpers: structured logging, identities, MIME and properties files."""

from .logging import JsonLogger, get_logger

__all__ = ["JsonLogger", "get_logger"]
