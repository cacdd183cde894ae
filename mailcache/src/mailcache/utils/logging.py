"""Structured JSON logging for the cache engine.

What:
  Offer a small facade over text streams so every mailcache component emits
  single-line JSON records with the same core fields and with sensitive mail
  content scrubbed before it reaches the stream.

Why:
  Cache decisions (remote fallback, best-effort writes, archive moves) are
  only debuggable after the fact when each decision leaves a greppable record.
  Mail subjects and bodies must never end up in those records.

How:
  :class:`JsonLogger` builds a payload with ``ts``, ``lvl``, ``msg`` and
  ``component``, merges a recursively redacted copy of the keyword context,
  and writes it with :func:`json.dump`. A minimum level read from
  ``MAILCACHE_LOG_LEVEL`` filters chatty ``DEBUG`` records.

Interfaces:
  :class:`JsonLogger`, :func:`get_logger`.

Invariants & Safety:
  - Keys listed in :data:`SENSITIVE_KEYS` are replaced with ``[redacted]``
    even inside nested dictionaries.
  - Values that are not JSON serialisable are rendered with ``str`` instead of
    failing the caller.
  - The stream is flushed after every record.
"""
from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


REDACTED = "[redacted]"
SENSITIVE_KEYS = frozenset({"subject", "body", "content", "password", "secret"})
_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}
_LEVEL_ENV = "MAILCACHE_LOG_LEVEL"


def _threshold() -> int:
    name = os.environ.get(_LEVEL_ENV, "INFO").upper()
    if name == "WARNING":
        name = "WARN"
    return _LEVELS.get(name, _LEVELS["INFO"])


@dataclass
class JsonLogger:
    """Structured JSON logger with automatic redaction.

    What:
      Emits one JSON object per line carrying a timestamp, a severity, the
      component tag, and optional context fields.

    Why:
      A single implementation keeps the record schema identical across the
      store, folder and message engines, which tests and operators rely on.

    How:
      Stores the destination stream and component label; :meth:`log` does the
      work and the level helpers forward to it.
    """

    stream: Any = field(default_factory=lambda: sys.stderr)
    component: str = "mailcache"
    min_level: Optional[int] = None

    def log(self, level: str, message: str, *, extra: Optional[Dict[str, Any]] = None) -> None:
        """Emit a structured JSON log entry.

        What:
          Serialises ``message`` and ``extra`` to the stream using the
          ``ts``/``lvl``/``msg``/``component`` schema.

        Why:
          Predictable records keep log scraping and test assertions trivial.

        How:
          Drops records below the threshold, builds the payload, merges the
          redacted context, writes it followed by a newline and flushes.

        Args:
          level: Severity name (``"debug"``, ``"info"``, ``"warn"``, ``"error"``).
          message: Core log message.
          extra: Optional context dictionary that will be redacted recursively.
        """

        lvl = level.upper()
        threshold = self.min_level if self.min_level is not None else _threshold()
        if _LEVELS.get(lvl, _LEVELS["INFO"]) < threshold:
            return
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "lvl": lvl,
            "msg": message,
            "component": self.component,
        }
        if extra:
            payload.update(self._redact(extra))
        json.dump(payload, self.stream, separators=(",", ":"), default=str)
        self.stream.write("\n")
        self.stream.flush()

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log a diagnostic record, hidden unless the level is lowered."""

        self.log("DEBUG", message, extra=kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log an informational message with structured context."""

        self.log("INFO", message, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log a warning, typically a tolerated remote failure."""

        self.log("WARN", message, extra=kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log an error entry suitable for alerting."""

        self.log("ERROR", message, extra=kwargs)

    def child(self, component: str) -> "JsonLogger":
        """Return a logger sharing this stream under another component tag."""

        return JsonLogger(stream=self.stream, component=component, min_level=self.min_level)

    @staticmethod
    def _redact(data: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``data`` with sensitive keys masked.

        What:
          Replaces values of :data:`SENSITIVE_KEYS` with ``[redacted]``.

        Why:
          Cached mail is personal data; logs are frequently shipped to shared
          infrastructure.

        How:
          Walks the mapping and recurses into nested dictionaries.
        """

        result: Dict[str, Any] = {}
        for key, value in data.items():
            if key in SENSITIVE_KEYS:
                result[key] = REDACTED
            elif isinstance(value, dict):
                result[key] = JsonLogger._redact(value)
            else:
                result[key] = value
        return result


def get_logger(component: str) -> JsonLogger:
    """Construct a :class:`JsonLogger` for ``component`` on ``stderr``."""

    return JsonLogger(component=component)
