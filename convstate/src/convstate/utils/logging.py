"""Structured JSON logging for convstate with message-content redaction.

What:
  Provide a small facade over text streams so the resolver, the AI attempt
  runner and the CLI emit one JSON object per line with a stable schema.

Why:
  Conversation text is customer data. Log lines are shipped to shared
  collectors, so any field that may carry message content (text, snippets,
  evidence excerpts, prompts) has to be masked before serialisation while the
  surrounding metadata stays greppable.

How:
  :class:`JsonLogger` stores the destination stream and a component tag. Every
  call builds a payload with ``ts``, ``lvl``, ``msg`` and ``component``, merges
  a recursively redacted copy of the keyword context and writes it with
  :func:`json.dump` followed by a flush.

Interfaces:
  :class:`JsonLogger`, :func:`get_logger`.

Invariants & Safety:
  - Keys listed in :data:`SENSITIVE_KEYS` are replaced with ``[redacted]`` at
    any nesting depth, including dictionaries held inside lists.
  - Values that :mod:`json` cannot encode natively are rendered with ``str`` so
    logging never raises on enums or datetimes.
"""
from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional, TextIO


REDACTED = "[redacted]"

SENSITIVE_KEYS: FrozenSet[str] = frozenset(
    {"text", "body", "snippet", "last_snippet", "evidence", "prompt"}
)


@dataclass
class JsonLogger:
    """Structured logger writing redacted JSON lines.

    What:
      Emits single-line JSON entries tagged with a severity and the component
      that produced them.

    Why:
      Downstream dashboards and tests parse log output; a fixed schema keeps
      that parsing trivial and the redaction logic in one place.

    How:
      ``log`` assembles the payload, the severity helpers forward to it, and
      ``_redact`` walks the context before serialisation.

    Attributes:
      stream: Destination text stream (``stdout`` unless overridden).
      component: Subsystem label included in every entry.
    """

    stream: Any = field(default_factory=lambda: sys.stdout)
    component: str = "convstate"

    def log(self, level: str, message: str, *, extra: Optional[Dict[str, Any]] = None) -> None:
        """Serialise ``message`` and ``extra`` to the configured stream.

        Args:
          level: Severity name, upper-cased in the payload.
          message: Short machine-friendly event name (``state_resolved``).
          extra: Optional context, redacted before it is written.
        """

        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "lvl": level.upper(),
            "msg": message,
            "component": self.component,
        }
        if extra:
            payload.update(self._redact(extra))
        json.dump(payload, self.stream, separators=(",", ":"), default=str)
        self.stream.write("\n")
        self.stream.flush()

    def debug(self, message: str, **kwargs: Any) -> None:
        self.log("DEBUG", message, extra=kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log an informational event with structured context."""

        self.log("INFO", message, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log a recoverable condition such as a skipped AI attempt."""

        self.log("WARN", message, extra=kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log a failure that callers may want to alert on."""

        self.log("ERROR", message, extra=kwargs)

    @classmethod
    def _redact(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``data`` with sensitive keys masked.

        What:
          Replaces the values of :data:`SENSITIVE_KEYS` with ``[redacted]``.

        Why:
          Inference context often carries the last snippet or an explicit-lost
          evidence excerpt; neither may reach shared log storage.

        How:
          Walks dictionaries recursively and descends into lists and tuples so
          nested reason objects are scrubbed as well.

        Args:
          data: Context mapping supplied by the caller.

        Returns:
          A redacted shallow copy preserving the original structure.
        """

        result: Dict[str, Any] = {}
        for key, value in data.items():
            if key in SENSITIVE_KEYS:
                result[key] = REDACTED
            else:
                result[key] = cls._redact_value(value)
        return result

    @classmethod
    def _redact_value(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return cls._redact(value)
        if isinstance(value, (list, tuple)):
            return [cls._redact_value(item) for item in value]
        return value


def get_logger(component: str, *, stream: Optional[TextIO] = None) -> JsonLogger:
    """Construct a :class:`JsonLogger` bound to ``component``.

    Args:
      component: Logical subsystem name, e.g. ``convstate.engine``.
      stream: Optional destination; the CLI passes ``stderr`` so that JSON
        results on ``stdout`` stay machine-readable.

    Returns:
      Configured logger instance.
    """

    if stream is None:
        return JsonLogger(component=component)
    return JsonLogger(stream=stream, component=component)
