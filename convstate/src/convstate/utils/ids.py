"""Identifiers and digests shared by the inference pipeline.

What:
  Helpers for run identifiers, namespaced checksums of configuration payloads
  and the plain SHA-256 digests used as AI cache keys.

Why:
  The AI cache key doubles as a fixture filename, so it must be a bare hex
  digest, while configuration checksums carry an algorithm prefix for audit
  logs. Keeping both here avoids ad-hoc ``hashlib`` calls.

Interfaces:
  :func:`new_run_id`, :func:`checksum`, :func:`sha256_hex`.
"""
from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timezone


def new_run_id() -> str:
    """Return a sortable, collision-resistant identifier for a CLI run."""

    timestamp = datetime.now(timezone.utc).isoformat()
    suffix = secrets.token_hex(3)
    return f"{timestamp}#{suffix}"


def checksum(data: bytes) -> str:
    """Compute a SHA-256 digest prefixed with ``sha256:``.

    Args:
      data: Bytes to hash, typically a raw configuration document.

    Returns:
      Hex digest namespaced with the algorithm name.
    """

    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def sha256_hex(value: str) -> str:
    """Return the bare hex SHA-256 digest of ``value`` encoded as UTF-8."""

    return hashlib.sha256(value.encode("utf-8")).hexdigest()
