"""Expose the public utility surface for convstate.

What:
  Re-export the logging, identifier and timestamp helpers shared by the
  engine, the AI runner and the CLI.

Interfaces:
  ``get_logger``, ``JsonLogger``, ``new_run_id``, ``checksum``,
  ``parse_timestamp``, ``format_timestamp``, ``utc_now``.
"""

from .ids import checksum, new_run_id
from .logging import JsonLogger, get_logger
from .timeutils import format_timestamp, parse_timestamp, utc_now

__all__ = [
    "get_logger",
    "JsonLogger",
    "new_run_id",
    "checksum",
    "parse_timestamp",
    "format_timestamp",
    "utc_now",
]
