"""Pytest fixtures for unit tests.

What:
  Make ``tests/unit`` importable so test modules can share :mod:`fakes`, and
  expose an engine bound to the default thresholds plus a log capture.

How:
  Insert the unit directory into ``sys.path`` and build fresh objects per
  test so no state leaks between them.
"""

import io
import sys
from pathlib import Path

import pytest

UNIT_DIR = Path(__file__).resolve().parent
if str(UNIT_DIR) not in sys.path:
    sys.path.insert(0, str(UNIT_DIR))

from convstate.config.schema import InferenceConfig
from convstate.core.engine import InferenceEngine
from convstate.utils.logging import JsonLogger


@pytest.fixture
def engine() -> InferenceEngine:
    """Return an engine using the documented default thresholds."""

    return InferenceEngine(InferenceConfig())


@pytest.fixture
def log_stream():
    """Yield ``(logger, stream)`` writing JSON lines into memory."""

    stream = io.StringIO()
    yield JsonLogger(stream=stream, component="test"), stream
