"""Pytest configuration shared by the unit and end-to-end suites.

What:
  Put the in-repo source tree on ``sys.path`` and pin the runtime
  configuration to the canned ``tests/data/config.yaml``.

Why:
  The runtime configuration is cached process-wide. Without explicit resets a
  test that loads a tenant override could leak thresholds into the next one.

How:
  Compute the project root relative to this file, inject ``convstate/src``
  when present, and reset the configuration cache around every test through an
  autouse fixture.

Interfaces:
  :func:`runtime_config` (pytest fixture).

Invariants & Safety:
  - The path injection only happens when the source tree is present.
  - The autouse fixture always resets the runtime configuration.
"""

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "convstate" / "src"
if SRC_DIR.exists():
    sys.path.insert(0, str(SRC_DIR))

import pytest

from convstate.config.loader import CONFIG_ENV, reset_runtime_config

CONFIG_PATH = Path(__file__).resolve().parent / "data" / "config.yaml"


@pytest.fixture(autouse=True)
def runtime_config(monkeypatch: pytest.MonkeyPatch):
    """Apply the canned configuration file for every test.

    What:
      Sets ``CONVSTATE_CONFIG_PATH`` to the repository fixture and clears the
      runtime configuration cache before and after each test.

    Why:
      Tests must not depend on execution order or on a ``convstate.yaml``
      lying around in the working directory.

    Args:
      monkeypatch: Pytest helper injected automatically for environment control.
    """

    monkeypatch.setenv(CONFIG_ENV, str(CONFIG_PATH))
    reset_runtime_config()
    try:
        yield
    finally:
        reset_runtime_config()
