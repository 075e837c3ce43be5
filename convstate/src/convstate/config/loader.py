"""Discovery, parsing and caching of the convstate runtime configuration.

What:
  Locate ``convstate.yaml``, parse it with PyYAML, validate it against
  :class:`~convstate.config.schema.RuntimeConfig` and cache the result.

Why:
  Thresholds are tuned per deployment and per tenant outside the code base.
  Malformed documents must fail loudly with the offending path, while a host
  without any configuration should still resolve conversations with the
  documented defaults.

How:
  Candidate paths come from an explicit argument, the ``CONVSTATE_CONFIG_PATH``
  environment variable and well-known defaults, in that order. Explicitly
  requested paths must exist; default locations are optional. The validated
  model and the document checksum are cached until :func:`reset_runtime_config`
  or ``reload=True``.

Interfaces:
  :func:`load_runtime_config`, :func:`get_runtime_config`,
  :func:`reset_runtime_config`, :func:`loaded_config_checksum`,
  :class:`ConfigLoadError`, :class:`RuntimeConfigError`.

Invariants:
  - Every returned model passed strict pydantic validation.
  - Explicit requests bypass a cache entry loaded from a different path.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

import yaml
from pydantic import ValidationError as _PydanticValidationError

from ..utils.ids import checksum
from .schema import RuntimeConfig


class ConfigLoadError(Exception):
    """Base error for configuration parsing or validation failures."""


class RuntimeConfigError(ConfigLoadError):
    """Raised when ``convstate.yaml`` cannot be read, parsed or validated.

    What:
      Signals problems with the runtime configuration specifically.

    Why:
      The CLI maps this error to a non-zero exit code with the message as the
      log payload, so operators see the failing path immediately.
    """


CONFIG_ENV = "CONVSTATE_CONFIG_PATH"
_DEFAULT_LOCATIONS: Tuple[Path, ...] = (
    Path("convstate.yaml"),
    Path("/etc/convstate/config.yaml"),
)

_RUNTIME_CACHE: Optional[Tuple[Optional[Path], RuntimeConfig, Optional[str]]] = None


def _candidate_paths(path: Optional[Path]) -> Iterable[Tuple[Path, bool]]:
    """Yield ``(path, required)`` pairs in priority order.

    Args:
      path: Explicit path requested by the caller, or ``None``.

    Yields:
      Deduplicated candidates; explicit and environment paths are required.
    """

    seen: set[Path] = set()
    if path is not None:
        candidate = path.expanduser()
        seen.add(candidate)
        yield candidate, True
    env_path = os.environ.get(CONFIG_ENV)
    if env_path:
        candidate = Path(env_path).expanduser()
        if candidate not in seen:
            seen.add(candidate)
            yield candidate, True
    for default in _DEFAULT_LOCATIONS:
        candidate = default.expanduser()
        if candidate not in seen:
            seen.add(candidate)
            yield candidate, False


def _parse_config_payload(text: str, source: Path) -> Dict[str, Any]:
    """Decode YAML text into a mapping.

    Raises:
      RuntimeConfigError: If the YAML is invalid or not a mapping.
    """

    try:
        payload = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise RuntimeConfigError(f"Invalid YAML in {source}: {exc}") from exc
    if not isinstance(payload, dict):
        raise RuntimeConfigError(f"{source} must contain a mapping at the top-level")
    return payload


def _load_runtime_from_path(path: Path) -> Tuple[RuntimeConfig, str]:
    """Read and validate the configuration stored at ``path``.

    Returns:
      The validated model and the checksum of the raw document.

    Raises:
      RuntimeConfigError: If the file cannot be read or fails validation.
    """

    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        raise RuntimeConfigError(f"Configuration file missing: {path}") from exc
    except OSError as exc:  # pragma: no cover - filesystem surface
        raise RuntimeConfigError(f"Unable to read configuration file {path}: {exc}") from exc

    payload = _parse_config_payload(raw.decode("utf-8"), path)
    try:
        config = RuntimeConfig.model_validate(payload)
    except _PydanticValidationError as exc:
        raise RuntimeConfigError(f"Invalid configuration {path}: {exc}") from exc
    return config, checksum(raw)


def load_runtime_config(
    path: Optional[Path | str] = None,
    *,
    reload: bool = False,
) -> RuntimeConfig:
    """Resolve, parse and cache the runtime configuration.

    What:
      Returns the validated :class:`RuntimeConfig` for this process.

    Why:
      Resolving a batch of conversations must not re-read the file for each
      one; tests and long-running workers use ``reload`` to pick up changes.

    How:
      Serves the cache unless ``reload`` is set or a different explicit path is
      requested, then walks the candidate paths. The first existing file wins.
      A missing required path raises; when no optional default exists either,
      an all-defaults configuration is cached.

    Args:
      path: Optional explicit location of the configuration document.
      reload: Bypass the cache when ``True``.

    Returns:
      The validated runtime configuration.

    Raises:
      RuntimeConfigError: If a required file is missing or any file is invalid.
    """

    global _RUNTIME_CACHE

    requested_path = Path(path).expanduser() if isinstance(path, (str, Path)) else None
    if not reload and _RUNTIME_CACHE is not None:
        cached_path, cached_config, _ = _RUNTIME_CACHE
        if requested_path is None or cached_path == requested_path:
            return cached_config

    for candidate, required in _candidate_paths(requested_path):
        if not candidate.exists():
            if required:
                raise RuntimeConfigError(f"Configuration file missing: {candidate}")
            continue
        config, digest = _load_runtime_from_path(candidate)
        _RUNTIME_CACHE = (candidate, config, digest)
        return config

    config = RuntimeConfig()
    _RUNTIME_CACHE = (None, config, None)
    return config


def get_runtime_config() -> RuntimeConfig:
    """Return the cached runtime configuration, loading it on demand."""

    if _RUNTIME_CACHE is None:
        return load_runtime_config()
    return _RUNTIME_CACHE[1]


def loaded_config_checksum() -> Optional[str]:
    """Return the checksum of the cached document, ``None`` for defaults."""

    if _RUNTIME_CACHE is None:
        return None
    return _RUNTIME_CACHE[2]


def reset_runtime_config() -> None:
    """Clear the runtime configuration cache."""

    global _RUNTIME_CACHE
    _RUNTIME_CACHE = None
