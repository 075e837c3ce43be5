"""convstate configuration package.

What:
  Import surface for the runtime configuration loader and the pydantic models
  it validates against.

Why:
  Callers (CLI, workers embedding the engine) should reach thresholds through
  validated models only, never through raw YAML mappings.

Interfaces:
  - get_runtime_config / load_runtime_config / reset_runtime_config: resolve
    and cache ``convstate.yaml``.
  - InferenceConfig / AiSettings / TenantOverrides / RuntimeConfig: models.
  - RuntimeConfigError / ValidationError: failure types.
"""

from .loader import (
    CONFIG_ENV,
    ConfigLoadError,
    RuntimeConfigError,
    get_runtime_config,
    load_runtime_config,
    loaded_config_checksum,
    reset_runtime_config,
)
from .schema import AiSettings, InferenceConfig, RuntimeConfig, TenantOverrides, ValidationError

__all__ = [
    "CONFIG_ENV",
    "ConfigLoadError",
    "RuntimeConfigError",
    "get_runtime_config",
    "load_runtime_config",
    "loaded_config_checksum",
    "reset_runtime_config",
    "AiSettings",
    "InferenceConfig",
    "RuntimeConfig",
    "TenantOverrides",
    "ValidationError",
]
