"""Pydantic models describing convstate configuration documents."""
from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ValidationError(ValueError):
    """Raised when configuration data does not satisfy the schema."""


DAY_THRESHOLD_FIELDS = (
    "lost_after_price_days",
    "resurrect_gap_days",
    "defer_default_days",
    "lost_after_price_rejection_days",
    "lost_after_off_platform_no_contact_days",
    "lost_after_indefinite_deferral_days",
    "due_soon_days",
    "followup_business_days",
    "inactive_timeout_days",
)


class InferenceConfig(BaseModel):
    """Numeric thresholds consulted by the conversation resolver.

    Day-based thresholds below 1 are raised to 1 rather than rejected so a
    mistyped tenant override degrades to the most aggressive sane value.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    sla_hours: float = 24
    lost_after_price_days: int = 60
    resurrect_gap_days: int = 30
    defer_default_days: int = 30
    lost_after_price_rejection_days: int = 14
    lost_after_off_platform_no_contact_days: int = 21
    lost_after_indefinite_deferral_days: int = 30
    due_soon_days: int = 3
    followup_business_days: int = 2
    inactive_timeout_days: int = 30

    @field_validator(*DAY_THRESHOLD_FIELDS)
    @classmethod
    def floor_days(cls, value: int) -> int:
        return max(1, value)

    @field_validator("sla_hours")
    @classmethod
    def floor_sla(cls, value: float) -> float:
        return max(0.0, value)

    def merged(self, overrides: Dict[str, Any]) -> "InferenceConfig":
        """Return a validated copy with ``overrides`` applied."""

        payload = self.model_dump()
        payload.update({key: value for key, value in overrides.items() if value is not None})
        return InferenceConfig.model_validate(payload)


class TenantOverrides(BaseModel):
    """Per-tenant threshold overrides; unset fields inherit the defaults."""

    model_config = ConfigDict(extra="forbid")

    sla_hours: Optional[float] = None
    lost_after_price_days: Optional[int] = None
    resurrect_gap_days: Optional[int] = None
    defer_default_days: Optional[int] = None
    lost_after_price_rejection_days: Optional[int] = None
    lost_after_off_platform_no_contact_days: Optional[int] = None
    lost_after_indefinite_deferral_days: Optional[int] = None
    due_soon_days: Optional[int] = None
    followup_business_days: Optional[int] = None
    inactive_timeout_days: Optional[int] = None


AI_MODES = ("off", "llm", "mock", "fixture")
DEFAULT_AI_MODEL = "@cf/meta/llama-3-8b-instruct"
MAX_INPUT_CHARS_DEFAULT = 1000
MAX_INPUT_CHARS_MIN = 200
MAX_INPUT_CHARS_MAX = 5000


class AiSettings(BaseModel):
    """Runtime knobs for the AI attempt runner."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: Literal["off", "llm", "mock", "fixture"] = "off"
    model: str = DEFAULT_AI_MODEL
    prompt_version: str = "v1"
    timeout_ms: int = 8000
    max_output_tokens: int = 128
    max_input_chars: int = MAX_INPUT_CHARS_DEFAULT
    daily_budget: int = 25
    max_calls_per_conversation: int = 1
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    fixtures_dir: str = "fixtures/ai"

    @field_validator("mode", mode="before")
    @classmethod
    def normalise_mode(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in AI_MODES else "off"

    @field_validator("model", mode="before")
    @classmethod
    def default_model(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_AI_MODEL
        return value.strip() if isinstance(value, str) else value

    @field_validator("prompt_version", mode="before")
    @classmethod
    def default_prompt_version(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "v1"
        return value.strip() if isinstance(value, str) else value

    @field_validator("timeout_ms")
    @classmethod
    def floor_timeout(cls, value: int) -> int:
        return max(1000, value)

    @field_validator("max_output_tokens")
    @classmethod
    def floor_output_tokens(cls, value: int) -> int:
        return max(32, value)

    @field_validator("max_input_chars", mode="before")
    @classmethod
    def clamp_input_chars(cls, value: Any) -> int:
        try:
            number = round(float(value))
        except (TypeError, ValueError):
            number = MAX_INPUT_CHARS_DEFAULT
        return min(MAX_INPUT_CHARS_MAX, max(MAX_INPUT_CHARS_MIN, number))

    @field_validator("daily_budget", "max_calls_per_conversation")
    @classmethod
    def floor_budget(cls, value: int) -> int:
        return max(0, value)

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


class RuntimeConfig(BaseModel):
    """Root configuration loaded from ``convstate.yaml``."""

    model_config = ConfigDict(extra="forbid")

    version: int = 1
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    ai: AiSettings = Field(default_factory=AiSettings)
    tenants: Dict[str, TenantOverrides] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def check_version(cls, value: int) -> int:
        if value != 1:
            raise ValidationError(f"unsupported config version {value}")
        return value

    def inference_for(self, tenant: Optional[str] = None) -> InferenceConfig:
        """Return the thresholds for ``tenant``, falling back to the defaults.

        Raises:
          ValidationError: If ``tenant`` is named but not configured.
        """

        if tenant is None:
            return self.inference
        overrides = self.tenants.get(tenant)
        if overrides is None:
            raise ValidationError(f"unknown tenant {tenant!r}")
        return self.inference.merged(overrides.model_dump(exclude_none=True))
