"""Engine settings.

All configuration is sourced from environment variables (prefix
``TRIBUTARY_``) and optionally `.env`; every value has a default so the
engine runs without any environment.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Typed environment-backed settings for a run."""

    model_config = SettingsConfigDict(
        env_prefix="TRIBUTARY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Script sandbox
    script_timeout_seconds: float = Field(default=3.0, gt=0)
    script_max_steps: int = Field(default=200_000, gt=0)
    script_max_depth: int = Field(default=100, gt=0, le=200)
    script_max_items: int = Field(default=100_000, gt=0)
    script_max_int_bits: int = Field(default=4096, ge=64)

    # Combine: "fail" rejects the whole combine when a source failed,
    # "null" degrades that field to null.
    combine_source_policy: Literal["fail", "null"] = "fail"

    # Scheduler
    run_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    max_workers: int = Field(default=4, ge=1)

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False
