from functools import lru_cache
from typing import ClassVar

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables / .env file."""

    # Cascade detection
    cascade_window_seconds: float = Field(default=5.0, gt=0)
    cascade_lookahead: int = Field(default=5, ge=1)
    cascade_jitter_tolerance_ms: float = Field(default=100.0, ge=0)

    # Resource extraction (comma-separated table names; empty = accept any FROM/JOIN target)
    known_tables: str = "CUSTTABLE,INVENTTABLE,SALESTABLE,PURCHLINE,VENDTABLE"
    fallback_resource: str = "SHARED_TABLE"

    # Contention scoring
    contention_competitor_weight: float = Field(default=15.0, ge=0)

    # Correlation scoring (0 = no pair cap)
    correlation_max_pairs: int = Field(default=250_000, ge=0)
    correlation_execute_together_threshold: float = Field(default=0.5, ge=0, le=1)
    correlation_confidence_per_observation: float = Field(default=10.0, ge=0)

    # Scheduling
    max_parallel_lanes: int = Field(default=4, ge=1)
    shares_exclusion_threshold: float = Field(default=0.5, ge=0, le=1)
    bottleneck_count: int = Field(default=3, ge=0)

    # Impact / aggregate estimates
    default_improvement_ratio: float = Field(default=0.5, ge=0, le=1)
    savings_recovery_ratio: float = Field(default=0.4, ge=0, le=1)

    # Worker threads for the detector fan-out
    analysis_workers: int = Field(default=3, ge=1)

    # Recent-analysis ring buffer kept by the API (0 = disabled)
    history_size: int = Field(default=0, ge=0)

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
