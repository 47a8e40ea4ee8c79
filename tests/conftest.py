"""Shared pytest configuration and fixtures."""

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from query_correlation.config import Settings, get_settings
from query_correlation.engine.models import QueryMetricRecord

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

RecordFactory = Callable[..., QueryMetricRecord]


@pytest.fixture(autouse=True)
def _no_dotenv() -> Generator[None]:
    """Block .env loading so a developer's local overrides never leak into tests.

    Sets Settings.model_config['env_file'] = None before each test and clears
    the get_settings cache on both sides.
    """
    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Generator[Settings]:
    """Provide deterministic settings with history enabled.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = Settings(
        cascade_window_seconds=5.0,
        max_parallel_lanes=4,
        correlation_max_pairs=0,
        analysis_workers=2,
        history_size=5,
    )
    with (
        patch("query_correlation.config.get_settings", return_value=fake_settings),
        patch("query_correlation.engine.analyzer.get_settings", return_value=fake_settings),
        patch("query_correlation.api.main.get_settings", return_value=fake_settings),
        patch("query_correlation.cli.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


@pytest.fixture
def make_record() -> RecordFactory:
    """Factory for QueryMetricRecord with sensible defaults.

    ``offset_ms`` is the last-execution time relative to a fixed base time.
    """

    def _make(
        query_hash: str,
        *,
        text: str = "",
        elapsed_ms: float = 100.0,
        offset_ms: float = 0.0,
        executions: int = 10,
    ) -> QueryMetricRecord:
        return QueryMetricRecord(
            query_hash=query_hash,
            query_text=text,
            execution_count=executions,
            avg_elapsed_time_ms=elapsed_ms,
            total_elapsed_time_ms=elapsed_ms * executions,
            avg_cpu_time_ms=elapsed_ms / 2,
            total_cpu_time_ms=elapsed_ms * executions / 2,
            last_execution_time=T0 + timedelta(milliseconds=offset_ms),
        )

    return _make
