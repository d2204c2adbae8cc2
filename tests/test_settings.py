"""Tests for environment-driven settings."""

import pytest

from settings import PipelineSettings, log_level

ENV_VARS = [
    "GEMINI_API_KEY", "GEMINI_MODEL", "FETCH_CONCURRENCY", "FETCH_TIMEOUT_SECONDS",
    "BATCH_TIMEOUT_SECONDS", "REFINE_TIMEOUT_SECONDS", "MAX_INLINE_IMAGES", "MAX_RETURN_IMAGES",
    "CONFIDENT_MAX_DISTANCE", "CONFIDENT_MIN_COMPOSITE", "PACKSHOT_MAX_DISTANCE",
    "SEMI_MAX_DISTANCE", "SEMI_MIN_COMPOSITE", "PROMOTE_COUNT", "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    s = PipelineSettings.from_env()
    assert s.gemini_api_key is None
    assert not s.refinement_configured
    assert s.gemini_model == "gemini-2.5-flash"
    assert s.fetch_concurrency == 12
    assert s.batch_timeout_seconds == 90.0
    assert s.max_return_images == 24
    assert s.thresholds.confident_max_distance == 12
    assert s.thresholds.promote_count == 2
    assert log_level() == "INFO"


def test_overrides_and_invalid_values(clean_env):
    clean_env.setenv("GEMINI_API_KEY", "abc")
    clean_env.setenv("FETCH_CONCURRENCY", "4")
    clean_env.setenv("REFINE_TIMEOUT_SECONDS", "soon")
    clean_env.setenv("PROMOTE_COUNT", "0")
    clean_env.setenv("SEMI_MAX_DISTANCE", "30")
    clean_env.setenv("LOG_LEVEL", "debug")
    s = PipelineSettings.from_env()
    assert s.refinement_configured
    assert s.fetch_concurrency == 4
    assert s.refine_timeout_seconds == 45.0
    assert s.thresholds.promote_count == 2
    assert s.thresholds.semi_max_distance == 30
    assert log_level() == "DEBUG"


def test_contradicting_thresholds_raise(clean_env):
    clean_env.setenv("CONFIDENT_MAX_DISTANCE", "40")
    with pytest.raises(ValueError):
        PipelineSettings.from_env()
