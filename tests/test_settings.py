"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from app.config import Settings


def test_defaults_match_upstream_limits() -> None:
    settings = Settings(_env_file=None)

    assert (settings.trakt_rate.max_requests, settings.trakt_rate.window_seconds) == (1000, 300.0)
    assert (settings.mal_rate.max_requests, settings.mal_rate.window_seconds) == (60, 60.0)
    assert (settings.ids_moe_rate.max_requests, settings.ids_moe_rate.window_seconds) == (50, 60.0)
    assert settings.mapping_cache_seconds == 7 * 24 * 3600
    assert settings.trakt_cache_seconds == settings.mal_cache_seconds == 3600
    assert settings.cross_reference_enabled is False


def test_blank_credentials_are_treated_as_missing() -> None:
    settings = Settings(_env_file=None, MAL_ACCESS_TOKEN="   ", IDS_MOE_API_KEY=" key ")

    assert settings.mal_access_token is None
    assert settings.ids_moe_api_key == "key"
    assert settings.cross_reference_enabled is True


def test_rate_limits_are_configurable() -> None:
    settings = Settings(_env_file=None, MAL_RATE_LIMIT=10, MAL_RATE_WINDOW=5)

    assert settings.mal_rate.max_requests == 10
    assert settings.mal_rate.window_seconds == 5.0


def test_match_weights_must_sum_to_one() -> None:
    with pytest.raises(ValueError, match="must sum to 1"):
        Settings(_env_file=None, MATCH_TITLE_WEIGHT=0.8, MATCH_YEAR_WEIGHT=0.3)


def test_alternative_threshold_cannot_exceed_primary() -> None:
    with pytest.raises(ValueError, match="must not exceed"):
        Settings(_env_file=None, MATCH_THRESHOLD=0.6, ALT_TITLE_THRESHOLD=0.7)
