import pytest
from pydantic import ValidationError

from track_orchestrator.services.concurrency_manager import config_loader
from track_orchestrator.services.orchestrator.config import OrchestratorConfig


def test_defaults_come_from_json():
    config = OrchestratorConfig.load()
    assert config.max_concurrent_units == 2
    assert config.max_concurrent_calls == 6
    assert config.max_retries == 3
    assert config.retry_delays_ms == [1000, 2000, 4000]
    assert config.circuit_breaker_threshold == 5
    assert config.rate_limit_per_minute == 120
    assert config.adaptive_throttling is True
    assert config.item_timeout_ms == 60000
    assert config.job_timeout_ms == 600000


def test_overrides_skip_none_values():
    config = OrchestratorConfig.load(max_retries=1, rate_limit_per_minute=None)
    assert config.max_retries == 1
    assert config.rate_limit_per_minute == 120


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        OrchestratorConfig(max_concurrent_units=0)
    with pytest.raises(ValidationError):
        OrchestratorConfig(retry_delays_ms=[100, -1])
    with pytest.raises(ValidationError):
        OrchestratorConfig(max_parallel=3)


def test_config_is_frozen_and_merged_returns_copy():
    config = OrchestratorConfig()
    with pytest.raises(ValidationError):
        config.max_retries = 5

    merged = config.merged(max_retries=5, item_timeout_ms=None)
    assert merged.max_retries == 5
    assert merged.item_timeout_ms == config.item_timeout_ms
    assert config.max_retries == 3


@pytest.mark.parametrize("attempt, expected", [(1, 0.0), (2, 1000.0), (3, 2000.0), (4, 4000.0), (7, 4000.0)])
def test_retry_delay_reuses_last_value(attempt, expected):
    assert OrchestratorConfig().retry_delay_ms(attempt) == expected


def test_no_delays_means_no_wait():
    assert OrchestratorConfig(retry_delays_ms=[]).retry_delay_ms(3) == 0.0


def test_get_section_returns_copy():
    section = config_loader.get_section("orchestrator")
    section["max_retries"] = 99
    assert config_loader.get_section("orchestrator")["max_retries"] == 3


def test_missing_section_and_file():
    assert config_loader.get_section("nope", default={"a": 1}) == {"a": 1}
    assert config_loader.load_config("does-not-exist", use_cache=False) == {}


def test_load_config_cache_can_be_bypassed():
    config_loader.reset_cache()
    cached = config_loader.load_config("orchestrator")
    assert config_loader.load_config("orchestrator") is cached

    fresh = config_loader.load_config("orchestrator", use_cache=False)
    assert fresh == cached
    assert fresh is not cached
    assert config_loader.load_config("orchestrator") is cached

    config_loader.reset_cache()
    uncached = config_loader.load_config("orchestrator", use_cache=False)
    assert config_loader.load_config("orchestrator") is not uncached
