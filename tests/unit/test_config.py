import pytest

from outreach.config import (
    SERVICES,
    ConfigurationError,
    is_production,
    missing_env_vars,
    validate_environment,
    validate_timeouts,
)
from outreach.logging_config import mask_phone


def test_missing_env_vars_reports_all_of_them():
    assert missing_env_vars({}) == ["REDIS_URL", "DATABASE_URL", "VOICE_AGENT_URL", "VOICE_AGENT_API_KEY"]
    assert missing_env_vars({"REDIS_URL": "redis://r", "DATABASE_URL": ""}) == [
        "DATABASE_URL",
        "VOICE_AGENT_URL",
        "VOICE_AGENT_API_KEY",
    ]


def test_validate_environment():
    with pytest.raises(ConfigurationError, match="VOICE_AGENT_API_KEY"):
        validate_environment({"REDIS_URL": "r", "DATABASE_URL": "d", "VOICE_AGENT_URL": "v"})
    validate_environment({"REDIS_URL": "r", "DATABASE_URL": "d", "VOICE_AGENT_URL": "v", "VOICE_AGENT_API_KEY": "k"})


@pytest.mark.parametrize(
    "state, job, drain, visibility",
    [
        (60, 60, 330, 3600),
        (60, 300, 300, 3600),
        (0, 300, 330, 3600),
        (60, 300, 330, 300),
    ],
)
def test_timeouts_must_nest(state, job, drain, visibility):
    with pytest.raises(ConfigurationError):
        validate_timeouts(state, job, drain, visibility)


def test_default_timeouts_are_consistent():
    validate_timeouts()


def test_every_service_has_breaker_and_limiter_settings():
    for conf in SERVICES.values():
        assert conf["failure_threshold"] > 0
        assert conf["rate_limit"] > 0
        assert conf["limiter"] in ("token_bucket", "leaky_bucket")


def test_is_production():
    assert is_production("production")
    assert is_production("PROD")
    assert not is_production("test")


def test_mask_phone_keeps_last_two_digits():
    assert mask_phone("+15551234567") == "+*********67"
    assert mask_phone("") == ""
