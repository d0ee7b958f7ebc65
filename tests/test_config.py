import pytest
from pydantic import ValidationError

from mancy.app.core.config import DEFAULT_SYSTEM_PROMPT, Settings


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.bot_name == "Mancy"
    assert settings.rate_limit_capacity == 5
    assert settings.rate_limit_refill_interval == 10.0
    assert settings.max_concurrent_requests == 3
    assert settings.generation_max_attempts == 3
    assert settings.search_cache_ttl == 900.0
    assert settings.negative_cache_ttl == 300.0
    assert settings.response_cache_ttl == 300.0
    assert settings.max_response_chars == 400
    assert settings.groq_base_url == "https://api.groq.com/openai/v1"


def test_prompt_has_every_placeholder():
    for placeholder in ("{bot_name}", "{max_chars}", "{context_summary}", "{external_info}"):
        assert placeholder in DEFAULT_SYSTEM_PROMPT


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_CAPACITY", "8")
    monkeypatch.setenv("DURABLE_STORE_BACKEND", "redis")
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///./other.db")
    monkeypatch.setenv("PRECACHE_TERMS", '["ciencia", "arte"]')

    settings = Settings(_env_file=None)
    assert settings.rate_limit_capacity == 8
    assert settings.durable_store_backend == "redis"
    assert settings.database_url == "sqlite+aiosqlite:///./other.db"
    assert settings.precache_terms == ["ciencia", "arte"]


@pytest.mark.parametrize(
    "field, value",
    [
        ("rate_limit_capacity", 0),
        ("max_concurrent_requests", 0),
        ("generation_max_attempts", 0),
        ("rate_limit_refill_interval", 0),
        ("groq_timeout", -1),
        ("max_history_pairs", 0),
        ("max_response_chars", 0),
        ("negative_cache_ttl", 0),
        ("durable_store_backend", "mongo"),
    ],
)
def test_invalid_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: value})
