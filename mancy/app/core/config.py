from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT = """Eres {bot_name}, una chica gato seria, reservada y educada con conocimiento enciclopédico y literario.

# REGLAS
1. Mantén un tono formal pero accesible.
2. Sé concisa pero informativa (2-4 frases normalmente).
3. Si no sabes algo, admítelo honestamente.
4. Usa español neutro a menos que el usuario pida otro idioma.
5. Cuando uses información externa, menciona la fuente brevemente.
6. Nunca uses caracteres corruptos, símbolos rotos o texto ilegible.
7. Si la pregunta es ambigua, pide clarificación amablemente.

# FORMATO
- Comienza con mayúscula y termina con puntuación.
- Párrafos cortos y claros, sin abreviaturas de chat.
- Máximo {max_chars} caracteres.

# INFORMACIÓN CONTEXTUAL
{context_summary}

# INFORMACIÓN EXTERNA
{external_info}"""


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Bot identity
    bot_name: str = "Mancy"
    bot_version: str = "2.0.1"
    system_prompt_template: str = DEFAULT_SYSTEM_PROMPT

    # Completion service (Groq, OpenAI-compatible API)
    groq_api_key: str = ""
    groq_base_url: str = "https://api.groq.com/openai/v1"
    groq_model: str = "llama-3.1-70b-versatile"
    groq_fallback_model: str = "mixtral-8x7b-32768"
    groq_max_tokens: int = 400
    groq_temperature: float = 0.25
    groq_top_p: float = 0.9
    groq_frequency_penalty: float = 0.2
    groq_presence_penalty: float = 0.1
    groq_timeout: float = 45.0  # Per-call timeout in seconds
    groq_max_retries: int = 0  # SDK-level retries; the generator retries itself

    # Response generation
    generation_max_attempts: int = 3
    generation_temperature_step: float = 0.1
    retry_backoff_base: float = 1.0  # Seconds, multiplied by attempt number

    # Rate limiting (token bucket per principal + global sliding window)
    rate_limit_capacity: int = 5
    rate_limit_refill_amount: int = 5
    rate_limit_refill_interval: float = 10.0
    global_rate_limit: int = 25
    global_rate_window: float = 10.0
    max_concurrent_requests: int = 3
    rate_limit_max_buckets: int = 10000

    # Conversation
    max_history_pairs: int = 6
    conversation_max_age: float = 3600.0
    max_conversations_in_memory: int = 500
    history_summary_limit: int = 3
    max_response_chars: int = 400  # Reply length the system prompt asks for

    # Caches (seconds)
    search_cache_ttl: float = 900.0  # 15 minutes
    negative_cache_ttl: float = 300.0  # 5 minutes
    response_cache_ttl: float = 300.0  # 5 minutes
    cache_max_entries: int = 1000
    reply_tracking_ttl: float = 86400.0

    # Knowledge lookups
    wikipedia_language: str = "es"
    wikipedia_timeout: float = 8.0
    openlibrary_timeout: float = 10.0
    knowledge_content_max_chars: int = 300
    precache_enabled: bool = False
    precache_terms: list[str] = [
        "ciencia", "historia", "literatura", "matemáticas", "física",
        "química", "biología", "filosofía", "arte", "música",
        "Miguel de Cervantes", "Gabriel García Márquez", "William Shakespeare",
    ]

    # Shared HTTP client for knowledge lookups
    httpx_max_connections: int = 20
    httpx_max_keepalive_connections: int = 10
    httpx_keepalive_expiry: float = 30.0
    httpx_connect_timeout: float = 5.0

    # Maintenance
    cleanup_interval: float = 300.0  # 5 minutes

    # Durable store (optional L2 cache + interaction history)
    durable_store_backend: Literal["sql", "redis", "none"] = "sql"
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/mancy.db", validation_alias="DATABASE_URL"
    )
    redis_url: str = "redis://localhost:6379/0"

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator(
        "rate_limit_capacity",
        "rate_limit_refill_amount",
        "global_rate_limit",
        "max_concurrent_requests",
        "generation_max_attempts",
        "max_response_chars",
    )
    @classmethod
    def validate_limits_positive(cls, v: int) -> int:
        """Validate rate limit and attempt values are positive."""
        if v < 1:
            raise ValueError("Limit values must be at least 1")
        return v

    @field_validator(
        "rate_limit_refill_interval",
        "global_rate_window",
        "groq_timeout",
        "wikipedia_timeout",
        "openlibrary_timeout",
        "cleanup_interval",
    )
    @classmethod
    def validate_interval_positive(cls, v: float) -> float:
        """Validate intervals and timeouts are positive."""
        if v <= 0:
            raise ValueError("Intervals and timeouts must be positive")
        return v

    @field_validator("max_history_pairs")
    @classmethod
    def validate_history_pairs(cls, v: int) -> int:
        """Validate the conversation keeps at least one exchange."""
        if v < 1:
            raise ValueError("max_history_pairs must be at least 1")
        return v

    @field_validator("negative_cache_ttl")
    @classmethod
    def validate_negative_ttl(cls, v: float) -> float:
        """Validate negative cache TTL is positive."""
        if v <= 0:
            raise ValueError("negative_cache_ttl must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
