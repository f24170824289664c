import json
import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_path_prefixes(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate comma or whitespace separated values.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    prefixes: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        part = part.strip("[]\"' ")
        if not part:
            continue
        if not part.startswith("/"):
            part = f"/{part}"
        if part not in prefixes:
            prefixes.append(part)
    return prefixes


def _parse_multipliers(raw: Any) -> dict[str, float]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"model_token_multipliers must be a JSON object: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError("model_token_multipliers must be a mapping of model id to multiplier")

    multipliers: dict[str, float] = {}
    for model_id, value in raw.items():
        multiplier = float(value)
        if multiplier <= 0:
            raise ValueError(f"Token multiplier for {model_id!r} must be positive")
        multipliers[str(model_id)] = multiplier
    return multipliers


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings. When disabled the single-process in-memory store is used.
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 50
    redis_connect_timeout: float = 2.0

    # Upper bound for every window store call, after which the limiter fails open
    rate_limit_store_timeout: float = 5.0

    # Token budgets (fixed window, per tier)
    rate_limit_anonymous_tokens: int = 25000
    rate_limit_authenticated_tokens: int = 100000
    rate_limit_pro_tokens: int = 500000
    rate_limit_window_seconds: int = 4 * 60 * 60

    # Generation requests for anonymous callers (sliding window)
    rate_limit_anonymous_requests: int = 20
    rate_limit_request_window_seconds: int = 2 * 60 * 60
    rate_limit_paths: Annotated[list[str], NoDecode] = ["/api/chat"]

    # Client identity
    client_ip_header: str = "X-Original-Chat-Forwarded-For"
    fallback_client_ip: str = "127.0.0.1"

    # Private deployments guarded by a shared access token skip rate limiting
    access_token: str = ""

    # Usage accounting
    tokenizer_encoding: str = "cl100k_base"
    model_token_multipliers: Annotated[dict[str, float], NoDecode] = Field(
        default_factory=dict
    )
    conversation_warning_percentage: int = 30

    @property
    def rate_limiting_disabled(self) -> bool:
        """Rate limiting is skipped for deployments protected by ACCESS_TOKEN."""
        return bool(self.access_token.strip())

    @field_validator("rate_limit_paths", mode="before")
    @classmethod
    def decode_rate_limit_paths(cls, v: Any) -> list[str]:
        return _parse_path_prefixes(v)

    @field_validator("model_token_multipliers", mode="before")
    @classmethod
    def decode_model_token_multipliers(cls, v: Any) -> dict[str, float]:
        return _parse_multipliers(v)

    @field_validator(
        "rate_limit_anonymous_tokens",
        "rate_limit_authenticated_tokens",
        "rate_limit_pro_tokens",
        "rate_limit_anonymous_requests",
    )
    @classmethod
    def validate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("rate_limit_window_seconds", "rate_limit_request_window_seconds")
    @classmethod
    def validate_window_positive(cls, v: int) -> int:
        """Validate window lengths are positive."""
        if v < 1:
            raise ValueError("Rate limit windows must be at least 1 second")
        return v

    @field_validator("rate_limit_store_timeout")
    @classmethod
    def validate_store_timeout(cls, v: float) -> float:
        """Validate store timeout is positive and bounded."""
        if v <= 0:
            raise ValueError("rate_limit_store_timeout must be positive")
        if v > 10:
            raise ValueError("rate_limit_store_timeout should not exceed 10 seconds")
        return v

    @field_validator("redis_max_connections")
    @classmethod
    def validate_pool_size_positive(cls, v: int) -> int:
        """Validate pool size is positive."""
        if v < 1:
            raise ValueError("redis_max_connections must be at least 1")
        return v

    @field_validator("conversation_warning_percentage")
    @classmethod
    def validate_percentage(cls, v: int) -> int:
        if not 0 < v <= 100:
            raise ValueError("conversation_warning_percentage must be within 1..100")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
