"""Core utilities for the rate limit service."""

from chatquota.app.core.config import Settings, settings
from chatquota.app.core.logging import get_logger, setup_logging
from chatquota.app.core.redis_client import create_redis_client
from chatquota.app.core.tokenizer import count_message_tokens, count_tokens

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
    "create_redis_client",
    "count_tokens",
    "count_message_tokens",
]
