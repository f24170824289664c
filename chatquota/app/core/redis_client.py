"""Redis client construction.

The client is created once by the application lifespan and handed to the
window store; nothing in the service reaches for a module level connection.
"""

import redis.asyncio as aioredis

from chatquota.app.core.config import Settings


def create_redis_client(settings: Settings, **kwargs) -> aioredis.Redis:
    """Create a pooled asyncio Redis client for the window store.

    Socket timeouts are aligned with the rate limiter's store timeout so a
    stalled connection surfaces as a timeout rather than a hung request.

    Args:
        settings: Application settings
        **kwargs: Overrides passed straight to ``redis.asyncio.from_url``

    Returns:
        A ``redis.asyncio.Redis`` instance that decodes responses to str.
    """
    options = {
        "decode_responses": True,
        "socket_timeout": settings.rate_limit_store_timeout,
        "socket_connect_timeout": settings.redis_connect_timeout,
        "max_connections": settings.redis_max_connections,
        "health_check_interval": 30,
    }
    options.update(kwargs)
    return aioredis.from_url(settings.redis_url, **options)
