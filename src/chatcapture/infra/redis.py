"""Redis connection for the shared durable cache."""

import logging

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


async def connect_redis(uri: str) -> Redis | None:
    """Open a client at ``uri`` and ping it.

    Returns ``None`` instead of raising when the server does not answer,
    leaving the choice of fallback to the caller.
    """
    client = Redis.from_url(uri, decode_responses=True)
    try:
        await client.ping()
    except Exception as exc:
        logger.warning("Redis at %s did not answer ping: %s", uri, exc)
        await client.aclose()
        return None
    logger.info("Connected to Redis at %s", uri)
    return client
