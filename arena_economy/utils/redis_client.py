"""Redis client for the domain event stream."""

from redis.asyncio import ConnectionPool, Redis

from arena_economy.config import Settings
from arena_economy.services.events import EventRelay

# Global Redis connection pool and client instance
redis_pool: ConnectionPool | None = None
redis_client: Redis | None = None


async def init_redis(settings: Settings) -> Redis:
    """Initialize Redis connection with a connection pool."""
    global redis_pool, redis_client

    if not settings.redis_url:
        raise RuntimeError("redis_url is not configured")

    redis_pool = ConnectionPool.from_url(
        settings.redis_url,
        retry_on_timeout=True,
        encoding="utf-8",
        decode_responses=True,
    )
    redis_client = Redis(connection_pool=redis_pool)

    # Test connection
    await redis_client.ping()
    return redis_client


def get_redis() -> Redis | None:
    """Current client, or None before ``init_redis``."""
    return redis_client


async def close_redis() -> None:
    """Close Redis connection and pool."""
    global redis_pool, redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
    if redis_pool:
        await redis_pool.disconnect()
        redis_pool = None


async def create_event_relay(settings: Settings) -> EventRelay | None:
    """Event relay for the configured stream; None when Redis is not configured."""
    if not settings.redis_url:
        return None
    client = get_redis() or await init_redis(settings)
    return EventRelay(
        client,
        stream_key=settings.event_stream_key,
        max_len=settings.event_stream_max_len,
    )
