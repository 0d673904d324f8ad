"""Async Redis client for engine notifications."""

from redis.asyncio import ConnectionPool, Redis

_pools: dict[str, ConnectionPool] = {}


def get_redis_client(redis_url: str) -> Redis:
    """Get an async Redis client from the pool shared per URL."""
    pool = _pools.get(redis_url)
    if pool is None:
        pool = ConnectionPool.from_url(redis_url, max_connections=20, decode_responses=True)
        _pools[redis_url] = pool
    return Redis(connection_pool=pool)


async def close_pools() -> None:
    for pool in _pools.values():
        await pool.disconnect()
    _pools.clear()
