from arq.connections import ArqRedis, RedisSettings, create_pool

from studiosync.config import get_config


def get_redis_settings() -> RedisSettings:
    """Get Redis settings from configuration."""
    return RedisSettings.from_dsn(get_config().redis_url)


async def get_queue() -> ArqRedis:
    """Create a connection pool to the Redis queue."""
    return await create_pool(get_redis_settings())


async def enqueue_import_job(queue: ArqRedis, job_id: str) -> None:
    """Hand an import job to the background worker."""
    await queue.enqueue_job("process_import_job", job_id)
