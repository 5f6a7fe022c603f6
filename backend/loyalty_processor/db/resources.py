"""Process-wide resource handles (database, Redis, queue, rate limiter)"""
import logging
from dataclasses import dataclass

import redis

from loyalty_processor.core.config import Settings
from loyalty_processor.db.redis import RateLimiter, create_redis_client
from loyalty_processor.db.session import Database
from loyalty_processor.db.task_queue import JobQueue

logger = logging.getLogger(__name__)


def build_job_queue(client: redis.Redis, settings: Settings) -> JobQueue:
    return JobQueue(
        client,
        settings.QUEUE_NAME,
        max_attempts=settings.MAX_RETRIES,
        backoff_delay=settings.JOB_BACKOFF_DELAY_SECONDS,
        backoff_multiplier=settings.JOB_BACKOFF_MULTIPLIER,
        backoff_max_delay=settings.JOB_BACKOFF_MAX_DELAY_SECONDS,
        backoff_jitter=settings.JOB_BACKOFF_JITTER,
        lease_seconds=settings.JOB_LEASE_SECONDS,
        max_stalled_count=settings.JOB_MAX_STALLED_COUNT,
        completed_retention_count=settings.COMPLETED_JOB_RETENTION_COUNT,
        completed_retention_seconds=settings.COMPLETED_JOB_RETENTION_SECONDS,
        failed_retention_seconds=settings.FAILED_JOB_RETENTION_SECONDS,
    )


def build_rate_limiter(client: redis.Redis, settings: Settings) -> RateLimiter:
    return RateLimiter(
        client,
        settings.QUEUE_NAME,
        max_requests=settings.WORKER_RATE_LIMIT_MAX,
        window_ms=settings.WORKER_RATE_LIMIT_WINDOW_MS,
    )


@dataclass
class Resources:
    settings: Settings
    database: Database
    redis_client: redis.Redis
    queue: JobQueue
    rate_limiter: RateLimiter

    @classmethod
    def create(cls, settings: Settings) -> "Resources":
        """Build every handle from settings (no connections are opened yet)"""
        client = create_redis_client(settings.REDIS_URL)
        return cls.from_clients(settings, Database(settings.DATABASE_URL), client)

    @classmethod
    def from_clients(cls, settings: Settings, database: Database, client: redis.Redis) -> "Resources":
        return cls(
            settings=settings,
            database=database,
            redis_client=client,
            queue=build_job_queue(client, settings),
            rate_limiter=build_rate_limiter(client, settings),
        )

    def close(self) -> None:
        try:
            self.redis_client.close()
        except Exception as e:
            logger.warning(f"Error closing Redis client: {e}")
        self.database.dispose()
