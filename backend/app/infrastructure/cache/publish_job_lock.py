import logging
from uuid import UUID, uuid4

from redis import Redis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.errors import NetworkError
from app.infrastructure.observability.metrics import measure_redis

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def publish_job_lock_key(job_id: UUID) -> str:
    return f"lock:publish_job:{job_id}"


class PublishJobLock:
    """Single-driver lock per publish job, shared by API requests and workers."""

    def __init__(self, redis_client: Redis, *, ttl_seconds: int | None = None) -> None:
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or settings.publish_job_lock_ttl_seconds

    def acquire(self, job_id: UUID) -> str | None:
        token = str(uuid4())
        try:
            with measure_redis("publish_job_lock_acquire"):
                acquired = self.redis.set(publish_job_lock_key(job_id), token, nx=True, ex=self.ttl_seconds)
        except RedisError as exc:
            raise NetworkError("Unable to lock publish job") from exc
        if not acquired:
            return None
        return token

    def release(self, job_id: UUID, token: str) -> None:
        try:
            with measure_redis("publish_job_lock_release"):
                self.redis.eval(_RELEASE_SCRIPT, 1, publish_job_lock_key(job_id), token)
        except RedisError:
            # The lock expires on its own after ttl_seconds.
            logger.exception("publish_job_lock_release_failed job_id=%s", job_id)
