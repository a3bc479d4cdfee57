import asyncio
import logging
from datetime import UTC, datetime
from uuid import UUID

from app.application.services.publish_orchestrator import PublishOrchestrator, resume_publish_job_async
from app.core.config import settings
from app.core.errors import NotFoundError
from app.infrastructure.cache.publish_job_lock import PublishJobLock
from app.infrastructure.cache.redis_client import get_redis_client
from app.infrastructure.db.session import SessionLocal
from app.infrastructure.observability.metrics import measure_redis
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="workers.tasks.worker_heartbeat")
def worker_heartbeat() -> dict:
    redis_client = get_redis_client()
    now = datetime.now(UTC).isoformat()
    with measure_redis("worker_heartbeat_set"):
        redis_client.set(
            settings.worker_heartbeat_key,
            now,
            ex=max(15, settings.worker_heartbeat_ttl_seconds),
        )
    return {"heartbeat_at": now}


@celery_app.task(bind=True, name="workers.tasks.resume_publish_job", acks_late=True)
def resume_publish_job(self, job_id: str) -> dict:
    """Advance a pending publish job; the orchestrator reschedules it while it stays pending.

    The per-job lock lives in the orchestrator, so a resume that overlaps an
    API-driven resume returns the job's current result without calling the
    provider.
    """
    job_uuid = UUID(job_id)
    with SessionLocal() as db:
        orchestrator = PublishOrchestrator(
            db,
            lock=PublishJobLock(get_redis_client()),
            schedule_resume=resume_publish_job_async,
        )
        try:
            result = asyncio.run(orchestrator.resume_job(job_uuid))
        except NotFoundError:
            logger.warning("publish_job_resume_missing job_id=%s", job_id)
            return {"status": "missing"}

    logger.info(
        "publish_job_resume_finished job_id=%s status=%s state=%s attempt=%s",
        job_id,
        result.status.value,
        result.state,
        self.request.retries + 1,
    )
    return result.to_dict()
