import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, OwnershipError, SocialIntegrationError
from app.domain.models.publish_job import ALLOWED_TRANSITIONS, TERMINAL_STATES, PublishJob, PublishJobState
from app.domain.models.social_connection import SocialConnection

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    pass


class StaleJobStateError(RuntimeError):
    """Another driver moved the job first."""


class PublishJobStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def create(
        self,
        *,
        connection: SocialConnection,
        video_url: str,
        caption: str,
        timeout_seconds: int,
    ) -> PublishJob:
        job = PublishJob(
            connection_id=connection.id,
            user_id=connection.user_id,
            platform=connection.platform,
            video_url=video_url,
            caption=caption,
            state=PublishJobState.CREATED.value,
            error_details={},
            poll_attempts=0,
            deadline_at=datetime.now(UTC) + timedelta(seconds=timeout_seconds),
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        logger.info(
            "publish_job_created job_id=%s connection_id=%s platform=%s",
            job.id,
            job.connection_id,
            job.platform,
        )
        return job

    def get(self, job_id: object) -> PublishJob:
        try:
            parsed = job_id if isinstance(job_id, UUID) else UUID(str(job_id))
        except (TypeError, ValueError) as exc:
            raise NotFoundError("Publish job not found", details={"job_id": str(job_id)}) from exc
        job = self.db.execute(select(PublishJob).where(PublishJob.id == parsed)).scalar_one_or_none()
        if job is None:
            raise NotFoundError("Publish job not found", details={"job_id": str(job_id)})
        return job

    def get_for_user(self, job_id: object, requesting_user_id: str) -> PublishJob:
        job = self.get(job_id)
        if job.user_id != requesting_user_id:
            raise OwnershipError("Publish job does not belong to the requesting user")
        return job

    def transition(self, job: PublishJob, target: PublishJobState, **values) -> PublishJob:
        """Move ``job`` to ``target`` only if the stored state still matches ``job.state``."""
        current = PublishJobState(job.state)
        if current in TERMINAL_STATES:
            raise StaleJobStateError(f"Publish job {job.id} already finished as {current.value}")
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(f"Illegal publish job transition {current.value} -> {target.value}")
        result = self.db.execute(
            update(PublishJob)
            .where(PublishJob.id == job.id, PublishJob.state == current.value)
            .values(state=target.value, updated_at=datetime.now(UTC), **values)
        )
        self.db.commit()
        self.db.refresh(job)
        if not result.rowcount:
            logger.warning(
                "publish_job_transition_conflict job_id=%s expected=%s stored=%s to=%s",
                job.id,
                current.value,
                job.state,
                target.value,
            )
            raise StaleJobStateError(f"Publish job {job.id} is no longer {current.value}")
        logger.info(
            "publish_job_transition job_id=%s from=%s to=%s external_id=%s",
            job.id,
            current.value,
            target.value,
            job.external_id,
        )
        return job

    def reload(self, job: PublishJob) -> PublishJob:
        self.db.refresh(job)
        return job

    def record_external_id(self, job: PublishJob, external_id: str) -> PublishJob:
        job.external_id = external_id
        self.db.add(job)
        self.db.commit()
        return job

    def record_poll(self, job: PublishJob) -> PublishJob:
        job.poll_attempts = (job.poll_attempts or 0) + 1
        self.db.add(job)
        self.db.commit()
        return job

    def mark_published(self, job: PublishJob, *, published_id: str) -> PublishJob:
        return self.transition(
            job,
            PublishJobState.PUBLISHED,
            published_id=published_id,
            error_code=None,
            error_message=None,
            error_details={},
        )

    def fail(self, job: PublishJob, error: SocialIntegrationError) -> PublishJob:
        return self.transition(
            job,
            PublishJobState.FAILED,
            error_code=error.error_code,
            error_message=error.message,
            error_details=error.details,
        )
