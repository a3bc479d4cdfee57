import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from app.application.services.connection_store import ConnectionStore, decrypted_access_token
from app.application.services.publish_job_service import PublishJobStore, StaleJobStateError
from app.application.services.token_refresher import TokenRefresher
from app.core.config import settings
from app.core.errors import (
    NotFoundError,
    ProviderPublishError,
    PublishCancelledError,
    ReadinessTimeoutError,
    SocialIntegrationError,
    ValidationError,
)
from app.domain.models.publish_job import TERMINAL_STATES, PublishJob, PublishJobState
from app.domain.models.social_connection import Platform, SocialConnection, as_utc
from app.infrastructure.cache.publish_job_lock import PublishJobLock
from app.infrastructure.cache.redis_client import get_redis_client
from app.infrastructure.observability.metrics import record_publish_result, record_readiness_poll
from app.integrations.platform_adapters import (
    BasePlatformAdapter,
    ContainerStatus,
    MediaNotReadyError,
    get_adapter_capabilities,
    get_platform_adapter,
    resolve_platform,
)
from app.integrations.provider_http import compute_backoff_seconds

logger = logging.getLogger(__name__)

ResumeScheduler = Callable[[UUID, float], None]


class PublishStatus(StrEnum):
    PUBLISHED = "published"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class ReadinessPolicy:
    inline_attempts: int
    max_polls: int
    timeout_seconds: int
    base_delay_seconds: float
    max_delay_seconds: float

    @classmethod
    def from_settings(cls) -> "ReadinessPolicy":
        return cls(
            inline_attempts=settings.instagram_inline_poll_attempts,
            max_polls=settings.instagram_readiness_max_polls,
            timeout_seconds=settings.instagram_readiness_timeout_seconds,
            base_delay_seconds=settings.instagram_poll_base_delay_seconds,
            max_delay_seconds=settings.instagram_poll_max_delay_seconds,
        )

    def delay_for(self, poll_number: int) -> float:
        return compute_backoff_seconds(
            poll_number,
            base_delay=self.base_delay_seconds,
            max_delay=self.max_delay_seconds,
        )


@dataclass(frozen=True)
class PublishRequest:
    connection_id: UUID
    platform: Platform
    video_url: str
    caption: str


@dataclass(frozen=True)
class PublishResult:
    status: PublishStatus
    job_id: UUID
    platform: str
    state: str
    external_id: str | None = None
    published_id: str | None = None
    error: dict[str, Any] | None = None
    retry_after_seconds: float | None = None

    @classmethod
    def from_job(cls, job: PublishJob, *, retry_after_seconds: float | None = None) -> "PublishResult":
        if job.state == PublishJobState.PUBLISHED.value:
            status = PublishStatus.PUBLISHED
        elif job.state == PublishJobState.FAILED.value:
            status = PublishStatus.FAILED
        else:
            status = PublishStatus.PENDING

        error = None
        if status != PublishStatus.PUBLISHED and job.error_code:
            error = {
                "error_code": job.error_code,
                "message": job.error_message or "",
                "details": job.error_details or {},
            }
        return cls(
            status=status,
            job_id=job.id,
            platform=job.platform,
            state=job.state,
            external_id=job.external_id,
            published_id=job.published_id,
            error=error,
            retry_after_seconds=retry_after_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "job_id": str(self.job_id),
            "platform": self.platform,
            "state": self.state,
            "external_id": self.external_id,
            "published_id": self.published_id,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.retry_after_seconds is not None:
            payload["retry_after_seconds"] = self.retry_after_seconds
        return payload


def validate_publish_request(
    *,
    connection_id: object,
    video_url: object,
    caption: object,
    platform: object,
) -> PublishRequest:
    missing = [
        name
        for name, value in (("connection_id", connection_id), ("video_url", video_url), ("platform", platform))
        if value is None or not str(value).strip()
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", details={"missing": missing})

    resolved = resolve_platform(platform)

    try:
        parsed_connection_id = connection_id if isinstance(connection_id, UUID) else UUID(str(connection_id).strip())
    except ValueError as exc:
        raise ValidationError("connection_id must be a UUID", details={"field": "connection_id"}) from exc

    url = str(video_url).strip()
    try:
        parsed_url = httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise ValidationError("video_url is not a valid URL", details={"field": "video_url"}) from exc
    if parsed_url.scheme not in {"http", "https"} or not parsed_url.host:
        raise ValidationError("video_url must be an absolute http(s) URL", details={"field": "video_url"})

    text = "" if caption is None else str(caption)
    max_length = get_adapter_capabilities(resolved)["max_caption_length"]
    if len(text) > max_length:
        raise ValidationError(
            f"caption exceeds {max_length} characters",
            details={"field": "caption", "max_length": max_length, "length": len(text)},
        )
    return PublishRequest(connection_id=parsed_connection_id, platform=resolved, video_url=url, caption=text)


def resume_publish_job_async(job_id: UUID, countdown: float | None = None) -> None:
    from workers.tasks import resume_publish_job  # local import to avoid import cycle

    resume_publish_job.apply_async(kwargs={"job_id": str(job_id)}, countdown=countdown)
    logger.info("publish_resume_enqueued job_id=%s countdown=%s", job_id, countdown if countdown is not None else 0)


class PublishOrchestrator:
    """Drives a publish job from creation to a terminal or pending state.

    Every drive starts by making sure the connection token is fresh. Instagram
    containers that are still ingesting are polled inline with exponential
    backoff; once the inline budget is spent the job is left pending and a
    background resume is scheduled. A job is driven by one caller at a time;
    a caller that finds it locked gets the job's current result.
    """

    def __init__(
        self,
        db: Session,
        *,
        store: ConnectionStore | None = None,
        jobs: PublishJobStore | None = None,
        refresher: TokenRefresher | None = None,
        lock: PublishJobLock | None = None,
        policy: ReadinessPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
        schedule_resume: ResumeScheduler | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store or ConnectionStore(db)
        self.jobs = jobs or PublishJobStore(db)
        self.transport = transport
        self._sleep = sleep
        self.refresher = refresher or TokenRefresher(self.store, transport=transport, sleep=sleep)
        self.lock = lock or PublishJobLock(get_redis_client())
        self.policy = policy or ReadinessPolicy.from_settings()
        self.schedule_resume = schedule_resume
        self._clock = clock

    async def publish(
        self,
        *,
        requesting_user_id: str,
        connection_id: object,
        video_url: object,
        caption: object,
        platform: object,
    ) -> PublishResult:
        request = validate_publish_request(
            connection_id=connection_id,
            video_url=video_url,
            caption=caption,
            platform=platform,
        )
        connection = self.store.get_for_use(request.connection_id, requesting_user_id)
        if connection.platform != request.platform.value:
            raise ValidationError(
                f"Connection is for {connection.platform}, not {request.platform.value}",
                details={"connection_platform": connection.platform, "requested_platform": request.platform.value},
            )

        job = self.jobs.create(
            connection=connection,
            video_url=request.video_url,
            caption=request.caption,
            timeout_seconds=self.policy.timeout_seconds,
        )
        return await self._drive(job)

    async def resume(self, job_id: object, requesting_user_id: str) -> PublishResult:
        job = self.jobs.get_for_user(job_id, requesting_user_id)
        return await self._drive(job)

    async def resume_job(self, job_id: object) -> PublishResult:
        return await self._drive(self.jobs.get(job_id))

    def get_result(self, job_id: object, requesting_user_id: str) -> PublishResult:
        return PublishResult.from_job(self.jobs.get_for_user(job_id, requesting_user_id))

    async def _drive(self, job: PublishJob) -> PublishResult:
        if job.state in TERMINAL_STATES:
            return PublishResult.from_job(job)

        lock_token = self.lock.acquire(job.id)
        if lock_token is None:
            logger.info("publish_job_drive_skipped_locked job_id=%s state=%s", job.id, job.state)
            return PublishResult.from_job(self.jobs.reload(job))
        try:
            # The previous holder may have finished between our read and the lock.
            self.jobs.reload(job)
            if job.state in TERMINAL_STATES:
                return PublishResult.from_job(job)
            return await self._drive_locked(job)
        except StaleJobStateError:
            return PublishResult.from_job(self.jobs.reload(job))
        finally:
            self.lock.release(job.id, lock_token)

    async def _drive_locked(self, job: PublishJob) -> PublishResult:
        try:
            connection = await self._fresh_connection(job)
            adapter = get_platform_adapter(job.platform, transport=self.transport, sleep=self._sleep)
            access_token = decrypted_access_token(connection)

            if job.state == PublishJobState.PUBLISHING.value:
                # The provider already accepted the post before this job was interrupted.
                self.jobs.mark_published(job, published_id=job.published_id or job.external_id or "")
                return self._finish(job)

            if job.state == PublishJobState.CREATED.value:
                ticket = await adapter.create_container(
                    access_token=access_token,
                    platform_user_id=connection.platform_user_id,
                    video_url=job.video_url,
                    caption=job.caption,
                )
                self.jobs.record_external_id(job, ticket.external_id)
                if ticket.publishes_on_create:
                    self.jobs.transition(job, PublishJobState.PUBLISHING)
                    self.jobs.mark_published(job, published_id=ticket.external_id)
                    return self._finish(job)

                self.jobs.transition(job, PublishJobState.CONTAINER_PENDING)
                if await self._attempt_publish(job, adapter, connection, access_token):
                    return self._finish(job)

            return await self._await_readiness(job, adapter, connection, access_token)
        except SocialIntegrationError as exc:
            return self._handle_failure(job, exc)
        except StaleJobStateError:
            raise
        except Exception:
            logger.exception("publish_job_unexpected_error job_id=%s platform=%s", job.id, job.platform)
            self.jobs.fail(job, SocialIntegrationError("Unexpected publish failure"))
            raise

    async def _fresh_connection(self, job: PublishJob) -> SocialConnection:
        try:
            connection = self.store.get_for_use(job.connection_id, job.user_id)
            return await self.refresher.ensure_fresh(connection)
        except NotFoundError as exc:
            raise PublishCancelledError(
                "Connection was removed before the publish completed",
                details={"connection_id": str(job.connection_id)},
            ) from exc

    async def _attempt_publish(
        self,
        job: PublishJob,
        adapter: BasePlatformAdapter,
        connection: SocialConnection,
        access_token: str,
    ) -> bool:
        try:
            published_id = await adapter.publish_container(
                access_token=access_token,
                platform_user_id=connection.platform_user_id,
                external_id=job.external_id or "",
            )
        except MediaNotReadyError as exc:
            logger.info(
                "publish_media_not_ready job_id=%s external_id=%s message=%s",
                job.id,
                job.external_id,
                exc.message,
            )
            return False

        if job.state == PublishJobState.CONTAINER_PENDING.value:
            self.jobs.transition(job, PublishJobState.CONTAINER_READY)
        self.jobs.transition(job, PublishJobState.PUBLISHING)
        self.jobs.mark_published(job, published_id=published_id)
        return True

    async def _await_readiness(
        self,
        job: PublishJob,
        adapter: BasePlatformAdapter,
        connection: SocialConnection,
        access_token: str,
    ) -> PublishResult:
        for _ in range(max(0, self.policy.inline_attempts)):
            self._ensure_within_budget(job)
            await self._sleep(self.policy.delay_for(job.poll_attempts + 1))

            # The lock can lapse during a long wait; stop if someone else finished the job.
            if self.jobs.reload(job).state in TERMINAL_STATES:
                raise StaleJobStateError(f"Publish job {job.id} finished while waiting for readiness")

            if not self.store.exists(job.connection_id):
                raise PublishCancelledError(
                    "Connection was removed while waiting for the media container",
                    details={"connection_id": str(job.connection_id), "external_id": job.external_id},
                )

            check = await adapter.check_container(access_token=access_token, external_id=job.external_id or "")
            self.jobs.record_poll(job)
            record_readiness_poll(platform=job.platform, status=check.status.value)
            logger.info(
                "publish_readiness_polled job_id=%s external_id=%s status=%s detail=%s poll=%s",
                job.id,
                job.external_id,
                check.status.value,
                check.detail,
                job.poll_attempts,
            )

            if check.status == ContainerStatus.FAILED:
                raise ProviderPublishError(
                    f"Media container failed processing: {check.detail or 'unknown'}",
                    details={"external_id": job.external_id, "provider_status": check.payload},
                )
            if check.status == ContainerStatus.READY:
                if job.state == PublishJobState.CONTAINER_PENDING.value:
                    self.jobs.transition(job, PublishJobState.CONTAINER_READY)
                if await self._attempt_publish(job, adapter, connection, access_token):
                    return self._finish(job)

        self._ensure_within_budget(job)
        return self._defer(job)

    def _deadline_passed(self, job: PublishJob) -> bool:
        deadline = as_utc(job.deadline_at)
        return deadline is not None and self._clock() >= deadline

    def _ensure_within_budget(self, job: PublishJob) -> None:
        if self._deadline_passed(job) or job.poll_attempts >= self.policy.max_polls:
            raise ReadinessTimeoutError(
                "Media container was not ready before the publish deadline",
                details={
                    "external_id": job.external_id,
                    "poll_attempts": job.poll_attempts,
                    "deadline_at": as_utc(job.deadline_at).isoformat() if job.deadline_at else None,
                },
            )

    def _defer(self, job: PublishJob, *, reason: str = "media_not_ready") -> PublishResult:
        retry_after = self.policy.delay_for(job.poll_attempts + 1)
        if self.schedule_resume is not None:
            self.schedule_resume(job.id, retry_after)
        record_publish_result(platform=job.platform, status=PublishStatus.PENDING.value)
        logger.info(
            "publish_job_pending job_id=%s external_id=%s reason=%s retry_after_seconds=%s",
            job.id,
            job.external_id,
            reason,
            retry_after,
        )
        return PublishResult.from_job(job, retry_after_seconds=retry_after)

    def _finish(self, job: PublishJob) -> PublishResult:
        record_publish_result(platform=job.platform, status=PublishStatus.PUBLISHED.value)
        logger.info(
            "publish_job_published job_id=%s platform=%s published_id=%s",
            job.id,
            job.platform,
            job.published_id,
        )
        return PublishResult.from_job(job)

    def _handle_failure(self, job: PublishJob, exc: SocialIntegrationError) -> PublishResult:
        if (
            exc.retryable
            and job.state in {PublishJobState.CONTAINER_PENDING.value, PublishJobState.CONTAINER_READY.value}
            and not self._deadline_passed(job)
        ):
            # The container still exists provider-side; a later resume can pick it up.
            return self._defer(job, reason=exc.error_code)

        self.jobs.fail(job, exc)
        record_publish_result(platform=job.platform, status=PublishStatus.FAILED.value)
        logger.warning(
            "publish_job_failed job_id=%s platform=%s error_code=%s message=%s",
            job.id,
            job.platform,
            exc.error_code,
            exc.message,
        )
        return PublishResult.from_job(job)
