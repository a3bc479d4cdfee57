import asyncio
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from sqlalchemy import update

from app.application.services.publish_job_service import InvalidTransitionError, PublishJobStore, StaleJobStateError
from app.application.services.publish_orchestrator import PublishOrchestrator, PublishStatus, ReadinessPolicy
from app.core.errors import OwnershipError, SocialIntegrationError, UnsupportedPlatformError, ValidationError
from app.domain.models.publish_job import PublishJob, PublishJobState
from app.domain.models.social_connection import Platform
from app.infrastructure.cache.publish_job_lock import PublishJobLock, publish_job_lock_key

TIKTOK_INIT_PATH = "/v2/post/publish/video/init/"
TIKTOK_TOKEN_PATH = "/v2/oauth/token/"
IG_USER_ID = "17841400000000001"
IG_MEDIA_PATH = f"/v21.0/{IG_USER_ID}/media"
IG_PUBLISH_PATH = f"/v21.0/{IG_USER_ID}/media_publish"
CONTAINER_ID = "18000000000000001"
CONTAINER_STATUS_PATH = f"/v21.0/{CONTAINER_ID}"
VIDEO_URL = "https://cdn.example.test/reel.mp4"

MEDIA_NOT_READY = httpx.Response(
    400,
    json={
        "error": {
            "message": "Media ID is not available",
            "type": "OAuthException",
            "code": 9007,
            "error_subcode": 2207027,
            "error_user_msg": "The media is not ready for publishing, please wait for a moment",
        }
    },
)


class RecordingJobStore(PublishJobStore):
    def __init__(self, db) -> None:
        super().__init__(db)
        self.transitions: list[tuple[str, str]] = []

    def transition(self, job, target, **values):
        self.transitions.append((job.state, target.value))
        return super().transition(job, target, **values)


class SleepRecorder:
    def __init__(self, on_sleep=None) -> None:
        self.delays: list[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.on_sleep is not None:
            self.on_sleep()


def _policy(**overrides) -> ReadinessPolicy:
    values = {
        "inline_attempts": 3,
        "max_polls": 10,
        "timeout_seconds": 600,
        "base_delay_seconds": 2.0,
        "max_delay_seconds": 60.0,
    }
    values.update(overrides)
    return ReadinessPolicy(**values)


@pytest.fixture
def jobs(db_session):
    return RecordingJobStore(db_session)


@pytest.fixture
def resumes():
    return []


@pytest.fixture
def build_orchestrator(db_session, connection_store, redis_client, jobs, provider_stub, resumes, configured_providers):
    def _build(*, policy: ReadinessPolicy | None = None, sleep=None, clock=None) -> PublishOrchestrator:
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        return PublishOrchestrator(
            db_session,
            store=connection_store,
            jobs=jobs,
            lock=PublishJobLock(redis_client),
            policy=policy or _policy(),
            transport=provider_stub.transport,
            sleep=sleep or SleepRecorder(),
            schedule_resume=lambda job_id, countdown: resumes.append((job_id, countdown)),
            **kwargs,
        )

    return _build


def _container_status(status_code: str) -> httpx.Response:
    return httpx.Response(200, json={"status_code": status_code, "status": status_code.title(), "id": CONTAINER_ID})


@pytest.mark.asyncio
async def test_tiktok_publish_goes_created_publishing_published(build_orchestrator, make_connection, provider_stub, jobs):
    connection = make_connection(platform=Platform.TIKTOK, platform_user_id="open-1", refresh_token="rft.1")
    provider_stub.add(
        "POST",
        TIKTOK_INIT_PATH,
        httpx.Response(200, json={"data": {"publish_id": "v_pub_file~v2.123"}, "error": {"code": "ok", "message": ""}}),
    )

    result = await build_orchestrator().publish(
        requesting_user_id="u1",
        connection_id=str(connection.id),
        video_url=VIDEO_URL,
        caption="Launch day",
        platform="tiktok",
    )

    assert result.status == PublishStatus.PUBLISHED
    assert result.published_id == "v_pub_file~v2.123"
    assert jobs.transitions == [("created", "publishing"), ("publishing", "published")]
    body = provider_stub.calls("POST", TIKTOK_INIT_PATH)[0]
    assert b'"source": "PULL_FROM_URL"' in body.content or b'"source":"PULL_FROM_URL"' in body.content
    assert body.headers["authorization"] == "Bearer provider-access-token"


@pytest.mark.asyncio
async def test_tiktok_rejection_fails_with_original_provider_error(build_orchestrator, make_connection, provider_stub):
    connection = make_connection(platform=Platform.TIKTOK, platform_user_id="open-1", refresh_token="rft.1")
    provider_error = {
        "code": "spam_risk_too_many_posts",
        "message": "The user has reached the daily post limit",
        "log_id": "202410190000",
    }
    provider_stub.add("POST", TIKTOK_INIT_PATH, httpx.Response(403, json={"data": {}, "error": provider_error}))

    result = await build_orchestrator().publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform=Platform.TIKTOK,
    )

    assert result.status == PublishStatus.FAILED
    assert result.state == PublishJobState.FAILED.value
    assert result.error["error_code"] == "provider_publish_error"
    assert result.error["details"]["provider_error"] == provider_error


@pytest.mark.asyncio
async def test_instagram_immediate_publish_when_media_is_ready(build_orchestrator, make_connection, provider_stub, jobs):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, httpx.Response(200, json={"id": "17900000000000009"}))

    result = await build_orchestrator().publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="Reel caption #launch",
        platform="instagram",
    )

    assert result.status == PublishStatus.PUBLISHED
    assert result.external_id == CONTAINER_ID
    assert result.published_id == "17900000000000009"
    assert [target for _, target in jobs.transitions] == [
        "container_pending",
        "container_ready",
        "publishing",
        "published",
    ]
    media_form = provider_stub.calls("POST", IG_MEDIA_PATH)[0].content.decode("utf-8")
    assert "media_type=REELS" in media_form


@pytest.mark.asyncio
async def test_instagram_not_ready_is_pending_then_resume_publishes(
    build_orchestrator, make_connection, provider_stub, resumes, jobs
):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY, httpx.Response(200, json={"id": "17900000000000010"}))
    provider_stub.add("GET", CONTAINER_STATUS_PATH, _container_status("FINISHED"))

    pending = await build_orchestrator(policy=_policy(inline_attempts=0)).publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )

    assert pending.status == PublishStatus.PENDING
    assert pending.state == PublishJobState.CONTAINER_PENDING.value
    assert pending.external_id == CONTAINER_ID
    assert pending.error is None
    assert resumes == [(pending.job_id, 2.0)]

    resumed = await build_orchestrator().resume(pending.job_id, "u1")

    assert resumed.status == PublishStatus.PUBLISHED
    assert resumed.published_id == "17900000000000010"
    assert jobs.transitions[-3:] == [
        ("container_pending", "container_ready"),
        ("container_ready", "publishing"),
        ("publishing", "published"),
    ]
    assert len(provider_stub.calls("POST", IG_MEDIA_PATH)) == 1


@pytest.mark.asyncio
async def test_worker_resume_needs_only_the_job_id(build_orchestrator, make_connection, provider_stub):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY, httpx.Response(200, json={"id": "17900000000000012"}))
    provider_stub.add("GET", CONTAINER_STATUS_PATH, _container_status("FINISHED"))
    pending = await build_orchestrator(policy=_policy(inline_attempts=0)).publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )

    resumed = await build_orchestrator().resume_job(pending.job_id)

    assert resumed.status == PublishStatus.PUBLISHED
    assert resumed.external_id == CONTAINER_ID


@pytest.mark.asyncio
async def test_inline_polling_backs_off_exponentially(build_orchestrator, make_connection, provider_stub, db_session):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY, httpx.Response(200, json={"id": "17900000000000011"}))
    provider_stub.add(
        "GET",
        CONTAINER_STATUS_PATH,
        _container_status("IN_PROGRESS"),
        _container_status("IN_PROGRESS"),
        _container_status("FINISHED"),
    )
    sleep = SleepRecorder()

    result = await build_orchestrator(sleep=sleep).publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )

    assert result.status == PublishStatus.PUBLISHED
    assert sleep.delays == [2.0, 4.0, 8.0]
    assert PublishJobStore(db_session).get(result.job_id).poll_attempts == 3


@pytest.mark.asyncio
async def test_inline_budget_spent_returns_pending_with_backoff_hint(
    build_orchestrator, make_connection, provider_stub, resumes
):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY)
    provider_stub.add("GET", CONTAINER_STATUS_PATH, _container_status("IN_PROGRESS"))

    result = await build_orchestrator(policy=_policy(inline_attempts=2)).publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )

    assert result.status == PublishStatus.PENDING
    assert result.retry_after_seconds == 8.0
    assert resumes == [(result.job_id, 8.0)]


@pytest.mark.asyncio
async def test_container_error_status_fails_job(build_orchestrator, make_connection, provider_stub):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY)
    provider_stub.add("GET", CONTAINER_STATUS_PATH, _container_status("ERROR"))

    result = await build_orchestrator().publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )

    assert result.status == PublishStatus.FAILED
    assert result.error["error_code"] == "provider_publish_error"
    assert result.external_id == CONTAINER_ID


@pytest.mark.asyncio
async def test_resume_after_deadline_fails_with_readiness_timeout(build_orchestrator, make_connection, provider_stub):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY)
    provider_stub.add("GET", CONTAINER_STATUS_PATH, _container_status("IN_PROGRESS"))

    pending = await build_orchestrator(policy=_policy(inline_attempts=0)).publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )
    late = build_orchestrator(clock=lambda: datetime.now(UTC) + timedelta(hours=1))

    result = await late.resume(pending.job_id, "u1")

    assert result.status == PublishStatus.FAILED
    assert result.error["error_code"] == "readiness_timeout"
    assert provider_stub.calls("GET", CONTAINER_STATUS_PATH) == []


@pytest.mark.asyncio
async def test_poll_budget_exhaustion_fails_with_readiness_timeout(build_orchestrator, make_connection, provider_stub):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY)
    provider_stub.add("GET", CONTAINER_STATUS_PATH, _container_status("IN_PROGRESS"))

    result = await build_orchestrator(policy=_policy(inline_attempts=5, max_polls=2)).publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )

    assert result.status == PublishStatus.FAILED
    assert result.error["error_code"] == "readiness_timeout"
    assert len(provider_stub.calls("GET", CONTAINER_STATUS_PATH)) == 2


@pytest.mark.asyncio
async def test_disconnect_during_polling_cancels_job(
    build_orchestrator, make_connection, provider_stub, connection_store
):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY)
    provider_stub.add("GET", CONTAINER_STATUS_PATH, _container_status("IN_PROGRESS"))
    sleep = SleepRecorder(on_sleep=lambda: connection_store.disconnect("u1", Platform.INSTAGRAM))

    result = await build_orchestrator(sleep=sleep).publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )

    assert result.status == PublishStatus.FAILED
    assert result.error["error_code"] == "publish_cancelled"
    assert provider_stub.calls("GET", CONTAINER_STATUS_PATH) == []


@pytest.mark.asyncio
async def test_network_error_while_container_pending_keeps_job_pending(
    build_orchestrator, make_connection, provider_stub, resumes
):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY)
    provider_stub.add("GET", CONTAINER_STATUS_PATH, httpx.Response(503, json={}))

    result = await build_orchestrator().publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )

    assert result.status == PublishStatus.PENDING
    assert result.state == PublishJobState.CONTAINER_PENDING.value
    assert len(resumes) == 1


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_before_publishing(
    build_orchestrator, make_connection, provider_stub, connection_store
):
    connection = make_connection(
        platform=Platform.TIKTOK,
        platform_user_id="open-1",
        access_token="act.old",
        refresh_token="rft.old",
        expires_in=timedelta(seconds=30),
    )
    provider_stub.add(
        "POST",
        TIKTOK_TOKEN_PATH,
        httpx.Response(200, json={"access_token": "act.new", "refresh_token": "rft.new", "expires_in": 86400}),
    )
    provider_stub.add(
        "POST",
        TIKTOK_INIT_PATH,
        httpx.Response(200, json={"data": {"publish_id": "pub-2"}, "error": {"code": "ok"}}),
    )

    result = await build_orchestrator().publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="tiktok",
    )

    assert result.status == PublishStatus.PUBLISHED
    assert [request.url.path for request in provider_stub.requests] == [TIKTOK_TOKEN_PATH, TIKTOK_INIT_PATH]
    assert provider_stub.requests[1].headers["authorization"] == "Bearer act.new"


@pytest.mark.asyncio
async def test_failed_refresh_fails_job_without_publishing(build_orchestrator, make_connection, provider_stub):
    connection = make_connection(
        platform=Platform.TIKTOK, platform_user_id="open-1", refresh_token=None, expires_in=timedelta(seconds=30)
    )

    result = await build_orchestrator().publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="tiktok",
    )

    assert result.status == PublishStatus.FAILED
    assert result.error["error_code"] == "reconnect_required"
    assert provider_stub.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"connection_id": None},
        {"video_url": ""},
        {"platform": None},
        {"connection_id": "not-a-uuid"},
        {"video_url": "ftp://cdn.example.test/reel.mp4"},
        {"caption": "x" * 2201},
    ],
)
async def test_invalid_requests_fail_before_any_network_call(
    build_orchestrator, make_connection, provider_stub, overrides
):
    connection = make_connection()
    request = {
        "connection_id": str(connection.id),
        "video_url": VIDEO_URL,
        "caption": "",
        "platform": "instagram",
    }
    request.update(overrides)

    with pytest.raises(ValidationError):
        await build_orchestrator().publish(requesting_user_id="u1", **request)
    assert provider_stub.requests == []


@pytest.mark.asyncio
async def test_platform_mismatch_is_validation_error(build_orchestrator, make_connection, provider_stub):
    connection = make_connection(platform=Platform.INSTAGRAM)

    with pytest.raises(ValidationError):
        await build_orchestrator().publish(
            requesting_user_id="u1",
            connection_id=connection.id,
            video_url=VIDEO_URL,
            caption="",
            platform="tiktok",
        )
    assert provider_stub.requests == []


@pytest.mark.asyncio
async def test_unknown_platform_is_rejected(build_orchestrator, make_connection):
    connection = make_connection()
    with pytest.raises(UnsupportedPlatformError):
        await build_orchestrator().publish(
            requesting_user_id="u1",
            connection_id=connection.id,
            video_url=VIDEO_URL,
            caption="",
            platform="youtube",
        )


@pytest.mark.asyncio
async def test_publishing_someone_elses_connection_is_forbidden(build_orchestrator, make_connection, provider_stub):
    connection = make_connection(user_id="owner")

    with pytest.raises(OwnershipError):
        await build_orchestrator().publish(
            requesting_user_id="intruder",
            connection_id=connection.id,
            video_url=VIDEO_URL,
            caption="",
            platform="instagram",
        )
    assert provider_stub.requests == []


@pytest.mark.asyncio
async def test_terminal_jobs_are_not_driven_again(build_orchestrator, make_connection, provider_stub):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, httpx.Response(200, json={"id": "17900000000000012"}))
    orchestrator = build_orchestrator()
    published = await orchestrator.publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )
    calls_before = len(provider_stub.requests)

    again = await orchestrator.resume(published.job_id, "u1")

    assert again.status == PublishStatus.PUBLISHED
    assert len(provider_stub.requests) == calls_before
    assert orchestrator.get_result(published.job_id, "u1").published_id == "17900000000000012"


def test_illegal_transition_is_rejected(db_session, make_connection):
    jobs = PublishJobStore(db_session)
    job = jobs.create(connection=make_connection(), video_url=VIDEO_URL, caption="", timeout_seconds=60)

    with pytest.raises(InvalidTransitionError):
        jobs.transition(job, PublishJobState.PUBLISHED)


def test_transition_out_of_a_finished_job_is_stale(db_session, make_connection):
    jobs = PublishJobStore(db_session)
    job = jobs.create(connection=make_connection(), video_url=VIDEO_URL, caption="", timeout_seconds=60)
    jobs.fail(job, SocialIntegrationError("Unexpected publish failure"))

    with pytest.raises(StaleJobStateError):
        jobs.transition(job, PublishJobState.PUBLISHING)


async def _pending_instagram_job(build_orchestrator, connection):
    return await build_orchestrator(policy=_policy(inline_attempts=0)).publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )


@pytest.mark.asyncio
async def test_overlapping_resumes_publish_once(build_orchestrator, make_connection, provider_stub, resumes):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY, httpx.Response(200, json={"id": "17900000000000020"}))
    provider_stub.add("GET", CONTAINER_STATUS_PATH, _container_status("FINISHED"))
    pending = await _pending_instagram_job(build_orchestrator, connection)

    async def _yield(_seconds: float) -> None:
        await asyncio.sleep(0)

    first, second = await asyncio.gather(
        build_orchestrator(sleep=_yield).resume(pending.job_id, "u1"),
        build_orchestrator().resume_job(pending.job_id),
    )

    assert first.status == PublishStatus.PUBLISHED
    assert first.published_id == "17900000000000020"
    assert second.status == PublishStatus.PENDING
    assert len(provider_stub.calls("POST", IG_PUBLISH_PATH)) == 2
    assert len(resumes) == 1


@pytest.mark.asyncio
async def test_locked_job_returns_current_result_without_provider_calls(
    build_orchestrator, make_connection, provider_stub, redis_client, resumes
):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY)
    provider_stub.add("GET", CONTAINER_STATUS_PATH, _container_status("FINISHED"))
    pending = await _pending_instagram_job(build_orchestrator, connection)
    calls_before = len(provider_stub.requests)
    redis_client.set(publish_job_lock_key(pending.job_id), "held-by-worker", ex=60)

    result = await build_orchestrator().resume(pending.job_id, "u1")

    assert result.status == PublishStatus.PENDING
    assert result.state == PublishJobState.CONTAINER_PENDING.value
    assert len(provider_stub.requests) == calls_before
    assert len(resumes) == 1
    assert redis_client.get(publish_job_lock_key(pending.job_id)) == "held-by-worker"


@pytest.mark.asyncio
async def test_lock_is_released_after_a_drive(build_orchestrator, make_connection, provider_stub, redis_client):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY)

    pending = await _pending_instagram_job(build_orchestrator, connection)

    assert redis_client.exists(publish_job_lock_key(pending.job_id)) == 0


@pytest.mark.asyncio
async def test_job_finished_elsewhere_while_waiting_is_returned_as_stored(
    build_orchestrator, make_connection, provider_stub, db_session
):
    connection = make_connection()
    provider_stub.add("POST", IG_MEDIA_PATH, httpx.Response(200, json={"id": CONTAINER_ID}))
    provider_stub.add("POST", IG_PUBLISH_PATH, MEDIA_NOT_READY)
    provider_stub.add("GET", CONTAINER_STATUS_PATH, _container_status("FINISHED"))

    def finish_elsewhere() -> None:
        db_session.execute(
            update(PublishJob)
            .where(PublishJob.state == PublishJobState.CONTAINER_PENDING.value)
            .values(state=PublishJobState.PUBLISHED.value, published_id="17900000000000077")
        )
        db_session.commit()

    result = await build_orchestrator(sleep=SleepRecorder(on_sleep=finish_elsewhere)).publish(
        requesting_user_id="u1",
        connection_id=connection.id,
        video_url=VIDEO_URL,
        caption="",
        platform="instagram",
    )

    assert result.status == PublishStatus.PUBLISHED
    assert result.published_id == "17900000000000077"
    assert len(provider_stub.calls("POST", IG_PUBLISH_PATH)) == 1
    assert provider_stub.calls("GET", CONTAINER_STATUS_PATH) == []


@pytest.mark.asyncio
async def test_disconnect_during_token_refresh_cancels_job(
    build_orchestrator, make_connection, provider_stub, connection_store
):
    connection = make_connection(
        platform=Platform.TIKTOK,
        platform_user_id="open-1",
        access_token="act.old",
        refresh_token="rft.old",
        expires_in=timedelta(seconds=30),
    )
    connection_id = connection.id

    def refresh_after_disconnect(request):
        connection_store.disconnect("u1", Platform.TIKTOK)
        return httpx.Response(200, json={"access_token": "act.new", "refresh_token": "rft.new", "expires_in": 86400})

    provider_stub.add("POST", TIKTOK_TOKEN_PATH, refresh_after_disconnect)

    result = await build_orchestrator().publish(
        requesting_user_id="u1",
        connection_id=connection_id,
        video_url=VIDEO_URL,
        caption="",
        platform="tiktok",
    )

    assert result.status == PublishStatus.FAILED
    assert result.error["error_code"] == "publish_cancelled"
    assert connection_store.exists(connection_id) is False
    assert provider_stub.calls("POST", TIKTOK_INIT_PATH) == []
