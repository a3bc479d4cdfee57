import logging
from urllib.parse import quote_plus

import httpx
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.application.services.connection_store import (
    ConnectionCredentials,
    ConnectionStore,
    expires_at_from,
)
from app.application.services.publish_orchestrator import (
    PublishOrchestrator,
    PublishResult,
    PublishStatus,
    ResumeScheduler,
)
from app.core.config import settings
from app.core.errors import MalformedStateError, OwnershipError, SocialIntegrationError, status_code_for
from app.domain.models.social_connection import SocialConnection
from app.infrastructure.cache.publish_job_lock import PublishJobLock
from app.infrastructure.db.session import get_db
from app.infrastructure.observability.metrics import record_oauth_callback
from app.integrations.oauth_client import AuthorizationUrlBuilder, TokenExchangeClient
from app.integrations.oauth_state import OAuthStateCodec
from app.integrations.platform_adapters import resolve_platform
from app.interfaces.api.deps import (
    get_connection_store,
    get_current_user_id,
    get_publish_job_lock,
    get_provider_sleep,
    get_provider_transport,
    get_resume_scheduler,
    get_state_codec,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/social", tags=["social"])


class ConnectRequest(BaseModel):
    platform: str = Field(min_length=1, max_length=32)
    userId: str | None = Field(default=None, max_length=255)


class PublishRequestBody(BaseModel):
    connection_id: str | None = None
    video_url: str | None = None
    caption: str | None = None
    platform: str | None = None


class AutoPostUpdateRequest(BaseModel):
    auto_post_enabled: bool


def _serialize_connection(connection: SocialConnection) -> dict:
    return {
        "id": str(connection.id),
        "platform": connection.platform,
        "platform_username": connection.platform_username,
        "created_at": connection.created_at.isoformat() if connection.created_at else None,
        "expires_at": connection.expires_at_utc.isoformat() if connection.expires_at_utc else None,
        "auto_post_enabled": connection.auto_post_enabled,
    }


def build_settings_redirect(*, platform: str, success: bool, reason: str | None = None) -> str:
    base_url = f"{settings.public_app_url.rstrip('/')}{settings.settings_redirect_path}"
    if success:
        return f"{base_url}?connected={quote_plus(platform)}"
    reason_param = quote_plus((reason or "OAuth flow failed")[:220])
    return f"{base_url}?connected={quote_plus(platform + '_error')}&reason={reason_param}"


def _publish_response(request: Request, result: PublishResult) -> JSONResponse:
    data = result.to_dict()
    if result.status == PublishStatus.PUBLISHED:
        return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True, "data": data})
    if result.status == PublishStatus.PENDING:
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"success": False, "data": data})
    error = result.error or {}
    return JSONResponse(
        status_code=status_code_for(error.get("error_code")),
        content={
            "success": False,
            "error": error,
            "data": data,
            "trace_id": getattr(request.state, "request_id", None),
        },
    )


def _build_orchestrator(
    db: Session,
    store: ConnectionStore,
    lock: PublishJobLock,
    transport: httpx.AsyncBaseTransport | None,
    sleep,
    schedule_resume: ResumeScheduler | None,
) -> PublishOrchestrator:
    return PublishOrchestrator(
        db,
        store=store,
        lock=lock,
        transport=transport,
        sleep=sleep,
        schedule_resume=schedule_resume,
    )


@router.post("/connect", status_code=status.HTTP_200_OK)
def connect(
    payload: ConnectRequest,
    user_id: str = Depends(get_current_user_id),
    state_codec: OAuthStateCodec = Depends(get_state_codec),
) -> dict:
    if payload.userId is not None and payload.userId != user_id:
        raise OwnershipError("userId does not match the authenticated user")
    url = AuthorizationUrlBuilder(state_codec).build(payload.platform, user_id)
    return {"url": url}


@router.get("/callback")
async def oauth_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
    state_codec: OAuthStateCodec = Depends(get_state_codec),
    store: ConnectionStore = Depends(get_connection_store),
    transport: httpx.AsyncBaseTransport | None = Depends(get_provider_transport),
    sleep=Depends(get_provider_sleep),
):
    platform_label = "social"
    if state:
        try:
            platform_label = state_codec.decode(state).platform.value
        except MalformedStateError:
            pass

    if error:
        if state:
            try:
                state_codec.consume(state)
            except SocialIntegrationError as exc:
                logger.info("oauth_callback_state_not_consumed platform=%s error_code=%s", platform_label, exc.error_code)
        record_oauth_callback(platform=platform_label, outcome="provider_error")
        logger.info("oauth_callback_provider_error platform=%s error=%s", platform_label, error)
        return RedirectResponse(
            url=build_settings_redirect(platform=platform_label, success=False, reason=error_description or error),
            status_code=status.HTTP_302_FOUND,
        )

    if not code or not state:
        record_oauth_callback(platform=platform_label, outcome="missing_params")
        return RedirectResponse(
            url=build_settings_redirect(platform=platform_label, success=False, reason="Missing OAuth params"),
            status_code=status.HTTP_302_FOUND,
        )

    try:
        oauth_state = state_codec.consume(state)
        client = TokenExchangeClient(transport=transport, sleep=sleep)
        grant = await client.exchange(oauth_state.platform, code, settings.oauth_callback_url)
        identity = await client.resolve_identity(oauth_state.platform, grant.access_token)
        connection = store.upsert(
            ConnectionCredentials(
                user_id=oauth_state.user_id,
                platform=oauth_state.platform,
                platform_user_id=identity.platform_user_id,
                platform_username=identity.platform_username,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                expires_at=expires_at_from(grant.expires_in),
                scope=grant.scope,
            )
        )
    except SocialIntegrationError as exc:
        record_oauth_callback(platform=platform_label, outcome=exc.error_code)
        logger.warning(
            "oauth_callback_failed platform=%s error_code=%s message=%s",
            platform_label,
            exc.error_code,
            exc.message,
        )
        return RedirectResponse(
            url=build_settings_redirect(platform=platform_label, success=False, reason=exc.message),
            status_code=status.HTTP_302_FOUND,
        )

    record_oauth_callback(platform=connection.platform, outcome="connected")
    logger.info(
        "oauth_callback_connected platform=%s user_id=%s connection_id=%s",
        connection.platform,
        connection.user_id,
        connection.id,
    )
    return RedirectResponse(
        url=build_settings_redirect(platform=connection.platform, success=True),
        status_code=status.HTTP_302_FOUND,
    )


@router.post("/publish")
async def publish(
    payload: PublishRequestBody,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    store: ConnectionStore = Depends(get_connection_store),
    lock: PublishJobLock = Depends(get_publish_job_lock),
    transport: httpx.AsyncBaseTransport | None = Depends(get_provider_transport),
    sleep=Depends(get_provider_sleep),
    schedule_resume: ResumeScheduler | None = Depends(get_resume_scheduler),
) -> JSONResponse:
    orchestrator = _build_orchestrator(db, store, lock, transport, sleep, schedule_resume)
    result = await orchestrator.publish(
        requesting_user_id=user_id,
        connection_id=payload.connection_id,
        video_url=payload.video_url,
        caption=payload.caption,
        platform=payload.platform,
    )
    return _publish_response(request, result)


@router.get("/publish/{job_id}")
def get_publish_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    store: ConnectionStore = Depends(get_connection_store),
    lock: PublishJobLock = Depends(get_publish_job_lock),
) -> dict:
    result = PublishOrchestrator(db, store=store, lock=lock).get_result(job_id, user_id)
    return {"success": result.status == PublishStatus.PUBLISHED, "data": result.to_dict()}


@router.post("/publish/{job_id}/resume")
async def resume_publish(
    job_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    store: ConnectionStore = Depends(get_connection_store),
    lock: PublishJobLock = Depends(get_publish_job_lock),
    transport: httpx.AsyncBaseTransport | None = Depends(get_provider_transport),
    sleep=Depends(get_provider_sleep),
    schedule_resume: ResumeScheduler | None = Depends(get_resume_scheduler),
) -> JSONResponse:
    orchestrator = _build_orchestrator(db, store, lock, transport, sleep, schedule_resume)
    result = await orchestrator.resume(job_id, user_id)
    return _publish_response(request, result)


@router.get("/connections")
def list_connections(
    user_id: str = Depends(get_current_user_id),
    store: ConnectionStore = Depends(get_connection_store),
) -> dict:
    return {"items": [_serialize_connection(connection) for connection in store.list_for_user(user_id)]}


@router.delete("/connections/{platform}")
def disconnect(
    platform: str,
    user_id: str = Depends(get_current_user_id),
    store: ConnectionStore = Depends(get_connection_store),
) -> dict:
    return {"disconnected": store.disconnect(user_id, resolve_platform(platform))}


@router.patch("/connections/{platform}")
def update_auto_post(
    platform: str,
    payload: AutoPostUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    store: ConnectionStore = Depends(get_connection_store),
) -> dict:
    connection = store.set_auto_post(user_id, resolve_platform(platform), payload.auto_post_enabled)
    return _serialize_connection(connection)
