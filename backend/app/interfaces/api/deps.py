import asyncio

import httpx
import jwt
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from redis import Redis
from sqlalchemy.orm import Session

from app.application.services.connection_store import ConnectionStore
from app.application.services.publish_orchestrator import ResumeScheduler, resume_publish_job_async
from app.core.errors import AuthenticationError
from app.core.security import decode_token
from app.infrastructure.cache.publish_job_lock import PublishJobLock
from app.infrastructure.cache.redis_client import get_redis_client
from app.infrastructure.db.session import get_db
from app.infrastructure.logging.context import set_user_id
from app.integrations.oauth_state import OAuthStateCodec

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


def get_current_user_id(token: str | None = Depends(oauth2_scheme)) -> str:
    if not token:
        raise AuthenticationError("Missing bearer token")
    try:
        claims = decode_token(token)
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid token") from exc

    if claims.get("type") != "access":
        raise AuthenticationError("Invalid token type")

    user_id = str(claims.get("sub") or "").strip()
    if not user_id:
        raise AuthenticationError("Invalid token payload")

    set_user_id(user_id)
    return user_id


def get_redis() -> Redis:
    return get_redis_client()


def get_state_codec(redis_client: Redis = Depends(get_redis)) -> OAuthStateCodec:
    return OAuthStateCodec(redis_client)


def get_connection_store(db: Session = Depends(get_db)) -> ConnectionStore:
    return ConnectionStore(db)


def get_publish_job_lock(redis_client: Redis = Depends(get_redis)) -> PublishJobLock:
    return PublishJobLock(redis_client)


def get_provider_transport() -> httpx.AsyncBaseTransport | None:
    return None


def get_resume_scheduler() -> ResumeScheduler | None:
    return resume_publish_job_async


def get_provider_sleep():
    return asyncio.sleep
