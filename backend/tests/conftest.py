import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-the-suite-only")
os.environ.setdefault("OAUTH_STATE_SECRET", "test-oauth-state-secret-for-the-suite")

import time
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.application.services.connection_store import ConnectionCredentials, ConnectionStore
from app.core.config import settings
from app.core.security import create_access_token
from app.domain.models.social_connection import Platform
from app.infrastructure.db.base import Base
from app.infrastructure.db.session import get_db
from app.interfaces.api.deps import get_provider_sleep, get_provider_transport, get_redis, get_resume_scheduler
from main import app


class InMemoryRedis:
    """Covers the handful of Redis commands the service issues."""

    def __init__(self) -> None:
        self._values: dict[str, tuple[str, float | None]] = {}

    def _alive(self, key: str) -> bool:
        entry = self._values.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._values[key]
            return False
        return True

    def set(self, key: str, value: str, ex: int | None = None, nx: bool = False):
        if nx and self._alive(key):
            return None
        expires_at = time.monotonic() + ex if ex else None
        self._values[key] = (str(value), expires_at)
        return True

    def get(self, key: str) -> str | None:
        return self._values[key][0] if self._alive(key) else None

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                del self._values[key]
                removed += 1
        return removed

    def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._alive(key))

    def eval(self, script: str, numkeys: int, key: str, token: str) -> int:
        # Only the lock release script is issued: delete the key if it still holds our token.
        if self.get(key) == token:
            return self.delete(key)
        return 0

    def ping(self) -> bool:
        return True


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def no_sleep():
    return _no_sleep


@pytest.fixture
def configured_providers(monkeypatch):
    monkeypatch.setattr(settings, "tiktok_client_key", "tt-client-key")
    monkeypatch.setattr(settings, "tiktok_client_secret", "tt-client-secret")
    monkeypatch.setattr(settings, "instagram_client_id", "ig-client-id")
    monkeypatch.setattr(settings, "instagram_client_secret", "ig-client-secret")
    monkeypatch.setattr(settings, "api_base_url", "https://api.example.test")
    monkeypatch.setattr(settings, "public_app_url", "https://app.example.test")
    monkeypatch.setattr(settings, "provider_retry_base_delay_seconds", 0.0)
    return settings


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def redis_client():
    return InMemoryRedis()


@pytest.fixture
def connection_store(db_session):
    return ConnectionStore(db_session)


@pytest.fixture
def make_connection(connection_store):
    def _make(
        *,
        user_id: str = "u1",
        platform: Platform = Platform.INSTAGRAM,
        platform_user_id: str = "17841400000000001",
        access_token: str = "provider-access-token",
        refresh_token: str | None = None,
        expires_in: timedelta | None = timedelta(days=30),
    ):
        return connection_store.upsert(
            ConnectionCredentials(
                user_id=user_id,
                platform=platform,
                platform_user_id=platform_user_id,
                platform_username=f"{platform.value}-user",
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=datetime.now(UTC) + expires_in if expires_in is not None else None,
            )
        )

    return _make


@pytest.fixture
def provider_stub():
    """Routes outgoing provider calls to per-test handlers by (method, path)."""

    class ProviderStub:
        def __init__(self) -> None:
            self.routes: dict[tuple[str, str], list] = {}
            self.requests: list = []

        def add(self, method: str, path: str, *responses) -> None:
            self.routes.setdefault((method.upper(), path), []).extend(responses)

        def handler(self, request):
            self.requests.append(request)
            queue = self.routes.get((request.method, request.url.path))
            if not queue:
                return httpx.Response(404, json={"error": {"message": f"unrouted {request.method} {request.url.path}"}})
            response = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(response, Exception):
                raise response
            if callable(response):
                return response(request)
            return httpx.Response(response.status_code, headers=response.headers, content=response.content)

        def calls(self, method: str, path: str) -> list:
            return [req for req in self.requests if req.method == method.upper() and req.url.path == path]

        @property
        def transport(self):
            return httpx.MockTransport(self.handler)

    return ProviderStub()


@pytest.fixture
def scheduled_resumes():
    return []


@pytest.fixture
def client(db_session, redis_client, provider_stub, scheduled_resumes, configured_providers):
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis_client
    app.dependency_overrides[get_provider_transport] = lambda: provider_stub.transport
    app.dependency_overrides[get_provider_sleep] = lambda: _no_sleep
    app.dependency_overrides[get_resume_scheduler] = lambda: (
        lambda job_id, countdown: scheduled_resumes.append((job_id, countdown))
    )
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user_id: str = "u1") -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers
