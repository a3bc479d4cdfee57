import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar

import httpx

from app.core.errors import ProviderPublishError
from app.domain.models.social_connection import Platform
from app.integrations.provider_http import build_provider_client, send_with_retries


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expires_in: int
    scope: str | None = None


@dataclass(frozen=True)
class PlatformIdentity:
    platform_user_id: str
    platform_username: str | None


@dataclass(frozen=True)
class ContainerTicket:
    external_id: str
    publishes_on_create: bool
    payload: dict[str, Any] = field(default_factory=dict)


class ContainerStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ContainerCheck:
    status: ContainerStatus
    detail: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


class MediaNotReadyError(ProviderPublishError):
    """Publish was attempted before the provider finished ingesting the media.

    Only the orchestrator sees this; it converts it into readiness polling.
    """

    error_code = "media_not_ready"


class BasePlatformAdapter(ABC):
    platform: ClassVar[Platform]

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.transport = transport
        self._sleep = sleep

    @classmethod
    def get_capabilities(cls) -> dict:
        return {"max_caption_length": 2200}

    @abstractmethod
    def _client_credentials(self) -> tuple[str, str]:
        raise NotImplementedError

    def ensure_configured(self) -> None:
        self._client_credentials()

    @abstractmethod
    def authorization_url(self, *, state: str, redirect_uri: str) -> str:
        raise NotImplementedError

    @abstractmethod
    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenGrant:
        raise NotImplementedError

    @abstractmethod
    async def fetch_identity(self, access_token: str) -> PlatformIdentity:
        raise NotImplementedError

    @abstractmethod
    async def refresh_access_token(
        self,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> TokenGrant:
        raise NotImplementedError

    @abstractmethod
    async def create_container(
        self,
        *,
        access_token: str,
        platform_user_id: str,
        video_url: str,
        caption: str,
    ) -> ContainerTicket:
        raise NotImplementedError

    async def check_container(self, *, access_token: str, external_id: str) -> ContainerCheck:
        return ContainerCheck(status=ContainerStatus.READY)

    async def publish_container(self, *, access_token: str, platform_user_id: str, external_id: str) -> str:
        return external_id

    async def _request(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async with build_provider_client(self.transport) as client:
            return await send_with_retries(
                lambda: client.request(method, url, **kwargs),
                platform=self.platform.value,
                operation=operation,
                sleep=self._sleep,
            )
