import logging
from datetime import UTC, datetime

import httpx

from app.application.services.provider_error_mapper import (
    is_meta_media_not_ready,
    map_provider_error,
    parse_meta_error,
)
from app.core.config import settings
from app.core.errors import (
    MissingConfigurationError,
    NetworkError,
    ProviderIdentityError,
    ProviderPublishError,
    ProviderTokenError,
    RefreshFailedError,
    RefreshUnsupportedError,
)
from app.domain.models.social_connection import Platform, as_utc
from app.integrations.platform_adapters.base_adapter import (
    BasePlatformAdapter,
    ContainerCheck,
    ContainerStatus,
    ContainerTicket,
    MediaNotReadyError,
    PlatformIdentity,
    TokenGrant,
)
from app.integrations.provider_http import safe_json

logger = logging.getLogger(__name__)

SHORT_LIVED_TOKEN_TTL_SECONDS = 3600
LONG_LIVED_TOKEN_TTL_SECONDS = 5184000

CONTAINER_READY_STATUSES = frozenset({"FINISHED", "PUBLISHED"})
CONTAINER_FAILED_STATUSES = frozenset({"ERROR", "EXPIRED"})


def _meta_error_object(payload: dict) -> dict:
    error = payload.get("error")
    return error if isinstance(error, dict) else {}


class InstagramAdapter(BasePlatformAdapter):
    platform = Platform.INSTAGRAM

    @property
    def graph_base_url(self) -> str:
        return settings.meta_graph_api_base_url.rstrip("/")

    def _client_credentials(self) -> tuple[str, str]:
        if not settings.instagram_client_id or not settings.instagram_client_secret:
            raise MissingConfigurationError("Instagram OAuth is not configured")
        return settings.instagram_client_id, settings.instagram_client_secret

    def authorization_url(self, *, state: str, redirect_uri: str) -> str:
        client_id, _ = self._client_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": settings.instagram_oauth_scope,
            "response_type": "code",
            "state": state,
        }
        return str(httpx.URL(settings.meta_oauth_dialog_url, params=params))

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenGrant:
        client_id, client_secret = self._client_credentials()
        params = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
        }
        response = await self._request(
            "token_exchange", "GET", f"{self.graph_base_url}/oauth/access_token", params=params
        )
        payload = safe_json(response)
        error = _meta_error_object(payload)
        if error or response.status_code >= 400 or not payload.get("access_token"):
            message = str(error.get("message") or f"Instagram token exchange failed: {response.status_code}")
            raise ProviderTokenError(message, details={"provider_error": error, "http_status": response.status_code})

        short_lived = TokenGrant(
            access_token=str(payload["access_token"]),
            refresh_token=None,
            expires_in=int(payload.get("expires_in") or SHORT_LIVED_TOKEN_TTL_SECONDS),
        )
        return await self._upgrade_to_long_lived(short_lived)

    async def _upgrade_to_long_lived(self, grant: TokenGrant) -> TokenGrant:
        try:
            return await self._exchange_long_lived(grant.access_token)
        except (NetworkError, RefreshFailedError) as exc:
            # The short-lived token still works; the refresher upgrades it later.
            logger.warning("instagram_long_lived_exchange_skipped reason=%s", exc.message)
            return grant

    async def _exchange_long_lived(self, access_token: str) -> TokenGrant:
        client_id, client_secret = self._client_credentials()
        params = {
            "grant_type": "fb_exchange_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "fb_exchange_token": access_token,
        }
        response = await self._request(
            "token_refresh", "GET", f"{self.graph_base_url}/oauth/access_token", params=params
        )
        payload = safe_json(response)
        error = _meta_error_object(payload)
        if error or response.status_code >= 400 or not payload.get("access_token"):
            message = str(error.get("message") or f"Instagram token refresh failed: {response.status_code}")
            raise RefreshFailedError(message, details={"provider_error": error, "http_status": response.status_code})
        return TokenGrant(
            access_token=str(payload["access_token"]),
            refresh_token=None,
            expires_in=int(payload.get("expires_in") or LONG_LIVED_TOKEN_TTL_SECONDS),
        )

    async def fetch_identity(self, access_token: str) -> PlatformIdentity:
        headers = {"Authorization": f"Bearer {access_token}"}
        response = await self._request(
            "identity", "GET", f"{self.graph_base_url}/me", params={"fields": "id,name"}, headers=headers
        )
        payload = safe_json(response)
        error = _meta_error_object(payload)
        if error or response.status_code >= 400:
            raise ProviderIdentityError(
                parse_meta_error(payload), details={"provider_error": error, "http_status": response.status_code}
            )
        user_id = str(payload.get("id") or "")
        if not user_id:
            raise ProviderIdentityError("Instagram user id missing", details={"provider_payload": payload})
        return PlatformIdentity(platform_user_id=user_id, platform_username=payload.get("name"))

    async def refresh_access_token(
        self,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> TokenGrant:
        expiry = as_utc(expires_at)
        if expiry is not None and expiry <= datetime.now(UTC):
            raise RefreshUnsupportedError("Instagram connection expired; reconnect required")
        return await self._exchange_long_lived(access_token)

    def _publish_error(self, message: str, response: httpx.Response, payload: dict) -> ProviderPublishError:
        error = _meta_error_object(payload)
        normalized = map_provider_error(
            provider=self.platform.value,
            error_code=error.get("error_subcode") or error.get("code"),
            message=str(error.get("message") or ""),
        )
        return ProviderPublishError(
            f"{message}: {parse_meta_error(payload)}",
            details={
                "provider_error": error,
                "http_status": response.status_code,
                "normalized": normalized.as_details(),
            },
        )

    async def create_container(
        self,
        *,
        access_token: str,
        platform_user_id: str,
        video_url: str,
        caption: str,
    ) -> ContainerTicket:
        data = {
            "media_type": "REELS",
            "video_url": video_url,
            "caption": caption,
            "access_token": access_token,
        }
        response = await self._request(
            "container_create", "POST", f"{self.graph_base_url}/{platform_user_id}/media", data=data
        )
        payload = safe_json(response)
        if response.status_code >= 400 or _meta_error_object(payload):
            raise self._publish_error("Instagram container creation failed", response, payload)
        container_id = str(payload.get("id") or "")
        if not container_id:
            raise ProviderPublishError(
                "Instagram container response missing id", details={"provider_payload": payload}
            )
        return ContainerTicket(external_id=container_id, publishes_on_create=False, payload=payload)

    async def check_container(self, *, access_token: str, external_id: str) -> ContainerCheck:
        params = {"fields": "status_code,status", "access_token": access_token}
        response = await self._request("container_status", "GET", f"{self.graph_base_url}/{external_id}", params=params)
        payload = safe_json(response)
        if response.status_code >= 400 or _meta_error_object(payload):
            raise self._publish_error("Instagram container status failed", response, payload)

        status_code = str(payload.get("status_code") or "").upper()
        status_text = str(payload.get("status") or "")
        if status_code in CONTAINER_READY_STATUSES:
            return ContainerCheck(status=ContainerStatus.READY, detail=status_code, payload=payload)
        if status_code in CONTAINER_FAILED_STATUSES:
            return ContainerCheck(
                status=ContainerStatus.FAILED,
                detail=status_text or status_code,
                payload=payload,
            )
        return ContainerCheck(status=ContainerStatus.PENDING, detail=status_code or status_text, payload=payload)

    async def publish_container(self, *, access_token: str, platform_user_id: str, external_id: str) -> str:
        data = {"creation_id": external_id, "access_token": access_token}
        response = await self._request(
            "media_publish", "POST", f"{self.graph_base_url}/{platform_user_id}/media_publish", data=data
        )
        payload = safe_json(response)
        if response.status_code >= 400 or _meta_error_object(payload):
            if is_meta_media_not_ready(payload):
                raise MediaNotReadyError(
                    f"Instagram media not ready: {parse_meta_error(payload)}",
                    details={"provider_error": _meta_error_object(payload)},
                )
            raise self._publish_error("Instagram publish failed", response, payload)

        media_id = str(payload.get("id") or "")
        if not media_id:
            raise ProviderPublishError("Instagram publish response missing media id", details={"provider_payload": payload})
        return media_id
