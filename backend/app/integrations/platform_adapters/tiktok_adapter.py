import logging
from datetime import datetime

import httpx

from app.application.services.provider_error_mapper import map_provider_error
from app.core.config import settings
from app.core.errors import (
    MissingConfigurationError,
    ProviderIdentityError,
    ProviderPublishError,
    ProviderTokenError,
    RefreshFailedError,
    RefreshUnsupportedError,
)
from app.domain.models.social_connection import Platform
from app.integrations.platform_adapters.base_adapter import (
    BasePlatformAdapter,
    ContainerTicket,
    PlatformIdentity,
    TokenGrant,
)
from app.integrations.provider_http import safe_json

logger = logging.getLogger(__name__)

TIKTOK_AUTHORIZE_URL = "https://www.tiktok.com/v2/auth/authorize/"
TIKTOK_TOKEN_URL = "https://open.tiktokapis.com/v2/oauth/token/"
TIKTOK_USERINFO_URL = "https://open.tiktokapis.com/v2/user/info/"
TIKTOK_VIDEO_INIT_URL = "https://open.tiktokapis.com/v2/post/publish/video/init/"

DEFAULT_TOKEN_TTL_SECONDS = 86400


def _error_object(payload: dict) -> dict:
    error = payload.get("error")
    return error if isinstance(error, dict) else {}


def _is_ok(error: dict) -> bool:
    return error.get("code") in {"ok", None}


class TikTokAdapter(BasePlatformAdapter):
    platform = Platform.TIKTOK

    def _client_credentials(self) -> tuple[str, str]:
        if not settings.tiktok_client_key or not settings.tiktok_client_secret:
            raise MissingConfigurationError("TikTok OAuth is not configured")
        return settings.tiktok_client_key, settings.tiktok_client_secret

    def authorization_url(self, *, state: str, redirect_uri: str) -> str:
        client_key, _ = self._client_credentials()
        params = {
            "client_key": client_key,
            "scope": settings.tiktok_oauth_scope,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return str(httpx.URL(TIKTOK_AUTHORIZE_URL, params=params))

    def _token_grant(self, payload: dict, *, fallback_refresh_token: str | None = None) -> TokenGrant:
        return TokenGrant(
            access_token=str(payload.get("access_token") or ""),
            refresh_token=str(payload.get("refresh_token") or "") or fallback_refresh_token,
            expires_in=int(payload.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS),
            scope=payload.get("scope"),
        )

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenGrant:
        client_key, client_secret = self._client_credentials()
        data = {
            "client_key": client_key,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        response = await self._request("token_exchange", "POST", TIKTOK_TOKEN_URL, data=data, headers=headers)
        payload = safe_json(response)
        error = payload.get("error")
        if error or response.status_code >= 400 or not payload.get("access_token"):
            message = str(payload.get("error_description") or error or f"TikTok token exchange failed: {response.status_code}")
            raise ProviderTokenError(message, details={"provider_payload": payload, "http_status": response.status_code})
        return self._token_grant(payload)

    async def fetch_identity(self, access_token: str) -> PlatformIdentity:
        headers = {"Authorization": f"Bearer {access_token}"}
        params = {"fields": "open_id,display_name,avatar_url"}
        response = await self._request("identity", "GET", TIKTOK_USERINFO_URL, headers=headers, params=params)
        payload = safe_json(response)
        error = _error_object(payload)
        if response.status_code >= 400 or not _is_ok(error):
            message = str(error.get("message") or f"TikTok profile fetch failed: {response.status_code}")
            raise ProviderIdentityError(message, details={"provider_error": error, "http_status": response.status_code})
        user = (payload.get("data") or {}).get("user") or {}
        open_id = str(user.get("open_id") or "")
        if not open_id:
            raise ProviderIdentityError("TikTok user id missing", details={"provider_payload": payload})
        return PlatformIdentity(platform_user_id=open_id, platform_username=user.get("display_name"))

    async def refresh_access_token(
        self,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> TokenGrant:
        if not refresh_token:
            raise RefreshUnsupportedError("TikTok connection has no refresh token; reconnect required")
        client_key, client_secret = self._client_credentials()
        data = {
            "client_key": client_key,
            "client_secret": client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        response = await self._request("token_refresh", "POST", TIKTOK_TOKEN_URL, data=data, headers=headers)
        payload = safe_json(response)
        error = payload.get("error")
        if error or response.status_code >= 400 or not payload.get("access_token"):
            message = str(payload.get("error_description") or error or f"TikTok token refresh failed: {response.status_code}")
            raise RefreshFailedError(message, details={"provider_payload": payload, "http_status": response.status_code})
        return self._token_grant(payload, fallback_refresh_token=refresh_token)

    async def create_container(
        self,
        *,
        access_token: str,
        platform_user_id: str,
        video_url: str,
        caption: str,
    ) -> ContainerTicket:
        body = {
            "post_info": {
                "title": caption,
                "privacy_level": settings.tiktok_privacy_level,
                "disable_duet": False,
                "disable_comment": False,
                "disable_stitch": False,
                "video_cover_timestamp_ms": 1000,
            },
            "source_info": {
                "source": "PULL_FROM_URL",
                "video_url": video_url,
            },
        }
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json; charset=UTF-8",
        }
        response = await self._request("publish_init", "POST", TIKTOK_VIDEO_INIT_URL, json=body, headers=headers)
        payload = safe_json(response)
        error = _error_object(payload)
        if not _is_ok(error) or response.status_code >= 400:
            code = str(error.get("code") or response.status_code)
            message = str(error.get("message") or response.text or "unknown")
            normalized = map_provider_error(provider=self.platform.value, error_code=code, message=message)
            logger.warning(
                "tiktok_publish_init_rejected code=%s category=%s log_id=%s",
                code,
                normalized.category,
                error.get("log_id"),
            )
            raise ProviderPublishError(
                f"TikTok publish init rejected: {code} {message}".strip(),
                details={
                    "provider_error": error,
                    "http_status": response.status_code,
                    "normalized": normalized.as_details(),
                },
            )

        publish_id = str((payload.get("data") or {}).get("publish_id") or "")
        if not publish_id:
            raise ProviderPublishError(
                "TikTok publish init response missing publish_id", details={"provider_payload": payload}
            )
        return ContainerTicket(external_id=publish_id, publishes_on_create=True, payload=payload.get("data") or {})
