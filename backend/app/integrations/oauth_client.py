import asyncio
import logging

import httpx

from app.core.config import settings
from app.integrations.oauth_state import OAuthStateCodec
from app.integrations.platform_adapters import (
    PlatformIdentity,
    TokenGrant,
    get_platform_adapter,
    resolve_platform,
)

logger = logging.getLogger(__name__)


class AuthorizationUrlBuilder:
    def __init__(self, state_codec: OAuthStateCodec, *, redirect_uri: str | None = None) -> None:
        self.state_codec = state_codec
        self.redirect_uri = redirect_uri or settings.oauth_callback_url

    def build(self, platform: object, user_id: str) -> str:
        resolved = resolve_platform(platform)
        adapter = get_platform_adapter(resolved)
        adapter.ensure_configured()
        state = self.state_codec.encode(resolved, user_id)
        url = adapter.authorization_url(state=state, redirect_uri=self.redirect_uri)
        logger.info("oauth_authorization_url_built platform=%s user_id=%s", resolved.value, user_id)
        return url


class TokenExchangeClient:
    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None, sleep=asyncio.sleep) -> None:
        self.transport = transport
        self._sleep = sleep

    async def exchange(self, platform: object, code: str, redirect_uri: str) -> TokenGrant:
        adapter = get_platform_adapter(platform, transport=self.transport, sleep=self._sleep)
        grant = await adapter.exchange_code(code=code, redirect_uri=redirect_uri)
        logger.info(
            "oauth_code_exchanged platform=%s expires_in=%s has_refresh_token=%s",
            adapter.platform.value,
            grant.expires_in,
            bool(grant.refresh_token),
        )
        return grant

    async def resolve_identity(self, platform: object, access_token: str) -> PlatformIdentity:
        adapter = get_platform_adapter(platform, transport=self.transport, sleep=self._sleep)
        return await adapter.fetch_identity(access_token)
