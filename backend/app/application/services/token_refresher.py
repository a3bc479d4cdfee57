import asyncio
import logging

import httpx

from app.application.services.connection_store import (
    ConnectionStore,
    decrypted_access_token,
    decrypted_refresh_token,
    expires_at_from,
    is_token_expiring,
)
from app.core.config import settings
from app.core.errors import NotFoundError, SocialIntegrationError
from app.domain.models.social_connection import SocialConnection
from app.infrastructure.observability.metrics import record_token_refresh
from app.integrations.platform_adapters import get_platform_adapter

logger = logging.getLogger(__name__)


class TokenRefresher:
    def __init__(
        self,
        store: ConnectionStore,
        *,
        margin_seconds: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.store = store
        self.margin_seconds = settings.token_refresh_margin_seconds if margin_seconds is None else margin_seconds
        self.transport = transport
        self._sleep = sleep

    async def ensure_fresh(self, connection: SocialConnection) -> SocialConnection:
        """Return ``connection`` with a token valid past the safety margin.

        Refreshed credentials are persisted before they are returned. If the
        connection is removed while the provider call is in flight the write
        is dropped and ``NotFoundError`` is raised.
        """
        if not is_token_expiring(connection, within_seconds=self.margin_seconds):
            return connection

        # Read everything up front; the row may be deleted during the provider call.
        connection_id = connection.id
        platform = connection.platform
        current_refresh_token = decrypted_refresh_token(connection) or None
        adapter = get_platform_adapter(platform, transport=self.transport, sleep=self._sleep)
        logger.info(
            "token_refresh_started connection_id=%s platform=%s expires_at=%s",
            connection_id,
            platform,
            connection.expires_at_utc.isoformat() if connection.expires_at_utc else None,
        )
        try:
            grant = await adapter.refresh_access_token(
                access_token=decrypted_access_token(connection),
                refresh_token=current_refresh_token,
                expires_at=connection.expires_at_utc,
            )
        except SocialIntegrationError as exc:
            record_token_refresh(platform=platform, outcome=exc.error_code)
            logger.warning(
                "token_refresh_failed connection_id=%s platform=%s error_code=%s",
                connection_id,
                platform,
                exc.error_code,
            )
            raise

        try:
            refreshed = self.store.update_tokens(
                connection_id,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token or current_refresh_token,
                expires_at=expires_at_from(grant.expires_in),
            )
        except NotFoundError:
            record_token_refresh(platform=platform, outcome="connection_removed")
            raise
        record_token_refresh(platform=platform, outcome="ok")
        logger.info("token_refresh_succeeded connection_id=%s platform=%s", connection_id, platform)
        return refreshed
