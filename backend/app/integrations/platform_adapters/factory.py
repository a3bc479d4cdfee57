import asyncio
import logging

import httpx

from app.core.errors import UnsupportedPlatformError
from app.domain.models.social_connection import Platform
from app.integrations.platform_adapters.base_adapter import BasePlatformAdapter
from app.integrations.platform_adapters.instagram_adapter import InstagramAdapter
from app.integrations.platform_adapters.tiktok_adapter import TikTokAdapter

logger = logging.getLogger(__name__)

_ADAPTER_REGISTRY: dict[Platform, type[BasePlatformAdapter]] = {
    Platform.TIKTOK: TikTokAdapter,
    Platform.INSTAGRAM: InstagramAdapter,
}


def resolve_platform(value: object) -> Platform:
    if isinstance(value, Platform):
        return value
    normalized = str(value or "").strip().lower()
    try:
        return Platform(normalized)
    except ValueError as exc:
        raise UnsupportedPlatformError(
            f"Unsupported platform: {normalized or '<empty>'}",
            details={"supported": list_supported_platforms()},
        ) from exc


def list_supported_platforms() -> list[str]:
    return sorted(platform.value for platform in _ADAPTER_REGISTRY)


def get_adapter_capabilities(platform: object) -> dict:
    return _ADAPTER_REGISTRY[resolve_platform(platform)].get_capabilities()


def get_platform_adapter(
    platform: object,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep=asyncio.sleep,
) -> BasePlatformAdapter:
    resolved = resolve_platform(platform)
    adapter_cls = _ADAPTER_REGISTRY[resolved]
    logger.debug("platform_adapter_resolved platform=%s adapter=%s", resolved.value, adapter_cls.__name__)
    return adapter_cls(transport=transport, sleep=sleep)
