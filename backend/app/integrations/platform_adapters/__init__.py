from app.integrations.platform_adapters.base_adapter import (
    BasePlatformAdapter,
    ContainerCheck,
    ContainerStatus,
    ContainerTicket,
    MediaNotReadyError,
    PlatformIdentity,
    TokenGrant,
)
from app.integrations.platform_adapters.factory import (
    get_adapter_capabilities,
    get_platform_adapter,
    list_supported_platforms,
    resolve_platform,
)

__all__ = [
    "BasePlatformAdapter",
    "ContainerCheck",
    "ContainerStatus",
    "ContainerTicket",
    "MediaNotReadyError",
    "PlatformIdentity",
    "TokenGrant",
    "get_adapter_capabilities",
    "get_platform_adapter",
    "list_supported_platforms",
    "resolve_platform",
]
