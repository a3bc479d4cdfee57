from dataclasses import asdict, dataclass
from typing import Any

META_MEDIA_NOT_READY_CODE = 9007
META_MEDIA_NOT_READY_SUBCODE = 2207027
META_EXPIRED_TOKEN_CODE = 190


@dataclass(frozen=True)
class NormalizedProviderError:
    provider: str
    error_code: str
    category: str
    retryable: bool
    suggested_action: str

    def as_details(self) -> dict[str, Any]:
        return asdict(self)


def parse_meta_error(payload: dict[str, Any]) -> str:
    error_obj = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error_obj, dict):
        return "Meta API error"
    message = str(error_obj.get("message") or "Meta API error")
    code = error_obj.get("code")
    subcode = error_obj.get("error_subcode")
    parts = [message]
    if code is not None:
        parts.append(f"code={code}")
    if subcode is not None:
        parts.append(f"subcode={subcode}")
    return " | ".join(parts)


def is_meta_media_not_ready(payload: dict[str, Any]) -> bool:
    error_obj = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error_obj, dict):
        return False
    if error_obj.get("code") == META_MEDIA_NOT_READY_CODE:
        return True
    if error_obj.get("error_subcode") == META_MEDIA_NOT_READY_SUBCODE:
        return True
    text = " ".join(
        str(error_obj.get(key) or "") for key in ("message", "error_user_title", "error_user_msg")
    ).lower()
    return "not ready" in text or "not available" in text


def map_provider_error(*, provider: str, error_code: str | int | None, message: str) -> NormalizedProviderError:
    normalized_provider = provider.strip().lower()
    code = str(error_code if error_code is not None else "unknown_error").strip().lower()
    text = (message or "").lower()

    if code in {str(META_MEDIA_NOT_READY_CODE), str(META_MEDIA_NOT_READY_SUBCODE)} or "not ready" in text:
        return NormalizedProviderError(
            provider=normalized_provider,
            error_code=code,
            category="media_not_ready",
            retryable=True,
            suggested_action="Wait for the media container to finish processing",
        )
    if (
        code == str(META_EXPIRED_TOKEN_CODE)
        or any(token in code for token in ("auth", "token", "invalid_grant", "scope"))
        or "unauthorized" in text
    ):
        return NormalizedProviderError(
            provider=normalized_provider,
            error_code=code,
            category="auth",
            retryable=False,
            suggested_action="Reconnect the account and retry",
        )
    if any(token in code for token in ("rate", "throttle", "too_many_requests", "spam")) or "rate limit" in text:
        return NormalizedProviderError(
            provider=normalized_provider,
            error_code=code,
            category="rate_limit",
            retryable=True,
            suggested_action="Wait for cooldown and retry",
        )
    if any(token in code for token in ("content", "policy", "rejected", "privacy", "video")):
        return NormalizedProviderError(
            provider=normalized_provider,
            error_code=code,
            category="content_rejected",
            retryable=False,
            suggested_action="Adjust the video or caption to platform policy and retry",
        )
    if any(token in code for token in ("server", "timeout", "unavailable", "internal")):
        return NormalizedProviderError(
            provider=normalized_provider,
            error_code=code,
            category="server_error",
            retryable=True,
            suggested_action="Retry later; provider instability detected",
        )

    return NormalizedProviderError(
        provider=normalized_provider,
        error_code=code,
        category="request_rejected",
        retryable=False,
        suggested_action="Inspect provider diagnostics before retrying",
    )
