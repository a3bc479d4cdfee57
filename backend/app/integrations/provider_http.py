import asyncio
import logging
from collections.abc import Awaitable, Callable
from time import perf_counter
from typing import Any

import httpx

from app.core.config import settings
from app.core.errors import NetworkError
from app.infrastructure.observability.metrics import record_provider_request

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def build_provider_client(transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.provider_timeout_seconds, transport=transport)


def compute_backoff_seconds(attempt: int, *, base_delay: float, max_delay: float | None = None) -> float:
    normalized_attempt = max(1, attempt)
    delay = base_delay * (2 ** (normalized_attempt - 1))
    if max_delay is not None:
        return min(delay, max_delay)
    return delay


def safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


async def send_with_retries(
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    platform: str,
    operation: str,
    max_attempts: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> httpx.Response:
    """Run ``send`` until it yields a non-transient response.

    Timeouts, transport failures, 429 and 5xx responses are retried with
    exponential backoff. Once the attempt budget is spent they surface as
    NetworkError. Any other response, including 4xx, is returned to the
    caller for provider-specific interpretation.
    """
    attempts = max(1, max_attempts or settings.provider_max_attempts)
    delay = settings.provider_retry_base_delay_seconds if base_delay is None else base_delay
    last_reason = "unknown"

    for attempt in range(1, attempts + 1):
        started_at = perf_counter()
        try:
            response = await send()
        except httpx.TimeoutException as exc:
            last_reason = f"timeout: {exc.__class__.__name__}"
            record_provider_request(
                platform=platform, operation=operation, outcome="timeout", duration_seconds=perf_counter() - started_at
            )
        except httpx.TransportError as exc:
            last_reason = f"transport: {exc.__class__.__name__}"
            record_provider_request(
                platform=platform, operation=operation, outcome="transport_error", duration_seconds=perf_counter() - started_at
            )
        else:
            duration = perf_counter() - started_at
            if response.status_code not in RETRYABLE_STATUS_CODES:
                record_provider_request(
                    platform=platform,
                    operation=operation,
                    outcome="ok" if response.status_code < 400 else "rejected",
                    duration_seconds=duration,
                )
                return response
            last_reason = f"status {response.status_code}"
            record_provider_request(
                platform=platform, operation=operation, outcome="unavailable", duration_seconds=duration
            )

        if attempt < attempts:
            wait_seconds = compute_backoff_seconds(attempt, base_delay=delay)
            logger.warning(
                "provider_request_retry platform=%s operation=%s attempt=%s reason=%s wait_seconds=%s",
                platform,
                operation,
                attempt,
                last_reason,
                wait_seconds,
            )
            await sleep(wait_seconds)

    logger.error(
        "provider_request_exhausted platform=%s operation=%s attempts=%s reason=%s",
        platform,
        operation,
        attempts,
        last_reason,
    )
    raise NetworkError(
        f"{platform} {operation} unavailable after {attempts} attempts ({last_reason})",
        details={"platform": platform, "operation": operation, "attempts": attempts, "reason": last_reason},
    )
