import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass

from redis import Redis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.errors import MalformedStateError, NetworkError
from app.domain.models.social_connection import Platform
from app.infrastructure.observability.metrics import measure_redis

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class OAuthState:
    platform: Platform
    user_id: str
    nonce: str
    issued_at: int
    expires_at: int


def _urlsafe_b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _urlsafe_b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("ascii"))


def _build_nonce_key(platform: str, nonce: str) -> str:
    return f"oauth_state:{platform}:{nonce}"


class OAuthStateCodec:
    """Signed, time-boxed, single-use envelope for the OAuth ``state`` value.

    The wire form is ``<b64url(json payload)>.<b64url(hmac-sha256)>``. The
    payload carries the platform and user id plus a nonce and issue/expiry
    times. A nonce marker is written to Redis on encode and deleted on
    consume, so a captured callback URL cannot be replayed.
    """

    def __init__(
        self,
        redis_client: Redis,
        *,
        secret: str | None = None,
        ttl_seconds: int | None = None,
        clock=time.time,
    ) -> None:
        self.redis = redis_client
        self.secret = (secret or settings.oauth_state_signing_key).encode("utf-8")
        self.ttl_seconds = ttl_seconds or settings.oauth_state_ttl_seconds or STATE_TTL_SECONDS
        self._clock = clock

    def _sign(self, encoded_payload: str) -> str:
        signature = hmac.new(self.secret, encoded_payload.encode("utf-8"), hashlib.sha256).digest()
        return _urlsafe_b64encode(signature)

    def encode(self, platform: Platform | str, user_id: str) -> str:
        normalized_platform = Platform(platform)
        now = int(self._clock())
        nonce = secrets.token_urlsafe(24)
        payload = {
            "platform": normalized_platform.value,
            "user_id": str(user_id),
            "nonce": nonce,
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        raw_payload = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        encoded_payload = _urlsafe_b64encode(raw_payload)
        state = f"{encoded_payload}.{self._sign(encoded_payload)}"

        try:
            with measure_redis("oauth_state_store"):
                self.redis.set(_build_nonce_key(normalized_platform.value, nonce), "1", ex=self.ttl_seconds)
        except RedisError as exc:
            raise NetworkError("Unable to initialize OAuth state") from exc
        return state

    def decode(self, state: object) -> OAuthState:
        """Verify and unpack ``state``. Any defect raises MalformedStateError."""
        if not isinstance(state, str) or not state:
            raise MalformedStateError("OAuth state missing")
        try:
            encoded_payload, signature = state.split(".", 1)
        except ValueError as exc:
            raise MalformedStateError("Invalid OAuth state format") from exc

        try:
            expected_signature = self._sign(encoded_payload)
            signature_valid = hmac.compare_digest(signature.encode("utf-8"), expected_signature.encode("utf-8"))
        except (UnicodeError, TypeError) as exc:
            raise MalformedStateError("Invalid OAuth state format") from exc
        if not signature_valid:
            raise MalformedStateError("Invalid OAuth state signature")

        try:
            payload = json.loads(_urlsafe_b64decode(encoded_payload))
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise MalformedStateError("Invalid OAuth state payload") from exc
        if not isinstance(payload, dict):
            raise MalformedStateError("Invalid OAuth state payload")

        user_id = payload.get("user_id")
        nonce = payload.get("nonce")
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        if not isinstance(user_id, str) or not user_id:
            raise MalformedStateError("OAuth state user missing")
        if not isinstance(nonce, str) or not nonce:
            raise MalformedStateError("OAuth state nonce missing")
        if not isinstance(issued_at, int) or not isinstance(expires_at, int):
            raise MalformedStateError("OAuth state timestamps missing")
        try:
            platform = Platform(payload.get("platform"))
        except ValueError as exc:
            raise MalformedStateError("Invalid OAuth state platform") from exc

        if expires_at <= int(self._clock()):
            raise MalformedStateError("OAuth state expired")

        return OAuthState(
            platform=platform,
            user_id=user_id,
            nonce=nonce,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def consume(self, state: object) -> OAuthState:
        decoded = self.decode(state)
        nonce_key = _build_nonce_key(decoded.platform.value, decoded.nonce)
        try:
            with measure_redis("oauth_state_consume"):
                removed = self.redis.delete(nonce_key)
        except RedisError as exc:
            raise NetworkError("Unable to validate OAuth state") from exc
        if not removed:
            logger.warning("oauth_state_replay_rejected platform=%s", decoded.platform.value)
            raise MalformedStateError("OAuth state already used or expired")
        return decoded
