import base64
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.errors import MalformedStateError, NetworkError
from app.domain.models.social_connection import Platform
from app.integrations.oauth_state import OAuthStateCodec


class FrozenClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenRedis:
    def set(self, *args, **kwargs):
        raise RedisConnectionError("redis down")

    def delete(self, *args, **kwargs):
        raise RedisConnectionError("redis down")


def _reencode(payload: dict) -> str:
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


@pytest.mark.parametrize("platform", [Platform.TIKTOK, Platform.INSTAGRAM])
def test_encode_then_decode_returns_original_pair(redis_client, platform):
    codec = OAuthStateCodec(redis_client, secret="s3cret")
    decoded = codec.decode(codec.encode(platform, "user-42"))

    assert decoded.platform == platform
    assert decoded.user_id == "user-42"
    assert decoded.expires_at - decoded.issued_at == codec.ttl_seconds


def test_encode_writes_nonce_marker_with_ttl(redis_client):
    codec = OAuthStateCodec(redis_client, secret="s3cret", ttl_seconds=120)
    decoded = codec.decode(codec.encode("tiktok", "u1"))

    assert redis_client.exists(f"oauth_state:tiktok:{decoded.nonce}") == 1


@pytest.mark.parametrize(
    "value",
    [
        None,
        "",
        42,
        "no-dot-at-all",
        "....",
        "%%%.%%%",
        "e30.AAAA",
        "not base64!.signature",
    ],
)
def test_decode_rejects_garbage_with_malformed_state(redis_client, value):
    codec = OAuthStateCodec(redis_client, secret="s3cret")
    with pytest.raises(MalformedStateError):
        codec.decode(value)


def test_decode_rejects_tampered_payload(redis_client):
    codec = OAuthStateCodec(redis_client, secret="s3cret")
    state = codec.encode(Platform.TIKTOK, "u1")
    payload_part, signature = state.split(".", 1)
    padded = payload_part + "=" * (-len(payload_part) % 4)
    payload = json.loads(base64.urlsafe_b64decode(padded))
    payload["user_id"] = "attacker"

    with pytest.raises(MalformedStateError):
        codec.decode(f"{_reencode(payload)}.{signature}")


def test_decode_rejects_state_signed_with_other_secret(redis_client):
    state = OAuthStateCodec(redis_client, secret="other").encode(Platform.TIKTOK, "u1")
    with pytest.raises(MalformedStateError):
        OAuthStateCodec(redis_client, secret="s3cret").decode(state)


def test_decode_rejects_expired_state(redis_client):
    clock = FrozenClock(1_700_000_000)
    codec = OAuthStateCodec(redis_client, secret="s3cret", ttl_seconds=60, clock=clock)
    state = codec.encode(Platform.INSTAGRAM, "u1")

    clock.now += 61
    with pytest.raises(MalformedStateError, match="expired"):
        codec.decode(state)


def test_decode_rejects_unknown_platform_even_when_signed(redis_client):
    codec = OAuthStateCodec(redis_client, secret="s3cret")
    payload = {"platform": "myspace", "user_id": "u1", "nonce": "n", "iat": 1, "exp": 4_000_000_000}
    encoded = _reencode(payload)

    with pytest.raises(MalformedStateError):
        codec.decode(f"{encoded}.{codec._sign(encoded)}")


def test_consume_is_single_use(redis_client):
    codec = OAuthStateCodec(redis_client, secret="s3cret")
    state = codec.encode(Platform.TIKTOK, "u1")

    assert codec.consume(state).user_id == "u1"
    with pytest.raises(MalformedStateError, match="already used"):
        codec.consume(state)


def test_redis_outage_surfaces_as_network_error():
    codec = OAuthStateCodec(BrokenRedis(), secret="s3cret")
    with pytest.raises(NetworkError):
        codec.encode(Platform.TIKTOK, "u1")
