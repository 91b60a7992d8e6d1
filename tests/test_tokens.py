"""Tests for the HS256 token codec."""

import base64
import json
from datetime import timedelta

import pytest

from teamsync.service.results import ErrorKind
from teamsync.service.tokens import INVALID_TOKEN, TokenClaims, TokenCodec

SECRET = "codec-test-secret-that-is-long-enough-000"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return TokenCodec(SECRET, issuer="team-sync-app", audience="team-sync-users", clock=clock)


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestSignAndVerify:
    def test_claims_survive(self, codec):
        claims = TokenClaims(identity_id="user-1", email="a@example.com", role="ADMIN")
        token = codec.sign(claims, timedelta(minutes=5))

        result = codec.verify(token)

        assert result.ok
        assert result.value == claims

    def test_payload_carries_issuer_audience_and_expiry(self, codec, clock):
        token = codec.sign(TokenClaims("user-1", "a@example.com"), timedelta(minutes=5))
        payload = _payload(token)
        assert payload["iss"] == "team-sync-app"
        assert payload["aud"] == "team-sync-users"
        assert payload["exp"] == int(clock.now) + 300
        assert payload["role"] is None

    def test_each_token_is_unique(self, codec):
        claims = TokenClaims("user-1", "a@example.com")
        assert codec.sign(claims, timedelta(minutes=5)) != codec.sign(claims, timedelta(minutes=5))

    def test_non_positive_ttl_rejected(self, codec):
        with pytest.raises(ValueError):
            codec.sign(TokenClaims("user-1", "a@example.com"), timedelta(0))


class TestRejections:
    def test_expired_token(self, codec, clock):
        token = codec.sign(TokenClaims("user-1", "a@example.com"), timedelta(minutes=5))
        clock.now += 301
        result = codec.verify(token)
        assert result.error is ErrorKind.UNAUTHORIZED
        assert result.message == INVALID_TOKEN

    def test_leeway_tolerates_small_skew(self, clock):
        codec = TokenCodec(
            SECRET,
            issuer="team-sync-app",
            audience="team-sync-users",
            leeway_seconds=30,
            clock=clock,
        )
        token = codec.sign(TokenClaims("user-1", "a@example.com"), timedelta(minutes=5))
        clock.now += 310
        assert codec.verify(token).ok

    def test_tampered_payload(self, codec):
        token = codec.sign(TokenClaims("user-1", "a@example.com"), timedelta(minutes=5))
        header, _, signature = token.split(".")
        forged = base64.urlsafe_b64encode(
            json.dumps({"sub": "user-2", "iss": "team-sync-app", "aud": "team-sync-users", "exp": 9e12}).encode()
        ).decode().rstrip("=")
        assert not codec.verify(f"{header}.{forged}.{signature}").ok

    def test_wrong_secret(self, codec, clock):
        other = TokenCodec(
            "a-completely-different-secret-value-123456",
            issuer="team-sync-app",
            audience="team-sync-users",
            clock=clock,
        )
        token = other.sign(TokenClaims("user-1", "a@example.com"), timedelta(minutes=5))
        assert not codec.verify(token).ok

    def test_wrong_audience(self, codec, clock):
        other = TokenCodec(SECRET, issuer="team-sync-app", audience="someone-else", clock=clock)
        token = other.sign(TokenClaims("user-1", "a@example.com"), timedelta(minutes=5))
        assert not codec.verify(token).ok

    def test_wrong_issuer(self, codec, clock):
        other = TokenCodec(SECRET, issuer="not-team-sync", audience="team-sync-users", clock=clock)
        token = other.sign(TokenClaims("user-1", "a@example.com"), timedelta(minutes=5))
        assert not codec.verify(token).ok

    def test_alg_none_rejected(self, codec):
        token = codec.sign(TokenClaims("user-1", "a@example.com"), timedelta(minutes=5))
        _, payload, _ = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        assert not codec.verify(f"{header}.{payload}.").ok

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***", "é.é.é"])
    def test_malformed(self, codec, garbage):
        result = codec.verify(garbage)
        assert result.error is ErrorKind.UNAUTHORIZED

    @pytest.mark.parametrize("segment", ["ééé", "\udc80"])
    def test_non_ascii_signature(self, codec, segment):
        token = codec.sign(TokenClaims("user-1", "a@example.com"), timedelta(minutes=5))
        header, payload, _ = token.split(".")
        result = codec.verify(f"{header}.{payload}.{segment}")
        assert result.error is ErrorKind.UNAUTHORIZED
