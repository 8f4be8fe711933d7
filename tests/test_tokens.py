"""Unit tests for access/refresh token minting and rotation."""

import asyncio
import base64
import json

import pytest

from tasksync.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    TokenExpiredError,
)
from tasksync.service.tokens import TokenService, refresh_key
from tasksync.storage.memory_cache import MemoryCache


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def tokens(cache, settings, clock):
    return TokenService(cache, settings, clock=clock)


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssuePair:
    async def test_pair_contains_distinct_tokens(self, tokens):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        assert pair["access_token"] != pair["refresh_token"]
        assert pair["token_type"] == "bearer"
        assert pair["expires_at"] < pair["refresh_expires_at"]

    async def test_claims_carry_identity(self, tokens, settings):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        claims = _payload(pair["access_token"])
        assert claims["sub"] == "u1"
        assert claims["id"] == "u1"
        assert claims["email"] == "u1@x.com"
        assert claims["token_type"] == "access"
        assert claims["iss"] == settings.jwt_issuer
        assert claims["aud"] == settings.jwt_audience
        assert claims["exp"] - claims["iat"] == settings.access_token_ttl_minutes * 60
        assert _payload(pair["refresh_token"])["token_type"] == "refresh"

    async def test_refresh_token_is_recorded(self, tokens, cache):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        assert await cache.get(refresh_key("u1")) == pair["refresh_token"]

    async def test_new_pair_replaces_recorded_refresh_token(self, tokens):
        first = await tokens.issue_pair("u1", "u1@x.com")
        await tokens.issue_pair("u1", "u1@x.com")
        with pytest.raises(AuthenticationError):
            await tokens.rotate("u1", first["refresh_token"])


class TestVerification:
    async def test_access_token_verifies(self, tokens):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        claims = tokens.verify_access(pair["access_token"])
        assert claims.user_id == "u1"
        assert claims.email == "u1@x.com"

    async def test_refresh_token_is_not_an_access_token(self, tokens):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        with pytest.raises(InvalidTokenError):
            tokens.verify_access(pair["refresh_token"])
        with pytest.raises(InvalidTokenError):
            tokens.decode_refresh(pair["access_token"])

    async def test_tampered_token_is_rejected(self, tokens):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        header, payload, sig = pair["access_token"].split(".")
        forged = dict(_payload(pair["access_token"]), sub="u2")
        forged_segment = base64.urlsafe_b64encode(json.dumps(forged).encode()).decode().rstrip("=")
        with pytest.raises(InvalidTokenError):
            tokens.verify_access(f"{header}.{forged_segment}.{sig}")

    async def test_foreign_secret_is_rejected(self, tokens, settings, cache):
        other_settings = settings.model_copy(
            update={"jwt_secret": "Another-Access-Secret_used-elsewhere-000000000"}
        )
        other = TokenService(cache, other_settings)
        pair = await other.issue_pair("u1", "u1@x.com")
        with pytest.raises(InvalidTokenError):
            tokens.verify_access(pair["access_token"])

    def test_garbage_is_rejected(self, tokens):
        for bad in ("", "abc", "a.b", "a.b.c.d", "eyJhbGciOiJub25lIn0.e30."):
            with pytest.raises(InvalidTokenError):
                tokens.verify_access(bad)

    async def test_non_ascii_segments_are_rejected(self, tokens):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        header, payload, _sig = pair["access_token"].split(".")
        for bad in (f"{header}.e30.\u00e9\u00e9", f"{header}.{payload}.\u00e9", f"\u00e9.{payload}.abc"):
            with pytest.raises(InvalidTokenError):
                tokens.verify_access(bad)
            with pytest.raises(InvalidTokenError):
                tokens.decode_refresh(bad)
        with pytest.raises(AuthenticationError):
            await tokens.rotate("u1", f"{header}.e30.\u00e9")

    async def test_expired_access_token(self, tokens, clock, settings):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        clock.advance(settings.access_token_ttl_minutes * 60 + settings.token_clock_skew_seconds + 1)
        with pytest.raises(TokenExpiredError) as exc_info:
            tokens.verify_access(pair["access_token"])
        assert exc_info.value.error_code == "session_expired"

    async def test_clock_skew_leeway(self, tokens, clock, settings):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        clock.advance(settings.access_token_ttl_minutes * 60 + settings.token_clock_skew_seconds - 5)
        assert tokens.verify_access(pair["access_token"]).user_id == "u1"


class TestRotation:
    async def test_rotate_then_replay_fails(self, tokens):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        rotated = await tokens.rotate("u1", pair["refresh_token"])
        assert rotated["refresh_token"] != pair["refresh_token"]
        assert tokens.verify_access(rotated["access_token"]).user_id == "u1"

        with pytest.raises(AuthenticationError):
            await tokens.rotate("u1", pair["refresh_token"])
        # The newest token is still good
        again = await tokens.rotate("u1", rotated["refresh_token"])
        assert again["refresh_token"] != rotated["refresh_token"]

    async def test_rotate_rejects_other_users_token(self, tokens):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        await tokens.issue_pair("u2", "u2@x.com")
        with pytest.raises(AuthenticationError):
            await tokens.rotate("u2", pair["refresh_token"])

    async def test_rotate_after_revoke_fails(self, tokens):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        await tokens.revoke("u1")
        with pytest.raises(AuthenticationError):
            await tokens.rotate("u1", pair["refresh_token"])

    async def test_expired_refresh_token(self, tokens, clock, settings):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        clock.advance(settings.refresh_token_ttl_days * 86400 + settings.token_clock_skew_seconds + 1)
        with pytest.raises(AuthenticationError) as exc_info:
            await tokens.rotate("u1", pair["refresh_token"])
        assert exc_info.value.message == "invalid refresh token"

    async def test_concurrent_rotations_succeed_exactly_once(self, tokens):
        pair = await tokens.issue_pair("u1", "u1@x.com")
        results = await asyncio.gather(
            tokens.rotate("u1", pair["refresh_token"]),
            tokens.rotate("u1", pair["refresh_token"]),
            return_exceptions=True,
        )
        successes = [r for r in results if isinstance(r, dict)]
        failures = [r for r in results if isinstance(r, AuthenticationError)]
        assert len(successes) == 1
        assert len(failures) == 1
