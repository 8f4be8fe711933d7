from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from tasksync.config import Settings
from tasksync.logging import get_logger
from tasksync.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    TokenExpiredError,
)
from tasksync.storage.cache import KeyValueCache

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def refresh_key(user_id: str) -> str:
    return f"refresh-token:{user_id}"


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    token_type: str = ACCESS
    jti: Optional[str] = None
    expires_at: Optional[int] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Mints HS256 access/refresh pairs and keeps one trusted refresh token per user.

    Access tokens are stateless. The latest refresh token for each user is
    held in the cache under ``refresh-token:<user_id>``; a rotation swaps it
    with a single compare-and-set so a token can be redeemed at most once.
    """

    def __init__(
        self,
        cache: KeyValueCache,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self._clock = clock or time.time
        self._leeway = settings.token_clock_skew_seconds
        self.access_ttl_seconds = settings.access_token_ttl_minutes * 60
        self.refresh_ttl_seconds = settings.refresh_token_ttl_days * 24 * 60 * 60

    def _secret_for(self, token_type: str) -> bytes:
        if token_type == REFRESH:
            return self.settings.jwt_refresh_secret.encode()
        return self.settings.jwt_secret.encode()

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret_for(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _decode_jwt(self, token: str, token_type: str) -> dict[str, Any]:
        """Return the verified payload or raise; never returns partial data."""

        if not isinstance(token, str) or not token:
            raise InvalidTokenError("missing token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed token")
        # base64url is ASCII; compare_digest rejects non-ASCII str with TypeError
        if not token.isascii():
            raise InvalidTokenError("malformed token")

        # Pin the algorithm before trusting anything else in the token
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("malformed token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("malformed token")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(
                self._secret_for(token_type), signing_input.encode(), hashlib.sha256
            ).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("invalid token signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("invalid token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("invalid token audience")
        if payload.get("token_type") != token_type:
            raise InvalidTokenError("wrong token type")
        if not payload.get("sub"):
            raise InvalidTokenError("token subject missing")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidTokenError("token expiry missing")
        if exp_ts <= self._clock() - self._leeway:
            raise TokenExpiredError("token expired")
        return payload

    def _mint(self, user_id: str, email: str, token_type: str, ttl_seconds: int) -> tuple[str, int]:
        now = int(self._clock())
        exp = now + ttl_seconds
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "id": user_id,
            "email": email,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": exp,
        }
        return self._encode_jwt(payload, token_type), exp

    def _mint_pair(self, user_id: str, email: str) -> dict[str, str]:
        access_token, access_exp = self._mint(
            user_id, email, ACCESS, self.access_ttl_seconds
        )
        refresh_token, refresh_exp = self._mint(
            user_id, email, REFRESH, self.refresh_ttl_seconds
        )
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "bearer",
            "expires_at": datetime.fromtimestamp(access_exp, tz=timezone.utc).isoformat(),
            "refresh_expires_at": datetime.fromtimestamp(
                refresh_exp, tz=timezone.utc
            ).isoformat(),
        }

    async def issue_pair(self, user_id: str, email: str) -> dict[str, str]:
        tokens = self._mint_pair(user_id, email)
        # Replaces whatever refresh token this user had before
        await self.cache.set(
            refresh_key(user_id), tokens["refresh_token"], self.refresh_ttl_seconds
        )
        logger.info("token_pair_issued", user_id=user_id)
        return tokens

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token, ACCESS)
        return AccessClaims(
            user_id=str(payload["sub"]),
            email=str(payload.get("email") or ""),
            token_type=ACCESS,
            jti=payload.get("jti"),
            expires_at=int(payload["exp"]),
        )

    def decode_refresh(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token, REFRESH)
        return AccessClaims(
            user_id=str(payload["sub"]),
            email=str(payload.get("email") or ""),
            token_type=REFRESH,
            jti=payload.get("jti"),
            expires_at=int(payload["exp"]),
        )

    async def rotate(
        self, user_id: str, presented: str, *, email: Optional[str] = None
    ) -> dict[str, str]:
        """Redeem ``presented`` for a fresh pair.

        Any failure (bad signature, expired, no token on record, token already
        rotated, another user's token) raises the same AuthenticationError.
        """

        try:
            claims = self.decode_refresh(presented)
        except AuthenticationError as exc:
            logger.info("refresh_rotation_rejected", user_id=user_id, reason=exc.message)
            raise AuthenticationError("invalid refresh token")
        if claims.user_id != user_id:
            logger.warning("refresh_rotation_subject_mismatch", user_id=user_id)
            raise AuthenticationError("invalid refresh token")

        tokens = self._mint_pair(user_id, email or claims.email)
        swapped = await self.cache.compare_and_set(
            refresh_key(user_id),
            presented,
            tokens["refresh_token"],
            self.refresh_ttl_seconds,
        )
        if not swapped:
            logger.info("refresh_rotation_rejected", user_id=user_id, reason="not_current")
            raise AuthenticationError("invalid refresh token")
        logger.info("refresh_rotated", user_id=user_id)
        return tokens

    async def revoke(self, user_id: str) -> None:
        await self.cache.delete(refresh_key(user_id))
        logger.info("refresh_revoked", user_id=user_id)
