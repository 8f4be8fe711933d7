from __future__ import annotations

import re
import secrets
from enum import Enum
from typing import Union

from tasksync.logging import get_logger, hash_email
from tasksync.service.errors import ValidationError
from tasksync.storage.cache import KeyValueCache

logger = get_logger(__name__)

OTP_LENGTH = 6
_OTP_RE = re.compile(r"^\d{6}$")
# Enough to reject garbage before it becomes a cache key; full address
# validation happens at the request boundary.
_EMAIL_RE = re.compile(r"^[^@\s:]+@[^@\s:]+\.[^@\s:]+$")


class OTPPurpose(str, Enum):
    EMAIL_VERIFICATION = "email-verification"
    PASSWORD_RESET = "password-reset"
    EMAIL_CHANGE = "email-change"


def _normalize(purpose: Union[OTPPurpose, str], email: str) -> tuple[OTPPurpose, str]:
    try:
        resolved = OTPPurpose(purpose)
    except ValueError:
        raise ValidationError("unknown otp purpose", detail={"purpose": str(purpose)})
    if not isinstance(email, str):
        raise ValidationError("invalid email", detail={"field": "email"})
    normalized = email.strip().lower()
    if not _EMAIL_RE.match(normalized):
        raise ValidationError("invalid email", detail={"field": "email"})
    return resolved, normalized


def otp_key(purpose: Union[OTPPurpose, str], email: str) -> str:
    resolved, normalized = _normalize(purpose, email)
    return f"otp:{resolved.value}:{normalized}"


def generate_code() -> str:
    return str(secrets.randbelow(10**OTP_LENGTH)).zfill(OTP_LENGTH)


class OTPService:
    """Issues and single-use-checks six digit codes per (purpose, email).

    State per key: NONE -> ISSUED -> CONSUMED | EXPIRED. A successful
    :meth:`verify` removes the code in the same atomic cache operation that
    compares it, so two concurrent checks with the right code cannot both
    pass.
    """

    def __init__(self, cache: KeyValueCache, *, expiry_minutes: int = 10) -> None:
        self.cache = cache
        self.expiry_seconds = expiry_minutes * 60

    async def issue(self, purpose: Union[OTPPurpose, str], email: str) -> str:
        key = otp_key(purpose, email)
        code = generate_code()
        await self.cache.set(key, code, self.expiry_seconds)
        logger.info(
            "otp_issued",
            purpose=OTPPurpose(purpose).value,
            email_hash=hash_email(email),
            expires_in=self.expiry_seconds,
        )
        return code

    async def verify(
        self, purpose: Union[OTPPurpose, str], email: str, submitted: str
    ) -> bool:
        key = otp_key(purpose, email)
        if not isinstance(submitted, str) or not _OTP_RE.match(submitted):
            return False
        consumed = await self.cache.compare_and_delete(key, submitted)
        logger.info(
            "otp_verified" if consumed else "otp_rejected",
            purpose=OTPPurpose(purpose).value,
            email_hash=hash_email(email),
        )
        return consumed

    async def ttl_remaining(self, purpose: Union[OTPPurpose, str], email: str) -> int:
        return await self.cache.ttl(otp_key(purpose, email))

    async def discard(self, purpose: Union[OTPPurpose, str], email: str) -> None:
        await self.cache.delete(otp_key(purpose, email))
