from __future__ import annotations

import json
from typing import Optional

from tasksync.logging import get_logger, hash_email
from tasksync.service.passwords import hash_password
from tasksync.storage.cache import KeyValueCache
from tasksync.storage.models import PendingRegistration

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


def pending_key(email: str) -> str:
    return f"pending-user:{email.strip().lower()}"


class PendingRegistrationStore:
    """Holds sign-ups awaiting email confirmation.

    Records are keyed by lowercased email and expire on their own after
    ``ttl_seconds``. Staging again for the same address replaces the record and
    restarts the clock. The password is hashed before it reaches the cache.
    """

    def __init__(
        self, cache: KeyValueCache, *, ttl_seconds: int = DEFAULT_TTL_SECONDS
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def stage(self, email: str, raw_password: str, name: str) -> None:
        normalized = email.strip().lower()
        password_hash, algo = hash_password(raw_password)
        record = PendingRegistration(
            email=normalized,
            password_hash=password_hash,
            password_algo=algo,
            name=name,
        )
        await self.cache.set(pending_key(normalized), record.to_json(), self.ttl_seconds)
        logger.info(
            "pending_registration_staged",
            email_hash=hash_email(normalized),
            ttl_seconds=self.ttl_seconds,
        )

    async def fetch(self, email: str) -> Optional[PendingRegistration]:
        raw = await self.cache.get(pending_key(email))
        if raw is None:
            return None
        try:
            return PendingRegistration.from_json(raw)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "pending_registration_corrupt",
                email_hash=hash_email(email),
                error=str(exc),
            )
            return None

    async def discard(self, email: str) -> None:
        await self.cache.delete(pending_key(email))

    async def exists(self, email: str) -> bool:
        return await self.cache.exists(pending_key(email))

    async def remaining_ttl(self, email: str) -> int:
        return await self.cache.ttl(pending_key(email))
