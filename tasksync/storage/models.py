from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: str
    email_verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class PendingRegistration:
    """Sign-up awaiting OTP confirmation; lives only in the cache."""

    email: str
    password_hash: str
    password_algo: str
    name: str
    created_at: datetime = field(default_factory=_utcnow)

    def to_json(self) -> str:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return json.dumps(payload)

    @classmethod
    def from_json(cls, raw: str) -> "PendingRegistration":
        data = json.loads(raw)
        return cls(
            email=data["email"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            name=data["name"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )
