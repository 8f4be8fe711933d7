from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from tasksync.logging import get_logger
from tasksync.storage.errors import ConstraintViolation
from tasksync.storage.models import User


class MemoryStore:
    """In-memory durable user store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()

    def _find_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    def create_user(
        self,
        email: str,
        name: str,
        *,
        email_verified: bool = False,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if self._find_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            if password_hash:
                self.credentials[user.id] = (password_hash, password_algo or "argon2id")
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._find_by_email(email)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            user.updated_at = datetime.now(timezone.utc)
            return user

    def update_email(self, user_id: str, email: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            existing = self._find_by_email(email)
            if existing and existing.id != user_id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.email = email
            user.email_verified = True
            user.updated_at = datetime.now(timezone.utc)
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)
