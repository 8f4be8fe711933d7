from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tasksync.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> Tuple[str, str]:
    """Return ``(digest, algo)`` for ``password``; the digest embeds its salt."""

    return _pwd_hasher.hash(password), PASSWORD_ALGO


def verify_password(stored_hash: str, algo: str, password: str) -> bool:
    if algo != PASSWORD_ALGO:
        logger.warning("password_algo_mismatch", algo=algo)
        return False
    try:
        return _pwd_hasher.verify(stored_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("password_hash_invalid")
        return False


def dummy_verify(password: str) -> None:
    """Burn the same hashing time as a real check for unknown accounts."""

    verify_password(_DUMMY_HASH, PASSWORD_ALGO, password)


_DUMMY_HASH = _pwd_hasher.hash("tasksync-dummy-password")
