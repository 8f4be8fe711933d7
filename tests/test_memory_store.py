import pytest

from tasksync.storage.errors import ConstraintViolation
from tasksync.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


def test_create_user_with_credential(store):
    user = store.create_user(
        "user@example.com",
        "Test User",
        email_verified=True,
        password_hash="hash",
        password_algo="argon2id",
    )
    assert store.get_user(user.id) is user
    assert store.get_user_by_email("user@example.com") is user
    assert store.get_password_record(user.id) == ("hash", "argon2id")


def test_duplicate_email_is_a_constraint_violation(store):
    store.create_user("user@example.com", "Test User")
    with pytest.raises(ConstraintViolation):
        store.create_user("user@example.com", "Someone Else")


def test_mark_email_verified(store):
    user = store.create_user("user@example.com", "Test User")
    assert user.email_verified is False
    updated = store.mark_email_verified(user.id)
    assert updated.email_verified is True
    assert updated.updated_at is not None
    assert store.mark_email_verified("missing") is None


def test_update_email_rejects_taken_address(store):
    user = store.create_user("user@example.com", "Test User")
    store.create_user("taken@example.com", "Other User")
    with pytest.raises(ConstraintViolation):
        store.update_email(user.id, "taken@example.com")
    assert store.update_email(user.id, "moved@example.com").email == "moved@example.com"
    assert store.get_user_by_email("user@example.com") is None


def test_delete_user_drops_credentials(store):
    user = store.create_user(
        "user@example.com", "Test User", password_hash="hash", password_algo="argon2id"
    )
    assert store.delete_user(user.id) is True
    assert store.get_user(user.id) is None
    assert store.get_password_record(user.id) is None
    assert store.delete_user(user.id) is False


def test_save_password_requires_user(store):
    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash", "argon2id")


def test_timestamps_are_timezone_aware(store):
    user = store.create_user("user@example.com", "Test User")
    assert user.created_at.tzinfo is not None
    assert store.mark_email_verified(user.id).updated_at.tzinfo is not None
    assert store.update_email(user.id, "moved@example.com").updated_at.tzinfo is not None
