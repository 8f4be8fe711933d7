"""Unit tests for staged sign-ups awaiting email confirmation."""

import pytest

from tasksync.service.passwords import verify_password
from tasksync.service.pending import PendingRegistrationStore, pending_key
from tasksync.storage.memory_cache import MemoryCache


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def pending(cache):
    return PendingRegistrationStore(cache, ttl_seconds=24 * 60 * 60)


class TestStage:
    async def test_stage_hashes_password(self, pending, cache):
        await pending.stage("New@X.com", "Password123", "New User")
        raw = await cache.get(pending_key("new@x.com"))
        assert raw is not None
        assert "Password123" not in raw

        record = await pending.fetch("new@x.com")
        assert record.email == "new@x.com"
        assert record.name == "New User"
        assert record.password_hash != "Password123"
        assert verify_password(record.password_hash, record.password_algo, "Password123")

    async def test_stage_again_overwrites_and_restarts_clock(self, pending, clock):
        await pending.stage("a@x.com", "Password123", "First")
        clock.advance(60 * 60)
        await pending.stage("a@x.com", "Password456", "Second")

        record = await pending.fetch("a@x.com")
        assert record.name == "Second"
        assert verify_password(record.password_hash, record.password_algo, "Password456")
        assert await pending.remaining_ttl("a@x.com") == 24 * 60 * 60

    async def test_record_expires(self, pending, clock):
        await pending.stage("a@x.com", "Password123", "User")
        assert await pending.exists("a@x.com")
        clock.advance(24 * 60 * 60 + 1)
        assert not await pending.exists("a@x.com")
        assert await pending.fetch("a@x.com") is None
        assert await pending.remaining_ttl("a@x.com") == -1


class TestFetchAndDiscard:
    async def test_fetch_missing_returns_none(self, pending):
        assert await pending.fetch("nobody@x.com") is None

    async def test_discard_removes_record(self, pending):
        await pending.stage("a@x.com", "Password123", "User")
        await pending.discard("a@x.com")
        assert await pending.fetch("a@x.com") is None
        assert not await pending.exists("a@x.com")

    async def test_corrupt_record_reads_as_missing(self, pending, cache):
        await cache.set(pending_key("a@x.com"), "{not json", 60)
        assert await pending.fetch("a@x.com") is None
