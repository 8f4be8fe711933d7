import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tasksync.storage import redis_cache
from tasksync.storage.errors import CacheUnavailable
from tasksync.storage.redis_cache import RedisCache


class DummyClient:
    def __init__(self, ttl_value=-2, fail=False):
        self.ttl_value = ttl_value
        self.fail = fail

    async def ttl(self, key):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return self.ttl_value

    async def get(self, key):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return None


def _cache(client: DummyClient) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.client = client
    return cache


async def test_missing_and_persistent_keys_report_no_ttl():
    assert await _cache(DummyClient(ttl_value=-2)).ttl("otp:x") == -1
    assert await _cache(DummyClient(ttl_value=-1)).ttl("otp:x") == -1
    assert await _cache(DummyClient(ttl_value=42)).ttl("otp:x") == 42


async def test_driver_errors_become_cache_unavailable():
    with pytest.raises(CacheUnavailable) as exc_info:
        await _cache(DummyClient(fail=True)).get("pending-user:a@x.com")
    assert exc_info.value.operation == "get"
    assert isinstance(exc_info.value.cause, RedisConnectionError)


def test_rate_keys_are_hashed():
    key = RedisCache._normalize_rate_key("login:a@x.com")
    assert key.startswith("rate:")
    assert "a@x.com" not in key
    assert key == RedisCache._normalize_rate_key("login:a@x.com")


class DummyScript:
    def __init__(self, source):
        self.source = source
        self.result = 1
        self.error = None
        self.calls = []

    async def __call__(self, keys=None, args=None):
        self.calls.append((keys, args))
        if self.error:
            raise self.error
        return self.result


class ScriptingClient(DummyClient):
    def __init__(self):
        super().__init__()
        self.scripts = []

    def register_script(self, source):
        script = DummyScript(source)
        self.scripts.append(script)
        return script


@pytest.fixture
def scripted(monkeypatch):
    client = ScriptingClient()
    monkeypatch.setattr(redis_cache.aioredis, "from_url", lambda *args, **kwargs: client)
    return RedisCache("redis://localhost:6379/0")


async def test_compare_and_delete_runs_atomic_script(scripted):
    script = scripted._compare_and_delete
    assert "GET" in script.source and "DEL" in script.source

    assert await scripted.compare_and_delete("otp:password-reset:a@x.com", "123456") is True
    assert script.calls == [(["otp:password-reset:a@x.com"], ["123456"])]

    script.result = 0
    assert await scripted.compare_and_delete("otp:password-reset:a@x.com", "123456") is False


async def test_compare_and_set_passes_value_and_clamped_ttl(scripted):
    script = scripted._compare_and_set
    assert "'EX'" in script.source

    assert await scripted.compare_and_set("refresh-token:u1", "old", "new", 3600) is True
    assert script.calls[-1] == (["refresh-token:u1"], ["old", "new", 3600])

    script.result = 0
    assert await scripted.compare_and_set("refresh-token:u1", "old", "new", 0) is False
    assert script.calls[-1] == (["refresh-token:u1"], ["old", "new", 1])


async def test_script_errors_become_cache_unavailable(scripted):
    scripted._compare_and_delete.error = RedisConnectionError("connection reset")
    with pytest.raises(CacheUnavailable) as exc_info:
        await scripted.compare_and_delete("otp:email-verification:a@x.com", "000000")
    assert exc_info.value.operation == "compare_and_delete"
