import asyncio
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from flickmeter.storage.errors import RecordNotFound, StoreUnavailable
from flickmeter.storage.models import Session, User, utcnow
from flickmeter.storage.redis_cache import RedisCache


class FakeRedis:
    """Records the commands RedisCache issues; values live in a dict."""

    def __init__(self):
        self.data = {}
        self.calls = []

    async def set(self, key, value, ex=None):
        self.calls.append(("set", key, ex))
        self.data[key] = value
        return True

    async def getex(self, key, ex=None):
        self.calls.append(("getex", key, ex))
        return self.data.get(key)

    async def delete(self, key):
        self.calls.append(("delete", key))
        return 1 if self.data.pop(key, None) is not None else 0

    async def getdel(self, key):
        self.calls.append(("getdel", key))
        return self.data.pop(key, None)


class DownRedis(FakeRedis):
    async def getex(self, key, ex=None):
        raise RedisConnectionError("connection refused")


class SlowRedis(FakeRedis):
    async def getex(self, key, ex=None):
        await asyncio.sleep(1)
        return None


def _cache(client, *, timeout=1.0) -> RedisCache:
    cache = RedisCache("redis://localhost:6379/15", socket_timeout=timeout)
    cache.client = client
    return cache


def _session(session_id="abc") -> Session:
    return Session(id=session_id, user=User(id=7, email="a@x.com", username="SwiftOtter1"))


async def test_create_session_sets_ttl():
    client = FakeRedis()
    await _cache(client).create_session(_session())

    assert client.calls == [("set", "auth:session:abc", 3600)]


async def test_read_and_refresh_resets_ttl_in_one_command():
    client = FakeRedis()
    cache = _cache(client)
    await cache.create_session(_session())

    loaded = await cache.read_and_refresh("abc")

    assert loaded.user.id == 7
    assert client.calls[-1] == ("getex", "auth:session:abc", 3600)


async def test_missing_session_is_record_not_found():
    with pytest.raises(RecordNotFound):
        await _cache(FakeRedis()).read_and_refresh("nope")


async def test_connection_error_is_store_unavailable_not_missing():
    with pytest.raises(StoreUnavailable) as excinfo:
        await _cache(DownRedis()).read_and_refresh("abc")
    assert excinfo.value.backend == "redis"


async def test_slow_redis_is_bounded_by_operation_timeout():
    with pytest.raises(StoreUnavailable):
        await _cache(SlowRedis(), timeout=0.01).read_and_refresh("abc")


async def test_corrupt_payload_reads_as_missing():
    client = FakeRedis()
    client.data["auth:session:abc"] = "[]"

    with pytest.raises(RecordNotFound):
        await _cache(client).read_and_refresh("abc")


async def test_oauth_state_round_trip_uses_getdel():
    client = FakeRedis()
    cache = _cache(client)
    await cache.set_oauth_state(
        "s1", {"provider": "github", "keep": False}, utcnow() + timedelta(minutes=10)
    )

    assert await cache.pop_oauth_state("s1") == {"provider": "github", "keep": False}
    assert await cache.pop_oauth_state("s1") is None
    set_call = client.calls[0]
    assert set_call[1] == "auth:oauth:s1"
    assert 590 <= set_call[2] <= 600
