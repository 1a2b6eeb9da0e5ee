import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from shopcore.errors import CacheUnavailableError
from shopcore.infrastructure.cache.redis_cache import RedisCache


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.expiry = {}
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value):
        self._check()
        self.store[key] = value

    async def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value

    async def delete(self, key):
        self._check()
        return 1 if self.store.pop(key, None) is not None else 0

    async def exists(self, key):
        self._check()
        return 1 if key in self.store else 0

    async def incrby(self, key, amount):
        self._check()
        self.store[key] = str(int(self.store.get(key, 0)) + amount)
        return int(self.store[key])

    async def expire(self, key, ttl):
        self._check()
        self.expiry[key] = ttl
        return 1 if key in self.store else 0

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def mget(self, keys):
        self._check()
        return [self.store.get(k) for k in keys]

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        self.closed = True


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.commands.clear()

    def incrby(self, key, amount):
        self.commands.append((self.redis.incrby, key, amount))
        return self

    def expire(self, key, ttl):
        self.commands.append((self.redis.expire, key, ttl))
        return self

    async def execute(self):
        results = [await command(*args) for command, *args in self.commands]
        self.commands.clear()
        return results


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return RedisCache(fake_redis, key_prefix="test")


async def test_values_are_prefixed_json(cache, fake_redis):
    await cache.set("t:1:k", {"price": "10.00"}, ttl=60)
    assert fake_redis.store["test:t:1:k"] == '{"price": "10.00"}'
    assert await cache.get("t:1:k") == {"price": "10.00"}
    assert await cache.exists("t:1:k")
    assert await cache.delete("t:1:k")
    assert await cache.get("t:1:k") is None


async def test_counters(cache):
    assert await cache.get_int("gen") == 0
    assert await cache.increment("gen") == 1
    assert await cache.increment("gen") == 2
    assert await cache.get_int("gen") == 2
    assert await cache.get_many(["gen", "missing"]) == {"gen": 2}


async def test_counters_with_ttl_expire(cache, fake_redis):
    assert await cache.increment("t:1:gen:product:p1", ttl=7200) == 1
    assert await cache.increment("t:1:gen:product:p1", 0, ttl=7200) == 1
    assert fake_redis.expiry == {"test:t:1:gen:product:p1": 7200}

    await cache.increment("t:1:epoch")
    assert "test:t:1:epoch" not in fake_redis.expiry


async def test_corrupt_entry_is_a_miss(cache, fake_redis):
    fake_redis.store["test:broken"] = "{not json"
    assert await cache.get("broken") is None


async def test_connection_errors_become_cache_unavailable(cache, fake_redis):
    fake_redis.fail = True
    for call in (cache.get("k"), cache.set("k", 1), cache.increment("k"), cache.increment("k", ttl=5), cache.get_many(["k"])):
        with pytest.raises(CacheUnavailableError):
            await call
    assert await cache.ping() is False


async def test_close(cache, fake_redis):
    await cache.close()
    assert fake_redis.closed
