from shopcore.infrastructure.cache.cache_protocol import ICacheProvider
from shopcore.infrastructure.cache.memory_cache import MemoryCache
from shopcore.infrastructure.cache.redis_cache import RedisCache, create_redis_client

__all__ = ["ICacheProvider", "MemoryCache", "RedisCache", "create_redis_client"]
