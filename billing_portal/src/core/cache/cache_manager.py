import aiomcache
import structlog
from typing import Optional
from ..config.settings import get_settings

logger = structlog.get_logger(__name__)

class CacheManager:
    """
    Thin async wrapper over memcached. Errors are logged and reported as
    misses, so callers never fail because the cache is down.
    """

    def __init__(self, host: str, port: int, key_prefix: str = "billing_portal"):
        self.client = aiomcache.Client(host, port, pool_size=2)
        self.key_prefix = key_prefix
        logger.info("CacheManager initialized", host=host, port=port)

    def _key(self, key: str) -> bytes:
        return f"{self.key_prefix}:{key}".encode('utf-8')

    async def get(self, key: str) -> Optional[str]:
        try:
            raw_value = await self.client.get(self._key(key))
            if raw_value is not None:
                logger.debug("Cache hit", key=key)
                return raw_value.decode('utf-8')
            logger.debug("Cache miss", key=key)
            return None
        except Exception as e:
            logger.error("Cache get error", key=key, error=str(e), exc_info=True)
            return None

    async def set(self, key: str, value: str, ttl: int = 3600) -> bool:
        try:
            await self.client.set(self._key(key), str(value).encode('utf-8'), exptime=ttl)
            logger.debug("Cache set", key=key, ttl=ttl)
            return True
        except Exception as e:
            logger.error("Cache set error", key=key, error=str(e), exc_info=True)
            return False

    async def close(self):
        try:
            await self.client.close()
            logger.info("Memcached client closed.")
        except Exception as e:
            logger.error("Error closing Memcached client", error=str(e), exc_info=True)

# --- Global Cache Manager Singleton ---
_global_cache_manager_instance: Optional[CacheManager] = None

def get_cache_manager() -> CacheManager:
    """Returns the process-wide CacheManager, creating it on first use."""
    global _global_cache_manager_instance
    if _global_cache_manager_instance is None:
        settings = get_settings()
        _global_cache_manager_instance = CacheManager(host=settings.MEMCACHED_HOST, port=settings.MEMCACHED_PORT)
        logger.info("Global CacheManager instance created.")
    return _global_cache_manager_instance

async def close_global_cache_manager():
    """Closes the global CacheManager's client. Call on application shutdown."""
    global _global_cache_manager_instance
    if _global_cache_manager_instance:
        logger.info("Closing global CacheManager's client.")
        await _global_cache_manager_instance.close()
        _global_cache_manager_instance = None
