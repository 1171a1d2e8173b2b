# redis_client.py - Cache store backends for the permission engine

import asyncio
import fnmatch
import json
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Tuple

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from utils.exceptions import CacheStoreError

logger = structlog.get_logger(__name__)

# =====================================
# CONFIGURATION
# =====================================

class CacheBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


@dataclass
class RedisConfig:
    """Redis configuration"""
    host: str
    port: int
    db: int = 0
    password: Optional[str] = None
    max_connections: int = 50
    socket_timeout: int = 5
    socket_connect_timeout: int = 5
    health_check_interval: int = 30

    @classmethod
    def from_env(cls) -> "RedisConfig":
        """Create configuration from environment variables"""
        return cls(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            db=int(os.getenv("REDIS_DB", "0")),
            password=os.getenv("REDIS_PASSWORD"),
            max_connections=int(os.getenv("REDIS_MAX_CONNECTIONS", "50")),
            socket_timeout=int(os.getenv("REDIS_SOCKET_TIMEOUT", "5")),
        )

    def validate(self) -> None:
        """Validate configuration"""
        if not self.host:
            raise ValueError("Redis host cannot be empty")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"Invalid Redis port: {self.port}")
        if self.max_connections < 1:
            raise ValueError("max_connections must be at least 1")

# =====================================
# CACHE STORE INTERFACE
# =====================================

class CacheStore:
    """
    Key/value store with TTL used purely as an accelerator.

    Implementations raise CacheStoreError on failure instead of hiding it;
    callers decide how to degrade.
    """

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    async def delete(self, *keys: str) -> int:
        raise NotImplementedError

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern.

        Cost grows with the number of keys scanned; keep patterns narrow
        and prefer exact deletes when the key is known.
        """
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass

# =====================================
# IN-MEMORY BACKEND
# =====================================

class MemoryCacheStore(CacheStore):
    """In-process cache with TTL and LRU eviction"""

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self._data: Dict[str, Tuple[str, float]] = {}  # key -> (serialized, expiry_time)
        self._access_order: List[str] = []
        self._lock = asyncio.Lock()

    def _drop(self, key: str) -> None:
        self._data.pop(key, None)
        try:
            self._access_order.remove(key)
        except ValueError:
            pass

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None

            serialized, expiry = entry
            if time.monotonic() > expiry:
                self._drop(key)
                return None

            self._access_order.remove(key)
            self._access_order.append(key)
            return json.loads(serialized)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            serialized = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            raise CacheStoreError(f"Value for '{key}' is not serializable: {e}") from e

        async with self._lock:
            while len(self._data) >= self.max_entries and key not in self._data:
                if not self._access_order:
                    break
                self._drop(self._access_order[0])

            self._data[key] = (serialized, time.monotonic() + ttl)
            try:
                self._access_order.remove(key)
            except ValueError:
                pass
            self._access_order.append(key)

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            count = 0
            for key in keys:
                if key in self._data:
                    self._drop(key)
                    count += 1
            return count

    async def delete_pattern(self, pattern: str) -> int:
        async with self._lock:
            matched = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
            for key in matched:
                self._drop(key)
            return len(matched)

    def __len__(self) -> int:
        return len(self._data)

# =====================================
# REDIS BACKEND
# =====================================

class RedisCacheStore(CacheStore):
    """Redis-based distributed cache"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        config: Optional[RedisConfig] = None,
        client: Optional[redis.Redis] = None,
        scan_count: int = 500,
    ):
        self.redis_url = redis_url
        self.config = config
        self.scan_count = scan_count
        self._redis: Optional[redis.Redis] = client

    def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            if self.redis_url:
                self._redis = redis.from_url(self.redis_url, decode_responses=True)
            else:
                config = self.config or RedisConfig.from_env()
                config.validate()
                pool = redis.ConnectionPool(
                    host=config.host,
                    port=config.port,
                    db=config.db,
                    password=config.password,
                    decode_responses=True,
                    max_connections=config.max_connections,
                    socket_timeout=config.socket_timeout,
                    socket_connect_timeout=config.socket_connect_timeout,
                    health_check_interval=config.health_check_interval,
                )
                self._redis = redis.Redis(connection_pool=pool)
        return self._redis

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self._get_redis().get(key)
        except (RedisError, OSError) as e:
            raise CacheStoreError(f"Redis GET failed for key '{key}': {e}") from e
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError) as e:
            raise CacheStoreError(f"Corrupt cache value for key '{key}'") from e

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            serialized = json.dumps(value, default=str)
            await self._get_redis().setex(key, ttl, serialized)
        except (TypeError, ValueError, RedisError, OSError) as e:
            raise CacheStoreError(f"Redis SET failed for key '{key}': {e}") from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self._get_redis().delete(*keys)
        except (RedisError, OSError) as e:
            raise CacheStoreError(f"Redis DELETE failed for keys {keys}: {e}") from e

    async def delete_pattern(self, pattern: str) -> int:
        # SCAN instead of KEYS so large keyspaces do not block the server
        try:
            r = self._get_redis()
            deleted = 0
            batch: List[str] = []
            async for key in r.scan_iter(match=pattern, count=self.scan_count):
                batch.append(key)
                if len(batch) >= self.scan_count:
                    deleted += await r.delete(*batch)
                    batch = []
            if batch:
                deleted += await r.delete(*batch)
            return deleted
        except (RedisError, OSError) as e:
            raise CacheStoreError(f"Redis pattern delete failed for '{pattern}': {e}") from e

    async def ping(self) -> bool:
        try:
            return await self._get_redis().ping()
        except (RedisError, OSError) as e:
            logger.error("redis_ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("redis_connection_closed")

# =====================================
# HELPERS
# =====================================

async def guarded(awaitable: Awaitable, timeout: float, operation: str, key: str) -> Any:
    """Run a cache operation under a timeout, folding every failure into CacheStoreError"""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except CacheStoreError:
        raise
    except asyncio.TimeoutError as e:
        raise CacheStoreError(f"Cache {operation} timed out after {timeout}s for '{key}'") from e
    except Exception as e:
        raise CacheStoreError(f"Cache {operation} failed for '{key}': {e}") from e


def create_cache_store(
    backend: CacheBackend = CacheBackend.REDIS,
    redis_url: Optional[str] = None,
    max_entries: int = 10000,
) -> CacheStore:
    """Create the appropriate cache backend"""
    if backend == CacheBackend.MEMORY:
        return MemoryCacheStore(max_entries=max_entries)
    return RedisCacheStore(redis_url=redis_url)


# Glob metacharacters shared by Redis MATCH and fnmatch
_GLOB_ESCAPES = {"*": "[*]", "?": "[?]", "[": "[[]", "\\": "[\\\\]"}


def escape_glob(value: Any) -> str:
    """
    Make a key fragment match itself literally inside a delete pattern.

    Metacharacters become one-character classes, which Redis MATCH and
    fnmatch both read the same way.

    Example:
        >>> escape_glob("u[1]*")
        'u[[]1][*]'
    """
    return "".join(_GLOB_ESCAPES.get(ch, ch) for ch in str(value))


def create_redis_key(namespace: str, *parts: Any) -> str:
    """
    Create namespaced Redis key

    Example:
        >>> create_redis_key("permissions", "user", "123")
        'permissions:user:123'
    """
    all_parts = [namespace] + list(parts)
    return ":".join(str(part) for part in all_parts)
