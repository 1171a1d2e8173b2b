# version_ledger.py - Per-role staleness counters for client-side permission caches

from typing import Dict, Iterable, Optional

import structlog

from core.config import settings
from metrics.metrics import MetricsCollector
from models.permissions import Role, parse_role
from utils.exceptions import CacheStoreError
from utils.redis_client import CacheStore, create_redis_key, guarded

logger = structlog.get_logger(__name__)

INITIAL_VERSION = 1


def version_key(role: Role) -> str:
    return create_redis_key("permissions", "version", role.value)


class VersionLedger:
    """
    Monotonic version per role, stored in the cache store with a long TTL.

    A version is only a hint that a client's copy may be stale; correctness
    always comes from re-querying the authority. Concurrent bumps of the same
    role may lose an increment, which is acceptable for that purpose.

    Cache failures raise CacheStoreError so the caller can choose how to degrade.
    """

    def __init__(
        self,
        cache: CacheStore,
        ttl: Optional[int] = None,
        timeout: Optional[float] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.cache = cache
        self.ttl = ttl or settings.version_ttl
        self.timeout = timeout if timeout is not None else settings.cache_timeout
        self.metrics = metrics

    async def _read(self, key: str) -> Optional[int]:
        value = await guarded(self.cache.get(key), self.timeout, "get", key)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise CacheStoreError(f"Corrupt version value under '{key}': {value!r}") from e

    async def _write(self, key: str, version: int) -> None:
        await guarded(self.cache.set(key, version, self.ttl), self.timeout, "set", key)

    async def current_version(self, role) -> int:
        """Current version for a role; an absent counter is initialised to 1"""
        role = parse_role(role)
        key = version_key(role)
        version = await self._read(key)
        if version is None:
            version = INITIAL_VERSION
            await self._write(key, version)
        return version

    async def bump(self, role) -> int:
        role = parse_role(role)
        key = version_key(role)
        current = await self._read(key)
        new_version = (current if current is not None else INITIAL_VERSION) + 1
        await self._write(key, new_version)

        if self.metrics:
            self.metrics.record_version_bump(role.value)
        logger.info("role_version_bumped", role=role.value, version=new_version)
        return new_version

    async def versions(self, roles: Iterable[Role] = tuple(Role)) -> Dict[str, int]:
        return {role.value: await self.current_version(role) for role in roles}
