# cache_coordinator.py - Read-through permission cache with eager invalidation

from typing import Any, Awaitable, Callable, List, Optional, Sequence

import structlog

from core.config import settings
from metrics.metrics import MetricsCollector
from models.permissions import ActorProfile, InvalidationOptions, Role
from services.authority_resolver import (
    AuthorityResolver,
    all_granted,
    any_granted,
    validate_permission_name,
    validate_permission_names,
)
from utils.exceptions import CacheStoreError
from utils.redis_client import CacheStore, create_redis_key, escape_glob, guarded

logger = structlog.get_logger(__name__)

NAMESPACE = "permissions"

# =====================================
# KEY BUILDERS
# =====================================

def catalog_key() -> str:
    return create_redis_key(NAMESPACE, "all")

def resource_key(resource: str) -> str:
    return create_redis_key(NAMESPACE, "resource", resource)

def permission_key(permission_id: str) -> str:
    return create_redis_key(NAMESPACE, "id", permission_id)

def listing_key(resource: Optional[str], action: Optional[str], page: int, limit: int) -> str:
    return create_redis_key(NAMESPACE, resource or "all", action or "all", page, limit)

def role_key(role: Role) -> str:
    return create_redis_key(NAMESPACE, "role", role.value)

def role_simplified_key(role: Role) -> str:
    return create_redis_key(NAMESPACE, "role", role.value, "simplified")

def user_key(user_id: str) -> str:
    return create_redis_key(NAMESPACE, "user", user_id)

def check_key(actor: ActorProfile, name: str) -> str:
    # The role tag lets a role change drop decisions for every holder of that role
    return create_redis_key(NAMESPACE, "check", actor.role_tag, actor.user_id, name)

def user_list_key(search: Optional[str]) -> str:
    return create_redis_key("users", "list", search or "all")

# =====================================
# COORDINATOR
# =====================================

class CacheCoordinator:
    """
    Sole writer of permission cache keys.

    The cache is an accelerator only: any cache failure or timeout is logged
    and the value is recomputed from the authority, never assumed.
    """

    def __init__(
        self,
        cache: CacheStore,
        resolver: AuthorityResolver,
        permission_ttl: Optional[int] = None,
        timeout: Optional[float] = None,
        derived_list_patterns: Optional[List[str]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.cache = cache
        self.resolver = resolver
        self.permission_ttl = permission_ttl or settings.permission_ttl
        self.timeout = timeout if timeout is not None else settings.cache_timeout
        self.derived_list_patterns = (
            derived_list_patterns
            if derived_list_patterns is not None
            else list(settings.derived_list_patterns)
        )
        self.metrics = metrics

    def _cache_failed(self, operation: str, key: str, error: CacheStoreError) -> None:
        logger.warning("permission_cache_error", operation=operation, key=key, error=str(error))
        if self.metrics:
            self.metrics.record_cache_error(operation)

    async def get(self, key: str) -> Optional[Any]:
        """Cached value or None; a failing cache reads as a miss"""
        try:
            return await guarded(self.cache.get(key), self.timeout, "get", key)
        except CacheStoreError as e:
            self._cache_failed("get", key, e)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await guarded(self.cache.set(key, value, ttl or self.permission_ttl), self.timeout, "set", key)
        except CacheStoreError as e:
            self._cache_failed("set", key, e)

    async def get_or_compute(
        self,
        key: str,
        ttl: Optional[int],
        compute_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = await compute_fn()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def _delete(self, *keys: str) -> None:
        try:
            await guarded(self.cache.delete(*keys), self.timeout, "delete", ",".join(keys))
        except CacheStoreError as e:
            self._cache_failed("delete", ",".join(keys), e)

    async def _delete_pattern(self, pattern: str) -> None:
        try:
            await guarded(self.cache.delete_pattern(pattern), self.timeout, "delete_pattern", pattern)
        except CacheStoreError as e:
            self._cache_failed("delete_pattern", pattern, e)

    def _record_scope(self, scope: str) -> None:
        if self.metrics:
            self.metrics.record_invalidation(scope)

    async def invalidate(self, options: InvalidationOptions) -> None:
        """
        Synchronously drop every cache entry the given scopes may have made stale.

        Pattern deletes scan keys, so they are kept to scopes whose exact keys
        cannot be enumerated. Caller-supplied fragments are escaped so an id
        containing glob syntax still matches its own keys.
        """
        if options.is_empty():
            return

        if options.role is not None:
            role = options.role
            await self._delete(role_key(role), role_simplified_key(role))
            # Over-matching here only costs extra misses
            await self._delete_pattern(create_redis_key(NAMESPACE, "check", f"*{escape_glob(role.value)}*"))
            self._record_scope("role")

        if options.user_id:
            await self._delete(user_key(options.user_id))
            await self._delete_pattern(create_redis_key(NAMESPACE, "check", "*", escape_glob(options.user_id), "*"))
            self._record_scope("user")

        if options.resource:
            await self._delete(resource_key(options.resource))
            await self._delete_pattern(create_redis_key(NAMESPACE, escape_glob(options.resource), "*"))
            self._record_scope("resource")

        if options.clear_all:
            await self._delete(catalog_key())
            await self._delete_pattern(create_redis_key(NAMESPACE, "*", "*", "*", "*"))
            self._record_scope("all")

        if options.role is not None or options.user_id:
            for pattern in self.derived_list_patterns:
                await self._delete_pattern(pattern)
            self._record_scope("derived")

        logger.info(
            "permission_cache_invalidated",
            role=options.role.value if options.role else None,
            user_id=options.user_id,
            resource=options.resource,
            clear_all=options.clear_all,
        )

    # ------------------------------------------------------------------
    # Cached checks
    # ------------------------------------------------------------------

    async def _cached_grant(self, actor: ActorProfile, name: str) -> bool:
        key = check_key(actor, name)
        cached = await self.get(key)
        if cached is not None:
            granted = bool(cached)
            if self.resolver.metrics:
                self.resolver.metrics.record_permission_check("cache", granted)
            return granted

        granted = await self.resolver.resolve_grant(actor, name)
        await self.set(key, granted, self.permission_ttl)
        return granted

    async def check(self, actor: ActorProfile, name: str) -> bool:
        validate_permission_name(name, self.resolver.max_name_length)
        if self.resolver.shortcut(actor):
            return await self.resolver.check(actor, name)
        return await self._cached_grant(actor, name)

    async def check_any(self, actor: ActorProfile, names: Sequence[str]) -> bool:
        unique = validate_permission_names(names, self.resolver.max_name_length)
        if self.resolver.shortcut(actor):
            return await self.resolver.check_any(actor, unique)
        return await any_granted(lambda n: self._cached_grant(actor, n), unique)

    async def check_all(self, actor: ActorProfile, names: Sequence[str]) -> bool:
        unique = validate_permission_names(names, self.resolver.max_name_length)
        if self.resolver.shortcut(actor):
            return await self.resolver.check_all(actor, unique)
        return await all_granted(lambda n: self._cached_grant(actor, n), unique)
