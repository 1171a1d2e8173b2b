# permission_service.py - Entry point for checks, conditional fetches and permission mutations

import re
from typing import Any, Dict, List, Optional, Sequence

import structlog

from core.config import settings
from metrics.metrics import MetricsCollector
from models.permissions import (
    ActorProfile,
    InvalidationOptions,
    Permission,
    PermissionPage,
    Role,
    RolePermissionsResult,
    parse_role,
)
from services.audit import ActivityEvent, ActivityLogger
from services.authority_resolver import AuthorityResolver, call_authority
from services.authority_store import AuthorityStore
from services.bulk_checker import BulkPermissionChecker
from services.cache_coordinator import (
    CacheCoordinator,
    catalog_key,
    listing_key,
    permission_key,
    resource_key,
    role_key,
    role_simplified_key,
    user_key,
    user_list_key,
)
from services.version_ledger import VersionLedger
from utils.exceptions import CacheStoreError, InvalidInputError, NotFoundError
from utils.redis_client import CacheStore

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100
MIN_SEARCH_LENGTH = 2
MAX_SEARCH_LENGTH = 100

# UUIDs, ObjectIds and other opaque ids; no glob or key separator characters
USER_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.@-]{0,127}")


def _require_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not USER_ID_PATTERN.fullmatch(user_id):
        raise InvalidInputError("A valid user id is required", user_id=user_id)
    return user_id


def _require_permission_ids(permission_ids: Any) -> List[str]:
    if not isinstance(permission_ids, (list, tuple)) or not permission_ids:
        raise InvalidInputError("permission_ids must be a non-empty list")
    if not all(isinstance(pid, str) and pid.strip() for pid in permission_ids):
        raise InvalidInputError("All permission ids must be non-empty strings")
    return list(dict.fromkeys(permission_ids))


class PermissionService:
    """
    Facade over resolver, cache coordinator, version ledger and bulk checker.

    Every mutation follows the same order: commit to the authority store,
    invalidate synchronously, bump the role version when a role's grants
    changed, then emit an activity event without waiting for it.
    """

    def __init__(
        self,
        store: AuthorityStore,
        cache: CacheStore,
        activity: Optional[ActivityLogger] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.activity = activity
        self.resolver = AuthorityResolver(store, metrics=metrics)
        self.coordinator = CacheCoordinator(cache, self.resolver, metrics=metrics)
        self.ledger = VersionLedger(cache, metrics=metrics)
        self.bulk = BulkPermissionChecker(self.coordinator)
        self.timeout = settings.authority_timeout

    async def _authority(self, awaitable, operation: str, **context):
        return await call_authority(awaitable, self.timeout, operation, **context)

    def _emit(self, action: str, actor_id: Optional[str], resource_type: str, resource_id: str, **details) -> None:
        if self.activity is None:
            return
        self.activity.emit(ActivityEvent(
            action=action,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
        ))

    # =====================================
    # CHECKS
    # =====================================

    async def check(self, actor: ActorProfile, name: str) -> bool:
        return await self.coordinator.check(actor, name)

    async def check_any(self, actor: ActorProfile, names: Sequence[str]) -> bool:
        return await self.coordinator.check_any(actor, names)

    async def check_all(self, actor: ActorProfile, names: Sequence[str]) -> bool:
        return await self.coordinator.check_all(actor, names)

    async def check_bulk(self, actor: ActorProfile, names: Sequence[str]) -> Dict[str, bool]:
        return await self.bulk.check_bulk(actor, names)

    async def get_actor(self, user_id: str) -> ActorProfile:
        user_id = _require_user_id(user_id)
        record = await self._authority(self.store.get_actor_profile(user_id), "get_actor_profile", user_id=user_id)
        if record is None:
            raise NotFoundError(f"User {user_id} not found", user_id=user_id)
        return ActorProfile.from_record(record)

    async def check_user_permission(self, user_id: str, name: str) -> bool:
        """Look up whether another user holds a permission"""
        actor = await self.get_actor(user_id)
        return await self.check(actor, name)

    async def check_user_permissions_bulk(self, user_id: str, names: Sequence[str]) -> Dict[str, bool]:
        actor = await self.get_actor(user_id)
        return await self.bulk.check_bulk(actor, names)

    # =====================================
    # CONDITIONAL ROLE FETCH
    # =====================================

    async def get_my_role_permissions(self, actor: ActorProfile, client_version: int = 0) -> RolePermissionsResult:
        """
        Permission names for the actor's primary role, or an "unchanged" marker
        when the client already holds the current version.

        Version 0 tells the client not to cache: systemadmins always get it, and
        so does everyone when the ledger cannot be read.

        Only the primary role's grants are returned, since that is the only
        version the client can track. A multi-role actor may therefore hold
        grants from lower roles that are missing from this list; `check`
        remains the source of truth for those.
        """
        if isinstance(client_version, bool) or not isinstance(client_version, int) or client_version < 0:
            raise InvalidInputError("Version must be a non-negative integer", version=client_version)

        if actor.is_system_admin:
            return RolePermissionsResult(
                role=actor.primary_role if actor.roles else None,
                version=0,
                permissions=await self._catalog_names(),
                is_system_admin=True,
            )

        role = actor.primary_role
        try:
            current = await self.ledger.current_version(role)
        except CacheStoreError as e:
            logger.warning("role_version_unavailable", role=role.value, error=str(e))
            current = None

        if current is not None and client_version > 0 and client_version == current:
            return RolePermissionsResult(role=role, version=current, unchanged=True)

        # The admin role is granted everything by the check rules, so hand out the full catalog
        if role == Role.ADMIN:
            names = await self._catalog_names()
        else:
            names = await self.get_role_permission_names(role)

        return RolePermissionsResult(role=role, version=current or 0, permissions=names)

    async def get_role_versions(self) -> Dict[str, int]:
        try:
            return await self.ledger.versions()
        except CacheStoreError as e:
            logger.warning("role_versions_unavailable", error=str(e))
            return {role.value: 0 for role in Role}

    # =====================================
    # CATALOG & LISTINGS
    # =====================================

    async def get_catalog(self, resource: Optional[str] = None) -> List[Permission]:
        key = resource_key(resource) if resource else catalog_key()

        async def compute():
            rows, _ = await self._authority(
                self.store.list_permissions(resource=resource), "list_permissions", resource=resource
            )
            return rows

        rows = await self.coordinator.get_or_compute(key, settings.listing_ttl, compute)
        return [Permission(**row) for row in rows]

    async def get_permission(self, permission_id: str) -> Permission:
        permission_id = _require_permission_ids([permission_id])[0]

        async def compute():
            rows = await self._authority(
                self.store.get_permissions_by_ids([permission_id]), "get_permission", permission_id=permission_id
            )
            return rows[0] if rows else None

        row = await self.coordinator.get_or_compute(permission_key(permission_id), settings.listing_ttl, compute)
        if row is None:
            raise NotFoundError("Permission not found", permission_id=permission_id)
        return Permission(**row)

    async def _catalog_names(self) -> List[str]:
        return sorted(p.name for p in await self.get_catalog())

    async def list_permissions(
        self,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> PermissionPage:
        if page < 1:
            raise InvalidInputError("page must be at least 1", page=page)
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}", limit=limit)

        async def compute():
            rows, total = await self._authority(
                self.store.list_permissions(resource=resource, action=action, skip=(page - 1) * limit, limit=limit),
                "list_permissions",
                resource=resource,
                action=action,
            )
            return {"items": rows, "count": total}

        cached = await self.coordinator.get_or_compute(
            listing_key(resource, action, page, limit), settings.listing_ttl, compute
        )
        return PermissionPage(
            items=[Permission(**row) for row in cached["items"]],
            count=cached["count"],
            page=page,
            limit=limit,
        )

    async def get_role_permissions(self, role) -> List[Permission]:
        """Explicit rows for a role; the admin shortcut is not applied here"""
        role = parse_role(role)

        async def compute():
            return await self._authority(self.store.get_role_permissions(role.value), "get_role_permissions", role=role.value)

        rows = await self.coordinator.get_or_compute(role_key(role), settings.permission_ttl, compute)
        return [Permission(**row) for row in rows]

    async def get_role_permission_names(self, role) -> List[str]:
        role = parse_role(role)

        async def compute():
            return sorted(p.name for p in await self.get_role_permissions(role))

        return await self.coordinator.get_or_compute(role_simplified_key(role), settings.permission_ttl, compute)

    async def get_user_permissions(self, user_id: str) -> List[Dict[str, Any]]:
        """Effective grants for a user as [{"name", "granted"}]"""
        user_id = _require_user_id(user_id)

        async def compute():
            return await self._authority(self.store.get_user_permissions(user_id), "get_user_permissions", user_id=user_id)

        return await self.coordinator.get_or_compute(user_key(user_id), settings.permission_ttl, compute)

    async def list_users(self, search: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Users with their roles and systemadmin flag, for permission management.

        Searches shorter than two characters list everyone. Rows embed role
        data, so every role or user change drops these cached lists.
        """
        term = search.strip()[:MAX_SEARCH_LENGTH] if isinstance(search, str) else ""
        if len(term) < MIN_SEARCH_LENGTH:
            term = ""

        async def compute():
            return await self._authority(self.store.list_users(term or None), "list_users", search=term)

        return await self.coordinator.get_or_compute(user_list_key(term), settings.listing_ttl, compute)

    # =====================================
    # INVALIDATION TRIGGERS
    # =====================================

    async def on_role_permissions_changed(self, role) -> Optional[int]:
        """Invalidate the role scope, then bump its version; returns the new version if recorded"""
        role = parse_role(role)
        await self.coordinator.invalidate(InvalidationOptions(role=role))
        try:
            return await self.ledger.bump(role)
        except CacheStoreError as e:
            # Clients keep their copy until the next successful bump or TTL; checks are unaffected
            logger.error("role_version_bump_failed", role=role.value, error=str(e))
            return None

    async def on_user_permissions_changed(self, user_id: str) -> None:
        await self.coordinator.invalidate(InvalidationOptions(user_id=_require_user_id(user_id)))

    async def on_system_admin_flag_changed(self, user_id: str) -> None:
        await self.coordinator.invalidate(InvalidationOptions(user_id=_require_user_id(user_id)))

    # =====================================
    # MUTATIONS
    # =====================================

    async def _ensure_permissions_exist(self, permission_ids: List[str]) -> None:
        found = await self._authority(self.store.get_permissions_by_ids(permission_ids), "get_permissions_by_ids")
        missing = sorted(set(permission_ids) - {p["id"] for p in found})
        if missing:
            raise NotFoundError("Unknown permission ids", permission_ids=missing)

    async def assign_permissions_to_role(self, role, permission_ids: Sequence[str], actor_id: Optional[str] = None) -> int:
        role = parse_role(role)
        ids = _require_permission_ids(permission_ids)
        await self._ensure_permissions_exist(ids)

        await self._authority(self.store.assign_role_permissions(role.value, ids), "assign_role_permissions", role=role.value)
        await self.on_role_permissions_changed(role)

        self._emit("assign_permissions_to_role", actor_id, "role_permissions", role.value,
                   role=role.value, permission_ids=ids, count=len(ids))
        logger.info("permissions_assigned_to_role", role=role.value, count=len(ids), actor_id=actor_id)
        return len(ids)

    async def remove_permissions_from_role(self, role, permission_ids: Sequence[str], actor_id: Optional[str] = None) -> int:
        role = parse_role(role)
        ids = _require_permission_ids(permission_ids)

        removed = await self._authority(
            self.store.remove_role_permissions(role.value, ids), "remove_role_permissions", role=role.value
        )
        await self.on_role_permissions_changed(role)

        self._emit("remove_permissions_from_role", actor_id, "role_permissions", role.value,
                   role=role.value, permission_ids=ids, count=removed)
        logger.info("permissions_removed_from_role", role=role.value, count=removed, actor_id=actor_id)
        return removed

    async def assign_permissions_to_user(
        self,
        user_id: str,
        permission_ids: Sequence[str],
        granted: bool = True,
        actor_id: Optional[str] = None,
    ) -> int:
        """Replace the user's override set; repeating the call leaves the same set"""
        user_id = _require_user_id(user_id)
        ids = _require_permission_ids(permission_ids)
        if not isinstance(granted, bool):
            raise InvalidInputError("granted must be a boolean")
        await self._ensure_permissions_exist(ids)

        count = await self._authority(
            self.store.replace_user_permissions(user_id, ids, granted), "replace_user_permissions", user_id=user_id
        )
        await self.on_user_permissions_changed(user_id)

        self._emit("assign_permissions_to_user", actor_id, "user_permissions", user_id,
                   user_id=user_id, permission_ids=ids, granted=granted, count=count)
        logger.info("permissions_assigned_to_user", user_id=user_id, count=count, granted=granted, actor_id=actor_id)
        return count

    async def remove_permissions_from_user(
        self, user_id: str, permission_ids: Sequence[str], actor_id: Optional[str] = None
    ) -> int:
        user_id = _require_user_id(user_id)
        ids = _require_permission_ids(permission_ids)

        removed = await self._authority(
            self.store.remove_user_permissions(user_id, ids), "remove_user_permissions", user_id=user_id
        )
        await self.on_user_permissions_changed(user_id)

        self._emit("remove_permissions_from_user", actor_id, "user_permissions", user_id,
                   user_id=user_id, permission_ids=ids, count=removed)
        logger.info("permissions_removed_from_user", user_id=user_id, count=removed, actor_id=actor_id)
        return removed

    async def set_system_admin(self, user_id: str, is_system_admin: bool, actor_id: Optional[str] = None) -> None:
        user_id = _require_user_id(user_id)
        if not isinstance(is_system_admin, bool):
            raise InvalidInputError("is_system_admin must be a boolean")

        matched = await self._authority(
            self.store.set_system_admin(user_id, is_system_admin), "set_system_admin", user_id=user_id
        )
        if not matched:
            raise NotFoundError(f"User {user_id} not found", user_id=user_id)
        await self.on_system_admin_flag_changed(user_id)

        self._emit("set_systemadmin", actor_id, "profiles", user_id,
                   user_id=user_id, is_system_admin=is_system_admin)
        logger.info("system_admin_flag_changed", user_id=user_id, is_system_admin=is_system_admin, actor_id=actor_id)
