# conftest.py - Shared fakes and fixtures for the permission engine tests

import asyncio
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from models.permissions import ActorProfile
from services.authority_store import AuthorityStore
from services.permission_service import PermissionService
from utils.exceptions import CacheStoreError
from utils.redis_client import CacheStore, MemoryCacheStore

CATALOG = [
    ("users", "view"),
    ("users", "create"),
    ("invoices", "view"),
    ("invoices", "create"),
    ("invoices", "delete"),
    ("products", "view"),
    ("permissions", "view"),
    ("permissions", "manage"),
]

ROLE_GRANTS = {
    "reseller": ["invoices.view"],
    "consumer": ["products.view"],
    "support": ["users.view", "invoices.view"],
    "viewer": [],
}

PROFILES = [
    {"user_id": "sys-1", "role": None, "is_systemadmin": True},
    {"user_id": "admin-1", "role": ["admin"], "is_systemadmin": False},
    {"user_id": "reseller-1", "role": ["reseller"], "is_systemadmin": False},
    {"user_id": "consumer-1", "role": "consumer", "is_systemadmin": False},
    {"user_id": "multi-1", "role": ["consumer", "reseller"], "is_systemadmin": False},
    {"user_id": "norole-1", "role": None, "is_systemadmin": False},
    {"user_id": "gone-1", "role": ["consumer"], "is_systemadmin": False, "account_status": "deactive"},
]


def permission_id(index: int) -> str:
    return f"{index + 1:024x}"


class InMemoryAuthorityStore(AuthorityStore):
    """AuthorityStore fake with the same decision rules as the Mongo implementation"""

    def __init__(self):
        self.permissions: Dict[str, Dict[str, Any]] = {}
        self.role_rows: Set[Tuple[str, str]] = set()
        self.user_rows: Dict[str, Dict[str, bool]] = {}
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.has_permission_calls: List[Tuple[str, str]] = []
        self.list_users_calls = 0
        self.fail_names: Set[str] = set()
        self.fail_all = False
        self.delay = 0.0

        for i, (resource, action) in enumerate(CATALOG):
            pid = permission_id(i)
            self.permissions[pid] = {
                "id": pid,
                "name": f"{resource}.{action}",
                "resource": resource,
                "action": action,
                "description": "",
            }
        for role, names in ROLE_GRANTS.items():
            for name in names:
                self.role_rows.add((role, self.id_for(name)))
        for profile in PROFILES:
            self.profiles[profile["user_id"]] = dict(profile)

    def id_for(self, name: str) -> str:
        for pid, perm in self.permissions.items():
            if perm["name"] == name:
                return pid
        raise KeyError(name)

    def _roles(self, user_id: str) -> List[str]:
        raw = self.profiles[user_id].get("role")
        if not raw:
            return []
        return [raw] if isinstance(raw, str) else list(raw)

    async def get_actor_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        profile = self.profiles.get(user_id)
        return dict(profile) if profile else None

    async def has_permission(self, user_id: str, name: str) -> bool:
        self.has_permission_calls.append((user_id, name))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_all or name in self.fail_names:
            raise ConnectionError("authority unreachable")

        profile = self.profiles.get(user_id)
        if profile is None:
            return False
        if profile.get("is_systemadmin") is True:
            return True
        roles = self._roles(user_id)
        if not roles:
            return False
        try:
            pid = self.id_for(name)
        except KeyError:
            return False
        overrides = self.user_rows.get(user_id, {})
        if pid in overrides:
            return overrides[pid]
        return any((role, pid) in self.role_rows for role in roles)

    async def list_permissions(self, resource=None, action=None, skip=0, limit=0):
        rows = [
            p for p in self.permissions.values()
            if (not resource or p["resource"] == resource) and (not action or p["action"] == action)
        ]
        rows.sort(key=lambda p: (p["resource"], p["action"]))
        total = len(rows)
        rows = rows[skip:]
        if limit:
            rows = rows[:limit]
        return [dict(r) for r in rows], total

    async def get_permissions_by_ids(self, permission_ids):
        return [dict(self.permissions[pid]) for pid in permission_ids if pid in self.permissions]

    async def get_role_permissions(self, role: str):
        rows = [dict(self.permissions[pid]) for r, pid in self.role_rows if r == role]
        return sorted(rows, key=lambda p: p["name"])

    async def get_user_permissions(self, user_id: str):
        if user_id not in self.profiles:
            return []
        effective = {}
        for role in self._roles(user_id):
            for r, pid in self.role_rows:
                if r == role:
                    effective[self.permissions[pid]["name"]] = True
        for pid, granted in self.user_rows.get(user_id, {}).items():
            effective[self.permissions[pid]["name"]] = granted
        return [{"name": n, "granted": g} for n, g in sorted(effective.items())]

    async def assign_role_permissions(self, role, permission_ids):
        before = len(self.role_rows)
        self.role_rows.update((role, pid) for pid in permission_ids)
        return len(self.role_rows) - before

    async def remove_role_permissions(self, role, permission_ids):
        removed = {(role, pid) for pid in permission_ids} & self.role_rows
        self.role_rows -= removed
        return len(removed)

    async def replace_user_permissions(self, user_id, permission_ids, granted=True):
        self.user_rows[user_id] = {pid: granted for pid in permission_ids}
        return len(self.user_rows[user_id])

    async def remove_user_permissions(self, user_id, permission_ids):
        rows = self.user_rows.get(user_id, {})
        removed = [pid for pid in permission_ids if rows.pop(pid, None) is not None]
        return len(removed)

    async def set_system_admin(self, user_id, is_system_admin):
        if user_id not in self.profiles:
            return False
        self.profiles[user_id]["is_systemadmin"] = is_system_admin
        return True

    async def list_users(self, search=None):
        self.list_users_calls += 1
        rows = []
        for user_id in sorted(self.profiles):
            if search and search.lower() not in user_id.lower():
                continue
            rows.append({
                "user_id": user_id,
                "email": f"{user_id}@example.com",
                "full_name": user_id,
                "role": self._roles(user_id),
                "is_systemadmin": self.profiles[user_id].get("is_systemadmin") is True,
            })
        return rows


class FailingCacheStore(CacheStore):
    """Cache store whose every operation fails"""

    def __init__(self):
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise CacheStoreError("cache down")

    get = _fail
    set = _fail
    delete = _fail
    delete_pattern = _fail


class SlowCacheStore(MemoryCacheStore):
    """Cache store that never answers within the coordinator's timeout"""

    async def get(self, key):
        await asyncio.sleep(1)
        return await super().get(key)


def make_actor(user_id="reseller-1", roles=("reseller",), is_system_admin=False, account_status="active"):
    return ActorProfile(
        user_id=user_id,
        roles=list(roles) if roles else None,
        is_system_admin=is_system_admin,
        account_status=account_status,
    )


@pytest.fixture
def store():
    return InMemoryAuthorityStore()


@pytest.fixture
def cache():
    return MemoryCacheStore()


@pytest.fixture
def service(store, cache):
    return PermissionService(store, cache)


@pytest.fixture
def reseller():
    return make_actor()


@pytest.fixture
def admin():
    return make_actor(user_id="admin-1", roles=("admin",))


@pytest.fixture
def sysadmin():
    return make_actor(user_id="sys-1", roles=None, is_system_admin=True)
