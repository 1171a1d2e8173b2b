# authority_store.py - System of record for permission grants

import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
import tenacity
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, UpdateOne
from pymongo.errors import AutoReconnect, NetworkTimeout

from core.config import settings
from models.permissions import RolePermission, UserPermission
from utils.exceptions import InvalidInputError

logger = structlog.get_logger(__name__)

_retry = tenacity.retry(
    wait=tenacity.wait_exponential(multiplier=1, min=settings.retry_min_wait, max=settings.retry_max_wait),
    stop=tenacity.stop_after_attempt(settings.retry_attempts),
    retry=tenacity.retry_if_exception_type((AutoReconnect, NetworkTimeout)),
    reraise=True,
)


def to_object_ids(ids: Iterable[str]) -> List[ObjectId]:
    """Convert permission ids, rejecting anything that is not a valid ObjectId"""
    result = []
    for value in ids:
        if not isinstance(value, (str, ObjectId)) or not ObjectId.is_valid(value):
            raise InvalidInputError(f"Invalid permission id: {value!r}")
        result.append(ObjectId(value))
    return result


def serialize_permission(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "name": doc["name"],
        "resource": doc.get("resource", ""),
        "action": doc.get("action", ""),
        "description": doc.get("description", ""),
    }


def role_row_document(row: RolePermission) -> Dict[str, Any]:
    return {"role": row.role.value, "permission_id": ObjectId(row.permission_id)}


def user_row_document(row: UserPermission) -> Dict[str, Any]:
    return {"user_id": row.user_id, "permission_id": ObjectId(row.permission_id), "granted": row.granted}


def _role_list(raw: Any) -> List[str]:
    # Profiles written before the array migration store a single string
    if not raw:
        return []
    if isinstance(raw, str):
        return [raw]
    return [r for r in raw if r]


class AuthorityStore:
    """
    Authoritative permission data and evaluation.

    The engine never persists grants itself; every decision it caches can be
    recomputed from an implementation of this interface.
    """

    async def get_actor_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def has_permission(self, user_id: str, name: str) -> bool:
        """systemadmin -> True, no role -> False, user override wins, then role rows"""
        raise NotImplementedError

    async def list_permissions(
        self,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        raise NotImplementedError

    async def get_permissions_by_ids(self, permission_ids: Sequence[str]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def get_role_permissions(self, role: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def get_user_permissions(self, user_id: str) -> List[Dict[str, Any]]:
        """Effective set as [{"name", "granted"}]"""
        raise NotImplementedError

    async def assign_role_permissions(self, role: str, permission_ids: Sequence[str]) -> int:
        raise NotImplementedError

    async def remove_role_permissions(self, role: str, permission_ids: Sequence[str]) -> int:
        raise NotImplementedError

    async def replace_user_permissions(
        self, user_id: str, permission_ids: Sequence[str], granted: bool = True
    ) -> int:
        raise NotImplementedError

    async def remove_user_permissions(self, user_id: str, permission_ids: Sequence[str]) -> int:
        raise NotImplementedError

    async def set_system_admin(self, user_id: str, is_system_admin: bool) -> bool:
        raise NotImplementedError

    async def list_users(self, search: Optional[str] = None) -> List[Dict[str, Any]]:
        """Profiles for permission management, filtered by a case-insensitive substring"""
        raise NotImplementedError


class MongoAuthorityStore(AuthorityStore):
    """AuthorityStore backed by MongoDB through motor"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.permissions = db.permissions
        self.role_permissions = db.role_permissions
        self.user_permissions = db.user_permissions
        self.profiles = db.profiles

    async def ensure_indexes(self) -> None:
        await self.permissions.create_index([("name", ASCENDING)], unique=True)
        await self.permissions.create_index([("resource", ASCENDING), ("action", ASCENDING)])
        await self.role_permissions.create_index(
            [("role", ASCENDING), ("permission_id", ASCENDING)], unique=True
        )
        await self.user_permissions.create_index(
            [("user_id", ASCENDING), ("permission_id", ASCENDING)], unique=True
        )
        await self.profiles.create_index([("user_id", ASCENDING)], unique=True)
        logger.info("authority_indexes_ensured")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @_retry
    async def get_actor_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.profiles.find_one(
            {"user_id": user_id},
            {"_id": 0, "user_id": 1, "role": 1, "is_systemadmin": 1, "account_status": 1},
        )

    @_retry
    async def has_permission(self, user_id: str, name: str) -> bool:
        profile = await self.profiles.find_one({"user_id": user_id})
        if profile is None:
            return False
        if profile.get("is_systemadmin") is True:
            return True

        roles = _role_list(profile.get("role"))
        if not roles:
            return False

        permission = await self.permissions.find_one({"name": name}, {"_id": 1})
        if permission is None:
            return False

        override = await self.user_permissions.find_one(
            {"user_id": user_id, "permission_id": permission["_id"]}
        )
        if override is not None:
            return bool(override.get("granted", True))

        matches = await self.role_permissions.count_documents(
            {"role": {"$in": roles}, "permission_id": permission["_id"]}, limit=1
        )
        return matches > 0

    @_retry
    async def list_permissions(
        self,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {}
        if resource:
            query["resource"] = resource
        if action:
            query["action"] = action

        total = await self.permissions.count_documents(query)
        cursor = self.permissions.find(query).sort([("resource", ASCENDING), ("action", ASCENDING)])
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=None)
        return [serialize_permission(d) for d in docs], total

    @_retry
    async def get_permissions_by_ids(self, permission_ids: Sequence[str]) -> List[Dict[str, Any]]:
        ids = to_object_ids(permission_ids)
        docs = await self.permissions.find({"_id": {"$in": ids}}).to_list(length=None)
        return [serialize_permission(d) for d in docs]

    @_retry
    async def get_role_permissions(self, role: str) -> List[Dict[str, Any]]:
        rows = await self.role_permissions.find({"role": role}, {"permission_id": 1}).to_list(length=None)
        ids = [r["permission_id"] for r in rows]
        if not ids:
            return []
        docs = await self.permissions.find({"_id": {"$in": ids}}).sort("name", ASCENDING).to_list(length=None)
        return [serialize_permission(d) for d in docs]

    @_retry
    async def get_user_permissions(self, user_id: str) -> List[Dict[str, Any]]:
        profile = await self.profiles.find_one({"user_id": user_id})
        if profile is None:
            return []

        if profile.get("is_systemadmin") is True:
            docs = await self.permissions.find({}, {"name": 1}).to_list(length=None)
            return sorted(({"name": d["name"], "granted": True} for d in docs), key=lambda p: p["name"])

        effective: Dict[str, bool] = {}
        roles = _role_list(profile.get("role"))
        if roles:
            rows = await self.role_permissions.find(
                {"role": {"$in": roles}}, {"permission_id": 1}
            ).to_list(length=None)
            role_ids = list({r["permission_id"] for r in rows})
            if role_ids:
                docs = await self.permissions.find({"_id": {"$in": role_ids}}, {"name": 1}).to_list(length=None)
                for d in docs:
                    effective[d["name"]] = True

        overrides = await self.user_permissions.find({"user_id": user_id}).to_list(length=None)
        if overrides:
            by_id = {o["permission_id"]: bool(o.get("granted", True)) for o in overrides}
            docs = await self.permissions.find({"_id": {"$in": list(by_id)}}, {"name": 1}).to_list(length=None)
            for d in docs:
                effective[d["name"]] = by_id[d["_id"]]

        return [{"name": n, "granted": g} for n, g in sorted(effective.items())]

    @_retry
    async def list_users(self, search: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"email": pattern}, {"full_name": pattern}, {"user_id": pattern}]

        docs = await self.profiles.find(
            query,
            {"_id": 0, "user_id": 1, "email": 1, "full_name": 1, "role": 1, "is_systemadmin": 1},
        ).sort("full_name", ASCENDING).to_list(length=None)
        return [
            {
                "user_id": d["user_id"],
                "email": d.get("email"),
                "full_name": d.get("full_name"),
                "role": _role_list(d.get("role")),
                "is_systemadmin": d.get("is_systemadmin") is True,
            }
            for d in docs
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @_retry
    async def assign_role_permissions(self, role: str, permission_ids: Sequence[str]) -> int:
        now = datetime.now(timezone.utc)
        rows = [RolePermission(role=role, permission_id=str(pid)) for pid in to_object_ids(permission_ids)]
        ops = [
            UpdateOne(
                role_row_document(row),
                {"$setOnInsert": {**role_row_document(row), "created_at": now}},
                upsert=True,
            )
            for row in rows
        ]
        result = await self.role_permissions.bulk_write(ops, ordered=False)
        logger.info("role_permissions_assigned", role=role, upserted=result.upserted_count)
        return result.upserted_count

    @_retry
    async def remove_role_permissions(self, role: str, permission_ids: Sequence[str]) -> int:
        result = await self.role_permissions.delete_many(
            {"role": role, "permission_id": {"$in": to_object_ids(permission_ids)}}
        )
        logger.info("role_permissions_removed", role=role, deleted=result.deleted_count)
        return result.deleted_count

    @_retry
    async def replace_user_permissions(
        self, user_id: str, permission_ids: Sequence[str], granted: bool = True
    ) -> int:
        ids = list(dict.fromkeys(to_object_ids(permission_ids)))
        now = datetime.now(timezone.utc)
        await self.user_permissions.delete_many({"user_id": user_id})
        if not ids:
            return 0
        rows = [UserPermission(user_id=user_id, permission_id=str(pid), granted=granted) for pid in ids]
        await self.user_permissions.insert_many(
            [{**user_row_document(row), "created_at": now} for row in rows]
        )
        logger.info("user_permissions_replaced", user_id=user_id, count=len(ids), granted=granted)
        return len(ids)

    @_retry
    async def remove_user_permissions(self, user_id: str, permission_ids: Sequence[str]) -> int:
        result = await self.user_permissions.delete_many(
            {"user_id": user_id, "permission_id": {"$in": to_object_ids(permission_ids)}}
        )
        logger.info("user_permissions_removed", user_id=user_id, deleted=result.deleted_count)
        return result.deleted_count

    @_retry
    async def set_system_admin(self, user_id: str, is_system_admin: bool) -> bool:
        result = await self.profiles.update_one(
            {"user_id": user_id},
            {"$set": {"is_systemadmin": is_system_admin, "updated_at": datetime.now(timezone.utc)}},
        )
        return result.matched_count > 0
