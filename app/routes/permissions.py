from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from models.permissions import ActorProfile
from services.permission_service import PermissionService
from utils.auth.guard import (
    get_current_actor,
    get_permission_service,
    require_permission,
    require_system_admin,
)
from utils.exceptions import AuthorizationError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/permissions", tags=["permissions"])

# --------------------------
# Schemas
# --------------------------
class PermissionCheckRequest(BaseModel):
    permission: str


class PermissionListRequest(BaseModel):
    permissions: List[str]


class PermissionIdsRequest(BaseModel):
    permission_ids: List[str]


class UserPermissionsRequest(BaseModel):
    permission_ids: List[str]
    granted: bool = True


class SystemAdminRequest(BaseModel):
    is_system_admin: bool = Field(..., alias="is_systemadmin")

    model_config = {"populate_by_name": True}


def ok(data=None, message: Optional[str] = None) -> dict:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body

# --------------------------
# Checks
# --------------------------
@router.post("/check")
async def check_permission(
    body: PermissionCheckRequest,
    actor: ActorProfile = Depends(get_current_actor),
    service: PermissionService = Depends(get_permission_service),
):
    granted = await service.check(actor, body.permission)
    return ok({"permission": body.permission, "granted": granted})


@router.post("/check-any")
async def check_any_permission(
    body: PermissionListRequest,
    actor: ActorProfile = Depends(get_current_actor),
    service: PermissionService = Depends(get_permission_service),
):
    return ok({"granted": await service.check_any(actor, body.permissions)})


@router.post("/check-all")
async def check_all_permissions(
    body: PermissionListRequest,
    actor: ActorProfile = Depends(get_current_actor),
    service: PermissionService = Depends(get_permission_service),
):
    return ok({"granted": await service.check_all(actor, body.permissions)})


@router.post("/check-bulk")
async def check_bulk_permissions(
    body: PermissionListRequest,
    actor: ActorProfile = Depends(get_current_actor),
    service: PermissionService = Depends(get_permission_service),
):
    return ok(await service.check_bulk(actor, body.permissions))


@router.post("/users/{user_id}/check")
async def check_user_permission(
    user_id: str,
    body: PermissionCheckRequest,
    actor: ActorProfile = Depends(require_permission("permissions.view")),
    service: PermissionService = Depends(get_permission_service),
):
    granted = await service.check_user_permission(user_id, body.permission)
    return ok({"user_id": user_id, "permission": body.permission, "granted": granted})


@router.post("/check-bulk/{user_id}")
async def check_user_permissions_bulk(
    user_id: str,
    body: PermissionListRequest,
    actor: ActorProfile = Depends(require_permission("permissions.view")),
    service: PermissionService = Depends(get_permission_service),
):
    results = await service.check_user_permissions_bulk(user_id, body.permissions)
    return ok({"user_id": user_id, "permissions": results})

# --------------------------
# Client-side caching support
# --------------------------
@router.get("/my-role")
async def get_my_role_permissions(
    v: int = Query(0, ge=0),
    actor: ActorProfile = Depends(get_current_actor),
    service: PermissionService = Depends(get_permission_service),
):
    result = await service.get_my_role_permissions(actor, v)
    return ok(result.model_dump(exclude_none=True))


@router.get("/role-versions")
async def get_role_versions(
    actor: ActorProfile = Depends(get_current_actor),
    service: PermissionService = Depends(get_permission_service),
):
    return ok(await service.get_role_versions())


@router.get("/me")
async def get_my_permissions(
    actor: ActorProfile = Depends(get_current_actor),
    service: PermissionService = Depends(get_permission_service),
):
    return ok(await service.get_user_permissions(actor.user_id))

# --------------------------
# Catalog
# --------------------------
@router.get("")
async def list_permissions(
    resource: Optional[str] = None,
    action: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    actor: ActorProfile = Depends(require_permission("permissions.view")),
    service: PermissionService = Depends(get_permission_service),
):
    result = await service.list_permissions(resource=resource, action=action, page=page, limit=limit)
    return ok(result.model_dump())


@router.get("/catalog")
async def get_catalog(
    resource: Optional[str] = None,
    actor: ActorProfile = Depends(require_permission("permissions.view")),
    service: PermissionService = Depends(get_permission_service),
):
    return ok([p.model_dump() for p in await service.get_catalog(resource)])


@router.get("/role/{role}")
async def get_role_permissions(
    role: str,
    actor: ActorProfile = Depends(require_permission("permissions.view")),
    service: PermissionService = Depends(get_permission_service),
):
    return ok([p.model_dump() for p in await service.get_role_permissions(role)])


@router.get("/user/{user_id}")
async def get_user_permissions(
    user_id: str,
    actor: ActorProfile = Depends(require_permission("permissions.view")),
    service: PermissionService = Depends(get_permission_service),
):
    return ok(await service.get_user_permissions(user_id))


@router.get("/users")
async def list_users(
    search: Optional[str] = None,
    actor: ActorProfile = Depends(require_system_admin),
    service: PermissionService = Depends(get_permission_service),
):
    rows = await service.list_users(search)
    return {**ok(rows), "count": len(rows)}


# Registered after every fixed GET path so those are matched first
@router.get("/{permission_id}")
async def get_permission(
    permission_id: str,
    actor: ActorProfile = Depends(require_permission("permissions.view")),
    service: PermissionService = Depends(get_permission_service),
):
    return ok((await service.get_permission(permission_id)).model_dump())

# --------------------------
# Mutations
# --------------------------
@router.post("/role/{role}/assign")
async def assign_permissions_to_role(
    role: str,
    body: PermissionIdsRequest,
    actor: ActorProfile = Depends(require_system_admin),
    service: PermissionService = Depends(get_permission_service),
):
    count = await service.assign_permissions_to_role(role, body.permission_ids, actor_id=actor.user_id)
    return ok({"role": role, "count": count}, f"Successfully assigned {count} permission(s) to role {role}")


@router.delete("/role/{role}/remove")
async def remove_permissions_from_role(
    role: str,
    body: PermissionIdsRequest,
    actor: ActorProfile = Depends(require_system_admin),
    service: PermissionService = Depends(get_permission_service),
):
    count = await service.remove_permissions_from_role(role, body.permission_ids, actor_id=actor.user_id)
    return ok({"role": role, "count": count}, f"Successfully removed {count} permission(s) from role {role}")


@router.post("/user/{user_id}/assign")
async def assign_permissions_to_user(
    user_id: str,
    body: UserPermissionsRequest,
    actor: ActorProfile = Depends(require_system_admin),
    service: PermissionService = Depends(get_permission_service),
):
    count = await service.assign_permissions_to_user(
        user_id, body.permission_ids, granted=body.granted, actor_id=actor.user_id
    )
    return ok({"user_id": user_id, "count": count, "granted": body.granted})


@router.delete("/user/{user_id}/remove")
async def remove_permissions_from_user(
    user_id: str,
    body: PermissionIdsRequest,
    actor: ActorProfile = Depends(require_system_admin),
    service: PermissionService = Depends(get_permission_service),
):
    count = await service.remove_permissions_from_user(user_id, body.permission_ids, actor_id=actor.user_id)
    return ok({"user_id": user_id, "count": count})


@router.put("/user/{user_id}/systemadmin")
async def set_system_admin(
    user_id: str,
    body: SystemAdminRequest,
    actor: ActorProfile = Depends(require_system_admin),
    service: PermissionService = Depends(get_permission_service),
):
    await service.set_system_admin(user_id, body.is_system_admin, actor_id=actor.user_id)
    verb = "granted" if body.is_system_admin else "revoked"
    return ok({"user_id": user_id, "is_system_admin": body.is_system_admin}, f"Successfully {verb} systemadmin status")

# --------------------------
# Error mapping
# --------------------------
async def authorization_exception_handler(request: Request, exc: AuthorizationError):
    """403 means "you may not", 503 means "we could not check" """
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "authorization_error",
        code=exc.code,
        status_code=exc.status_code,
        message=exc.message,
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.code, "message": exc.message},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthorizationError, authorization_exception_handler)
