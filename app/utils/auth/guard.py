from typing import Callable

import structlog
from fastapi import Depends, Request

from models.permissions import AccountStatus, ActorProfile, Role
from services.permission_service import PermissionService
from utils.exceptions import NotAuthenticatedError, PermissionDeniedError

logger = structlog.get_logger(__name__)

# Roles whose accounts can be switched off by an admin
DEACTIVATABLE_ROLES = frozenset({Role.RESELLER, Role.CONSUMER})


def ensure_active_actor(actor: ActorProfile) -> ActorProfile:
    """Reject deactivated reseller/consumer accounts before any permission is evaluated"""
    if actor.is_system_admin:
        return actor
    if actor.account_status == AccountStatus.DEACTIVE and actor.roles & DEACTIVATABLE_ROLES:
        logger.warning("deactivated_account_rejected", user_id=actor.user_id, roles=actor.role_tag)
        raise PermissionDeniedError(
            "Your account has been deactivated. Please contact the administrator.",
            user_id=actor.user_id,
        )
    return actor


def get_permission_service(request: Request) -> PermissionService:
    return request.app.state.permission_service


def get_current_actor(request: Request) -> ActorProfile:
    """Actor placed on request.state by the authentication layer"""
    actor = getattr(request.state, "actor", None)
    if actor is None:
        raise NotAuthenticatedError("Authentication required")
    if isinstance(actor, dict):
        actor = ActorProfile.from_record(actor)
    return ensure_active_actor(actor)


def require_permission(name: str) -> Callable:
    """
    Route dependency that allows the request only if the actor holds `name`.

    Usage:
        @router.get("/invoices", dependencies=[Depends(require_permission("invoices.view"))])
    """
    async def dependency(
        actor: ActorProfile = Depends(get_current_actor),
        service: PermissionService = Depends(get_permission_service),
    ) -> ActorProfile:
        if not await service.check(actor, name):
            raise PermissionDeniedError(f"You do not have permission to {name}", permission=name)
        return actor

    return dependency


def require_system_admin(actor: ActorProfile = Depends(get_current_actor)) -> ActorProfile:
    if not actor.is_system_admin:
        raise PermissionDeniedError("System administrator access required")
    return actor
