# authority_resolver.py - Permission decisions straight from the authority sources

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import structlog

from core.config import settings
from metrics.metrics import MetricsCollector
from models.permissions import ActorProfile, Role
from services.authority_store import AuthorityStore
from utils.exceptions import AuthorizationError, InvalidInputError, ServiceUnavailableError

logger = structlog.get_logger(__name__)

CheckFn = Callable[[str], Awaitable[bool]]

SOURCE_SYSTEMADMIN = "systemadmin"
SOURCE_ADMIN_ROLE = "admin_role"
SOURCE_AUTHORITY = "authority"


def validate_permission_name(name, max_length: Optional[int] = None) -> str:
    max_length = max_length or settings.max_permission_name_length
    if not isinstance(name, str) or not name.strip():
        raise InvalidInputError("Permission name must be a non-empty string", permission=name)
    if len(name) > max_length:
        raise InvalidInputError(
            f"Permission name exceeds {max_length} characters", permission=name[:max_length]
        )
    return name


def validate_permission_names(names, max_length: Optional[int] = None) -> List[str]:
    """Validate a list of names and drop duplicates, keeping first-seen order"""
    if not isinstance(names, (list, tuple)) or not names:
        raise InvalidInputError("At least one permission name is required")
    return list(dict.fromkeys(validate_permission_name(n, max_length) for n in names))


async def call_authority(awaitable: Awaitable[Any], timeout: float, operation: str, **context) -> Any:
    """Await an authority-store call under a timeout; failures become SERVICE_UNAVAILABLE"""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except AuthorizationError:
        raise
    except asyncio.TimeoutError as e:
        logger.error("authority_timeout", operation=operation, timeout=timeout, **context)
        raise ServiceUnavailableError("Authority store timed out", operation=operation, **context) from e
    except Exception as e:
        logger.error("authority_call_failed", operation=operation, error=str(e), **context)
        raise ServiceUnavailableError("Authority store unavailable", operation=operation, **context) from e


async def any_granted(check_fn: CheckFn, names: Sequence[str]) -> bool:
    """
    Run checks concurrently and return on the first grant, cancelling the rest.

    Items that fail are skipped. If every item failed and none granted there is
    no answer to give, so ServiceUnavailableError is raised.
    """
    tasks = [asyncio.ensure_future(check_fn(n)) for n in names]
    failures = 0
    try:
        for next_done in asyncio.as_completed(tasks):
            try:
                if await next_done:
                    return True
            except ServiceUnavailableError as e:
                failures += 1
                logger.warning("check_any_item_failed", error=e.message)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
            elif not task.cancelled():
                # Finished but never awaited after an early grant; mark the outcome retrieved
                task.exception()

    if failures == len(tasks):
        raise ServiceUnavailableError("Could not determine access for any requested permission")
    return False


async def all_granted(check_fn: CheckFn, names: Sequence[str]) -> bool:
    """Run every check concurrently; a failed item counts as not granted"""
    results = await asyncio.gather(*(check_fn(n) for n in names), return_exceptions=True)
    granted = True
    for name, result in zip(names, results):
        if isinstance(result, ServiceUnavailableError):
            logger.warning("check_all_item_failed", permission=name, error=result.message)
            granted = False
        elif isinstance(result, BaseException):
            raise result
        elif not result:
            granted = False
    return granted


class AuthorityResolver:
    """
    Applies the decision rules in order:

    1. systemadmin actors are granted everything, even unknown names
    2. the admin role is granted every permission without explicit rows
    3. otherwise the authority store decides

    Holds no state of its own; the cache layer sits in front of it.
    """

    def __init__(
        self,
        store: AuthorityStore,
        timeout: Optional[float] = None,
        max_name_length: Optional[int] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.timeout = timeout if timeout is not None else settings.authority_timeout
        self.max_name_length = max_name_length or settings.max_permission_name_length
        self.metrics = metrics

    def _record(self, source: str, granted: bool) -> None:
        if self.metrics:
            self.metrics.record_permission_check(source, granted)

    def shortcut(self, actor: ActorProfile) -> Optional[str]:
        """Return the rule that grants everything to this actor, if any"""
        if actor.is_system_admin:
            return SOURCE_SYSTEMADMIN
        if Role.ADMIN in actor.roles:
            return SOURCE_ADMIN_ROLE
        return None

    async def resolve_grant(self, actor: ActorProfile, name: str) -> bool:
        """Ask the authority store, with a timeout; failures become SERVICE_UNAVAILABLE"""
        start = time.perf_counter()
        granted = bool(await call_authority(
            self.store.has_permission(actor.user_id, name),
            self.timeout,
            "has_permission",
            user_id=actor.user_id,
            permission=name,
        ))
        self._record(SOURCE_AUTHORITY, granted)
        if self.metrics:
            self.metrics.observe_check_duration("authority", time.perf_counter() - start)
        return granted

    async def check(self, actor: ActorProfile, name: str) -> bool:
        validate_permission_name(name, self.max_name_length)
        source = self.shortcut(actor)
        if source:
            self._record(source, True)
            return True
        return await self.resolve_grant(actor, name)

    async def check_any(self, actor: ActorProfile, names: Sequence[str]) -> bool:
        unique = validate_permission_names(names, self.max_name_length)
        source = self.shortcut(actor)
        if source:
            self._record(source, True)
            return True
        return await any_granted(lambda n: self.resolve_grant(actor, n), unique)

    async def check_all(self, actor: ActorProfile, names: Sequence[str]) -> bool:
        unique = validate_permission_names(names, self.max_name_length)
        source = self.shortcut(actor)
        if source:
            self._record(source, True)
            return True
        return await all_granted(lambda n: self.resolve_grant(actor, n), unique)
