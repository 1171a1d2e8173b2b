# bulk_checker.py - Batch permission checks for UI gating

import asyncio
from typing import Dict, Optional, Sequence

import structlog

from core.config import settings
from models.permissions import ActorProfile
from services.authority_resolver import validate_permission_name
from services.cache_coordinator import CacheCoordinator
from utils.exceptions import InvalidInputError, ServiceUnavailableError

logger = structlog.get_logger(__name__)


class BulkPermissionChecker:
    """Evaluate up to max_batch names at once; one failed lookup never aborts the batch"""

    def __init__(self, coordinator: CacheCoordinator, max_batch: Optional[int] = None):
        self.coordinator = coordinator
        self.max_batch = max_batch or settings.bulk_max_batch

    async def check_bulk(
        self,
        actor: ActorProfile,
        names: Sequence[str],
        max_batch: Optional[int] = None,
    ) -> Dict[str, bool]:
        max_batch = max_batch or self.max_batch

        # Size is checked before anything else so oversized batches cost no lookups
        if not isinstance(names, (list, tuple)) or not names:
            raise InvalidInputError("permissions must be a non-empty list")
        if len(names) > max_batch:
            raise InvalidInputError(
                f"Maximum {max_batch} permissions can be checked at once",
                requested=len(names),
                max_batch=max_batch,
            )

        unique = list(dict.fromkeys(
            validate_permission_name(n, self.coordinator.resolver.max_name_length) for n in names
        ))

        if self.coordinator.resolver.shortcut(actor):
            return {name: True for name in unique}

        results = await asyncio.gather(
            *(self.coordinator.check(actor, name) for name in unique),
            return_exceptions=True,
        )

        decisions: Dict[str, bool] = {}
        for name, result in zip(unique, results):
            if isinstance(result, ServiceUnavailableError):
                logger.warning("bulk_check_item_failed", user_id=actor.user_id, permission=name, error=result.message)
                decisions[name] = False
            elif isinstance(result, BaseException):
                raise result
            else:
                decisions[name] = bool(result)

        logger.debug(
            "bulk_permission_check",
            user_id=actor.user_id,
            requested=len(names),
            granted=sum(decisions.values()),
        )
        return decisions
