import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import structlog
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class ActivityEvent(BaseModel):
    """Emitted by permission mutations after they commit"""
    action: str  # e.g. assign_permissions_to_role
    actor_id: Optional[str] = None
    resource_type: str
    resource_id: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ActivityLogger:
    """
    Consumes activity events outside the request path.

    emit() returns immediately; a failed write is logged and never reaches the
    mutation that produced the event.
    """

    def __init__(self, db: Optional[AsyncIOMotorDatabase] = None):
        self.db = db
        self._pending: Set[asyncio.Task] = set()

    def emit(self, event: ActivityEvent) -> None:
        task = asyncio.create_task(self.log_event(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def log_event(self, event: ActivityEvent) -> None:
        logger.info(
            "activity_event",
            action=event.action,
            actor_id=event.actor_id,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
        )
        if self.db is None:
            return
        try:
            await self.db.activity_logs.insert_one(event.model_dump())
        except Exception as e:
            logger.error("activity_log_failed", action=event.action, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight events, e.g. at shutdown"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
