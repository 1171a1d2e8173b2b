# database.py - Async MongoDB connection manager for the authority store

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError
from typing import Optional, Dict, Any
from dataclasses import dataclass
from datetime import datetime, timezone
import asyncio
import structlog

from core.config import settings

logger = structlog.get_logger(__name__)

# =====================================
# CONFIGURATION
# =====================================

@dataclass
class AsyncDatabaseConfig:
    """Async MongoDB configuration"""
    mongo_uri: str
    database_name: str
    max_pool_size: int = 100
    min_pool_size: int = 10
    server_selection_timeout_ms: int = 5000
    connect_timeout_ms: int = 5000
    socket_timeout_ms: int = 20000

    @classmethod
    def from_settings(cls) -> "AsyncDatabaseConfig":
        return cls(mongo_uri=settings.mongo_url, database_name=settings.mongo_db)

    def validate(self) -> None:
        """Validate configuration"""
        if not self.mongo_uri:
            raise ValueError("MongoDB URI cannot be empty")
        if not self.database_name:
            raise ValueError("Database name cannot be empty")
        if self.max_pool_size < self.min_pool_size:
            raise ValueError("max_pool_size must be >= min_pool_size")

# =====================================
# ASYNC DATABASE MANAGER
# =====================================

class AsyncDatabaseManager:
    """Owns the motor client; call initialize() at startup and close() at shutdown"""

    def __init__(self):
        self._client: Optional[AsyncIOMotorClient] = None
        self._database: Optional[AsyncIOMotorDatabase] = None
        self._config: Optional[AsyncDatabaseConfig] = None
        self._lock = asyncio.Lock()

    async def initialize(self, config: Optional[AsyncDatabaseConfig] = None) -> None:
        async with self._lock:
            if self._database is not None:
                logger.warning("database_already_initialized")
                return

            config = config or AsyncDatabaseConfig.from_settings()
            config.validate()

            self._client = AsyncIOMotorClient(
                config.mongo_uri,
                maxPoolSize=config.max_pool_size,
                minPoolSize=config.min_pool_size,
                serverSelectionTimeoutMS=config.server_selection_timeout_ms,
                connectTimeoutMS=config.connect_timeout_ms,
                socketTimeoutMS=config.socket_timeout_ms,
            )
            try:
                await asyncio.wait_for(
                    self._client.server_info(),
                    timeout=config.server_selection_timeout_ms / 1000,
                )
            except (ConnectionFailure, ServerSelectionTimeoutError, asyncio.TimeoutError) as e:
                logger.error("mongodb_connect_failed", error=str(e))
                self._client.close()
                self._client = None
                raise ConnectionFailure(f"Could not connect to MongoDB: {e}") from e

            self._config = config
            self._database = self._client[config.database_name]
            logger.info("mongodb_connected", database=config.database_name)

    @property
    def database(self) -> AsyncIOMotorDatabase:
        if self._database is None:
            raise RuntimeError("AsyncDatabaseManager not initialized. Call `await initialize()` first.")
        return self._database

    async def health_check(self) -> Dict[str, Any]:
        if self._client is None:
            return {"status": "unhealthy", "error": "Database not initialized"}
        try:
            start = datetime.now()
            await asyncio.wait_for(self._client.admin.command("ping"), timeout=5.0)
            latency = (datetime.now() - start).total_seconds() * 1000
            return {
                "status": "healthy",
                "latency_ms": round(latency, 2),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        except (ConnectionFailure, asyncio.TimeoutError) as e:
            logger.error("mongodb_health_check_failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}

    async def close(self) -> None:
        async with self._lock:
            if self._client is not None:
                self._client.close()
            self._client = None
            self._database = None
            logger.info("mongodb_connection_closed")


db_manager = AsyncDatabaseManager()
