"""
MongoDB Connection Management
Singleton Motor client with connection pooling and lifecycle management.
"""
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING
from typing import Optional

from ..config import Settings, get_settings
from ..utils.observability import logger


class DatabaseManager:
    """
    Singleton MongoDB client manager with async Motor.
    Handles connection lifecycle, pooling, and graceful shutdown.
    """

    _instance: Optional["DatabaseManager"] = None
    _client: Optional[AsyncIOMotorClient] = None
    _database: Optional[AsyncIOMotorDatabase] = None
    _settings: Optional[Settings] = None

    def __new__(cls) -> "DatabaseManager":
        """Enforce singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    async def connect(self, settings: Optional[Settings] = None) -> None:
        """
        Initialize MongoDB connection with configured pool settings.
        Idempotent - safe to call multiple times.
        """
        if settings is not None:
            self._settings = settings

        if self._client:
            try:
                await self._client.admin.command("ping")
                logger.debug("Reusing healthy MongoDB connection")
                return
            except Exception as e:
                logger.warning(f"MongoDB connection lost ({e}). Rebuilding client...")
                self._client = None
                self._database = None

        settings = self.settings
        logger.bind(
            database=settings.mongodb_database,
            max_pool_size=settings.mongodb_max_pool_size,
            environment=settings.environment
        ).info(f"Connecting to MongoDB at {settings.mongodb_uri}")
        self._client = AsyncIOMotorClient(
            settings.mongodb_uri,
            maxPoolSize=settings.mongodb_max_pool_size,
            minPoolSize=settings.mongodb_min_pool_size,
            serverSelectionTimeoutMS=settings.mongodb_server_selection_timeout_ms,
            tz_aware=True,  # staleness cutoffs are aware UTC datetimes
        )

        self._database = self._client[settings.mongodb_database]

    async def disconnect(self) -> None:
        """
        Close MongoDB connection and cleanup resources.
        Idempotent - safe to call multiple times.
        """
        if self._client is None:
            logger.debug("MongoDB client already disconnected")
            return

        logger.info("Closing MongoDB connection")
        self._client.close()
        self._client = None
        self._database = None
        logger.info("MongoDB connection closed")

    async def ping(self) -> bool:
        """Return True if the server answers a ping."""
        if self._client is None:
            return False
        try:
            await self._client.admin.command("ping")
        except Exception as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False
        return True

    @property
    def database(self) -> AsyncIOMotorDatabase:
        """
        Get the database instance.
        Raises RuntimeError if not connected.
        """
        if self._database is None:
            raise RuntimeError(
                "Database not connected. Call await db_manager.connect() first."
            )
        return self._database

    @property
    def client(self) -> AsyncIOMotorClient:
        """
        Get the Motor client instance.
        Raises RuntimeError if not connected.
        """
        if self._client is None:
            raise RuntimeError(
                "Database client not connected. Call await db_manager.connect() first."
            )
        return self._client

    async def create_indexes(self) -> None:
        """
        Create the indexes both queue collections rely on.
        Should be called during application startup (or `workqueue init-db`).
        """
        db = self.database
        settings = self.settings

        logger.info("Creating MongoDB indexes")

        for collection_name in (settings.event_queue_collection, settings.job_queue_collection):
            collection = db[collection_name]

            # Idempotent enqueue depends on this index
            await collection.create_index(
                "dedup_key", unique=True, name="idx_dedup_key_unique"
            )
            # fetch_batch: status + attempts cap, oldest first
            await collection.create_index(
                [("status", ASCENDING), ("attempts", ASCENDING), ("created_at", ASCENDING)],
                name="idx_status_attempts_created"
            )
            # find_stale: status + created_at cutoff
            await collection.create_index(
                [("status", ASCENDING), ("created_at", ASCENDING)],
                name="idx_status_created"
            )

        logger.info("MongoDB indexes created successfully")


# Singleton instance
db_manager = DatabaseManager()


async def get_database() -> AsyncIOMotorDatabase:
    """
    Dependency injection helper for repositories.
    Returns the connected database instance.
    """
    return db_manager.database
