"""
Repositories Layer
Data persistence and query operations for the work queues.
"""
from .connection import db_manager, get_database, DatabaseManager
from .queue_items import MongoQueueStore
from .base import BaseRepository

__all__ = [
    "db_manager",
    "get_database",
    "DatabaseManager",
    "MongoQueueStore",
    "BaseRepository",
]
