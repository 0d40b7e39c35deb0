"""
Generic Repository Base Class
Shared document <-> model plumbing for MongoDB collections.
"""
from typing import Generic, TypeVar, Type, Optional, List, Dict, Any
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from bson import ObjectId

from ..models.base import MongoBaseModel

# Generic type for domain models
T = TypeVar("T", bound=MongoBaseModel)


class BaseRepository(Generic[T]):
    """
    Generic async repository for MongoDB collections.
    Provides typed reads; subclasses own their writes.

    Usage:
        class MongoQueueStore(BaseRepository[QueueItem], QueueStore):
            def __init__(self, database: AsyncIOMotorDatabase, collection_name: str):
                super().__init__(database, collection_name, QueueItem)
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        collection_name: str,
        model_class: Type[T]
    ):
        """
        Initialize repository with database connection and model type.

        Args:
            database: Motor database instance
            collection_name: MongoDB collection name
            model_class: Pydantic model class for type safety
        """
        self.database = database
        self.collection: AsyncIOMotorCollection = database[collection_name]
        self.model_class = model_class
        self.collection_name = collection_name

    @staticmethod
    def _object_id(document_id: str) -> Optional[ObjectId]:
        """Parse a string id, returning None for anything that is not an ObjectId."""
        if not ObjectId.is_valid(document_id):
            return None
        return ObjectId(document_id)

    async def find_by_id(self, document_id: str) -> Optional[T]:
        """
        Retrieve a document by its MongoDB ObjectId.

        Args:
            document_id: String representation of ObjectId

        Returns:
            Domain model instance or None if not found
        """
        oid = self._object_id(document_id)
        if oid is None:
            return None

        doc = await self.collection.find_one({"_id": oid})

        if doc is None:
            return None

        return self._to_model(doc)

    async def find_many(
        self,
        filter_dict: Dict[str, Any],
        limit: int = 100,
        sort: Optional[List[tuple]] = None
    ) -> List[T]:
        """
        Retrieve multiple documents matching the filter.

        Args:
            filter_dict: MongoDB query filter
            limit: Maximum number of documents to return
            sort: List of (field, direction) tuples for sorting

        Returns:
            List of domain model instances
        """
        cursor = self.collection.find(filter_dict)

        if sort:
            cursor = cursor.sort(sort)

        cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit)

        return [self._to_model(doc) for doc in docs]

    def _to_model(self, doc: Dict[str, Any]) -> T:
        """
        Convert MongoDB document to Pydantic model instance.

        Args:
            doc: Raw MongoDB document dict

        Returns:
            Domain model instance
        """
        # Convert ObjectId to string for Pydantic validation
        if "_id" in doc:
            doc["_id"] = str(doc["_id"])

        model_fields = self.model_class.model_fields.keys()

        cleaned_doc = {
            k: v for k, v in doc.items()
            if k in model_fields or k == "_id"
        }

        return self.model_class.model_validate(cleaned_doc)
