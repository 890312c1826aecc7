# /shopchat/services/db_service.py

import re
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import UpdateOne

from shopchat.config.settings import settings
from shopchat.models.conversation import CustomerToken, Message, QuantityIncrementRule
from shopchat.utils.circuit_breaker import CircuitBreaker
from shopchat.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)


class DatabaseService:
    """
    MongoDB-backed implementation of the conversation store, the customer token
    store, the OAuth state store and the quantity-increment rule lookup.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
                tz_aware=True,
            )
            self.db = self.client.get_default_database("shopchat")
            self.circuit_breaker = CircuitBreaker("database")
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    async def _safe_db_operation(self, operation, name: str, default_return: Any = None) -> Any:
        """
        Execute a database operation with consistent error handling.

        Args:
            operation: Async callable to execute
            name: Operation label used for metrics
            default_return: Value to return on failure

        Returns:
            Operation result or default_return on failure
        """
        try:
            result = await self.circuit_breaker.call(operation)
            database_operations_counter.labels(operation=name, status="success").inc()
            return result
        except Exception as e:
            logger.exception(f"Database operation '{name}' failed: {type(e).__name__}")
            database_operations_counter.labels(operation=name, status="failed").inc()
            return default_return

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            ("conversations", [("conversation_id", 1)], {"unique": True}),
            ("conversations", [("last_message_at", -1)], {}),
            ("messages", [("conversation_id", 1), ("created_at", -1)], {}),
            ("customer_tokens", [("conversation_id", 1)], {"unique": True}),
            ("oauth_states", [("state", 1)], {"unique": True}),
            ("oauth_states", [("expires_at", 1)], {"expireAfterSeconds": 0}),
            ("quantity_increments", [("entity_id", 1)], {"unique": True}),
            ("quantity_increments", [("entity_type", 1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Conversation Store ====================

    async def get_metadata(self, conversation_id: str) -> Dict[str, Any]:
        async def _op():
            doc = await self.db.conversations.find_one(
                {"conversation_id": conversation_id}, {"metadata": 1}
            )
            return (doc or {}).get("metadata") or {}

        return await self._safe_db_operation(_op, "get_metadata", default_return={})

    async def set_metadata(self, conversation_id: str, patch: Dict[str, Any]) -> bool:
        """Merges `patch` into the conversation's metadata map (last write wins per key)."""
        if not patch:
            return True
        now = self._now_utc()
        update = {f"metadata.{key}": value for key, value in patch.items()}
        update["updated_at"] = now

        async def _op():
            await self.db.conversations.update_one(
                {"conversation_id": conversation_id},
                {"$set": update, "$setOnInsert": {"created_at": now, "archived": False}},
                upsert=True,
            )
            return True

        return await self._safe_db_operation(_op, "set_metadata", default_return=False)

    async def append_message(self, conversation_id: str, role: str, content: List[Dict[str, Any]]) -> bool:
        now = self._now_utc()

        async def _op():
            await self.db.messages.insert_one({
                "conversation_id": conversation_id,
                "role": role,
                "content": content,
                "created_at": now,
            })
            await self.db.conversations.update_one(
                {"conversation_id": conversation_id},
                {
                    "$set": {"last_message_at": now, "updated_at": now},
                    "$setOnInsert": {"created_at": now, "archived": False, "metadata": {}},
                },
                upsert=True,
            )
            return True

        return await self._safe_db_operation(_op, "append_message", default_return=False)

    async def get_history(self, conversation_id: str, limit: int = 10) -> List[Message]:
        """Returns the most recent `limit` messages in chronological order."""
        async def _op():
            cursor = (
                self.db.messages.find({"conversation_id": conversation_id})
                .sort([("created_at", -1), ("_id", -1)])
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
            messages = []
            for doc in reversed(docs):
                content = doc.get("content")
                if isinstance(content, str):
                    content = [{"type": "text", "text": content}]
                messages.append(Message(role=doc["role"], content=content or [], created_at=doc["created_at"]))
            return messages

        return await self._safe_db_operation(_op, "get_history", default_return=[])

    async def delete_messages(self, conversation_id: str) -> Optional[int]:
        """Deletes every stored message of a conversation; None if the delete failed."""
        async def _op():
            result = await self.db.messages.delete_many({"conversation_id": conversation_id})
            return result.deleted_count

        return await self._safe_db_operation(_op, "delete_messages")

    # ==================== Customer Tokens ====================

    async def get_token(self, conversation_id: str) -> Optional[CustomerToken]:
        """Returns the stored token unless it has expired; expiry is only checked here."""
        async def _op():
            doc = await self.db.customer_tokens.find_one({"conversation_id": conversation_id})
            if not doc:
                return None
            token = CustomerToken(
                conversation_id=conversation_id,
                access_token=doc["access_token"],
                expires_at=doc.get("expires_at"),
            )
            return None if token.is_expired() else token

        return await self._safe_db_operation(_op, "get_token")

    async def store_token(self, conversation_id: str, access_token: str, expires_at: Optional[datetime]) -> bool:
        now = self._now_utc()

        async def _op():
            await self.db.customer_tokens.update_one(
                {"conversation_id": conversation_id},
                {
                    "$set": {"access_token": access_token, "expires_at": expires_at, "updated_at": now},
                    "$setOnInsert": {"created_at": now},
                },
                upsert=True,
            )
            return True

        return await self._safe_db_operation(_op, "store_token", default_return=False)

    # ==================== OAuth State (PKCE) ====================

    async def store_oauth_state(self, state: str, record: Dict[str, Any], expires_at: datetime) -> bool:
        async def _op():
            await self.db.oauth_states.insert_one({"state": state, "expires_at": expires_at, **record})
            return True

        return await self._safe_db_operation(_op, "store_oauth_state", default_return=False)

    async def pop_oauth_state(self, state: str) -> Optional[Dict[str, Any]]:
        """Fetches and deletes a non-expired state record so it cannot be reused."""
        async def _op():
            return await self.db.oauth_states.find_one_and_delete(
                {"state": state, "expires_at": {"$gt": self._now_utc()}}
            )

        return await self._safe_db_operation(_op, "pop_oauth_state")

    # ==================== Quantity Increments ====================

    async def lookup_increment(self, entity_id: Union[str, Iterable[str]]) -> Optional[QuantityIncrementRule]:
        ids = [entity_id] if isinstance(entity_id, str) else [i for i in entity_id if i]
        if not ids:
            return None

        async def _op():
            doc = await self.db.quantity_increments.find_one({"entity_id": {"$in": ids}})
            return self._to_rule(doc)

        return await self._safe_db_operation(_op, "lookup_increment")

    async def lookup_increment_by_title(self, title: str) -> Optional[QuantityIncrementRule]:
        if not title or not title.strip():
            return None
        pattern = f"^{re.escape(title.strip())}$"

        async def _op():
            doc = await self.db.quantity_increments.find_one(
                {"product_title": {"$regex": pattern, "$options": "i"}}
            )
            return self._to_rule(doc)

        return await self._safe_db_operation(_op, "lookup_increment_by_title")

    async def upsert_increments(self, rules: List[QuantityIncrementRule]) -> int:
        if not rules:
            return 0
        now = self._now_utc()
        operations = [
            UpdateOne(
                {"entity_id": rule.entity_id},
                {
                    "$set": {**rule.model_dump(), "updated_at": now},
                    "$setOnInsert": {"created_at": now},
                },
                upsert=True,
            )
            for rule in rules
        ]

        async def _op():
            result = await self.db.quantity_increments.bulk_write(operations, ordered=False)
            return result.upserted_count + result.modified_count

        return await self._safe_db_operation(_op, "upsert_increments", default_return=0)

    def _to_rule(self, doc: Optional[Dict[str, Any]]) -> Optional[QuantityIncrementRule]:
        if not doc:
            return None
        try:
            return QuantityIncrementRule(
                entity_id=doc["entity_id"],
                increment=int(doc["increment"]),
                entity_type=doc.get("entity_type", "product"),
                product_title=doc.get("product_title"),
            )
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed increment rule {doc.get('entity_id')}: {e}")
            return None


# Globally accessible instance
db_service = DatabaseService(settings.mongo_atlas_uri)
