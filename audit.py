"""Append-only audit trail of directory mutations."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

from database import MUTATION_EVENTS, utcnow
from schemas import Action

logger = logging.getLogger(__name__)


class MutationLog:
    """
    Records every create/update/delete as one event document:
    ``{actor_id, action, entity, entity_id, timestamp}``.

    Events are never modified or removed here; retention is handled outside
    the service.
    """

    def __init__(self, db: Database):
        self.collection = db[MUTATION_EVENTS]

    def record(
        self,
        actor_id: Optional[int],
        action: Action,
        entity: str,
        entity_id: Any,
        timestamp: Optional[datetime] = None,
    ) -> None:
        self.collection.insert_one(
            {
                "actor_id": actor_id,
                "action": action.value,
                "entity": entity,
                "entity_id": entity_id,
                "timestamp": timestamp or utcnow(),
            }
        )

    async def record_quietly(self, actor_id: Optional[int], action: Action, entity: str, entity_id: Any) -> bool:
        """Record off the event loop; failures are logged and never raised."""
        try:
            await run_in_threadpool(self.record, actor_id, action, entity, entity_id)
            return True
        except PyMongoError:
            logger.exception("Failed to log %s of %s %s", action.value, entity, entity_id)
            return False

    def actors_over_threshold(self, since: datetime, threshold: int) -> List[Dict[str, Any]]:
        """
        Actors with strictly more than ``threshold`` events after ``since``.

        Anonymous events (no actor) are ignored. Each row carries ``actor_id``,
        ``count`` and ``last_event_at``.
        """
        pipeline = [
            {"$match": {"timestamp": {"$gt": since}, "actor_id": {"$ne": None}}},
            {
                "$group": {
                    "_id": "$actor_id",
                    "count": {"$sum": 1},
                    "last_event_at": {"$max": "$timestamp"},
                }
            },
            {"$match": {"count": {"$gt": threshold}}},
            {"$sort": {"_id": ASCENDING}},
        ]
        return [
            {"actor_id": row["_id"], "count": row["count"], "last_event_at": row["last_event_at"]}
            for row in self.collection.aggregate(pipeline)
        ]
