"""MongoDB connection handling and small collection helpers."""
import logging
from datetime import datetime, timezone

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

from config import Settings

logger = logging.getLogger(__name__)

USERS = "users"
COUNTERS = "counters"
MUTATION_EVENTS = "mutation_events"
MONITORED_USERS = "monitored_users"


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form BSON round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def connect(settings: Settings) -> Database:
    client = MongoClient(settings.database_url)
    logger.info("MongoDB client created for database %s", settings.database_name)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    """Create the indexes the service relies on. Safe to call repeatedly."""
    db[USERS].create_index([("email", ASCENDING)], unique=True)
    db[USERS].create_index([("name", ASCENDING)])
    db[MUTATION_EVENTS].create_index([("timestamp", ASCENDING)])
    db[MONITORED_USERS].create_index(
        [("actor_id", ASCENDING), ("window_key", ASCENDING)], unique=True
    )


def next_id(db: Database, sequence: str) -> int:
    """Allocate the next integer id for a sequence with an atomic increment."""
    doc = db[COUNTERS].find_one_and_update(
        {"_id": sequence},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return doc["seq"]
