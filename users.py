"""Registry queries against the ``users`` collection."""
import re
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from database import USERS, next_id, utcnow
from schemas import User, UserQuery

DEFAULT_SORT = "name"

# Public sort key -> stored field
SORTABLE_FIELDS = {
    "name": "name",
    "email": "email",
    "role": "role",
    "created_at": "created_at",
    "id": "_id",
}


def parse_sort(sort: Optional[str], order: Optional[str] = None) -> List[Tuple[str, int]]:
    """
    Resolve ``sort``/``order`` query values into a pymongo sort list.

    ``sort`` may be a bare field (``email``) or ``field:direction``
    (``email:desc``). Keys outside the allow-list fall back to the default
    column and unknown directions fall back to ascending.
    """
    field, _, inline_order = (sort or "").partition(":")
    column = SORTABLE_FIELDS.get(field.strip().lower())
    direction = (inline_order or order or "asc").strip().lower()
    if column is None:
        column = SORTABLE_FIELDS[DEFAULT_SORT]
    order_by = [(column, DESCENDING if direction == "desc" else ASCENDING)]
    if column != "_id":
        order_by.append(("_id", ASCENDING))
    return order_by


def normalize_email(email: str) -> str:
    """Stored and matched form of an email address: trimmed, lower-cased."""
    return email.strip().lower()


def build_filter(query: UserQuery) -> Dict[str, Any]:
    criteria: Dict[str, Any] = {}
    if query.name:
        criteria["name"] = {"$regex": re.escape(query.name), "$options": "i"}
    if query.email:
        criteria["email"] = {"$regex": re.escape(query.email), "$options": "i"}
    if query.role:
        criteria["role"] = query.role.value
    return criteria


class UserRepository:
    """Credential store and registry queries. All methods block on the driver."""

    def __init__(self, db: Database):
        self.db = db
        self.collection = db[USERS]

    def get(self, user_id: int) -> Optional[User]:
        doc = self.collection.find_one({"_id": user_id})
        return User(**doc) if doc else None

    def get_by_email(self, email: str) -> Optional[User]:
        doc = self.collection.find_one({"email": normalize_email(email)})
        return User(**doc) if doc else None

    def email_taken(self, email: str, exclude_id: Optional[int] = None) -> bool:
        criteria: Dict[str, Any] = {"email": normalize_email(email)}
        if exclude_id is not None:
            criteria["_id"] = {"$ne": exclude_id}
        return self.collection.find_one(criteria, {"_id": 1}) is not None

    def list(self, query: UserQuery) -> List[User]:
        if query.limit == 0:
            return []
        cursor = (
            self.collection.find(build_filter(query))
            .sort(parse_sort(query.sort, query.order))
            .skip(query.offset)
            .limit(query.limit)
        )
        return [User(**doc) for doc in cursor]

    def count(self, query: UserQuery) -> int:
        return self.collection.count_documents(build_filter(query))

    def snapshot(self) -> List[User]:
        """Every entry, ordered by id."""
        return [User(**doc) for doc in self.collection.find().sort("_id", ASCENDING)]

    def insert(
        self,
        name: str,
        email: str,
        role: str,
        password_hash: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        doc = {
            "_id": next_id(self.db, USERS),
            "name": name,
            "email": normalize_email(email),
            "role": role,
            "password_hash": password_hash,
            "mfa_secret": None,
            "avatar": avatar,
            "created_at": utcnow(),
        }
        self.collection.insert_one(doc)
        return User(**doc)

    def update(self, user_id: int, fields: Dict[str, Any]) -> Optional[User]:
        if fields.get("email"):
            fields = {**fields, "email": normalize_email(fields["email"])}
        doc = self.collection.find_one_and_update(
            {"_id": user_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return User(**doc) if doc else None

    def delete(self, user_id: int) -> bool:
        return self.collection.delete_one({"_id": user_id}).deleted_count > 0

    def set_mfa_secret(self, user_id: int, secret: Optional[str]) -> bool:
        result = self.collection.update_one({"_id": user_id}, {"$set": {"mfa_secret": secret}})
        return result.matched_count > 0
