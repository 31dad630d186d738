"""
Directory service: create/read/update/delete on registry entries.

Each mutation commits to the store first, then appends one event to the
mutation log, then schedules a broadcast. Audit and broadcast failures are
side-channel failures and never change the caller's result.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool

from audit import MutationLog
from broadcaster import Broadcaster
from errors import Conflict, NotFound, UpstreamFailure, ValidationFailed
from schemas import Action, EventType, UserCreate, UserPublic, UserQuery, UserUpdate
from users import UserRepository

logger = logging.getLogger(__name__)

ENTITY = "user"

class DirectoryService:
    def __init__(self, users: UserRepository, mutation_log: MutationLog, broadcaster: Broadcaster):
        self.users = users
        self.mutation_log = mutation_log
        self.broadcaster = broadcaster

    async def _store(self, operation: str, func, *args, **kwargs):
        try:
            return await run_in_threadpool(func, *args, **kwargs)
        except DuplicateKeyError as exc:
            raise Conflict("email") from exc
        except PyMongoError as exc:
            logger.exception("Store failure during %s", operation)
            raise UpstreamFailure() from exc

    async def _after_commit(
        self,
        actor_id: Optional[int],
        action: Action,
        entity_id: int,
        event: EventType,
        payload: Dict[str, Any],
    ) -> None:
        await self.mutation_log.record_quietly(actor_id, action, ENTITY, entity_id)
        self.broadcaster.publish(event.value, payload)

    # Reads

    async def list(self, query: UserQuery) -> List[UserPublic]:
        users = await self._store("list", self.users.list, query)
        return [UserPublic.from_user(u) for u in users]

    async def count(self, query: UserQuery) -> int:
        return await self._store("count", self.users.count, query)

    async def get(self, user_id: int) -> UserPublic:
        user = await self._store("get", self.users.get, user_id)
        if user is None:
            raise NotFound("User")
        return UserPublic.from_user(user)

    # Writes

    async def create(
        self,
        data: UserCreate,
        actor_id: Optional[int] = None,
        password_hash: Optional[str] = None,
    ) -> UserPublic:
        email = str(data.email)
        if await self._store("email check", self.users.email_taken, email):
            raise Conflict("email")
        user = await self._store(
            "create",
            self.users.insert,
            name=data.name,
            email=email,
            role=data.role.value,
            password_hash=password_hash,
            avatar=data.avatar,
        )
        entry = UserPublic.from_user(user)
        logger.info("Created user %s (actor=%s)", entry.id, actor_id)
        await self._after_commit(
            actor_id, Action.CREATE, entry.id, EventType.ENTRY_ADDED, entry.model_dump(mode="json", by_alias=True)
        )
        return entry

    async def update(self, user_id: int, data: UserUpdate, actor_id: Optional[int] = None) -> UserPublic:
        fields = data.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationFailed([{"field": "body", "message": "No fields to update"}])
        if "email" in fields:
            if fields["email"] is None:
                raise ValidationFailed([{"field": "email", "message": "Email cannot be empty"}])
            fields["email"] = str(fields["email"])
            if await self._store("email check", self.users.email_taken, fields["email"], exclude_id=user_id):
                raise Conflict("email")
        if "name" in fields and fields["name"] is None:
            raise ValidationFailed([{"field": "name", "message": "Name is required"}])
        if "role" in fields:
            if fields["role"] is None:
                raise ValidationFailed([{"field": "role", "message": "Role must be either admin or user"}])
            fields["role"] = fields["role"].value

        user = await self._store("update", self.users.update, user_id, fields)
        if user is None:
            raise NotFound("User")
        entry = UserPublic.from_user(user)
        logger.info("Updated user %s (actor=%s)", user_id, actor_id)
        await self._after_commit(
            actor_id, Action.UPDATE, user_id, EventType.ENTRY_UPDATED, entry.model_dump(mode="json", by_alias=True)
        )
        return entry

    async def delete(self, user_id: int, actor_id: Optional[int] = None) -> None:
        deleted = await self._store("delete", self.users.delete, user_id)
        if not deleted:
            raise NotFound("User")
        logger.info("Deleted user %s (actor=%s)", user_id, actor_id)
        await self._after_commit(actor_id, Action.DELETE, user_id, EventType.ENTRY_DELETED, {"id": user_id})
