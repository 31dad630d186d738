"""
Tests for the directory service and its live broadcasts.

Tests cover:
- Create/update/delete writing exactly one audit event and one broadcast
- Email conflicts rejected with no event and no broadcast
- Audit and observer failures never failing the mutation
- Filtering, sorting and paging
"""
import asyncio

import pytest
from pymongo.errors import PyMongoError

from broadcaster import Broadcaster
from database import MUTATION_EVENTS
from errors import Conflict, NotFound, ValidationFailed
from schemas import Role, UserCreate, UserQuery, UserUpdate


class FlakyObserver:
    """Accepts the initial snapshot, then fails every send."""

    def __init__(self):
        self.messages = []

    async def send_json(self, message):
        if self.messages:
            raise RuntimeError("connection reset")
        self.messages.append(message)

    async def close(self):
        pass


class HangingObserver:
    """Accepts the initial snapshot, then never completes a send."""

    def __init__(self):
        self.messages = []

    async def send_json(self, message):
        if self.messages:
            await asyncio.sleep(60)
        self.messages.append(message["type"])

    async def close(self):
        pass


def events(db):
    return list(db[MUTATION_EVENTS].find({}, {"_id": 0}))


async def settle(directory):
    await directory.broadcaster.drain()


# ============================================================================
# Create
# ============================================================================

@pytest.mark.asyncio
async def test_create_persists_logs_and_broadcasts(directory, db, observer):
    await directory.broadcaster.connect(observer)

    entry = await directory.create(UserCreate(name="Ada", email="ada@example.com", role=Role.ADMIN), actor_id=7)
    await settle(directory)

    assert (await directory.get(entry.id)).email == "ada@example.com"

    logged = events(db)
    assert len(logged) == 1
    assert logged[0]["actor_id"] == 7
    assert logged[0]["action"] == "create"
    assert logged[0]["entity"] == "user"
    assert logged[0]["entity_id"] == entry.id

    assert observer.types() == ["INITIAL_DATA", "ENTRY_ADDED"]
    added = observer.messages[1]
    assert added["data"]["email"] == "ada@example.com"
    assert [u["email"] for u in added["allUsers"]] == ["ada@example.com"]


@pytest.mark.asyncio
async def test_initial_data_reflects_existing_entries(directory, observer):
    await directory.create(UserCreate(name="Ada", email="ada@example.com"))

    await directory.broadcaster.connect(observer)

    assert observer.types() == ["INITIAL_DATA"]
    initial = observer.messages[0]
    assert initial["data"] is None
    assert [u["email"] for u in initial["allUsers"]] == ["ada@example.com"]


@pytest.mark.asyncio
async def test_snapshot_never_exposes_secrets(directory, users, observer):
    entry = await directory.create(UserCreate(name="Ada", email="ada@example.com"), password_hash="hash")
    users.set_mfa_secret(entry.id, "JBSWY3DPEHPK3PXP")

    await directory.broadcaster.connect(observer)

    snapshot_entry = observer.messages[0]["allUsers"][0]
    assert "passwordHash" not in snapshot_entry
    assert "password_hash" not in snapshot_entry
    assert "mfaSecret" not in snapshot_entry
    assert "mfa_secret" not in snapshot_entry


@pytest.mark.asyncio
async def test_create_duplicate_email_conflicts_without_side_effects(directory, db, observer):
    await directory.create(UserCreate(name="Ada", email="ada@example.com"), actor_id=1)
    await settle(directory)
    await directory.broadcaster.connect(observer)

    with pytest.raises(Conflict):
        await directory.create(UserCreate(name="Imposter", email="ada@example.com"), actor_id=1)
    await settle(directory)

    assert len(events(db)) == 1
    assert observer.types() == ["INITIAL_DATA"]


@pytest.mark.asyncio
async def test_email_uniqueness_ignores_case(directory):
    entry = await directory.create(UserCreate(name="Ada", email="Ada@Example.com"))
    grace = await directory.create(UserCreate(name="Grace", email="grace@example.com"))

    assert entry.email == "ada@example.com"
    with pytest.raises(Conflict):
        await directory.create(UserCreate(name="Ada Two", email="ADA@example.com"))
    with pytest.raises(Conflict):
        await directory.update(grace.id, UserUpdate(email="Ada@example.COM"))


@pytest.mark.asyncio
async def test_store_unique_index_backs_the_precheck(directory, users, monkeypatch):
    await directory.create(UserCreate(name="Ada", email="ada@example.com"))
    # Simulate losing the check-then-insert race
    monkeypatch.setattr(users, "email_taken", lambda *args, **kwargs: False)

    with pytest.raises(Conflict):
        await directory.create(UserCreate(name="Ada Two", email="ada@example.com"))


@pytest.mark.asyncio
async def test_anonymous_actor_is_logged_as_none(directory, db):
    await directory.create(UserCreate(name="Ada", email="ada@example.com"))

    assert events(db)[0]["actor_id"] is None


@pytest.mark.asyncio
async def test_audit_failure_does_not_fail_mutation(directory, mutation_log, observer, monkeypatch):
    def broken(*args, **kwargs):
        raise PyMongoError("audit store down")

    monkeypatch.setattr(mutation_log, "record", broken)
    await directory.broadcaster.connect(observer)

    entry = await directory.create(UserCreate(name="Ada", email="ada@example.com"), actor_id=3)
    await settle(directory)

    assert entry.id is not None
    assert observer.types() == ["INITIAL_DATA", "ENTRY_ADDED"]


@pytest.mark.asyncio
async def test_failing_observer_is_dropped_without_affecting_others(directory, observer):
    flaky = FlakyObserver()
    await directory.broadcaster.connect(flaky)
    await directory.broadcaster.connect(observer)
    assert directory.broadcaster.observer_count == 2

    await directory.create(UserCreate(name="Ada", email="ada@example.com"))
    await settle(directory)

    assert observer.types() == ["INITIAL_DATA", "ENTRY_ADDED"]
    assert directory.broadcaster.observer_count == 1


@pytest.mark.asyncio
async def test_slow_observer_times_out_without_blocking_others(users, observer):
    broadcaster = Broadcaster(users, send_timeout=0.05)
    slow = HangingObserver()
    await broadcaster.connect(slow)
    await broadcaster.connect(observer)

    delivered = await broadcaster.broadcast("ENTRY_ADDED", {"id": 1})

    assert delivered == 1
    assert observer.types() == ["INITIAL_DATA", "ENTRY_ADDED"]
    assert slow.messages == ["INITIAL_DATA"]
    assert broadcaster.observer_count == 1


@pytest.mark.asyncio
async def test_observer_joining_after_commit_gets_change_in_initial_data(directory, observer):
    await directory.create(UserCreate(name="Ada", email="ada@example.com"))
    # No drain: the ENTRY_ADDED broadcast may still be pending
    await directory.broadcaster.connect(observer)
    await settle(directory)

    assert observer.types() == ["INITIAL_DATA"]
    assert [u["email"] for u in observer.messages[0]["allUsers"]] == ["ada@example.com"]


@pytest.mark.asyncio
async def test_initial_data_is_delivered_before_concurrent_changes(directory, broadcaster, observer, monkeypatch):
    original = broadcaster.snapshot
    taken = []
    release = asyncio.Event()

    async def slow_first_snapshot():
        result = await original()
        taken.append(result)
        if len(taken) == 1:
            await release.wait()
        return result

    monkeypatch.setattr(broadcaster, "snapshot", slow_first_snapshot)

    connecting = asyncio.create_task(broadcaster.connect(observer))
    while not taken:
        await asyncio.sleep(0.01)
    # Commits while the initial snapshot (already empty) is held back
    await directory.create(UserCreate(name="Ada", email="ada@example.com"))
    await asyncio.sleep(0.05)
    release.set()
    await connecting
    await settle(directory)

    assert observer.types() == ["INITIAL_DATA", "ENTRY_ADDED"]
    assert [u["email"] for u in observer.messages[-1]["allUsers"]] == ["ada@example.com"]


# ============================================================================
# Update
# ============================================================================

@pytest.mark.asyncio
async def test_update_changes_fields_and_broadcasts(directory, db, observer):
    entry = await directory.create(UserCreate(name="Ada", email="ada@example.com"))
    await directory.broadcaster.connect(observer)

    updated = await directory.update(entry.id, UserUpdate(name="Ada Lovelace", role=Role.ADMIN), actor_id=9)
    await settle(directory)

    assert updated.name == "Ada Lovelace"
    assert updated.role == Role.ADMIN
    assert updated.email == "ada@example.com"
    assert events(db)[-1]["action"] == "update"
    assert events(db)[-1]["actor_id"] == 9
    assert observer.types() == ["INITIAL_DATA", "ENTRY_UPDATED"]
    assert observer.messages[1]["allUsers"][0]["name"] == "Ada Lovelace"


@pytest.mark.asyncio
async def test_update_keeping_own_email_is_not_a_conflict(directory):
    entry = await directory.create(UserCreate(name="Ada", email="ada@example.com"))

    updated = await directory.update(entry.id, UserUpdate(email="ada@example.com", name="Ada L"))

    assert updated.name == "Ada L"


@pytest.mark.asyncio
async def test_update_to_taken_email_conflicts(directory, db, observer):
    await directory.create(UserCreate(name="Ada", email="ada@example.com"))
    grace = await directory.create(UserCreate(name="Grace", email="grace@example.com"))
    await settle(directory)
    await directory.broadcaster.connect(observer)

    with pytest.raises(Conflict):
        await directory.update(grace.id, UserUpdate(email="ada@example.com"))
    await settle(directory)

    assert len(events(db)) == 2
    assert observer.types() == ["INITIAL_DATA"]


@pytest.mark.asyncio
async def test_update_missing_entry_is_not_found(directory, db):
    with pytest.raises(NotFound):
        await directory.update(404, UserUpdate(name="Ghost"))

    assert events(db) == []


@pytest.mark.asyncio
async def test_update_without_fields_is_rejected(directory):
    entry = await directory.create(UserCreate(name="Ada", email="ada@example.com"))

    with pytest.raises(ValidationFailed):
        await directory.update(entry.id, UserUpdate())


# ============================================================================
# Delete
# ============================================================================

@pytest.mark.asyncio
async def test_delete_removes_entry_and_broadcasts(directory, db, observer):
    entry = await directory.create(UserCreate(name="Ada", email="ada@example.com"))
    await directory.broadcaster.connect(observer)

    await directory.delete(entry.id, actor_id=2)
    await settle(directory)

    with pytest.raises(NotFound):
        await directory.get(entry.id)
    assert events(db)[-1]["action"] == "delete"
    assert observer.types() == ["INITIAL_DATA", "ENTRY_DELETED"]
    assert observer.messages[1]["data"] == {"id": entry.id}
    assert observer.messages[1]["allUsers"] == []


@pytest.mark.asyncio
async def test_delete_missing_entry_is_not_found_and_silent(directory, db, observer):
    await directory.broadcaster.connect(observer)

    with pytest.raises(NotFound):
        await directory.delete(999, actor_id=2)
    await settle(directory)

    assert events(db) == []
    assert observer.types() == ["INITIAL_DATA"]


@pytest.mark.asyncio
async def test_disconnected_observer_receives_nothing(directory, observer):
    await directory.broadcaster.connect(observer)
    directory.broadcaster.disconnect(observer)

    await directory.create(UserCreate(name="Ada", email="ada@example.com"))
    await settle(directory)

    assert observer.types() == ["INITIAL_DATA"]


# ============================================================================
# Reads
# ============================================================================

@pytest.fixture
def people():
    return [
        UserCreate(name="Charlie", email="charlie@example.com", role=Role.USER),
        UserCreate(name="alice", email="alice@corp.example", role=Role.ADMIN),
        UserCreate(name="Bob", email="bob@example.com", role=Role.USER),
    ]


async def seed(directory, people):
    for person in people:
        await directory.create(person)


@pytest.mark.asyncio
async def test_list_defaults_to_name_ascending(directory, people):
    await seed(directory, people)

    names = [u.name for u in await directory.list(UserQuery())]

    # Byte-order sort: capitals before lowercase
    assert names == ["Bob", "Charlie", "alice"]


@pytest.mark.asyncio
async def test_list_filters(directory, people):
    await seed(directory, people)

    assert [u.name for u in await directory.list(UserQuery(name="ob"))] == ["Bob"]
    assert [u.name for u in await directory.list(UserQuery(email="corp"))] == ["alice"]
    assert [u.name for u in await directory.list(UserQuery(role=Role.USER))] == ["Bob", "Charlie"]
    assert await directory.count(UserQuery(role=Role.USER)) == 2
    assert await directory.count(UserQuery()) == 3


@pytest.mark.asyncio
async def test_filter_input_is_matched_literally(directory, people):
    await seed(directory, people)

    assert await directory.list(UserQuery(name=".*")) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "sort,order,expected",
    [
        ("email", None, ["alice", "Bob", "Charlie"]),
        ("email:desc", None, ["Charlie", "Bob", "alice"]),
        ("email", "desc", ["Charlie", "Bob", "alice"]),
        ("password_hash", None, ["Bob", "Charlie", "alice"]),
        ("name", "sideways", ["Bob", "Charlie", "alice"]),
    ],
)
async def test_list_sorting(directory, people, sort, order, expected):
    await seed(directory, people)

    names = [u.name for u in await directory.list(UserQuery(sort=sort, order=order))]

    assert names == expected


@pytest.mark.asyncio
async def test_list_paging(directory, people):
    await seed(directory, people)

    page = await directory.list(UserQuery(sort="id", limit=2, offset=1))

    assert [u.name for u in page] == ["alice", "Bob"]
    assert await directory.list(UserQuery(limit=0)) == []


@pytest.mark.asyncio
async def test_get_missing_entry_is_not_found(directory):
    with pytest.raises(NotFound):
        await directory.get(12345)
