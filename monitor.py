"""
Background detection of actors with an unusually high write rate.

``ActivityMonitor`` wakes on a fixed interval, asks the mutation log which
actors exceeded the threshold inside the trailing window and stores one
``monitored_users`` flag per actor and window. Flags are observational only:
nothing here expires them or acts on the flagged account.

A flag is keyed by ``(actor_id, window_key)`` where ``window_key`` is the
timestamp of the actor's latest event in the window. Re-running over an
unchanged log resolves to the same key, so the insert is a no-op; fresh
activity later produces a new key and a new flag.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

from audit import MutationLog
from database import MONITORED_USERS, utcnow
from schemas import MonitoringFlag

logger = logging.getLogger(__name__)


class MonitoringFlags:
    def __init__(self, db: Database):
        self.collection = db[MONITORED_USERS]

    def upsert(self, actor_id: int, reason: str, window_key: datetime, detected_at: Optional[datetime] = None) -> bool:
        """Insert a flag unless one exists for the same actor and window. Returns True if inserted."""
        result = self.collection.update_one(
            {"actor_id": actor_id, "window_key": window_key},
            {"$setOnInsert": {"reason": reason, "detected_at": detected_at or utcnow()}},
            upsert=True,
        )
        return result.upserted_id is not None

    def list(self) -> List[MonitoringFlag]:
        cursor = self.collection.find().sort("detected_at", DESCENDING)
        return [
            MonitoringFlag(actor_id=doc["actor_id"], reason=doc["reason"], detected_at=doc["detected_at"])
            for doc in cursor
        ]


class ActivityMonitor:
    """
    Periodic write-rate detector.

    Ticks fire every ``interval`` seconds regardless of how long a run takes;
    a tick that lands while the previous run is still going is skipped, not
    queued.
    """

    def __init__(
        self,
        mutation_log: MutationLog,
        flags: MonitoringFlags,
        interval: float = 60.0,
        threshold: int = 10,
        window: timedelta = timedelta(minutes=2),
    ):
        self.mutation_log = mutation_log
        self.flags = flags
        self.interval = interval
        self.threshold = threshold
        self.window = window
        self._task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self._in_progress = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def reason_for(self, count: int) -> str:
        minutes = self.window.total_seconds() / 60
        return f"High frequency: {count} actions in {minutes:g} min"

    def _detect(self, now: datetime) -> List[int]:
        since = now - self.window
        flagged = []
        for row in self.mutation_log.actors_over_threshold(since, self.threshold):
            try:
                inserted = self.flags.upsert(
                    row["actor_id"], self.reason_for(row["count"]), row["last_event_at"], detected_at=now
                )
            except PyMongoError:
                logger.exception("Error adding actor %s to monitored users", row["actor_id"])
                continue
            if inserted:
                logger.warning("Flagged actor %s: %d actions in window", row["actor_id"], row["count"])
                flagged.append(row["actor_id"])
        return flagged

    async def run_once(self, now: Optional[datetime] = None) -> List[int]:
        """Run one detection pass. Returns the actors newly flagged; never raises store errors."""
        if self._in_progress:
            logger.info("Activity scan still in progress, skipping")
            return []
        self._in_progress = True
        try:
            return await run_in_threadpool(self._detect, now or utcnow())
        except PyMongoError:
            logger.exception("Error analysing mutation log for suspicious activity")
            return []
        finally:
            self._in_progress = False

    def tick(self) -> None:
        scheduled = self._run_task is not None and not self._run_task.done()
        if self._in_progress or scheduled:
            logger.info("Activity scan still in progress, skipping tick")
            return
        self._run_task = asyncio.create_task(self.run_once())

    async def _loop(self) -> None:
        logger.info(
            "Activity monitor started (interval=%ss, threshold=%d, window=%ss)",
            self.interval, self.threshold, int(self.window.total_seconds()),
        )
        while True:
            await asyncio.sleep(self.interval)
            self.tick()

    def start(self) -> None:
        if self.running:
            logger.warning("Activity monitor already running")
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        tasks = [t for t in (self._task, self._run_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._run_task = None
        logger.info("Activity monitor stopped")
