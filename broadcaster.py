"""
Live synchronization of directory observers.

Every observer is a connection object with an async ``send_json`` (a
Starlette ``WebSocket`` in production). On every mutation the broadcaster
recomputes the full directory snapshot and pushes

    {"type": <event>, "data": <payload>, "allUsers": <snapshot>}

to each open observer. Delivery is best effort: a failing or slow observer is
logged and dropped, and never affects the mutation that triggered the
broadcast or the other observers.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

from schemas import Envelope, EventType, UserPublic
from users import UserRepository

logger = logging.getLogger(__name__)


class Broadcaster:
    """Owns the observer registry for one running service."""

    def __init__(self, users: UserRepository, send_timeout: float = 5.0):
        self.users = users
        self.send_timeout = send_timeout
        self._observers: Set[Any] = set()
        # One lock per observer keeps its envelopes in send order.
        self._locks: Dict[Any, asyncio.Lock] = {}
        self._pending: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def snapshot(self) -> List[UserPublic]:
        users = await run_in_threadpool(self.users.snapshot)
        return [UserPublic.from_user(u) for u in users]

    async def connect(self, observer: Any) -> None:
        """
        Register an already-accepted observer and send it the initial snapshot.

        The observer's lock is held until INITIAL_DATA is out, so a mutation
        committing meanwhile is delivered after it, never before.
        """
        lock = self._locks.setdefault(observer, asyncio.Lock())
        async with lock:
            self._observers.add(observer)
            logger.info("Observer connected (%d open)", len(self._observers))
            try:
                envelope = Envelope(type=EventType.INITIAL_DATA.value, data=None, all_users=await self.snapshot())
            except PyMongoError:
                logger.exception("Error computing initial data for new observer")
                return
            await self._deliver(observer, envelope.model_dump(mode="json", by_alias=True))

    def disconnect(self, observer: Any) -> None:
        self._locks.pop(observer, None)
        if observer in self._observers:
            self._observers.discard(observer)
            logger.info("Observer disconnected (%d open)", len(self._observers))

    async def _deliver(self, observer: Any, message: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(observer.send_json(message), timeout=self.send_timeout)
            return True
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Dropping observer after failed send", exc_info=True)
            self.disconnect(observer)
            return False

    async def _send(self, observer: Any, message: Dict[str, Any]) -> bool:
        lock = self._locks.get(observer)
        if lock is None:
            # Disconnected since the broadcast was scheduled
            return False
        async with lock:
            if observer not in self._observers:
                return False
            return await self._deliver(observer, message)

    async def broadcast(
        self,
        event_type: str,
        payload: Optional[Dict[str, Any]],
        observers: Optional[List[Any]] = None,
    ) -> int:
        """
        Push one envelope with a fresh snapshot to ``observers``, by default
        every observer connected right now.

        Returns the number of observers that received it. Snapshot and send
        failures are logged, never raised.
        """
        event_type = getattr(event_type, "value", event_type)
        # Iterate a stable copy; observers may come and go mid-broadcast.
        targets = list(self._observers) if observers is None else list(observers)
        if not targets:
            return 0
        try:
            all_users = await self.snapshot()
        except PyMongoError:
            logger.exception("Error computing snapshot for %s broadcast", event_type)
            return 0
        message = Envelope(type=event_type, data=payload, all_users=all_users).model_dump(mode="json", by_alias=True)

        results = await asyncio.gather(*(self._send(o, message) for o in targets))
        return sum(1 for ok in results if ok)

    def publish(self, event_type: str, payload: Optional[Dict[str, Any]]) -> Optional[asyncio.Task]:
        """
        Schedule a broadcast without waiting for it.

        Recipients are fixed now: observers that connect after this call get
        the change through their own INITIAL_DATA instead.
        """
        if self._closed or not self._observers:
            return None
        task = asyncio.create_task(self.broadcast(event_type, payload, list(self._observers)))
        self._pending.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Broadcast task failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for every scheduled broadcast to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        await self.drain()
        for observer in list(self._observers):
            try:
                await observer.close()
            except Exception:
                logger.debug("Observer already closed", exc_info=True)
        self._observers.clear()
        self._locks.clear()
