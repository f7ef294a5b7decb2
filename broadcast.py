"""Fan-out of queue views to every connected observer.

An observer is any object with a ``deliver(view)`` method.  The hub only
keeps weak references, so an observer disappears from the set as soon as
whoever created it lets go of it.  Delivery is best effort: one observer
failing never stops the others and never reaches the caller that changed
the queue.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import weakref
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import redis

from schemas import QueueView

logger = logging.getLogger(__name__)

UPDATES_CHANNEL = "clinic:updates"
BOARD_CACHE_KEY = "clinic:board"
BOARD_CACHE_TTL = 30


class BroadcastHub:
    def __init__(self):
        self._lock = threading.RLock()
        self._observers: "weakref.WeakSet[Any]" = weakref.WeakSet()
        # last version each observer received, so none of them ever goes back
        self._delivered: "weakref.WeakKeyDictionary[Any, int]" = weakref.WeakKeyDictionary()
        self._latest_version = -1

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)

    def subscribe(self, observer: Any, current_view: Callable[[], QueueView]) -> None:
        """Send the current view to ``observer`` and add it to the set.

        Both happen under the hub lock so a publish racing with the
        subscription cannot slip between them.
        """
        with self._lock:
            self._deliver(observer, current_view())
            self._observers.add(observer)

    def unsubscribe(self, observer: Any) -> None:
        with self._lock:
            self._observers.discard(observer)

    def send(self, observer: Any, view: QueueView) -> bool:
        """Deliver ``view`` to a single observer, e.g. on an explicit refresh."""
        with self._lock:
            return self._deliver(observer, view)

    def publish(self, view: QueueView) -> int:
        """Push ``view`` to every observer; returns how many got it.

        Publishes are delivered one at a time, and an observer never gets a
        view older than the last one it received.  Iteration runs over a
        copy of the set, so an observer may subscribe or leave while a
        publish is in progress.  Observers must not block in ``deliver``.
        """
        with self._lock:
            if view.version <= self._latest_version:
                logger.debug("Dropping stale view v%s (latest v%s)", view.version, self._latest_version)
                return 0
            self._latest_version = view.version
            delivered = 0
            for observer in list(self._observers):
                if self._deliver(observer, view):
                    delivered += 1
            return delivered

    def _deliver(self, observer: Any, view: QueueView) -> bool:
        seen = self._delivered.get(observer, -1)
        if view.version < seen:
            logger.debug("Skipping v%s for %r, already at v%s", view.version, observer, seen)
            return False
        try:
            observer.deliver(view)
        except Exception as e:
            logger.warning("Dropped queue update for %r: %s", observer, e)
            return False
        self._delivered[observer] = view.version
        return True


class QueueObserver:
    """Bridges views into an ``asyncio.Queue`` owned by one event loop.

    ``deliver`` may be called from any thread.  When the consumer falls
    behind, the oldest pending view is discarded since only the newest one
    matters to a display.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 16):
        self._loop = loop
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)

    def deliver(self, view: QueueView) -> None:
        payload = view.to_payload()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._offer(payload)
        else:
            self._loop.call_soon_threadsafe(self._offer, payload)

    def _offer(self, payload: Dict[str, Any]) -> None:
        if self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(payload)

    async def next_view(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


class RedisViewPublisher:
    """Relays views to Redis for other processes (dashboards, workers).

    ``deliver`` only records the view; a single worker thread does the
    network calls, so a slow Redis never holds up a queue change.  Views
    that arrive while a send is in flight are coalesced into the newest.
    """

    def __init__(self, client: "redis.Redis"):
        self._client = client
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="redis-relay")
        self._lock = threading.Lock()
        self._pending: Optional[Dict[str, Any]] = None
        self._scheduled: Optional[Future] = None

    @classmethod
    def from_url(cls, url: str) -> "RedisViewPublisher":
        client = redis.from_url(url, decode_responses=True)
        client.ping()
        logger.info("Connected to Redis for queue updates")
        return cls(client)

    def deliver(self, view: QueueView) -> None:
        payload = view.to_payload()
        with self._lock:
            self._pending = payload
            if self._scheduled is None:
                self._scheduled = self._executor.submit(self._drain)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until every recorded view has been sent."""
        with self._lock:
            scheduled = self._scheduled
        if scheduled is not None:
            scheduled.result(timeout=timeout)

    def _drain(self) -> None:
        while True:
            with self._lock:
                payload, self._pending = self._pending, None
                if payload is None:
                    self._scheduled = None
                    return
            try:
                self._send(payload)
            except redis.RedisError as e:
                logger.warning("Redis relay dropped a queue update: %s", e)

    def _send(self, payload: Dict[str, Any]) -> None:
        self._client.setex(BOARD_CACHE_KEY, BOARD_CACHE_TTL, json.dumps(payload))
        self._client.publish(
            UPDATES_CHANNEL,
            json.dumps(
                {
                    "type": "queue_state",
                    "data": payload,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            ),
        )
