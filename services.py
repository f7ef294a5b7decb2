"""Queue engine wiring and the operations exposed to the transport layer.

``QueueService`` owns one store, estimator, lifecycle and broadcast hub.
Every mutating call follows the same pattern: the change is applied under
the store lock, then (with the lock released) a fresh view is computed and
published and the snapshot is handed to the snapshot store.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import redis

from broadcast import BroadcastHub, RedisViewPublisher
from config import EngineSettings
from estimator import DurationEstimator
from lifecycle import ConsultLifecycle, EndResult
from models import ConsultRecord, QueueEntry, utcnow
from persistence import NullSnapshotStore, SQLModelSnapshotStore
from scheduling import compute_view
from schemas import ArrivalRequest, EntryPayload, QueueView
from store import QueueStore, StoreSnapshot

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 10


def mask_name(name: str) -> str:
    """First name reduced to its first letter and last two letters."""
    first = name.strip().split(" ")[0] or name
    if len(first) > 3:
        return first[0] + "***" + first[-2:]
    return first


class QueueService:
    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        snapshot_store: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or EngineSettings()
        self._clock = clock
        self.estimator = DurationEstimator(self.settings.default_consult_minutes)
        self.store = QueueStore(self.estimator, clock=clock)
        self.lifecycle = ConsultLifecycle(
            self.store,
            self.estimator,
            policy=self.settings.consult_policy,
            allow_reopen=self.settings.allow_reopen,
            clock=clock,
        )
        self.hub = BroadcastHub()
        self.snapshots = snapshot_store or NullSnapshotStore()
        # observers owned by the service itself; the hub only holds weak refs
        self._relays: List[Any] = []

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "QueueService":
        snapshot_store = SQLModelSnapshotStore(settings.database_url) if settings.database_url else None
        service = cls(settings, snapshot_store=snapshot_store)
        service.restore()
        if settings.redis_url:
            try:
                service.add_relay(RedisViewPublisher.from_url(settings.redis_url))
            except redis.RedisError as e:
                logger.warning("Redis unavailable, queue updates stay in-process: %s", e)
        return service

    # ---- wiring ----

    def restore(self) -> bool:
        snapshot = self.snapshots.load()
        if snapshot is None:
            return False
        self.store.restore(snapshot)
        return True

    @property
    def relays(self) -> List[Any]:
        return list(self._relays)

    def add_relay(self, observer: Any) -> None:
        self._relays.append(observer)
        self.hub.subscribe(observer, self.get_view)

    def _project(self, snapshot: StoreSnapshot) -> QueueView:
        return compute_view(
            snapshot.entries,
            snapshot.doctor_present,
            snapshot.average_consult_minutes,
            self._clock(),
            version=snapshot.version,
        )

    def _commit(self) -> None:
        snapshot = self.store.snapshot()
        self.hub.publish(self._project(snapshot))
        self.snapshots.save(snapshot)

    # ---- operations ----

    def register_arrival(self, request: Union[ArrivalRequest, Mapping[str, Any]]) -> QueueEntry:
        entry = self.store.add_entry(request)
        self._commit()
        return entry

    def set_doctor_presence(self, present: bool) -> bool:
        present = self.store.set_doctor_present(present)
        logger.info("Doctor is %s", "present" if present else "away")
        self._commit()
        return present

    def start_consult(self, token: int) -> QueueEntry:
        entry = self.lifecycle.start(token)
        self._commit()
        return entry

    def end_consult(self, token: int) -> EndResult:
        result = self.lifecycle.end(token)
        self._commit()
        return result

    def reopen_consult(self, token: int) -> QueueEntry:
        entry = self.lifecycle.reopen(token)
        self._commit()
        return entry

    def mark_no_show(self, token: int) -> QueueEntry:
        entry = self.lifecycle.mark_no_show(token)
        self._commit()
        return entry

    def reset_day(self) -> None:
        self.store.reset_all(self.settings.default_consult_minutes)
        self._commit()

    def get_view(self) -> QueueView:
        return self._project(self.store.snapshot())

    def get_entry(self, token: int) -> QueueEntry:
        return self.store.get(token)

    def consult_history(self) -> List[ConsultRecord]:
        return self.store.consult_history()

    def subscribe(self, observer: Any) -> None:
        self.hub.subscribe(observer, self.get_view)

    def unsubscribe(self, observer: Any) -> None:
        self.hub.unsubscribe(observer)

    def resend_view(self, observer: Any) -> bool:
        return self.hub.send(observer, self.get_view())

    def search(self, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
        """Public lookup by token, name or phone.

        Rows matched only by name come back with a masked first name, so a
        waiting-room screen can't be used to browse full patient names.
        """
        q = (query or "").strip().lower()
        if not q:
            return []
        results: List[Dict[str, Any]] = []
        for entry in self.store.list_all():
            match_token = q in str(entry.token)
            match_phone = bool(entry.phone) and q in entry.phone.lower()
            match_name = q in entry.name.lower()
            if not (match_token or match_phone or match_name):
                continue
            row = EntryPayload.from_entry(entry).model_dump(mode="json", by_alias=True)
            if match_token or match_phone:
                row["nameMasked"] = entry.name
            else:
                row["nameMasked"] = mask_name(entry.name)
                del row["name"]
            results.append(row)
            if len(results) >= limit:
                break
        return results
