"""Authoritative in-memory state of today's queue.

``QueueStore`` owns every ``QueueEntry`` together with the doctor presence
flag and the consult history.  All writes happen under one re-entrant lock;
callers only ever receive copies, so nothing outside the store can change an
entry behind its back.  The consult lifecycle holds ``exclusive()`` across a
whole transition and writes the result back with ``apply_transition``.
"""

from __future__ import annotations

import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

from pydantic import ValidationError as SchemaValidationError

from errors import NotFoundError, ValidationError
from estimator import DurationEstimator
from models import ConsultRecord, EntryStatus, QueueEntry, utcnow
from schemas import ArrivalRequest

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^\+?[0-9\s\-]{7,15}$")


@dataclass(frozen=True)
class StoreSnapshot:
    """Consistent copy of the store taken under the lock."""

    entries: List[QueueEntry]
    doctor_present: bool
    average_consult_minutes: int
    consults: List[ConsultRecord] = field(default_factory=list)
    version: int = 0


class QueueStore:
    def __init__(
        self,
        estimator: DurationEstimator,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._estimator = estimator
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[int, QueueEntry] = {}
        self._consults: List[ConsultRecord] = []
        self._doctor_present = False
        self._version = 0

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the mutation lock across several store calls."""
        with self._lock:
            yield

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    @property
    def doctor_present(self) -> bool:
        with self._lock:
            return self._doctor_present

    def _bump(self) -> None:
        self._version += 1

    def add_entry(self, request: Union[ArrivalRequest, Mapping[str, Any]]) -> QueueEntry:
        if not isinstance(request, ArrivalRequest):
            try:
                request = ArrivalRequest.model_validate(request)
            except SchemaValidationError as exc:
                raise ValidationError(str(exc)) from exc

        name = (request.name or "").strip()
        if not name:
            raise ValidationError("Missing name")
        phone = (request.phone or "").strip() or None
        if phone is not None and not PHONE_PATTERN.match(phone):
            raise ValidationError("Invalid phone")
        if request.est_consult_min is not None and request.est_consult_min < 1:
            raise ValidationError("estConsultMin must be a positive number of minutes")
        if request.age is not None and request.age < 0:
            raise ValidationError("age must not be negative")

        with self._lock:
            token = max(self._entries, default=0) + 1
            entry = QueueEntry(
                token=token,
                name=name,
                age=request.age,
                sex=request.sex,
                phone=phone,
                booked_time=request.booked_time,
                arrival_time=self._clock(),
                est_consult_min=request.est_consult_min or self._estimator.current(),
                status=EntryStatus.waiting,
            )
            self._entries[token] = entry
            self._bump()
            logger.info("Registered %s as token %s", name, token)
            return entry.model_copy()

    def find_by_token(self, token: int) -> Optional[QueueEntry]:
        with self._lock:
            entry = self._entries.get(token)
            return entry.model_copy() if entry is not None else None

    def get(self, token: int) -> QueueEntry:
        entry = self.find_by_token(token)
        if entry is None:
            raise NotFoundError(token)
        return entry

    def list_all(self) -> List[QueueEntry]:
        with self._lock:
            return [self._entries[token].model_copy() for token in sorted(self._entries)]

    def apply_transition(self, entry: QueueEntry) -> QueueEntry:
        """Replace the stored entry with an updated copy of it."""
        with self._lock:
            if entry.token not in self._entries:
                raise NotFoundError(entry.token)
            self._entries[entry.token] = entry.model_copy()
            self._bump()
            return entry.model_copy()

    def set_doctor_present(self, present: bool) -> bool:
        with self._lock:
            self._doctor_present = bool(present)
            self._bump()
            return self._doctor_present

    def record_consult(self, entry: QueueEntry, duration_min: int) -> ConsultRecord:
        with self._lock:
            record = ConsultRecord(
                id=max((c.id for c in self._consults), default=0) + 1,
                token=entry.token,
                name=entry.name,
                start_time=entry.start_time,
                end_time=entry.end_time,
                duration_min=duration_min,
                consult_date=entry.end_time.date(),
            )
            self._consults.append(record)
            self._bump()
            return record.model_copy()

    def consult_history(self) -> List[ConsultRecord]:
        with self._lock:
            return [record.model_copy() for record in self._consults]

    def reset_all(self, default_minutes: int) -> None:
        """Day rollover: drop every entry and start the estimate over."""
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
            self._estimator.reset(default_minutes)
            self._doctor_present = False
            self._bump()
        logger.info("Queue reset, %s entries cleared", cleared)

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(
                entries=[self._entries[token].model_copy() for token in sorted(self._entries)],
                doctor_present=self._doctor_present,
                average_consult_minutes=self._estimator.current(),
                consults=[record.model_copy() for record in self._consults],
                version=self._version,
            )

    def restore(self, snapshot: StoreSnapshot) -> None:
        with self._lock:
            self._entries = {entry.token: entry.model_copy() for entry in snapshot.entries}
            self._consults = [record.model_copy() for record in snapshot.consults]
            self._doctor_present = snapshot.doctor_present
            self._estimator.reset(snapshot.average_consult_minutes)
            self._version = max(self._version, snapshot.version) + 1
        logger.info("Restored %s entries from snapshot", len(snapshot.entries))
