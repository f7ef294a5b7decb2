"""Consult state machine applied to entries in the queue store.

    waiting ──start──▶ in_consult ──end──▶ done
       │                    ▲                │
       └──no_show──▶ no_show └────reopen─────┘ (only when enabled)

Every transition runs while holding the store lock, validates against the
entry's current state and writes back a new copy, so a rejected call leaves
the entry exactly as it was.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from errors import ConflictError
from estimator import DurationEstimator, round_half_up
from models import ConsultPolicy, EntryStatus, QueueEntry, utcnow
from store import QueueStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EndResult:
    entry: QueueEntry
    duration_min: int
    average_consult_minutes: int


class ConsultLifecycle:
    def __init__(
        self,
        store: QueueStore,
        estimator: DurationEstimator,
        policy: ConsultPolicy = ConsultPolicy.exclusive,
        allow_reopen: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._estimator = estimator
        self.policy = policy
        self.allow_reopen = allow_reopen
        self._clock = clock

    def _others_in_consult(self, token: int) -> list:
        return [
            e.token
            for e in self._store.list_all()
            if e.status == EntryStatus.in_consult and e.token != token
        ]

    def _open_consult(self, entry: QueueEntry) -> QueueEntry:
        busy = self._others_in_consult(entry.token)
        if busy:
            if self.policy == ConsultPolicy.exclusive:
                raise ConflictError(f"Token {busy[0]} is already in consult")
            logger.warning("Token %s starts while %s still in consult", entry.token, busy)
        updated = entry.model_copy(
            update={"status": EntryStatus.in_consult, "start_time": self._clock(), "end_time": None}
        )
        return self._store.apply_transition(updated)

    def start(self, token: int) -> QueueEntry:
        with self._store.exclusive():
            entry = self._store.get(token)
            if entry.status == EntryStatus.in_consult:
                raise ConflictError(f"Token {token} is already in consult")
            if entry.status == EntryStatus.done:
                raise ConflictError(f"Token {token} is already done; reopen it instead")
            if entry.status != EntryStatus.waiting:
                raise ConflictError(f"Token {token} is {entry.status.value}, not waiting")
            started = self._open_consult(entry)
        logger.info("Consult started for token %s", token)
        return started

    def end(self, token: int) -> EndResult:
        with self._store.exclusive():
            entry = self._store.get(token)
            if entry.status != EntryStatus.in_consult:
                raise ConflictError(f"Token {token} is not in consult")
            end_time = self._clock()
            elapsed = (end_time - entry.start_time).total_seconds() / 60
            actual_minutes = max(1, round_half_up(elapsed))
            updated = entry.model_copy(update={"status": EntryStatus.done, "end_time": end_time})
            ended = self._store.apply_transition(updated)
            average = self._estimator.record(actual_minutes)
            self._store.record_consult(ended, actual_minutes)
        logger.info("Consult ended for token %s after %s min, average now %s", token, actual_minutes, average)
        return EndResult(entry=ended, duration_min=actual_minutes, average_consult_minutes=average)

    def reopen(self, token: int) -> QueueEntry:
        """Put a finished entry back in consult with a fresh start time."""
        with self._store.exclusive():
            entry = self._store.get(token)
            if not self.allow_reopen:
                raise ConflictError("Reopening finished consults is disabled")
            if entry.status != EntryStatus.done:
                raise ConflictError(f"Token {token} is {entry.status.value}, not done")
            reopened = self._open_consult(entry)
        logger.info("Consult reopened for token %s", token)
        return reopened

    def mark_no_show(self, token: int) -> QueueEntry:
        with self._store.exclusive():
            entry = self._store.get(token)
            if entry.status != EntryStatus.waiting:
                raise ConflictError(f"Token {token} is {entry.status.value}, not waiting")
            updated = self._store.apply_transition(entry.model_copy(update={"status": EntryStatus.no_show}))
        logger.info("Token %s marked as no-show", token)
        return updated
