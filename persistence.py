"""Snapshot storage for the queue.

The engine keeps its state in memory and hands a ``StoreSnapshot`` to a
snapshot store after every committed change, outside the mutation lock.
``NullSnapshotStore`` keeps nothing; ``SQLModelSnapshotStore`` writes the
snapshot to any database SQLModel can reach (SQLite by default).
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from errors import PersistenceError
from models import (
    ClinicStateRow,
    ConsultRecord,
    ConsultRecordRow,
    QueueEntry,
    QueueEntryRow,
)
from store import StoreSnapshot

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands datetimes back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class NullSnapshotStore:
    def load(self) -> Optional[StoreSnapshot]:
        return None

    def save(self, snapshot: StoreSnapshot) -> None:
        return None

    def describe(self) -> str:
        return "memory"


class SQLModelSnapshotStore:
    """Writes whole snapshots through SQLModel sessions.

    Saves are serialized by their own lock and a snapshot older than the
    last one written is skipped, so concurrent commits cannot leave an
    older state on disk.
    """

    def __init__(self, database_url: str):
        connect_args = {}
        engine_kwargs = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        self._engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
        self._lock = threading.Lock()
        self._saved_version = -1
        try:
            SQLModel.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not prepare database: {e}") from e

    def describe(self) -> str:
        return self._engine.dialect.name

    def load(self) -> Optional[StoreSnapshot]:
        try:
            with Session(self._engine) as session:
                state = session.get(ClinicStateRow, 1)
                if state is None:
                    return None
                rows = session.exec(select(QueueEntryRow).order_by(QueueEntryRow.token)).all()
                consult_rows = session.exec(select(ConsultRecordRow).order_by(ConsultRecordRow.id)).all()
                entries = []
                for row in rows:
                    data = row.model_dump()
                    for key in ("booked_time", "arrival_time", "start_time", "end_time"):
                        data[key] = _as_utc(data[key])
                    entries.append(QueueEntry.model_validate(data))
                consults = []
                for row in consult_rows:
                    data = row.model_dump()
                    data["start_time"] = _as_utc(data["start_time"])
                    data["end_time"] = _as_utc(data["end_time"])
                    consults.append(ConsultRecord.model_validate(data))
                snapshot = StoreSnapshot(
                    entries=entries,
                    doctor_present=state.doctor_present,
                    average_consult_minutes=state.average_consult_minutes,
                    consults=consults,
                    version=state.version,
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load queue snapshot: {e}") from e
        with self._lock:
            self._saved_version = snapshot.version
        return snapshot

    def save(self, snapshot: StoreSnapshot) -> None:
        with self._lock:
            if snapshot.version <= self._saved_version:
                return
            try:
                with Session(self._engine) as session:
                    session.exec(delete(QueueEntryRow))
                    for entry in snapshot.entries:
                        session.add(QueueEntryRow(**entry.model_dump()))
                    for record in snapshot.consults:
                        session.merge(ConsultRecordRow(**record.model_dump()))
                    session.merge(
                        ClinicStateRow(
                            id=1,
                            doctor_present=snapshot.doctor_present,
                            average_consult_minutes=snapshot.average_consult_minutes,
                            version=snapshot.version,
                        )
                    )
                    session.commit()
            except SQLAlchemyError as e:
                logger.exception("Failed to save queue snapshot v%s", snapshot.version)
                raise PersistenceError(f"Could not save queue snapshot: {e}") from e
            self._saved_version = snapshot.version
