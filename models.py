"""Data models for the clinic queue.

We use SQLModel to define the schema.  The engine keeps plain (non-table)
models in memory: ``QueueEntry`` is one patient's slot in today's queue and
``ConsultRecord`` is the history line written when a consult ends.  The
``*Row`` subclasses are the table models used only by the snapshot store in
``persistence.py``.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntryStatus(str, Enum):
    """Possible statuses for a queue entry."""

    waiting = "waiting"
    in_consult = "in_consult"
    done = "done"
    no_show = "no_show"


class ConsultPolicy(str, Enum):
    """How many entries may be in consult at the same time."""

    exclusive = "exclusive"
    permissive = "permissive"


class QueueEntry(SQLModel):
    token: int = Field(primary_key=True)
    name: str
    age: Optional[int] = None
    sex: Optional[str] = None
    phone: Optional[str] = None
    booked_time: Optional[datetime] = None
    arrival_time: datetime = Field(default_factory=utcnow)
    est_consult_min: int
    status: EntryStatus = Field(default=EntryStatus.waiting)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class ConsultRecord(SQLModel):
    id: int = Field(primary_key=True)
    token: int
    name: str
    start_time: datetime
    end_time: datetime
    duration_min: int
    consult_date: date


class QueueEntryRow(QueueEntry, table=True):
    __tablename__ = "queue_entries"


class ConsultRecordRow(ConsultRecord, table=True):
    __tablename__ = "consults"


class ClinicStateRow(SQLModel, table=True):
    __tablename__ = "clinic_state"

    id: Optional[int] = Field(default=1, primary_key=True)
    doctor_present: bool = Field(default=False)
    average_consult_minutes: int = Field(default=8)
    version: int = Field(default=0)
