"""Pydantic schemas for requests and for everything sent to observers.

Field names on the wire are camelCase (``estConsultMin``, ``arrivalTime``)
while the Python side stays snake_case.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import ConsultRecord, EntryStatus, QueueEntry


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ArrivalRequest(CamelModel):
    # name is checked by the store so a missing name is a ValidationError
    # rather than a schema failure
    name: Optional[str] = None
    age: Optional[int] = None
    sex: Optional[str] = None
    phone: Optional[str] = None
    booked_time: Optional[datetime] = None
    est_consult_min: Optional[int] = None


class TokenRequest(CamelModel):
    token: int


class PresenceRequest(CamelModel):
    present: bool


class EntryPayload(CamelModel):
    token: int
    name: str
    age: Optional[int] = None
    sex: Optional[str] = None
    phone: Optional[str] = None
    booked_time: Optional[datetime] = None
    est_consult_min: int
    status: EntryStatus
    arrival_time: datetime
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "EntryPayload":
        return cls.model_validate(entry.model_dump())


class QueueViewEntry(EntryPayload):
    """One row of a projected view.  ``eta`` is only set on waiting rows."""

    eta: Optional[datetime] = None


class QueueView(CamelModel):
    entries: List[QueueViewEntry] = Field(default_factory=list)
    average_consult_minutes: int
    doctor_present: bool
    # store version the view was computed from; never sent to clients
    version: int = Field(default=0, exclude=True)

    def to_payload(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True)
        for row in data["entries"]:
            if row.get("eta") is None:
                row.pop("eta", None)
        return data


class ConsultRecordPayload(CamelModel):
    id: int
    token: int
    name: str
    start_time: datetime
    end_time: datetime
    duration_min: int
    consult_date: date

    @classmethod
    def from_record(cls, record: ConsultRecord) -> "ConsultRecordPayload":
        return cls.model_validate(record.model_dump())


class ConsultOutcome(CamelModel):
    """Result of ending a consult: the closed entry and the new average."""

    entry: EntryPayload
    duration_min: int
    average_consult_minutes: int
