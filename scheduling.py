"""Projection of the queue into the view observers see.

``compute_view`` is a pure function of its arguments: it never touches the
store and returns the same view for the same inputs, so it can run from any
thread without holding the mutation lock.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Iterable, Optional

from models import EntryStatus, QueueEntry
from schemas import QueueView, QueueViewEntry


def _consult_minutes(entry: QueueEntry, average_consult_minutes: int) -> int:
    return entry.est_consult_min or average_consult_minutes


def compute_view(
    entries: Iterable[QueueEntry],
    doctor_present: bool,
    average_consult_minutes: int,
    now: datetime,
    version: int = 0,
) -> QueueView:
    """Build the ordered view with an ETA for every waiting entry.

    Entries are walked in token order.  The offset starts at the minutes
    left in the active consult (if any) and grows by each waiting entry's
    estimate, so every ETA accounts for everyone ahead in the queue.

    Baseline for ETAs:
      * start time of the active consult, if someone is in consult
      * ``now`` if the doctor is present
      * none otherwise; waiting entries then fall back to their booked
        time, or to ``now`` plus the offset
    """
    ordered = sorted(entries, key=lambda e: e.token)

    # lowest token wins when more than one consult is open
    active = next((e for e in ordered if e.status == EntryStatus.in_consult), None)

    offset_minutes = 0
    if active is not None and active.start_time is not None:
        elapsed = max(0, math.floor((now - active.start_time).total_seconds() / 60))
        offset_minutes = max(0, _consult_minutes(active, average_consult_minutes) - elapsed)

    baseline: Optional[datetime]
    if active is not None:
        baseline = active.start_time
    elif doctor_present:
        baseline = now
    else:
        baseline = None

    rows = []
    for entry in ordered:
        row = QueueViewEntry.model_validate(entry.model_dump())
        if entry.status == EntryStatus.waiting:
            if baseline is None:
                row.eta = entry.booked_time or now + timedelta(minutes=offset_minutes)
            else:
                row.eta = baseline + timedelta(minutes=offset_minutes)
            offset_minutes += _consult_minutes(entry, average_consult_minutes)
        rows.append(row)

    return QueueView(
        entries=rows,
        average_consult_minutes=average_consult_minutes,
        doctor_present=doctor_present,
        version=version,
    )
