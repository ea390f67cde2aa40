from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from .clients import coerce_utc

DueStatus = Literal["overdue", "due_soon", "active"]

DUE_SOON_DAYS = 7
_ONE_DAY_SECONDS = timedelta(days=1).total_seconds()

_STATUS_LABELS: dict[str, str] = {
    "overdue": "Overdue",
    "due_soon": "Due Soon",
    "active": "Active",
}


@dataclass(frozen=True)
class DueClassification:
    status: DueStatus
    days_until_due: int

    @property
    def label(self) -> str:
        return status_label(self.status)


def days_until_due(next_due_date: datetime, now: datetime) -> int:
    delta = coerce_utc(next_due_date) - coerce_utc(now)
    return math.ceil(delta.total_seconds() / _ONE_DAY_SECONDS)


def classify_days(days: int, *, due_soon_days: int = DUE_SOON_DAYS) -> DueStatus:
    if days < 0:
        return "overdue"
    if days <= due_soon_days:
        return "due_soon"
    return "active"


def classify_due(
    next_due_date: datetime,
    now: datetime,
    *,
    due_soon_days: int = DUE_SOON_DAYS,
) -> DueClassification:
    days = days_until_due(next_due_date, now)
    return DueClassification(status=classify_days(days, due_soon_days=due_soon_days), days_until_due=days)


def status_label(status: DueStatus) -> str:
    return _STATUS_LABELS[status]
