from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from .clients import Client, coerce_utc
from .due_dates import DUE_SOON_DAYS, classify_due

POPULAR_SERVICES_LIMIT = 5


@dataclass(frozen=True)
class DashboardStats:
    total_clients: int
    upcoming_appointments: int
    overdue_appointments: int
    monthly_revenue: float
    popular_services: list[tuple[str, int]]


def monthly_revenue(clients: Sequence[Client], now: datetime) -> float:
    """Sum prices of completed appointments in the calendar month of ``now`` (UTC)."""
    reference = coerce_utc(now)
    total = 0.0
    for client in clients:
        for entry in client.appointment_history:
            if entry.status != "completed" or entry.price is None:
                continue
            entry_date = coerce_utc(entry.date)
            if (entry_date.year, entry_date.month) == (reference.year, reference.month):
                total += entry.price
    return round(total, 2)


def compute_dashboard_stats(
    clients: Sequence[Client],
    now: datetime,
    *,
    due_soon_days: int = DUE_SOON_DAYS,
) -> DashboardStats:
    upcoming = 0
    overdue = 0
    services: Counter[str] = Counter()
    for client in clients:
        services.update(client.services_taken)
        if client.next_due_date is None:
            continue
        status = classify_due(client.next_due_date, now, due_soon_days=due_soon_days).status
        if status == "due_soon":
            upcoming += 1
        elif status == "overdue":
            overdue += 1

    return DashboardStats(
        total_clients=len(clients),
        upcoming_appointments=upcoming,
        overdue_appointments=overdue,
        monthly_revenue=monthly_revenue(clients, now),
        popular_services=services.most_common(POPULAR_SERVICES_LIMIT),
    )
