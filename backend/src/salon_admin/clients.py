from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Literal

AppointmentStatus = Literal["scheduled", "completed", "cancelled", "no-show"]

APPOINTMENT_STATUSES: tuple[str, ...] = ("scheduled", "completed", "cancelled", "no-show")
DUE_CYCLE = timedelta(days=30)
NAME_MAX_LENGTH = 100
NOTES_MAX_LENGTH = 500

MOBILE_PATTERN = re.compile(r"^\+?[1-9]\d{0,15}$")
EMAIL_PATTERN = re.compile(r"^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class AppointmentEntry:
    entry_id: str
    date: datetime
    service: str
    price: float | None = None
    notes: str | None = None
    status: AppointmentStatus = "scheduled"


@dataclass(frozen=True)
class Client:
    client_id: str
    name: str
    mobile: str
    email: str
    last_visit: datetime
    next_due_date: datetime | None = None
    services_taken: list[str] = field(default_factory=list)
    appointment_history: list[AppointmentEntry] = field(default_factory=list)
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


def compute_next_due_date(last_visit: datetime) -> datetime:
    return coerce_utc(last_visit) + DUE_CYCLE


def require_next_due_date(client: Client) -> datetime:
    if client.next_due_date is None:
        raise ValueError(f"client {client.client_id or '<new>'} has no next_due_date; prepare it before use")
    return client.next_due_date


def copy_client(client: Client) -> Client:
    """Return a copy whose list fields are not shared with ``client``."""
    return replace(
        client,
        services_taken=list(client.services_taken),
        appointment_history=list(client.appointment_history),
    )


def normalize_mobile(value: str) -> str:
    normalized = str(value).strip()
    if not MOBILE_PATTERN.match(normalized):
        raise ValueError("Please enter a valid mobile number")
    return normalized


def normalize_email(value: str) -> str:
    normalized = str(value).strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError("Please enter a valid email address")
    return normalized


def normalize_name(value: str) -> str:
    normalized = str(value).strip()
    if not normalized:
        raise ValueError("name cannot be blank")
    if len(normalized) > NAME_MAX_LENGTH:
        raise ValueError(f"name cannot exceed {NAME_MAX_LENGTH} characters")
    return normalized


def normalize_notes(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if len(normalized) > NOTES_MAX_LENGTH:
        raise ValueError(f"notes cannot exceed {NOTES_MAX_LENGTH} characters")
    return normalized


def validate_contact(client: Client) -> Client:
    """Re-validate contact fields at the store boundary.

    Request models validate the same fields; this keeps direct store writes
    (scripts, tests, other backends) from persisting malformed records.
    """
    return replace(
        client,
        name=normalize_name(client.name),
        mobile=normalize_mobile(client.mobile),
        email=normalize_email(client.email),
        notes=normalize_notes(client.notes),
    )


def apply_last_visit(client: Client, last_visit: datetime, *, now: datetime | None = None) -> Client:
    """Set ``last_visit`` and recompute ``next_due_date`` in one step."""
    visit = coerce_utc(last_visit)
    return replace(
        client,
        last_visit=visit,
        next_due_date=compute_next_due_date(visit),
        updated_at=coerce_utc(now) if now is not None else client.updated_at,
    )


def prepare_new_client(client: Client, *, now: datetime | None = None) -> Client:
    created_at = coerce_utc(now) if now is not None else _now_utc()
    validated = validate_contact(client)
    prepared = apply_last_visit(validated, validated.last_visit, now=created_at)
    return replace(prepared, created_at=created_at, updated_at=created_at)


def prepare_client_update(
    existing: Client,
    updated: Client,
    *,
    now: datetime | None = None,
) -> Client:
    stamp = coerce_utc(now) if now is not None else _now_utc()
    # next_due_date is derived from last_visit; a caller-supplied value never wins.
    validated = apply_last_visit(validate_contact(updated), updated.last_visit)
    return replace(
        validated,
        client_id=existing.client_id,
        created_at=existing.created_at,
        updated_at=stamp,
    )


def append_appointment(
    client: Client,
    entry: AppointmentEntry,
    *,
    now: datetime | None = None,
) -> Client:
    if entry.price is not None and entry.price < 0:
        raise ValueError("price cannot be negative")
    if entry.status not in APPOINTMENT_STATUSES:
        raise ValueError(f"unsupported appointment status: {entry.status}")
    stamp = coerce_utc(now) if now is not None else _now_utc()
    stored_entry = replace(entry, date=coerce_utc(entry.date))
    with_history = replace(client, appointment_history=[*client.appointment_history, stored_entry])
    return apply_last_visit(with_history, stored_entry.date, now=stamp)
