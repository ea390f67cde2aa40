from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .auth_store import AdminRole, normalize_username
from .clients import (
    NOTES_MAX_LENGTH,
    AppointmentStatus,
    Client,
    normalize_email,
    normalize_mobile,
    normalize_name,
    normalize_notes,
    require_next_due_date,
)
from .due_dates import DueStatus, classify_due, status_label
from .notifier import ChannelName

ClientStatusFilter = Literal["all", "overdue", "due", "active"]
ExportFormat = Literal["csv", "xlsx"]


def _normalize_services(value: list[str]) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for raw_service in value:
        service = str(raw_service).strip()
        if not service:
            raise ValueError("services_taken entries cannot be blank")
        if service.lower() in seen:
            continue
        seen.add(service.lower())
        normalized.append(service)
    return normalized


def _dedupe_channels(value: list[ChannelName]) -> list[ChannelName]:
    deduped: list[ChannelName] = []
    for channel in value:
        if channel not in deduped:
            deduped.append(channel)
    return deduped


class AdminLoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=128)


class AdminLoginResponse(BaseModel):
    authenticated: bool
    session_token: str
    expires_at: datetime
    username: str
    role: AdminRole


class AdminSessionResponse(BaseModel):
    authenticated: bool
    admin_id: str
    username: str
    role: AdminRole


class AdminCreateRequest(BaseModel):
    username: str
    password: str = Field(min_length=6, max_length=72)
    role: AdminRole = "admin"

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return normalize_username(value)


class ClientWriteRequest(BaseModel):
    name: str
    mobile: str
    email: str
    services_taken: list[str] = Field(default_factory=list, max_length=64)
    last_visit: datetime | None = None
    notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return normalize_name(value)

    @field_validator("mobile")
    @classmethod
    def _normalize_mobile(cls, value: str) -> str:
        return normalize_mobile(value)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("services_taken")
    @classmethod
    def _normalize_services(cls, value: list[str]) -> list[str]:
        return _normalize_services(value)

    @field_validator("notes")
    @classmethod
    def _normalize_notes(cls, value: str | None) -> str | None:
        return normalize_notes(value)


class AppointmentCreateRequest(BaseModel):
    date: datetime | None = None
    service: str = Field(min_length=1, max_length=128)
    price: float | None = Field(default=None, ge=0)
    notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)
    status: AppointmentStatus = "scheduled"

    @field_validator("service")
    @classmethod
    def _normalize_service(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("service cannot be blank")
        return normalized

    @field_validator("notes")
    @classmethod
    def _normalize_notes(cls, value: str | None) -> str | None:
        return normalize_notes(value)


class AppointmentEntryResponse(BaseModel):
    entry_id: str
    date: datetime
    service: str
    price: float | None = None
    notes: str | None = None
    status: AppointmentStatus


class ClientResponse(BaseModel):
    client_id: str
    name: str
    mobile: str
    email: str
    services_taken: list[str]
    appointment_history: list[AppointmentEntryResponse]
    last_visit: datetime
    next_due_date: datetime
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    status: DueStatus
    status_label: str
    days_until_due: int
    total_appointments: int

    @classmethod
    def from_client(cls, client: Client, *, now: datetime, due_soon_days: int) -> ClientResponse:
        next_due_date = require_next_due_date(client)
        classification = classify_due(next_due_date, now, due_soon_days=due_soon_days)
        return cls(
            client_id=client.client_id,
            name=client.name,
            mobile=client.mobile,
            email=client.email,
            services_taken=list(client.services_taken),
            appointment_history=[
                AppointmentEntryResponse(
                    entry_id=entry.entry_id,
                    date=entry.date,
                    service=entry.service,
                    price=entry.price,
                    notes=entry.notes,
                    status=entry.status,
                )
                for entry in client.appointment_history
            ],
            last_visit=client.last_visit,
            next_due_date=next_due_date,
            notes=client.notes,
            created_at=client.created_at,
            updated_at=client.updated_at,
            status=classification.status,
            status_label=status_label(classification.status),
            days_until_due=classification.days_until_due,
            total_appointments=len(client.appointment_history),
        )


class ClientListResponse(BaseModel):
    total: int
    clients: list[ClientResponse]


class ClientReminderRequest(BaseModel):
    channels: list[ChannelName] | None = Field(default=None, min_length=1, max_length=3)

    @field_validator("channels")
    @classmethod
    def _dedupe(cls, value: list[ChannelName] | None) -> list[ChannelName] | None:
        return _dedupe_channels(value) if value is not None else None


class ClientReminderResponse(BaseModel):
    client_id: str
    success: bool
    channel_results: dict[str, bool]


class BulkReminderRequest(BaseModel):
    client_ids: list[str] | None = Field(default=None, min_length=1, max_length=1000)
    days_ahead: int = Field(default=3, ge=0, le=90)
    include_overdue: bool = True
    channels: list[ChannelName] | None = Field(default=None, min_length=1, max_length=3)

    @field_validator("client_ids")
    @classmethod
    def _normalize_client_ids(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        normalized = [str(item).strip() for item in value]
        if any(not item for item in normalized):
            raise ValueError("client_ids entries cannot be blank")
        return normalized

    @field_validator("channels")
    @classmethod
    def _dedupe(cls, value: list[ChannelName] | None) -> list[ChannelName] | None:
        return _dedupe_channels(value) if value is not None else None


class BulkReminderDetail(BaseModel):
    client_id: str
    success: bool
    channel_results: dict[str, bool]


class BulkReminderResponse(BaseModel):
    sent: int
    failed: int
    cancelled: bool
    details: list[BulkReminderDetail]


class UpcomingRemindersResponse(BaseModel):
    days_ahead: int
    total: int
    clients: list[ClientResponse]


class ServiceCount(BaseModel):
    service: str
    count: int


class DashboardStatsResponse(BaseModel):
    total_clients: int
    upcoming_appointments: int
    overdue_appointments: int
    monthly_revenue: float
    popular_services: list[ServiceCount]
