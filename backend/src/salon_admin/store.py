from __future__ import annotations

import json
import secrets
from dataclasses import replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from .clients import (
    AppointmentEntry,
    Client,
    append_appointment,
    coerce_utc,
    copy_client,
    prepare_client_update,
    prepare_new_client,
    require_next_due_date,
)
from .database import DatabaseHandle, SalonBase


class ClientNotFoundError(KeyError):
    """Raised when an operation references a client id that does not exist."""


class DuplicateClientError(ValueError):
    """Raised when a write would give two clients the same mobile number."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ClientStore(Protocol):
    def reset(self) -> None: ...

    def find_by_due_window(self, start: datetime, end: datetime) -> list[Client]: ...

    def find_overdue(self, now: datetime) -> list[Client]: ...

    def find_by_id(self, client_id: str) -> Client: ...

    def list_clients(self, *, search: str | None = None, service: str | None = None) -> list[Client]: ...

    def insert(self, client: Client, *, now: datetime | None = None) -> Client: ...

    def update(self, client: Client, *, now: datetime | None = None) -> Client: ...

    def add_appointment(
        self,
        client_id: str,
        entry: AppointmentEntry,
        *,
        now: datetime | None = None,
    ) -> Client: ...

    def delete(self, client_id: str) -> None: ...


def _matches(client: Client, *, search: str | None, service: str | None) -> bool:
    if service:
        wanted = service.strip().lower()
        if not any(item.lower() == wanted for item in client.services_taken):
            return False
    if search:
        needle = search.strip().lower()
        haystacks = (client.name.lower(), client.mobile, client.email)
        if not any(needle in value for value in haystacks):
            return False
    return True


def _by_due_date(client: Client) -> tuple[datetime, str]:
    return (require_next_due_date(client), client.client_id)


class InMemoryClientStore:
    """Deterministic in-memory store with incremental client ids."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._client_counter = count(1)
        self._entry_counter = count(1)
        self._clients: dict[str, Client] = {}

    def reset(self) -> None:
        with self._lock:
            self._client_counter = count(1)
            self._entry_counter = count(1)
            self._clients.clear()

    def find_by_due_window(self, start: datetime, end: datetime) -> list[Client]:
        lower = coerce_utc(start)
        upper = coerce_utc(end)
        with self._lock:
            matches = [
                copy_client(client)
                for client in self._clients.values()
                if client.next_due_date is not None and lower <= client.next_due_date <= upper
            ]
        return sorted(matches, key=_by_due_date)

    def find_overdue(self, now: datetime) -> list[Client]:
        reference = coerce_utc(now)
        with self._lock:
            matches = [
                copy_client(client)
                for client in self._clients.values()
                if client.next_due_date is not None and client.next_due_date < reference
            ]
        return sorted(matches, key=_by_due_date)

    def find_by_id(self, client_id: str) -> Client:
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                raise ClientNotFoundError(client_id)
            return copy_client(client)

    def list_clients(self, *, search: str | None = None, service: str | None = None) -> list[Client]:
        with self._lock:
            clients = [
                copy_client(client)
                for client in self._clients.values()
                if _matches(client, search=search, service=service)
            ]
        return sorted(clients, key=lambda value: (value.name.lower(), value.client_id))

    def insert(self, client: Client, *, now: datetime | None = None) -> Client:
        prepared = prepare_new_client(client, now=now)
        with self._lock:
            self._ensure_unique_mobile(prepared.mobile, exclude_id=None)
            client_id = f"client-{next(self._client_counter):04d}"
            history = [self._with_entry_id(entry) for entry in prepared.appointment_history]
            stored = copy_client(replace(prepared, client_id=client_id, appointment_history=history))
            self._clients[client_id] = stored
            return copy_client(stored)

    def update(self, client: Client, *, now: datetime | None = None) -> Client:
        with self._lock:
            existing = self._clients.get(client.client_id)
            if existing is None:
                raise ClientNotFoundError(client.client_id)
            prepared = prepare_client_update(existing, client, now=now)
            self._ensure_unique_mobile(prepared.mobile, exclude_id=existing.client_id)
            history = [self._with_entry_id(entry) for entry in prepared.appointment_history]
            stored = copy_client(replace(prepared, appointment_history=history))
            self._clients[existing.client_id] = stored
            return copy_client(stored)

    def add_appointment(
        self,
        client_id: str,
        entry: AppointmentEntry,
        *,
        now: datetime | None = None,
    ) -> Client:
        with self._lock:
            existing = self._clients.get(client_id)
            if existing is None:
                raise ClientNotFoundError(client_id)
            stored = append_appointment(existing, self._with_entry_id(entry), now=now or _now_utc())
            self._clients[client_id] = stored
            return copy_client(stored)

    def delete(self, client_id: str) -> None:
        with self._lock:
            if self._clients.pop(client_id, None) is None:
                raise ClientNotFoundError(client_id)

    def _with_entry_id(self, entry: AppointmentEntry) -> AppointmentEntry:
        if entry.entry_id:
            return entry
        return replace(entry, entry_id=f"apt-{next(self._entry_counter):05d}")

    def _ensure_unique_mobile(self, mobile: str, *, exclude_id: str | None) -> None:
        for client in self._clients.values():
            if client.client_id != exclude_id and client.mobile == mobile:
                raise DuplicateClientError(f"mobile number already registered: {mobile}")


class _ClientRow(SalonBase):
    __tablename__ = "clients"

    client_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    mobile: Mapped[str] = mapped_column(String(17), nullable=False, unique=True, index=True)
    email: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    services_taken_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    last_visit: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _AppointmentRow(SalonBase):
    __tablename__ = "client_appointments"

    entry_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    client_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("clients.client_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    service: Mapped[str] = mapped_column(String(128), nullable=False)
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="scheduled")


class SqlAlchemyClientStore:
    def __init__(self, database: DatabaseHandle) -> None:
        self._database = database
        self._database.ensure_schema()

    def _session(self):
        return self._database.session()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_AppointmentRow))
                session.execute(delete(_ClientRow))

    def find_by_due_window(self, start: datetime, end: datetime) -> list[Client]:
        statement = (
            select(_ClientRow)
            .where(
                _ClientRow.next_due_date >= coerce_utc(start),
                _ClientRow.next_due_date <= coerce_utc(end),
            )
            .order_by(_ClientRow.next_due_date, _ClientRow.client_id)
        )
        return self._load(statement)

    def find_overdue(self, now: datetime) -> list[Client]:
        statement = (
            select(_ClientRow)
            .where(_ClientRow.next_due_date < coerce_utc(now))
            .order_by(_ClientRow.next_due_date, _ClientRow.client_id)
        )
        return self._load(statement)

    def find_by_id(self, client_id: str) -> Client:
        with self._session() as session:
            row = session.get(_ClientRow, client_id)
            if row is None:
                raise ClientNotFoundError(client_id)
            return self._to_client(session, row)

    def list_clients(self, *, search: str | None = None, service: str | None = None) -> list[Client]:
        statement = select(_ClientRow)
        if search and search.strip():
            pattern = f"%{search.strip().lower()}%"
            statement = statement.where(
                or_(
                    _ClientRow.name.ilike(pattern),
                    _ClientRow.mobile.like(pattern),
                    _ClientRow.email.like(pattern),
                )
            )
        clients = self._load(statement)
        filtered = [client for client in clients if _matches(client, search=None, service=service)]
        return sorted(filtered, key=lambda value: (value.name.lower(), value.client_id))

    def insert(self, client: Client, *, now: datetime | None = None) -> Client:
        prepared = prepare_new_client(client, now=now)
        client_id = f"client_{secrets.token_hex(8)}"
        stored = replace(
            prepared,
            client_id=client_id,
            appointment_history=[self._with_entry_id(entry) for entry in prepared.appointment_history],
        )
        try:
            with self._session() as session:
                with session.begin():
                    self._ensure_unique_mobile(session, stored.mobile, exclude_id=None)
                    session.add(self._to_row(stored))
                    session.flush()
                    self._write_history(session, stored)
        except IntegrityError as exc:
            raise DuplicateClientError(f"mobile number already registered: {stored.mobile}") from exc
        return stored

    def update(self, client: Client, *, now: datetime | None = None) -> Client:
        try:
            with self._session() as session:
                with session.begin():
                    row = session.get(_ClientRow, client.client_id)
                    if row is None:
                        raise ClientNotFoundError(client.client_id)
                    existing = self._to_client(session, row)
                    prepared = prepare_client_update(existing, client, now=now)
                    stored = replace(
                        prepared,
                        appointment_history=[self._with_entry_id(entry) for entry in prepared.appointment_history],
                    )
                    self._ensure_unique_mobile(session, stored.mobile, exclude_id=stored.client_id)
                    self._apply_row(row, stored)
                    self._write_history(session, stored)
        except IntegrityError as exc:
            raise DuplicateClientError(f"mobile number already registered: {client.mobile}") from exc
        return stored

    def add_appointment(
        self,
        client_id: str,
        entry: AppointmentEntry,
        *,
        now: datetime | None = None,
    ) -> Client:
        with self._session() as session:
            with session.begin():
                row = session.get(_ClientRow, client_id)
                if row is None:
                    raise ClientNotFoundError(client_id)
                existing = self._to_client(session, row)
                stored_entry = self._with_entry_id(entry)
                stored = append_appointment(existing, stored_entry, now=now or _now_utc())
                self._apply_row(row, stored)
                self._write_history(session, stored)
        return stored

    def delete(self, client_id: str) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ClientRow, client_id)
                if row is None:
                    raise ClientNotFoundError(client_id)
                session.execute(delete(_AppointmentRow).where(_AppointmentRow.client_id == client_id))
                session.delete(row)

    def _load(self, statement) -> list[Client]:
        with self._session() as session:
            rows = session.execute(statement).scalars().all()
            return [self._to_client(session, row) for row in rows]

    def _ensure_unique_mobile(self, session, mobile: str, *, exclude_id: str | None) -> None:
        statement = select(_ClientRow.client_id).where(_ClientRow.mobile == mobile)
        if exclude_id is not None:
            statement = statement.where(_ClientRow.client_id != exclude_id)
        if session.execute(statement).first() is not None:
            raise DuplicateClientError(f"mobile number already registered: {mobile}")

    def _with_entry_id(self, entry: AppointmentEntry) -> AppointmentEntry:
        if entry.entry_id:
            return entry
        return replace(entry, entry_id=f"apt_{secrets.token_hex(8)}")

    def _write_history(self, session, client: Client) -> None:
        existing = {
            row.entry_id: row
            for row in session.execute(
                select(_AppointmentRow).where(_AppointmentRow.client_id == client.client_id)
            ).scalars()
        }
        for position, entry in enumerate(client.appointment_history):
            row = existing.pop(entry.entry_id, None)
            if row is None:
                row = _AppointmentRow(entry_id=entry.entry_id, client_id=client.client_id)
                session.add(row)
            row.position = position
            row.date = coerce_utc(entry.date)
            row.service = entry.service
            row.price = entry.price
            row.notes = entry.notes
            row.status = entry.status
        for stale in existing.values():
            session.delete(stale)

    def _to_row(self, client: Client) -> _ClientRow:
        row = _ClientRow(client_id=client.client_id)
        self._apply_row(row, client)
        return row

    def _apply_row(self, row: _ClientRow, client: Client) -> None:
        next_due_date = require_next_due_date(client)
        row.name = client.name
        row.mobile = client.mobile
        row.email = client.email
        row.services_taken_json = json.dumps(list(client.services_taken))
        row.last_visit = coerce_utc(client.last_visit)
        row.next_due_date = coerce_utc(next_due_date)
        row.notes = client.notes
        row.created_at = coerce_utc(client.created_at or _now_utc())
        row.updated_at = coerce_utc(client.updated_at or _now_utc())

    def _to_client(self, session, row: _ClientRow) -> Client:
        entries = session.execute(
            select(_AppointmentRow)
            .where(_AppointmentRow.client_id == row.client_id)
            .order_by(_AppointmentRow.position)
        ).scalars().all()
        services = json.loads(row.services_taken_json or "[]")
        return Client(
            client_id=row.client_id,
            name=row.name,
            mobile=row.mobile,
            email=row.email,
            last_visit=coerce_utc(row.last_visit),
            next_due_date=coerce_utc(row.next_due_date),
            services_taken=[str(item) for item in services],
            appointment_history=[
                AppointmentEntry(
                    entry_id=entry.entry_id,
                    date=coerce_utc(entry.date),
                    service=entry.service,
                    price=entry.price,
                    notes=entry.notes,
                    status=entry.status,  # type: ignore[arg-type]
                )
                for entry in entries
            ],
            notes=row.notes,
            created_at=coerce_utc(row.created_at),
            updated_at=coerce_utc(row.updated_at),
        )


def create_client_store(*, backend: str, database: DatabaseHandle | None) -> ClientStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        if database is None:
            raise RuntimeError("DATABASE_URL is required for CLIENT_STORE_BACKEND=postgres")
        return SqlAlchemyClientStore(database)
    if normalized == "inmemory":
        return InMemoryClientStore()
    raise RuntimeError(f"unsupported CLIENT_STORE_BACKEND: {backend}")
