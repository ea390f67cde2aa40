from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from salon_admin.clients import AppointmentEntry, Client
from salon_admin.database import get_database
from salon_admin.store import (
    ClientNotFoundError,
    ClientStore,
    DuplicateClientError,
    InMemoryClientStore,
    SqlAlchemyClientStore,
    create_client_store,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def client_store(request: pytest.FixtureRequest, tmp_path: Path) -> ClientStore:
    if request.param == "inmemory":
        return InMemoryClientStore()
    return SqlAlchemyClientStore(get_database(f"sqlite:///{tmp_path / 'clients.db'}"))


def _candidate(name: str, mobile: str, *, visited_days_ago: int, services: list[str] | None = None) -> Client:
    return Client(
        client_id="",
        name=name,
        mobile=mobile,
        email=f"{name.lower()}@example.com",
        last_visit=NOW - timedelta(days=visited_days_ago),
        services_taken=services or ["Haircut"],
    )


def test_insert_assigns_id_and_due_date(client_store: ClientStore) -> None:
    created = client_store.insert(_candidate("Ava", "+15555550100", visited_days_ago=10), now=NOW)

    assert created.client_id
    assert created.next_due_date == NOW + timedelta(days=20)
    fetched = client_store.find_by_id(created.client_id)
    assert fetched.name == "Ava"
    assert fetched.next_due_date == created.next_due_date
    assert fetched.last_visit.tzinfo is not None
    assert fetched.services_taken == ["Haircut"]


def test_due_window_and_overdue_queries(client_store: ClientStore) -> None:
    overdue = client_store.insert(_candidate("Old", "+15555550101", visited_days_ago=35), now=NOW)
    due_soon = client_store.insert(_candidate("Soon", "+15555550102", visited_days_ago=28), now=NOW)
    due_later = client_store.insert(_candidate("Later", "+15555550103", visited_days_ago=25), now=NOW)
    client_store.insert(_candidate("Fresh", "+15555550104", visited_days_ago=1), now=NOW)

    window = client_store.find_by_due_window(NOW, NOW + timedelta(days=5))
    assert [client.client_id for client in window] == [due_soon.client_id, due_later.client_id]

    assert [client.client_id for client in client_store.find_overdue(NOW)] == [overdue.client_id]


def test_due_window_bounds_are_inclusive(client_store: ClientStore) -> None:
    on_edge = client_store.insert(_candidate("Edge", "+15555550105", visited_days_ago=27), now=NOW)
    end = on_edge.next_due_date
    assert end is not None

    window = client_store.find_by_due_window(NOW, end)
    assert [client.client_id for client in window] == [on_edge.client_id]
    assert client_store.find_overdue(end) == []


def test_update_recomputes_due_date_and_keeps_history(client_store: ClientStore) -> None:
    created = client_store.insert(_candidate("Ava", "+15555550100", visited_days_ago=10), now=NOW)
    created = client_store.add_appointment(
        created.client_id,
        AppointmentEntry(entry_id="", date=NOW - timedelta(days=3), service="Color", price=60.0),
        now=NOW,
    )
    new_visit = NOW - timedelta(days=1)
    edited = Client(
        client_id=created.client_id,
        name="Ava Stone",
        mobile=created.mobile,
        email=created.email,
        last_visit=new_visit,
        next_due_date=NOW + timedelta(days=400),
        services_taken=["Haircut", "Color"],
        appointment_history=list(created.appointment_history),
    )

    updated = client_store.update(edited, now=NOW)

    assert updated.name == "Ava Stone"
    assert updated.next_due_date == new_visit + timedelta(days=30)
    assert updated.created_at == created.created_at
    fetched = client_store.find_by_id(created.client_id)
    assert [entry.service for entry in fetched.appointment_history] == ["Color"]
    assert fetched.appointment_history[0].entry_id == created.appointment_history[0].entry_id


def test_add_appointment_moves_due_date(client_store: ClientStore) -> None:
    created = client_store.insert(_candidate("Ava", "+15555550100", visited_days_ago=40), now=NOW)
    assert client_store.find_overdue(NOW) != []

    updated = client_store.add_appointment(
        created.client_id,
        AppointmentEntry(entry_id="", date=NOW, service="Blowout", price=35.0, status="completed"),
        now=NOW,
    )

    assert updated.last_visit == NOW
    assert updated.next_due_date == NOW + timedelta(days=30)
    assert updated.appointment_history[0].entry_id
    assert client_store.find_overdue(NOW) == []
    fetched = client_store.find_by_id(created.client_id)
    assert fetched.appointment_history[0].status == "completed"
    assert fetched.appointment_history[0].price == 35.0


def test_delete_removes_client_from_listings(client_store: ClientStore) -> None:
    keep = client_store.insert(_candidate("Keep", "+15555550100", visited_days_ago=35), now=NOW)
    drop = client_store.insert(_candidate("Drop", "+15555550101", visited_days_ago=35), now=NOW)

    client_store.delete(drop.client_id)

    assert [client.client_id for client in client_store.list_clients()] == [keep.client_id]
    assert [client.client_id for client in client_store.find_overdue(NOW)] == [keep.client_id]
    with pytest.raises(ClientNotFoundError):
        client_store.find_by_id(drop.client_id)
    with pytest.raises(ClientNotFoundError):
        client_store.delete(drop.client_id)


def test_duplicate_mobile_is_rejected(client_store: ClientStore) -> None:
    first = client_store.insert(_candidate("Ava", "+15555550100", visited_days_ago=5), now=NOW)
    second = client_store.insert(_candidate("Bea", "+15555550101", visited_days_ago=5), now=NOW)

    with pytest.raises(DuplicateClientError):
        client_store.insert(_candidate("Cleo", "+15555550100", visited_days_ago=5), now=NOW)

    clash = Client(
        client_id=second.client_id,
        name=second.name,
        mobile=first.mobile,
        email=second.email,
        last_visit=second.last_visit,
    )
    with pytest.raises(DuplicateClientError):
        client_store.update(clash, now=NOW)


def test_list_clients_filters_by_search_and_service(client_store: ClientStore) -> None:
    client_store.insert(_candidate("Ava", "+15555550100", visited_days_ago=5, services=["Haircut", "Color"]), now=NOW)
    client_store.insert(_candidate("Bea", "+15555550101", visited_days_ago=5, services=["Manicure"]), now=NOW)

    assert [client.name for client in client_store.list_clients()] == ["Ava", "Bea"]
    assert [client.name for client in client_store.list_clients(search="bea")] == ["Bea"]
    assert [client.name for client in client_store.list_clients(search="0100")] == ["Ava"]
    assert [client.name for client in client_store.list_clients(service="color")] == ["Ava"]


def test_unknown_ids_raise_not_found(client_store: ClientStore) -> None:
    with pytest.raises(ClientNotFoundError):
        client_store.find_by_id("missing")
    with pytest.raises(ClientNotFoundError):
        client_store.add_appointment("missing", AppointmentEntry(entry_id="", date=NOW, service="Cut"), now=NOW)


def test_reset_clears_everything(client_store: ClientStore) -> None:
    client_store.insert(_candidate("Ava", "+15555550100", visited_days_ago=5), now=NOW)
    client_store.reset()
    assert client_store.list_clients() == []


def test_create_client_store_requires_database_for_postgres() -> None:
    assert isinstance(create_client_store(backend="inmemory", database=None), InMemoryClientStore)
    with pytest.raises(RuntimeError):
        create_client_store(backend="postgres", database=None)
    with pytest.raises(RuntimeError):
        create_client_store(backend="mongo", database=None)


def test_returned_clients_do_not_share_lists_with_the_store(client_store: ClientStore) -> None:
    created = client_store.insert(
        _candidate("Ava", "+15555550100", visited_days_ago=5, services=["Haircut"]),
        now=NOW,
    )

    fetched = client_store.find_by_id(created.client_id)
    fetched.services_taken.append("Color")
    fetched.appointment_history.append(AppointmentEntry(entry_id="x", date=NOW, service="Color"))
    client_store.list_clients()[0].services_taken.clear()
    created.services_taken.append("Trim")

    stored = client_store.find_by_id(created.client_id)
    assert stored.services_taken == ["Haircut"]
    assert stored.appointment_history == []
