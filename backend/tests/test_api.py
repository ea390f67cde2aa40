from __future__ import annotations

import csv
import io
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

from salon_admin import api as api_module
from salon_admin.config import Settings, get_settings
from salon_admin.main import create_app
from salon_admin.notifier import NotifierChannels, StubReminderChannel, build_notifier_channels
from salon_admin.reminders import ReminderDispatcher

PREFIX = "/api/v1/salon"


def _client() -> TestClient:
    api_module._settings = replace(get_settings(), reminder_throttle_seconds=0.0)
    api_module.reset_runtime_state_for_tests()
    api_module.notifier_channels = build_notifier_channels(Settings(notifier_sender_type="stub"))
    api_module.reminder_dispatcher = ReminderDispatcher(api_module.notifier_channels)
    api_module.auth_repo.create_admin("owner", "owner-pass", role="admin")
    api_module.auth_repo.create_admin("frontdesk", "desk-pass", role="manager")
    return TestClient(create_app())


def _login(client: TestClient, username: str = "owner", password: str = "owner-pass") -> dict[str, str]:
    response = client.post(f"{PREFIX}/admin/login", json={"username": username, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['session_token']}"}


def _client_payload(
    name: str,
    mobile: str,
    *,
    visited_days_ago: int,
    email: str | None = None,
    services: list[str] | None = None,
) -> dict:
    return {
        "name": name,
        "mobile": mobile,
        "email": email or f"{name.lower()}@example.com",
        "services_taken": services or ["Haircut"],
        "last_visit": (datetime.now(timezone.utc) - timedelta(days=visited_days_ago)).isoformat(),
        "notes": None,
    }


def test_admin_login_and_session() -> None:
    client = _client()

    login = client.post(f"{PREFIX}/admin/login", json={"username": "frontdesk", "password": "desk-pass"})
    assert login.status_code == 200
    body = login.json()
    assert body["authenticated"] is True
    assert body["role"] == "manager"

    session = client.get(f"{PREFIX}/admin/session", headers={"Authorization": f"Bearer {body['session_token']}"})
    assert session.status_code == 200
    assert session.json()["username"] == "frontdesk"

    assert client.get(f"{PREFIX}/admin/session").status_code == 401
    assert client.get(f"{PREFIX}/clients", headers={"Authorization": "Bearer forged.token"}).status_code == 401


def test_admin_login_rate_limit() -> None:
    client = _client()

    for _ in range(5):
        response = client.post(f"{PREFIX}/admin/login", json={"username": "owner", "password": "wrong-pass"})
        assert response.status_code == 401

    blocked = client.post(f"{PREFIX}/admin/login", json={"username": "owner", "password": "owner-pass"})
    assert blocked.status_code == 429


def test_client_lifecycle() -> None:
    client = _client()
    headers = _login(client)

    created = client.post(
        f"{PREFIX}/clients",
        json=_client_payload("Ava", "+15555550100", visited_days_ago=35, services=["Haircut", "Color"]),
        headers=headers,
    )
    assert created.status_code == 201
    record = created.json()
    client_id = record["client_id"]
    assert record["status"] == "overdue"
    assert record["status_label"] == "Overdue"
    assert record["days_until_due"] == -5
    assert record["total_appointments"] == 0

    fresh = client.post(
        f"{PREFIX}/clients",
        json=_client_payload("Bea", "+15555550101", visited_days_ago=2),
        headers=headers,
    )
    assert fresh.status_code == 201

    overdue = client.get(f"{PREFIX}/clients", params={"status": "overdue"}, headers=headers)
    assert [item["name"] for item in overdue.json()["clients"]] == ["Ava"]
    active = client.get(f"{PREFIX}/clients", params={"status": "active"}, headers=headers)
    assert [item["name"] for item in active.json()["clients"]] == ["Bea"]
    by_service = client.get(f"{PREFIX}/clients", params={"service": "Color"}, headers=headers)
    assert by_service.json()["total"] == 1

    appointment = client.post(
        f"{PREFIX}/clients/{client_id}/appointments",
        json={"service": "Color", "price": 85.0, "status": "completed"},
        headers=headers,
    )
    assert appointment.status_code == 201
    assert appointment.json()["status"] == "active"
    assert appointment.json()["days_until_due"] == 30
    assert appointment.json()["total_appointments"] == 1

    updated = client.put(
        f"{PREFIX}/clients/{client_id}",
        json={**_client_payload("Ava Stone", "+15555550100", visited_days_ago=3), "email": "ava@example.com"},
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "Ava Stone"
    assert updated.json()["days_until_due"] == 27
    assert updated.json()["total_appointments"] == 1

    deleted = client.delete(f"{PREFIX}/clients/{client_id}", headers=headers)
    assert deleted.status_code == 204
    assert client.get(f"{PREFIX}/clients/{client_id}", headers=headers).status_code == 404
    assert [item["name"] for item in client.get(f"{PREFIX}/clients", headers=headers).json()["clients"]] == ["Bea"]


def test_client_validation_and_duplicates() -> None:
    client = _client()
    headers = _login(client)

    bad_mobile = client.post(
        f"{PREFIX}/clients",
        json=_client_payload("Ava", "0555", visited_days_ago=1),
        headers=headers,
    )
    assert bad_mobile.status_code == 422
    bad_email = client.post(
        f"{PREFIX}/clients",
        json=_client_payload("Ava", "+15555550100", visited_days_ago=1, email="ava@"),
        headers=headers,
    )
    assert bad_email.status_code == 422

    first = client.post(f"{PREFIX}/clients", json=_client_payload("Ava", "+15555550100", visited_days_ago=1), headers=headers)
    assert first.status_code == 201
    duplicate = client.post(f"{PREFIX}/clients", json=_client_payload("Bea", "+15555550100", visited_days_ago=1), headers=headers)
    assert duplicate.status_code == 409

    negative_price = client.post(
        f"{PREFIX}/clients/{first.json()['client_id']}/appointments",
        json={"service": "Cut", "price": -5},
        headers=headers,
    )
    assert negative_price.status_code == 422


def test_manager_cannot_delete_or_create_accounts() -> None:
    client = _client()
    admin_headers = _login(client)
    manager_headers = _login(client, "frontdesk", "desk-pass")

    created = client.post(f"{PREFIX}/clients", json=_client_payload("Ava", "+15555550100", visited_days_ago=1), headers=manager_headers)
    assert created.status_code == 201

    denied = client.delete(f"{PREFIX}/clients/{created.json()['client_id']}", headers=manager_headers)
    assert denied.status_code == 403
    assert client.post(
        f"{PREFIX}/admin/users",
        json={"username": "stylist", "password": "stylist-pass", "role": "manager"},
        headers=manager_headers,
    ).status_code == 403

    account = client.post(
        f"{PREFIX}/admin/users",
        json={"username": "stylist", "password": "stylist-pass", "role": "manager"},
        headers=admin_headers,
    )
    assert account.status_code == 201
    assert account.json()["role"] == "manager"
    assert _login(client, "stylist", "stylist-pass")


def test_single_client_reminder() -> None:
    client = _client()
    headers = _login(client)
    created = client.post(f"{PREFIX}/clients", json=_client_payload("Ava", "+15555550100", visited_days_ago=30), headers=headers)
    client_id = created.json()["client_id"]

    response = client.post(
        f"{PREFIX}/clients/{client_id}/reminder",
        json={"channels": ["sms", "email"]},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json() == {
        "client_id": client_id,
        "success": True,
        "channel_results": {"sms": True, "email": True},
    }
    sent = api_module.notifier_channels.sms.sent  # type: ignore[union-attr]
    assert "due today" in sent[0].body

    unknown = client.post(f"{PREFIX}/clients/missing/reminder", json={"channels": ["sms"]}, headers=headers)
    assert unknown.status_code == 404
    bad_channel = client.post(f"{PREFIX}/clients/{client_id}/reminder", json={"channels": ["fax"]}, headers=headers)
    assert bad_channel.status_code == 422


def test_bulk_reminders_use_overdue_and_due_window() -> None:
    client = _client()
    headers = _login(client)
    overdue = client.post(
        f"{PREFIX}/clients",
        json=_client_payload("Old", "+15555550101", visited_days_ago=35, email="fail.old@example.com"),
        headers=headers,
    ).json()
    due_soon = client.post(f"{PREFIX}/clients", json=_client_payload("Soon", "+15555550102", visited_days_ago=28), headers=headers).json()
    client.post(f"{PREFIX}/clients", json=_client_payload("Fresh", "+15555550103", visited_days_ago=1), headers=headers)

    response = client.post(f"{PREFIX}/reminders/bulk", json={"channels": ["email"], "days_ahead": 3}, headers=headers)

    assert response.status_code == 200
    report = response.json()
    assert report["sent"] == 1
    assert report["failed"] == 1
    assert report["cancelled"] is False
    assert [detail["client_id"] for detail in report["details"]] == [overdue["client_id"], due_soon["client_id"]]
    assert report["details"][0]["channel_results"] == {"email": False}
    assert report["details"][1]["channel_results"] == {"email": True}

    without_overdue = client.post(
        f"{PREFIX}/reminders/bulk",
        json={"channels": ["sms"], "include_overdue": False},
        headers=headers,
    ).json()
    assert [detail["client_id"] for detail in without_overdue["details"]] == [due_soon["client_id"]]


def test_bulk_reminders_for_explicit_clients() -> None:
    client = _client()
    headers = _login(client)
    first = client.post(f"{PREFIX}/clients", json=_client_payload("Ava", "+15555550100", visited_days_ago=1), headers=headers).json()
    second = client.post(f"{PREFIX}/clients", json=_client_payload("Bea", "+15555550101", visited_days_ago=1), headers=headers).json()

    response = client.post(
        f"{PREFIX}/reminders/bulk",
        json={"client_ids": [second["client_id"], first["client_id"]], "channels": ["whatsapp"]},
        headers=headers,
    )
    assert response.status_code == 200
    assert [detail["client_id"] for detail in response.json()["details"]] == [second["client_id"], first["client_id"]]
    assert response.json()["sent"] == 2

    missing = client.post(f"{PREFIX}/reminders/bulk", json={"client_ids": ["missing"], "channels": ["sms"]}, headers=headers)
    assert missing.status_code == 404


def test_upcoming_reminders_and_dashboard_stats() -> None:
    client = _client()
    headers = _login(client)
    client.post(f"{PREFIX}/clients", json=_client_payload("Old", "+15555550101", visited_days_ago=35), headers=headers)
    soon = client.post(
        f"{PREFIX}/clients",
        json=_client_payload("Soon", "+15555550102", visited_days_ago=28, services=["Color", "Haircut"]),
        headers=headers,
    ).json()
    client.post(f"{PREFIX}/clients", json=_client_payload("Fresh", "+15555550103", visited_days_ago=1), headers=headers)
    client.post(
        f"{PREFIX}/clients/{soon['client_id']}/appointments",
        json={"service": "Color", "price": 120.0, "status": "completed", "date": soon["last_visit"]},
        headers=headers,
    )

    upcoming = client.get(f"{PREFIX}/reminders/upcoming", params={"days_ahead": 3}, headers=headers)
    assert upcoming.status_code == 200
    assert [item["name"] for item in upcoming.json()["clients"]] == ["Soon"]

    stats = client.get(f"{PREFIX}/dashboard/stats", headers=headers)
    assert stats.status_code == 200
    body = stats.json()
    assert body["total_clients"] == 3
    assert body["upcoming_appointments"] == 1
    assert body["overdue_appointments"] == 1
    assert body["popular_services"][0] == {"service": "Haircut", "count": 3}


def test_roster_and_history_export() -> None:
    client = _client()
    headers = _login(client)
    created = client.post(
        f"{PREFIX}/clients",
        json=_client_payload("Ava", "+15555550100", visited_days_ago=5, services=["Haircut", "Color"]),
        headers=headers,
    ).json()
    for service in ("Haircut", "Color", "Trim"):
        client.post(
            f"{PREFIX}/clients/{created['client_id']}/appointments",
            json={"service": service, "price": 50.0, "status": "completed"},
            headers=headers,
        )

    csv_response = client.get(f"{PREFIX}/clients/export", params={"format": "csv"}, headers=headers)
    assert csv_response.status_code == 200
    assert csv_response.headers["content-type"].startswith("text/csv")
    assert "salon-clients-" in csv_response.headers["content-disposition"]
    rows = list(csv.DictReader(io.StringIO(csv_response.text)))
    assert len(rows) == 1
    assert rows[0]["Services Taken"] == "Haircut, Color"
    assert rows[0]["Total Appointments"] == "3"

    xlsx_response = client.get(f"{PREFIX}/clients/export", params={"format": "xlsx"}, headers=headers)
    assert xlsx_response.status_code == 200
    workbook = load_workbook(io.BytesIO(xlsx_response.content))
    assert workbook.sheetnames == ["Clients", "Summary", "Service Analysis"]

    unsupported = client.get(f"{PREFIX}/clients/export", params={"format": "pdf"}, headers=headers)
    assert unsupported.status_code == 400
    assert "Unsupported export format" in unsupported.json()["detail"]

    history = client.get(
        f"{PREFIX}/clients/{created['client_id']}/history/export",
        params={"format": "csv"},
        headers=headers,
    )
    assert history.status_code == 200
    assert "Ava-history-" in history.headers["content-disposition"]
    assert [row["Price"] for row in csv.DictReader(io.StringIO(history.text))] == ["$50.00"] * 3


def test_unconfigured_channel_warning_is_logged_once_across_requests(caplog: pytest.LogCaptureFixture) -> None:
    client = _client()
    api_module.notifier_channels = NotifierChannels(sms=StubReminderChannel("sms"))
    api_module.reminder_dispatcher = ReminderDispatcher(api_module.notifier_channels)
    headers = _login(client)
    created = client.post(f"{PREFIX}/clients", json=_client_payload("Ava", "+15555550100", visited_days_ago=30), headers=headers)
    client_id = created.json()["client_id"]

    caplog.set_level(logging.WARNING, logger="salon_admin.reminders")
    for _ in range(2):
        response = client.post(
            f"{PREFIX}/clients/{client_id}/reminder",
            json={"channels": ["sms", "whatsapp"]},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["channel_results"] == {"sms": True, "whatsapp": False}

    warnings = [record for record in caplog.records if "whatsapp channel not configured" in record.getMessage()]
    assert len(warnings) == 1


def test_export_status_matches_listing_for_configured_window() -> None:
    client = _client()
    api_module._settings = replace(api_module._settings, reminder_due_soon_days=10)
    headers = _login(client)
    client.post(f"{PREFIX}/clients", json=_client_payload("Ava", "+15555550100", visited_days_ago=21), headers=headers)

    listing = client.get(f"{PREFIX}/clients", headers=headers).json()
    assert listing["clients"][0]["status_label"] == "Due Soon"

    exported = client.get(f"{PREFIX}/clients/export", params={"format": "csv"}, headers=headers)
    rows = list(csv.DictReader(io.StringIO(exported.text)))
    assert rows[0]["Status"] == listing["clients"][0]["status_label"]
