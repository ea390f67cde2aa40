from __future__ import annotations

import csv
import io
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from openpyxl import Workbook
from openpyxl.utils import get_column_letter

from .clients import AppointmentEntry, Client, coerce_utc
from .due_dates import DUE_SOON_DAYS, classify_due

CSV_MEDIA_TYPE = "text/csv"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

CLIENT_EXPORT_COLUMNS: tuple[str, ...] = (
    "Client Name",
    "Mobile Number",
    "Email",
    "Services Taken",
    "Last Visit",
    "Next Due Date",
    "Days Until Due",
    "Status",
    "Total Appointments",
    "Notes",
    "Created Date",
)
HISTORY_EXPORT_COLUMNS: tuple[str, ...] = ("Date", "Service", "Price", "Status", "Notes")

COLUMN_MIN_WIDTH = 10
COLUMN_MAX_WIDTH = 25


@dataclass(frozen=True)
class ExportPayload:
    filename: str
    content: bytes
    media_type: str


def _format_date(value: datetime | None) -> str:
    if value is None:
        return ""
    return coerce_utc(value).date().isoformat()


def _format_price(price: float | None) -> str:
    if not price:
        return "N/A"
    return f"${price:.2f}"


def _safe_filename_part(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", value)


def client_export_row(
    client: Client,
    now: datetime,
    *,
    due_soon_days: int = DUE_SOON_DAYS,
) -> dict[str, object]:
    days_until_due: object = ""
    status = ""
    if client.next_due_date is not None:
        classification = classify_due(client.next_due_date, now, due_soon_days=due_soon_days)
        days_until_due = classification.days_until_due
        status = classification.label
    return {
        "Client Name": client.name,
        "Mobile Number": client.mobile,
        "Email": client.email,
        "Services Taken": ", ".join(client.services_taken),
        "Last Visit": _format_date(client.last_visit),
        "Next Due Date": _format_date(client.next_due_date),
        "Days Until Due": days_until_due,
        "Status": status,
        "Total Appointments": len(client.appointment_history),
        "Notes": client.notes or "",
        "Created Date": _format_date(client.created_at),
    }


def history_export_row(entry: AppointmentEntry) -> dict[str, object]:
    return {
        "Date": _format_date(entry.date),
        "Service": entry.service,
        "Price": _format_price(entry.price),
        "Status": entry.status,
        "Notes": entry.notes or "",
    }


def _rows_to_csv(columns: Sequence[str], rows: Sequence[dict[str, object]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(columns), lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def _append_table(sheet, columns: Sequence[str], rows: Sequence[dict[str, object]]) -> None:
    sheet.append(list(columns))
    for row in rows:
        sheet.append([row.get(column, "") for column in columns])


def _autosize_columns(sheet, columns: Sequence[str], rows: Sequence[dict[str, object]]) -> None:
    for index, column in enumerate(columns, start=1):
        longest = max([len(column), *(len(str(row.get(column, ""))) for row in rows)])
        width = min(COLUMN_MAX_WIDTH, max(COLUMN_MIN_WIDTH, longest + 2))
        sheet.column_dimensions[get_column_letter(index)].width = width


def _workbook_bytes(workbook: Workbook) -> bytes:
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def summarize_clients(clients: Sequence[Client], now: datetime) -> dict[str, int]:
    reference_now = coerce_utc(now)
    week_end = reference_now + timedelta(days=DUE_SOON_DAYS)
    due_dates = [client.next_due_date for client in clients if client.next_due_date is not None]
    return {
        "Total Clients": len(clients),
        "Active Clients": sum(1 for due in due_dates if due >= reference_now),
        "Overdue Clients": sum(1 for due in due_dates if due < reference_now),
        "Due This Week": sum(1 for due in due_dates if reference_now <= due <= week_end),
    }


def service_analysis(clients: Sequence[Client]) -> list[dict[str, object]]:
    counts: Counter[str] = Counter()
    for client in clients:
        counts.update(client.services_taken)
    total = len(clients)
    # Counter.most_common keeps first-seen order for equal counts.
    return [
        {
            "Service": service,
            "Client Count": count,
            "Percentage": f"{count / total * 100:.1f}%",
        }
        for service, count in counts.most_common()
    ]


def export_clients_csv(
    clients: Sequence[Client],
    now: datetime,
    *,
    due_soon_days: int = DUE_SOON_DAYS,
) -> ExportPayload:
    rows = [client_export_row(client, now, due_soon_days=due_soon_days) for client in clients]
    return ExportPayload(
        filename=f"salon-clients-{_format_date(now)}.csv",
        content=_rows_to_csv(CLIENT_EXPORT_COLUMNS, rows),
        media_type=CSV_MEDIA_TYPE,
    )


def export_clients_xlsx(
    clients: Sequence[Client],
    now: datetime,
    *,
    due_soon_days: int = DUE_SOON_DAYS,
) -> ExportPayload:
    rows = [client_export_row(client, now, due_soon_days=due_soon_days) for client in clients]
    workbook = Workbook()

    clients_sheet = workbook.active
    clients_sheet.title = "Clients"
    _append_table(clients_sheet, CLIENT_EXPORT_COLUMNS, rows)
    _autosize_columns(clients_sheet, CLIENT_EXPORT_COLUMNS, rows)

    summary = summarize_clients(clients, now)
    summary_sheet = workbook.create_sheet("Summary")
    _append_table(summary_sheet, list(summary), [summary])

    analysis_sheet = workbook.create_sheet("Service Analysis")
    _append_table(analysis_sheet, ("Service", "Client Count", "Percentage"), service_analysis(clients))

    return ExportPayload(
        filename=f"salon-clients-report-{_format_date(now)}.xlsx",
        content=_workbook_bytes(workbook),
        media_type=XLSX_MEDIA_TYPE,
    )


def export_clients(
    clients: Sequence[Client],
    export_format: str,
    now: datetime,
    *,
    due_soon_days: int = DUE_SOON_DAYS,
) -> ExportPayload:
    if export_format == "csv":
        return export_clients_csv(clients, now, due_soon_days=due_soon_days)
    if export_format == "xlsx":
        return export_clients_xlsx(clients, now, due_soon_days=due_soon_days)
    raise ValueError(f"Unsupported export format: {export_format}")


def export_client_history(client: Client, export_format: str, now: datetime) -> ExportPayload:
    rows = [history_export_row(entry) for entry in client.appointment_history]
    stem = f"{_safe_filename_part(client.name)}-history-{_format_date(now)}"

    if export_format == "csv":
        return ExportPayload(
            filename=f"{stem}.csv",
            content=_rows_to_csv(HISTORY_EXPORT_COLUMNS, rows),
            media_type=CSV_MEDIA_TYPE,
        )
    if export_format != "xlsx":
        raise ValueError(f"Unsupported export format: {export_format}")

    total_spent = sum(entry.price or 0.0 for entry in client.appointment_history)
    client_info = {
        "Client Name": client.name,
        "Mobile": client.mobile,
        "Email": client.email,
        "Last Visit": _format_date(client.last_visit),
        "Next Due Date": _format_date(client.next_due_date),
        "Total Appointments": len(client.appointment_history),
        "Total Spent": f"{total_spent:.2f}",
    }

    workbook = Workbook()
    info_sheet = workbook.active
    info_sheet.title = "Client Info"
    _append_table(info_sheet, list(client_info), [client_info])

    history_sheet = workbook.create_sheet("Appointment History")
    _append_table(history_sheet, HISTORY_EXPORT_COLUMNS, rows)

    return ExportPayload(
        filename=f"{stem}.xlsx",
        content=_workbook_bytes(workbook),
        media_type=XLSX_MEDIA_TYPE,
    )
