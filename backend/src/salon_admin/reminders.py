from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Sequence

from .clients import Client, coerce_utc, require_next_due_date
from .due_dates import days_until_due
from .notifier import (
    SUPPORTED_CHANNELS,
    ChannelSendRequest,
    NotifierChannels,
    mask_contact_target,
)
from .store import ClientStore

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_SECONDS = 1.0
OVERDUE_SUBJECT = "Overdue Salon Appointment Reminder"
UPCOMING_SUBJECT = "Upcoming Salon Appointment Reminder"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _plural_days(count: int) -> str:
    return f"{count} day" if count == 1 else f"{count} days"


def generate_reminder_message(client: Client, days_until: int) -> str:
    if days_until < 0:
        return (
            f"Hi {client.name}! Your salon appointment is overdue - it was due "
            f"{_plural_days(abs(days_until))} ago. Please call us to schedule your next visit. We miss you!"
        )
    if days_until == 0:
        return (
            f"Hi {client.name}! Your salon appointment is due today! "
            "Time to pamper yourself. Book your appointment now!"
        )
    return (
        f"Hi {client.name}! Your salon appointment is due in {_plural_days(days_until)}. "
        "Book your appointment to keep looking fabulous!"
    )


def reminder_subject(days_until: int) -> str:
    return OVERDUE_SUBJECT if days_until < 0 else UPCOMING_SUBJECT


def normalize_channels(channels: Iterable[str]) -> list[str]:
    deduped: list[str] = []
    seen: set[str] = set()
    for raw_channel in channels:
        channel = str(raw_channel).strip().lower()
        if channel not in SUPPORTED_CHANNELS:
            raise ValueError(f"unsupported reminder channel: {raw_channel}")
        if channel in seen:
            continue
        seen.add(channel)
        deduped.append(channel)
    return deduped


@dataclass(frozen=True)
class DispatchOutcome:
    success: bool
    channel_results: dict[str, bool]


@dataclass(frozen=True)
class ReminderDetail:
    client_id: str
    success: bool
    channel_results: dict[str, bool]


@dataclass
class BulkReminderReport:
    sent: int = 0
    failed: int = 0
    cancelled: bool = False
    details: list[ReminderDetail] = field(default_factory=list)


class ReminderDispatcher:
    def __init__(
        self,
        channels: NotifierChannels,
        *,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._channels = channels
        self._clock = clock
        self._warned_unconfigured: set[str] = set()

    def dispatch(
        self,
        client: Client,
        channels: Sequence[str],
        *,
        now: datetime | None = None,
    ) -> DispatchOutcome:
        requested = normalize_channels(channels)
        reference_now = coerce_utc(now) if now is not None else self._clock()
        days_until = days_until_due(require_next_due_date(client), reference_now)
        message = generate_reminder_message(client, days_until)
        subject = reminder_subject(days_until)

        results: dict[str, bool] = {}
        for channel_name in requested:
            results[channel_name] = self._attempt(client, channel_name, subject=subject, message=message)

        return DispatchOutcome(success=any(results.values()), channel_results=results)

    def _attempt(self, client: Client, channel_name: str, *, subject: str, message: str) -> bool:
        channel = self._channels.get(channel_name)
        if channel is None:
            if channel_name not in self._warned_unconfigured:
                self._warned_unconfigured.add(channel_name)
                logger.warning("%s channel not configured - reminder not sent", channel_name)
            return False

        recipient = client.email if channel_name == "email" else client.mobile
        request = ChannelSendRequest(
            client_id=client.client_id,
            client_name=client.name,
            channel=channel_name,  # type: ignore[arg-type]
            recipient=recipient,
            subject=subject,
            body=message,
        )
        try:
            result = channel.send(request)
        except Exception:  # noqa: BLE001
            logger.exception(
                "error sending %s reminder to client %s (%s)",
                channel_name,
                client.client_id,
                mask_contact_target(recipient, channel_name),
            )
            return False

        if not result.delivered:
            logger.warning(
                "%s reminder for client %s failed: %s",
                channel_name,
                client.client_id,
                result.error_code or "unknown_error",
            )
        return result.delivered


class BulkReminderRunner:
    def __init__(
        self,
        dispatcher: ReminderDispatcher,
        *,
        throttle_seconds: float = DEFAULT_THROTTLE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if throttle_seconds < 0:
            raise ValueError("throttle_seconds must be >= 0")
        self._dispatcher = dispatcher
        self._throttle_seconds = throttle_seconds
        self._sleep = sleep

    def run(
        self,
        clients: Sequence[Client],
        channels: Sequence[str],
        *,
        cancel_event: threading.Event | None = None,
        now: datetime | None = None,
    ) -> BulkReminderReport:
        requested = normalize_channels(channels)
        report = BulkReminderReport()

        for index, client in enumerate(clients):
            if index > 0 and self._throttle_seconds > 0:
                self._sleep(self._throttle_seconds)
            # Checked after the pause, right before the next dispatch.
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.info(
                    "bulk reminder run cancelled after %d of %d clients",
                    index,
                    len(clients),
                )
                break

            try:
                outcome = self._dispatcher.dispatch(client, requested, now=now)
            except Exception:  # noqa: BLE001
                logger.exception("error sending reminder to client %s", getattr(client, "client_id", "?"))
                report.failed += 1
                report.details.append(
                    ReminderDetail(
                        client_id=str(getattr(client, "client_id", "")),
                        success=False,
                        channel_results={},
                    )
                )
                continue

            if outcome.success:
                report.sent += 1
            else:
                report.failed += 1
            report.details.append(
                ReminderDetail(
                    client_id=client.client_id,
                    success=outcome.success,
                    channel_results=dict(outcome.channel_results),
                )
            )

        logger.info(
            "bulk reminder run finished: sent=%d failed=%d cancelled=%s",
            report.sent,
            report.failed,
            report.cancelled,
        )
        return report


class ReminderWorkflowService:
    """Selects reminder candidates from the client store and runs them in bulk."""

    def __init__(
        self,
        *,
        store: ClientStore,
        runner: BulkReminderRunner,
        dispatcher: ReminderDispatcher,
    ) -> None:
        self._store = store
        self._runner = runner
        self._dispatcher = dispatcher

    def select_candidates(
        self,
        *,
        now: datetime,
        days_ahead: int,
        include_overdue: bool,
    ) -> list[Client]:
        reference_now = coerce_utc(now)
        candidates: list[Client] = []
        seen: set[str] = set()
        if include_overdue:
            for client in self._store.find_overdue(reference_now):
                seen.add(client.client_id)
                candidates.append(client)
        window_end = reference_now + timedelta(days=days_ahead)
        for client in self._store.find_by_due_window(reference_now, window_end):
            if client.client_id in seen:
                continue
            seen.add(client.client_id)
            candidates.append(client)
        return candidates

    def send_due_reminders(
        self,
        channels: Sequence[str],
        *,
        days_ahead: int = 3,
        include_overdue: bool = True,
        now: datetime | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BulkReminderReport:
        reference_now = coerce_utc(now) if now is not None else _now_utc()
        # Store failures propagate here, before any client is contacted.
        candidates = self.select_candidates(
            now=reference_now,
            days_ahead=days_ahead,
            include_overdue=include_overdue,
        )
        return self._runner.run(candidates, channels, cancel_event=cancel_event, now=reference_now)

    def send_to_clients(
        self,
        client_ids: Sequence[str],
        channels: Sequence[str],
        *,
        now: datetime | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BulkReminderReport:
        clients = [self._store.find_by_id(client_id) for client_id in client_ids]
        return self._runner.run(clients, channels, cancel_event=cancel_event, now=now)

    def send_client_reminder(
        self,
        client_id: str,
        channels: Sequence[str],
        *,
        now: datetime | None = None,
    ) -> DispatchOutcome:
        client = self._store.find_by_id(client_id)
        return self._dispatcher.dispatch(client, channels, now=now)
