from __future__ import annotations

import base64
import html
import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

import resend

from .config import Settings

logger = logging.getLogger(__name__)

ChannelName = Literal["sms", "whatsapp", "email"]
ChannelResultStatus = Literal["sent", "failed"]

SUPPORTED_CHANNELS: tuple[str, ...] = ("sms", "whatsapp", "email")
TWILIO_API_BASE_URL = "https://api.twilio.com"


@dataclass(frozen=True)
class ChannelSendRequest:
    client_id: str
    client_name: str
    channel: ChannelName
    recipient: str
    subject: str
    body: str


@dataclass(frozen=True)
class ChannelSendResult:
    status: ChannelResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status == "sent"


class ReminderChannel(Protocol):
    def send(self, request: ChannelSendRequest) -> ChannelSendResult: ...


@dataclass(frozen=True)
class NotifierChannels:
    """Configured delivery channels; ``None`` marks a channel with no credentials."""

    sms: ReminderChannel | None = None
    whatsapp: ReminderChannel | None = None
    email: ReminderChannel | None = None

    def get(self, channel: str) -> ReminderChannel | None:
        if channel == "sms":
            return self.sms
        if channel == "whatsapp":
            return self.whatsapp
        if channel == "email":
            return self.email
        return None

    def configured(self) -> dict[str, bool]:
        return {name: self.get(name) is not None for name in SUPPORTED_CHANNELS}


class StubReminderChannel:
    def __init__(self, channel: ChannelName) -> None:
        self._channel = channel
        self.sent: list[ChannelSendRequest] = []

    def send(self, request: ChannelSendRequest) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)
        if request.channel != self._channel:
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="channel_mismatch",
                error_message=f"Stub channel handles {self._channel} only",
            )

        if "fail" in request.recipient.lower():
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub channel forced failure for recipient",
            )

        self.sent.append(request)
        message_id = f"stub-{self._channel}-{request.client_id}-{int(attempted_at.timestamp())}"
        return ChannelSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class _ChannelSendError(Exception):
    """Internal error raised when a provider HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class TwilioMessageChannel:
    """SMS or WhatsApp delivery through the Twilio Messages REST endpoint."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        whatsapp: bool = False,
        timeout_seconds: int = 30,
        base_url: str = TWILIO_API_BASE_URL,
    ) -> None:
        stripped_sid = account_sid.strip()
        stripped_token = auth_token.strip()
        stripped_from = from_number.strip()
        if not stripped_sid:
            raise ValueError("account_sid must not be empty")
        if not stripped_token:
            raise ValueError("auth_token must not be empty")
        if not stripped_from:
            raise ValueError("from_number must not be empty")
        self._account_sid = stripped_sid
        self._auth_token = stripped_token
        self._from_number = stripped_from
        self._whatsapp = whatsapp
        self._timeout_seconds = timeout_seconds
        self._base_url = base_url.strip().rstrip("/")

    @property
    def channel(self) -> ChannelName:
        return "whatsapp" if self._whatsapp else "sms"

    def _address(self, number: str) -> str:
        return f"whatsapp:{number}" if self._whatsapp else number

    def send(self, request: ChannelSendRequest) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)
        form = {
            "To": self._address(request.recipient),
            "From": self._address(self._from_number),
            "Body": request.body,
        }
        try:
            response_data = self._post(form)
        except _ChannelSendError as exc:
            masked = mask_contact_target(request.recipient, self.channel)
            logger.warning("twilio %s send failed for %s: %s", self.channel, masked, exc.message)
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {masked})",
            )

        message_sid = response_data.get("sid")
        logger.info(
            "twilio %s sent to %s (sid=%s)",
            self.channel,
            mask_contact_target(request.recipient, self.channel),
            message_sid,
        )
        return ChannelSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_sid if isinstance(message_sid, str) else None,
        )

    def _post(self, form: dict[str, str]) -> dict[str, object]:
        url = f"{self._base_url}/2010-04-01/Accounts/{self._account_sid}/Messages.json"
        credentials = base64.b64encode(f"{self._account_sid}:{self._auth_token}".encode("utf-8")).decode("ascii")
        request = urllib.request.Request(
            url,
            data=urllib.parse.urlencode(form).encode("utf-8"),
            headers={
                "Authorization": f"Basic {credentials}",
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _ChannelSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _ChannelSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _ChannelSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


class ResendEmailChannel:
    """Email delivery through the Resend SDK."""

    def __init__(self, *, api_key: str, from_address: str) -> None:
        stripped_key = api_key.strip()
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        if not from_address.strip():
            raise ValueError("from_address must not be empty")
        self._api_key = stripped_key
        self._from_address = from_address.strip()

    def send(self, request: ChannelSendRequest) -> ChannelSendResult:
        attempted_at = datetime.now(timezone.utc)
        resend.api_key = self._api_key
        params = {
            "from": self._from_address,
            "to": [request.recipient],
            "subject": request.subject,
            "html": render_reminder_email(request.client_name, request.body),
        }
        try:
            response = resend.Emails.send(params)
        except Exception as exc:  # noqa: BLE001
            masked = mask_contact_target(request.recipient, "email")
            logger.warning("resend email send failed for %s: %s", masked, exc)
            return ChannelSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="resend_error",
                error_message=f"{exc} (recipient: {masked})",
            )

        message_id = response.get("id") if isinstance(response, dict) else None
        logger.info("resend email sent to %s (id=%s)", mask_contact_target(request.recipient, "email"), message_id)
        return ChannelSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_id if isinstance(message_id, str) else None,
        )


def render_reminder_email(client_name: str, message: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<h2 style="color: #ec4899;">Salon Appointment Reminder</h2>'
        f"<p>Dear {html.escape(client_name)},</p>"
        '<div style="background-color: #fdf2f8; padding: 20px; border-radius: 8px; margin: 20px 0;">'
        f"{html.escape(message)}"
        "</div>"
        "<p>Thank you for choosing our salon!</p>"
        "<hr>"
        '<p style="font-size: 12px; color: #666;">'
        "This is an automated message. Please do not reply to this email."
        "</p>"
        "</div>"
    )


def build_notifier_channels(settings: Settings) -> NotifierChannels:
    if settings.notifier_sender_type == "stub":
        return NotifierChannels(
            sms=StubReminderChannel("sms"),
            whatsapp=StubReminderChannel("whatsapp"),
            email=StubReminderChannel("email"),
        )

    sms: ReminderChannel | None = None
    whatsapp: ReminderChannel | None = None
    email: ReminderChannel | None = None
    if settings.twilio_configured():
        sms = TwilioMessageChannel(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
        whatsapp = TwilioMessageChannel(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            whatsapp=True,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    else:
        logger.warning("Twilio not configured - SMS and WhatsApp reminders are disabled")
    if settings.resend_configured():
        email = ResendEmailChannel(api_key=settings.resend_api_key, from_address=settings.reminder_email_from)
    else:
        logger.warning("Resend not configured - email reminders are disabled")
    return NotifierChannels(sms=sms, whatsapp=whatsapp, email=email)


def mask_contact_target(contact_target: str, channel: str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel in {"sms", "whatsapp"}:
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
