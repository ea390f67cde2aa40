from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, HTTPException, Query, Request, Response, status

from .auth_store import AdminRepository, AdminUserExistsError, create_admin_repository
from .clients import AppointmentEntry, Client
from .config import Settings, get_settings
from .dashboard import compute_dashboard_stats
from .database import DatabaseHandle, get_database
from .export import export_client_history, export_clients
from .models import (
    AdminCreateRequest,
    AdminLoginRequest,
    AdminLoginResponse,
    AdminSessionResponse,
    AppointmentCreateRequest,
    BulkReminderDetail,
    BulkReminderRequest,
    BulkReminderResponse,
    ClientListResponse,
    ClientReminderRequest,
    ClientReminderResponse,
    ClientResponse,
    ClientStatusFilter,
    ClientWriteRequest,
    DashboardStatsResponse,
    ServiceCount,
    UpcomingRemindersResponse,
)
from .notifier import NotifierChannels, build_notifier_channels
from .reminders import BulkReminderRunner, ReminderDispatcher, ReminderWorkflowService
from .session_tokens import (
    SessionTokenError,
    SessionTokenPayload,
    create_session_token,
    decode_session_token,
    encode_session_token,
)
from .store import ClientNotFoundError, ClientStore, DuplicateClientError, create_client_store

logger = logging.getLogger(__name__)

_STATUS_FILTERS: dict[str, str] = {
    "overdue": "overdue",
    "due": "due_soon",
    "active": "active",
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _create_database(settings: Settings) -> DatabaseHandle | None:
    backends = {settings.client_store_backend.strip().lower(), settings.auth_store_backend.strip().lower()}
    if "postgres" not in backends or not settings.database_url:
        return None
    return get_database(settings.database_url, pool_size=settings.database_pool_size)


_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/salon", tags=["salon"])
_database = _create_database(_settings)
client_store: ClientStore = create_client_store(backend=_settings.client_store_backend, database=_database)
auth_repo: AdminRepository = create_admin_repository(backend=_settings.auth_store_backend, database=_database)
notifier_channels: NotifierChannels = build_notifier_channels(_settings)
reminder_dispatcher: ReminderDispatcher = ReminderDispatcher(notifier_channels)


def reset_runtime_state_for_tests() -> None:
    client_store.reset()
    auth_repo.reset()


def _reminder_workflow() -> ReminderWorkflowService:
    runner = BulkReminderRunner(reminder_dispatcher, throttle_seconds=_settings.reminder_throttle_seconds)
    return ReminderWorkflowService(store=client_store, runner=runner, dispatcher=reminder_dispatcher)


def _require_admin(request: Request) -> SessionTokenPayload:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ")
    if not token:
        raise HTTPException(401, "admin session required")
    try:
        return decode_session_token(token, secret=_settings.admin_session_secret)
    except SessionTokenError as exc:
        raise HTTPException(401, str(exc)) from exc


def _require_role(request: Request, role: str) -> SessionTokenPayload:
    session = _require_admin(request)
    if session.role != role:
        raise HTTPException(403, f"{role} role required")
    return session


def _client_ip(request: Request) -> str:
    direct_ip = request.client.host if request.client else "unknown"
    if not _settings.trust_proxy_headers:
        return direct_ip
    if not _settings.trusted_proxy_ips or direct_ip not in _settings.trusted_proxy_ips:
        return direct_ip
    forwarded = request.headers.get("X-Forwarded-For")
    if not forwarded:
        return direct_ip
    trusted_ip = forwarded.split(",")[0].strip()
    return trusted_ip or direct_ip


def _find_client(client_id: str) -> Client:
    try:
        return client_store.find_by_id(client_id)
    except ClientNotFoundError as exc:
        raise HTTPException(404, f"client not found: {client_id}") from exc


def _to_response(client: Client, now: datetime) -> ClientResponse:
    return ClientResponse.from_client(client, now=now, due_soon_days=_settings.reminder_due_soon_days)


def _file_response(filename: str, content: bytes, media_type: str) -> Response:
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=content, media_type=media_type, headers=headers)


# ---------------------------------------------------------------------------
# Admin session
# ---------------------------------------------------------------------------


@router.post("/admin/login", response_model=AdminLoginResponse)
def admin_login(payload: AdminLoginRequest, request: Request) -> AdminLoginResponse:
    client_ip = _client_ip(request)
    if not auth_repo.check_rate_limit(client_ip):
        raise HTTPException(429, "too many failed login attempts, try again later")
    principal = auth_repo.authenticate(payload.username, payload.password)
    if principal is None:
        auth_repo.record_failed_attempt(client_ip)
        raise HTTPException(401, "invalid username or password")

    token_payload = create_session_token(
        admin_id=principal.admin_id,
        username=principal.username,
        role=principal.role,
        ttl_minutes=_settings.admin_session_ttl_minutes,
    )
    token = encode_session_token(token_payload, secret=_settings.admin_session_secret)
    logger.info("admin %s signed in", principal.username)
    return AdminLoginResponse(
        authenticated=True,
        session_token=token,
        expires_at=token_payload.expires_at,
        username=principal.username,
        role=principal.role,
    )


@router.get("/admin/session", response_model=AdminSessionResponse)
def admin_session(request: Request) -> AdminSessionResponse:
    session = _require_admin(request)
    return AdminSessionResponse(
        authenticated=True,
        admin_id=session.admin_id,
        username=session.username,
        role=session.role,  # type: ignore[arg-type]
    )


@router.post("/admin/users", response_model=AdminSessionResponse, status_code=status.HTTP_201_CREATED)
def create_admin_user(payload: AdminCreateRequest, request: Request) -> AdminSessionResponse:
    _require_role(request, "admin")
    try:
        principal = auth_repo.create_admin(payload.username, payload.password, role=payload.role)
    except AdminUserExistsError as exc:
        raise HTTPException(409, str(exc)) from exc
    return AdminSessionResponse(
        authenticated=False,
        admin_id=principal.admin_id,
        username=principal.username,
        role=principal.role,
    )


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


@router.get("/clients", response_model=ClientListResponse)
def list_clients(
    request: Request,
    status_filter: ClientStatusFilter = Query(default="all", alias="status"),
    search: str | None = Query(default=None, max_length=100),
    service: str | None = Query(default=None, max_length=128),
) -> ClientListResponse:
    _require_admin(request)
    now = _now_utc()
    responses = [_to_response(client, now) for client in client_store.list_clients(search=search, service=service)]
    if status_filter != "all":
        wanted = _STATUS_FILTERS[status_filter]
        responses = [item for item in responses if item.status == wanted]
    return ClientListResponse(total=len(responses), clients=responses)


@router.post("/clients", response_model=ClientResponse, status_code=status.HTTP_201_CREATED)
def create_client(payload: ClientWriteRequest, request: Request) -> ClientResponse:
    _require_admin(request)
    now = _now_utc()
    candidate = Client(
        client_id="",
        name=payload.name,
        mobile=payload.mobile,
        email=payload.email,
        last_visit=payload.last_visit or now,
        services_taken=list(payload.services_taken),
        notes=payload.notes,
    )
    try:
        created = client_store.insert(candidate, now=now)
    except DuplicateClientError as exc:
        raise HTTPException(409, str(exc)) from exc
    return _to_response(created, now)


@router.get("/clients/export")
def export_client_roster(
    request: Request,
    export_format: str = Query(default="xlsx", alias="format"),
) -> Response:
    _require_admin(request)
    try:
        payload = export_clients(
            client_store.list_clients(),
            export_format,
            _now_utc(),
            due_soon_days=_settings.reminder_due_soon_days,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return _file_response(payload.filename, payload.content, payload.media_type)


@router.get("/clients/{client_id}", response_model=ClientResponse)
def get_client(client_id: str, request: Request) -> ClientResponse:
    _require_admin(request)
    return _to_response(_find_client(client_id), _now_utc())


@router.put("/clients/{client_id}", response_model=ClientResponse)
def update_client(client_id: str, payload: ClientWriteRequest, request: Request) -> ClientResponse:
    _require_admin(request)
    existing = _find_client(client_id)
    now = _now_utc()
    candidate = Client(
        client_id=existing.client_id,
        name=payload.name,
        mobile=payload.mobile,
        email=payload.email,
        last_visit=payload.last_visit or existing.last_visit,
        services_taken=list(payload.services_taken),
        appointment_history=list(existing.appointment_history),
        notes=payload.notes,
    )
    try:
        updated = client_store.update(candidate, now=now)
    except ClientNotFoundError as exc:
        raise HTTPException(404, f"client not found: {client_id}") from exc
    except DuplicateClientError as exc:
        raise HTTPException(409, str(exc)) from exc
    return _to_response(updated, now)


@router.delete("/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_client(client_id: str, request: Request) -> Response:
    session = _require_role(request, "admin")
    try:
        client_store.delete(client_id)
    except ClientNotFoundError as exc:
        raise HTTPException(404, f"client not found: {client_id}") from exc
    logger.info("client %s deleted by %s", client_id, session.username)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/clients/{client_id}/appointments", response_model=ClientResponse, status_code=status.HTTP_201_CREATED)
def add_client_appointment(client_id: str, payload: AppointmentCreateRequest, request: Request) -> ClientResponse:
    _require_admin(request)
    now = _now_utc()
    entry = AppointmentEntry(
        entry_id="",
        date=payload.date or now,
        service=payload.service,
        price=payload.price,
        notes=payload.notes,
        status=payload.status,
    )
    try:
        updated = client_store.add_appointment(client_id, entry, now=now)
    except ClientNotFoundError as exc:
        raise HTTPException(404, f"client not found: {client_id}") from exc
    return _to_response(updated, now)


@router.get("/clients/{client_id}/history/export")
def export_appointment_history(
    client_id: str,
    request: Request,
    export_format: str = Query(default="xlsx", alias="format"),
) -> Response:
    _require_admin(request)
    client = _find_client(client_id)
    try:
        payload = export_client_history(client, export_format, _now_utc())
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return _file_response(payload.filename, payload.content, payload.media_type)


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


@router.post("/clients/{client_id}/reminder", response_model=ClientReminderResponse)
def send_client_reminder(
    client_id: str,
    request: Request,
    payload: ClientReminderRequest | None = None,
) -> ClientReminderResponse:
    _require_admin(request)
    requested = payload.channels if payload is not None and payload.channels else None
    channels = list(requested or _settings.reminder_default_channels)
    try:
        outcome = _reminder_workflow().send_client_reminder(client_id, channels)
    except ClientNotFoundError as exc:
        raise HTTPException(404, f"client not found: {client_id}") from exc
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    return ClientReminderResponse(
        client_id=client_id,
        success=outcome.success,
        channel_results=dict(outcome.channel_results),
    )


@router.post("/reminders/bulk", response_model=BulkReminderResponse)
def send_bulk_reminders(request: Request, payload: BulkReminderRequest | None = None) -> BulkReminderResponse:
    _require_admin(request)
    body = payload or BulkReminderRequest()
    channels = list(body.channels or _settings.reminder_default_channels)
    workflow = _reminder_workflow()
    try:
        if body.client_ids:
            report = workflow.send_to_clients(body.client_ids, channels)
        else:
            report = workflow.send_due_reminders(
                channels,
                days_ahead=body.days_ahead,
                include_overdue=body.include_overdue,
            )
    except ClientNotFoundError as exc:
        raise HTTPException(404, f"client not found: {exc.args[0]}") from exc
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    return BulkReminderResponse(
        sent=report.sent,
        failed=report.failed,
        cancelled=report.cancelled,
        details=[
            BulkReminderDetail(
                client_id=detail.client_id,
                success=detail.success,
                channel_results=dict(detail.channel_results),
            )
            for detail in report.details
        ],
    )


@router.get("/reminders/upcoming", response_model=UpcomingRemindersResponse)
def upcoming_reminders(
    request: Request,
    days_ahead: int = Query(default=7, ge=0, le=90),
    limit: int | None = Query(default=None, ge=1, le=500),
) -> UpcomingRemindersResponse:
    _require_admin(request)
    now = _now_utc()
    clients = client_store.find_by_due_window(now, now + timedelta(days=days_ahead))
    if limit is not None:
        clients = clients[:limit]
    return UpcomingRemindersResponse(
        days_ahead=days_ahead,
        total=len(clients),
        clients=[_to_response(client, now) for client in clients],
    )


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get("/dashboard/stats", response_model=DashboardStatsResponse)
def dashboard_stats(request: Request) -> DashboardStatsResponse:
    _require_admin(request)
    stats = compute_dashboard_stats(
        client_store.list_clients(),
        _now_utc(),
        due_soon_days=_settings.reminder_due_soon_days,
    )
    return DashboardStatsResponse(
        total_clients=stats.total_clients,
        upcoming_appointments=stats.upcoming_appointments,
        overdue_appointments=stats.overdue_appointments,
        monthly_revenue=stats.monthly_revenue,
        popular_services=[ServiceCount(service=name, count=count) for name, count in stats.popular_services],
    )
