from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from itertools import count
from threading import Lock
from typing import Literal, Protocol

import bcrypt
from sqlalchemy import BigInteger, DateTime, Integer, String, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from .clients import coerce_utc
from .database import DatabaseHandle, SalonBase

logger = logging.getLogger(__name__)

AdminRole = Literal["admin", "manager"]

ADMIN_ROLES: tuple[str, ...] = ("admin", "manager")
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
PASSWORD_MIN_LENGTH = 6
# bcrypt only hashes the first 72 bytes and rejects longer input.
PASSWORD_MAX_BYTES = 72
RATE_LIMIT_MAX_ATTEMPTS = 5
RATE_LIMIT_WINDOW = timedelta(minutes=15)
FAILED_LOGIN_RETENTION = timedelta(hours=24)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class AdminUserExistsError(ValueError):
    """Raised when a username is already taken."""


class AdminNotFoundError(KeyError):
    """Raised when an admin id does not exist."""


@dataclass(frozen=True)
class AdminUser:
    admin_id: str
    username: str
    password_hash: str
    role: AdminRole
    created_at: datetime
    last_login_at: datetime | None = None


@dataclass(frozen=True)
class AdminPrincipal:
    """Authenticated admin identity; never carries the password hash."""

    admin_id: str
    username: str
    role: AdminRole
    last_login_at: datetime | None = None


def to_principal(user: AdminUser) -> AdminPrincipal:
    return AdminPrincipal(
        admin_id=user.admin_id,
        username=user.username,
        role=user.role,
        last_login_at=user.last_login_at,
    )


def normalize_username(value: str) -> str:
    normalized = str(value).strip()
    if not USERNAME_MIN_LENGTH <= len(normalized) <= USERNAME_MAX_LENGTH:
        raise ValueError(
            f"username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters"
        )
    return normalized


def normalize_role(value: str) -> AdminRole:
    normalized = str(value).strip().lower()
    if normalized not in ADMIN_ROLES:
        raise ValueError(f"unsupported role: {value}")
    return normalized  # type: ignore[return-value]


def hash_password(password: str) -> str:
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    encoded = password.encode("utf-8")
    if len(encoded) > PASSWORD_MAX_BYTES:
        raise ValueError(f"password cannot exceed {PASSWORD_MAX_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("ascii")


def verify_password(password: str, password_hash: str) -> bool:
    encoded = password.encode("utf-8")
    if len(encoded) > PASSWORD_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, password_hash.encode("ascii"))
    except ValueError:
        logger.warning("stored password hash is malformed")
        return False


class AdminRepository(Protocol):
    def reset(self) -> None: ...

    def create_admin(self, username: str, password: str, *, role: str = "admin") -> AdminPrincipal: ...

    def authenticate(self, username: str, password: str) -> AdminPrincipal | None: ...

    def get_admin(self, admin_id: str) -> AdminPrincipal: ...

    def check_rate_limit(self, client_ip: str) -> bool: ...

    def record_failed_attempt(self, client_ip: str) -> None: ...


class InMemoryAdminRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._users: dict[str, AdminUser] = {}
        self._username_index: dict[str, str] = {}
        self._login_attempts: dict[str, list[datetime]] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._users.clear()
            self._username_index.clear()
            self._login_attempts.clear()

    def create_admin(self, username: str, password: str, *, role: str = "admin") -> AdminPrincipal:
        normalized = normalize_username(username)
        normalized_role = normalize_role(role)
        password_hash = hash_password(password)
        with self._lock:
            if normalized in self._username_index:
                raise AdminUserExistsError(f"username already exists: {normalized}")
            admin_id = f"admin-{next(self._counter):04d}"
            user = AdminUser(
                admin_id=admin_id,
                username=normalized,
                password_hash=password_hash,
                role=normalized_role,
                created_at=_now_utc(),
            )
            self._users[admin_id] = user
            self._username_index[normalized] = admin_id
            return to_principal(user)

    def authenticate(self, username: str, password: str) -> AdminPrincipal | None:
        with self._lock:
            admin_id = self._username_index.get(str(username).strip())
            user = self._users.get(admin_id) if admin_id is not None else None
        if user is None or not verify_password(password, user.password_hash):
            return None
        with self._lock:
            user = replace(self._users[user.admin_id], last_login_at=_now_utc())
            self._users[user.admin_id] = user
            return to_principal(user)

    def get_admin(self, admin_id: str) -> AdminPrincipal:
        with self._lock:
            user = self._users.get(admin_id)
            if user is None:
                raise AdminNotFoundError(admin_id)
            return to_principal(user)

    def check_rate_limit(self, client_ip: str) -> bool:
        with self._lock:
            cutoff = _now_utc() - RATE_LIMIT_WINDOW
            recent = [ts for ts in self._login_attempts.get(client_ip, []) if ts > cutoff]
            self._login_attempts[client_ip] = recent
            return len(recent) < RATE_LIMIT_MAX_ATTEMPTS

    def record_failed_attempt(self, client_ip: str) -> None:
        with self._lock:
            self._login_attempts.setdefault(client_ip, []).append(_now_utc())


class _AdminUserRow(SalonBase):
    __tablename__ = "admin_users"

    admin_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="admin")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _AdminFailedLoginAttemptRow(SalonBase):
    __tablename__ = "admin_failed_login_attempts"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    client_ip: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def _row_to_user(row: _AdminUserRow) -> AdminUser:
    return AdminUser(
        admin_id=row.admin_id,
        username=row.username,
        password_hash=row.password_hash,
        role=normalize_role(row.role),
        created_at=coerce_utc(row.created_at),
        last_login_at=coerce_utc(row.last_login_at) if row.last_login_at is not None else None,
    )


class SqlAlchemyAdminRepository:
    def __init__(self, database: DatabaseHandle) -> None:
        self._database = database
        self._database.ensure_schema()

    def _session(self):
        return self._database.session()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_AdminFailedLoginAttemptRow))
                session.execute(delete(_AdminUserRow))

    def create_admin(self, username: str, password: str, *, role: str = "admin") -> AdminPrincipal:
        normalized = normalize_username(username)
        user = AdminUser(
            admin_id=f"admin_{secrets.token_hex(8)}",
            username=normalized,
            password_hash=hash_password(password),
            role=normalize_role(role),
            created_at=_now_utc(),
        )
        try:
            with self._session() as session:
                with session.begin():
                    existing = session.execute(
                        select(_AdminUserRow.admin_id).where(_AdminUserRow.username == normalized)
                    ).first()
                    if existing is not None:
                        raise AdminUserExistsError(f"username already exists: {normalized}")
                    session.add(
                        _AdminUserRow(
                            admin_id=user.admin_id,
                            username=user.username,
                            password_hash=user.password_hash,
                            role=user.role,
                            created_at=user.created_at,
                        )
                    )
        except IntegrityError as exc:
            raise AdminUserExistsError(f"username already exists: {normalized}") from exc
        return to_principal(user)

    def authenticate(self, username: str, password: str) -> AdminPrincipal | None:
        with self._session() as session:
            with session.begin():
                row = session.execute(
                    select(_AdminUserRow).where(_AdminUserRow.username == str(username).strip())
                ).scalar_one_or_none()
                if row is None or not verify_password(password, row.password_hash):
                    return None
                row.last_login_at = _now_utc()
                return to_principal(_row_to_user(row))

    def get_admin(self, admin_id: str) -> AdminPrincipal:
        with self._session() as session:
            row = session.get(_AdminUserRow, admin_id)
            if row is None:
                raise AdminNotFoundError(admin_id)
            return to_principal(_row_to_user(row))

    def check_rate_limit(self, client_ip: str) -> bool:
        cutoff = _now_utc() - RATE_LIMIT_WINDOW
        with self._session() as session:
            attempts = session.execute(
                select(func.count())
                .select_from(_AdminFailedLoginAttemptRow)
                .where(
                    _AdminFailedLoginAttemptRow.client_ip == client_ip,
                    _AdminFailedLoginAttemptRow.attempted_at > cutoff,
                )
            ).scalar_one()
            return int(attempts) < RATE_LIMIT_MAX_ATTEMPTS

    def record_failed_attempt(self, client_ip: str) -> None:
        now = _now_utc()
        retention_cutoff = now - FAILED_LOGIN_RETENTION
        with self._session() as session:
            with session.begin():
                session.execute(
                    delete(_AdminFailedLoginAttemptRow).where(
                        _AdminFailedLoginAttemptRow.attempted_at < retention_cutoff
                    )
                )
                session.add(_AdminFailedLoginAttemptRow(client_ip=client_ip, attempted_at=now))


def create_admin_repository(*, backend: str, database: DatabaseHandle | None) -> AdminRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        if database is None:
            raise RuntimeError("DATABASE_URL is required for AUTH_STORE_BACKEND=postgres")
        return SqlAlchemyAdminRepository(database)
    if normalized == "inmemory":
        return InMemoryAdminRepository()
    raise RuntimeError(f"unsupported AUTH_STORE_BACKEND: {backend}")
