from __future__ import annotations

import logging
from threading import Lock

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

logger = logging.getLogger(__name__)


class SalonBase(DeclarativeBase):
    pass


class DatabaseHandle:
    """Lazily created engine shared by every store bound to the same URL.

    ``acquire()`` is idempotent: the first caller builds the engine while
    concurrent callers wait on the lock and then reuse it. A failed build is
    not cached, so the next call retries.
    """

    def __init__(self, database_url: str, *, pool_size: int = 10) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for the postgres backends")
        self._database_url = database_url
        self._pool_size = pool_size
        self._lock = Lock()
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    @property
    def database_url(self) -> str:
        return self._database_url

    def acquire(self) -> Engine:
        engine = self._engine
        if engine is not None:
            return engine
        with self._lock:
            if self._engine is not None:
                return self._engine
            engine = self._connect()
            # Factory first: the unlocked fast path only checks _engine.
            self._session_factory = sessionmaker(engine, expire_on_commit=False, future=True)
            self._engine = engine
            return engine

    def session(self) -> Session:
        self.acquire()
        factory = self._session_factory
        if factory is None:
            raise RuntimeError(f"database handle for {self._database_url} was disposed")
        return factory()

    def ensure_schema(self) -> None:
        # SQLite is used in tests. Production Postgres should rely on migrations.
        if self._database_url.startswith("sqlite"):
            SalonBase.metadata.create_all(self.acquire())

    def dispose(self) -> None:
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def _connect(self) -> Engine:
        if self._database_url.startswith("sqlite"):
            engine = create_engine(self._database_url, future=True)
        else:
            engine = create_engine(
                self._database_url,
                future=True,
                pool_pre_ping=True,
                pool_size=self._pool_size,
            )
        logger.info("database engine created for %s", engine.url.render_as_string(hide_password=True))
        return engine


_handles: dict[str, DatabaseHandle] = {}
_handles_lock = Lock()


def get_database(database_url: str, *, pool_size: int = 10) -> DatabaseHandle:
    with _handles_lock:
        handle = _handles.get(database_url)
        if handle is None:
            handle = DatabaseHandle(database_url, pool_size=pool_size)
            _handles[database_url] = handle
        return handle
