"""Database connectivity helpers."""

from __future__ import annotations

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from pricewatch.logging_config import get_logger


LOGGER = get_logger(__name__)


def _apply_sqlite_pragmas(engine: Engine, timeout_value: float) -> None:
    """Enable WAL mode so readers do not block while the engine writes."""

    busy_ms = int(timeout_value * 1000)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout = {busy_ms}")
        finally:
            cursor.close()

    try:
        with engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.execute(text("PRAGMA synchronous=NORMAL"))
    except Exception as exc:  # pragma: no cover - best-effort tuning
        LOGGER.warning("Unable to configure SQLite pragmas: %s", exc)


def get_engine(
    url: str,
    *,
    busy_timeout: int | float | None = None,
    pool_max: int | None = None,
    connect_timeout_ms: int | None = None,
) -> Engine:
    """Create a SQLAlchemy engine for *url* (``sqlite:///...`` or ``postgresql+psycopg2://...``)."""

    timeout_value = float(busy_timeout) if busy_timeout is not None else 30.0

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": timeout_value},
        )
        if ":memory:" not in url:
            _apply_sqlite_pragmas(engine, timeout_value)
        return engine

    connect_args: dict[str, object] = {}
    if connect_timeout_ms:
        connect_args["connect_timeout"] = max(1, int(connect_timeout_ms / 1000))
    pool_size = pool_max or 20
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=0,
        pool_timeout=timeout_value,
        connect_args=connect_args,
    )


def make_session(engine: Engine) -> sessionmaker[Session]:
    """Create a configured session factory bound to *engine*."""

    return sessionmaker(engine, expire_on_commit=False)
