"""Versioned schema migrations tracked in ``schema_migrations``."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import Table, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.schema import CreateIndex, CreateTable

from pricewatch.logging_config import get_logger

from .models_sql import PriceHistory, Product, SchemaMigration, TrackedProduct


LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class Migration:
    version: str
    description: str
    tables: tuple[Table, ...]

    def statements(self, connection: Connection) -> list[str]:
        dialect = connection.dialect
        ddl: list[str] = []
        for table in self.tables:
            ddl.append(str(CreateTable(table).compile(dialect=dialect)).strip())
            for index in sorted(table.indexes, key=lambda item: item.name or ""):
                ddl.append(str(CreateIndex(index).compile(dialect=dialect)).strip())
        return ddl

    def checksum(self, connection: Connection) -> str:
        payload = "\n".join(self.statements(connection))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def apply(self, connection: Connection) -> None:
        for table in self.tables:
            table.create(connection, checkfirst=True)


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        "001_create_products_and_price_history",
        "products keyed by URL plus append-only price history",
        (Product.__table__, PriceHistory.__table__),
    ),
    Migration(
        "002_create_tracked_products",
        "scheduling state for tracked targets",
        (TrackedProduct.__table__,),
    ),
)


def applied_versions(engine: Engine) -> dict[str, str]:
    """Return ``{version: checksum}`` for every recorded migration."""

    with engine.begin() as connection:
        SchemaMigration.__table__.create(connection, checkfirst=True)
        rows = connection.execute(
            select(SchemaMigration.version, SchemaMigration.checksum)
        ).all()
    return {row.version: row.checksum for row in rows}


def run_migrations(engine: Engine, migrations: tuple[Migration, ...] = MIGRATIONS) -> list[str]:
    """Apply pending migrations in order; return the versions applied this run."""

    already = applied_versions(engine)
    applied: list[str] = []

    for migration in migrations:
        with engine.begin() as connection:
            checksum = migration.checksum(connection)
            recorded = already.get(migration.version)
            if recorded is not None:
                if recorded != checksum:
                    LOGGER.warning(
                        "Migration checksum mismatch | version=%s | recorded=%s | current=%s",
                        migration.version,
                        recorded[:12],
                        checksum[:12],
                    )
                continue

            started = time.perf_counter()
            migration.apply(connection)
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            connection.execute(
                SchemaMigration.__table__.insert().values(
                    version=migration.version,
                    executed_at=datetime.now(timezone.utc),
                    checksum=checksum,
                    execution_time_ms=elapsed_ms,
                )
            )
        LOGGER.info(
            "Applied migration | version=%s | duration_ms=%d | %s",
            migration.version,
            elapsed_ms,
            migration.description,
        )
        applied.append(migration.version)

    if not applied:
        LOGGER.info("Schema up to date | migrations=%d", len(migrations))
    return applied


__all__ = ["MIGRATIONS", "Migration", "applied_versions", "run_migrations"]
