"""Apply the cache schema to the configured database."""

from __future__ import annotations

import logging
import pathlib
import sys
from typing import Iterable

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from adcache.db.session import create_engine_from_env
from adcache.db.tables import metadata

logger = logging.getLogger(__name__)

SCHEMA_PATH = pathlib.Path(__file__).with_name("schema.sql")


def run_migrations(engine: Engine) -> int:
    """Create the cache tables. Returns the number of statements applied.

    PostgreSQL gets schema.sql verbatim (JSONB, TIMESTAMPTZ, indexes); any other
    dialect, SQLite for local runs in particular, is built from the table metadata.
    """
    if engine.dialect.name != "postgresql":
        metadata.create_all(engine)
        logger.info("Created %s tables from metadata on %s", len(metadata.tables), engine.dialect.name)
        return len(metadata.tables)
    statements = list(_load_statements(SCHEMA_PATH.read_text()))
    with engine.begin() as conn:
        for stmt in statements:
            conn.execute(text(stmt))
    logger.info("Applied %s schema statements", len(statements))
    return len(statements)


def _load_statements(sql: str) -> Iterable[str]:
    buffer: list[str] = []
    for line in sql.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("--"):
            continue
        buffer.append(line)
        if stripped.endswith(";"):
            yield "\n".join(buffer)
            buffer.clear()
    if buffer:
        yield "\n".join(buffer)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    engine = create_engine_from_env()
    try:
        run_migrations(engine)
    except SQLAlchemyError as exc:
        logger.error("Migration failed: %s", exc)
        sys.exit(2)


if __name__ == "__main__":
    main()
