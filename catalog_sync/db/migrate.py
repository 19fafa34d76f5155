"""Create the catalog tables from schema.sql."""

from __future__ import annotations

import logging
import pathlib
import re
import sys

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from catalog_sync.db.session import create_engine_from_env

logger = logging.getLogger(__name__)

SCHEMA_PATH = pathlib.Path(__file__).with_name("schema.sql")

_CREATE_TABLE = re.compile(r"CREATE TABLE IF NOT EXISTS (\w+)", re.IGNORECASE)


def schema_statements(path: pathlib.Path = SCHEMA_PATH) -> list[str]:
    """Statements of the schema file, split on terminating semicolons."""
    statements: list[str] = []
    pending: list[str] = []
    for line in path.read_text().splitlines():
        if not line.strip():
            continue
        pending.append(line)
        if line.rstrip().endswith(";"):
            statements.append("\n".join(pending))
            pending = []
    if pending:
        statements.append("\n".join(pending))
    return statements


def schema_tables(statements: list[str]) -> tuple[str, ...]:
    return tuple(name for stmt in statements for name in _CREATE_TABLE.findall(stmt))


CATALOG_TABLES = schema_tables(schema_statements())


def run_migrations(engine: Engine) -> None:
    statements = schema_statements()
    with engine.begin() as conn:
        for stmt in statements:
            conn.execute(text(stmt))
    logger.info("Catalog schema applied (%s tables)", len(CATALOG_TABLES))


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        run_migrations(create_engine_from_env())
    except SQLAlchemyError as exc:
        logger.error("Migration failed: %s", exc)
        sys.exit(2)


if __name__ == "__main__":
    main()
