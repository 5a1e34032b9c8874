"""
Module: expense_kernel.db.triggers
Responsibility: Loading, installing, and verifying PostgreSQL append-only
    triggers.  Database-level complement to the ORM listeners in
    db/immutability.py.
Architecture position: Kernel > DB.  MUST NOT import from models/, services/,
    selectors/, domain/, or outer layers.

Invariants enforced:
    - approval_history rows: no UPDATE, no DELETE.
    - audit_log rows: no UPDATE, no DELETE.

Failure modes:
    - PostgreSQL RAISE EXCEPTION on any violation (surfaces as
      InternalError/ProgrammingError through SQLAlchemy).
    - FileNotFoundError if SQL files are missing from the sql/ directory.

Audit relevance:
    Even if the ORM is bypassed (raw SQL, bulk operations, direct psql
    access) the database refuses to rewrite history.
"""

from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Engine

from expense_kernel.logging_config import get_logger

logger = get_logger("db.triggers")

SQL_DIR = Path(__file__).parent / "sql"

TRIGGER_FILES = [
    "01_approval_history.sql",
    "02_audit_log.sql",
]

DROP_FILE = "99_drop_all.sql"

ALL_TRIGGER_NAMES = [
    "trg_approval_history_immutability_update",
    "trg_approval_history_immutability_delete",
    "trg_audit_log_immutability_update",
    "trg_audit_log_immutability_delete",
]


def _load_sql_file(filename: str) -> str:
    return (SQL_DIR / filename).read_text(encoding="utf-8")


def _load_all_trigger_sql() -> str:
    """Concatenate all trigger SQL files in numbered order."""
    sql_parts = []
    for filename in TRIGGER_FILES:
        sql_parts.append(f"-- Loading: {filename}")
        sql_parts.append(_load_sql_file(filename))
        sql_parts.append("")
    return "\n".join(sql_parts)


def install_immutability_triggers(engine: Engine) -> None:
    """
    Install the append-only triggers.

    Preconditions: tables exist (call after Base.metadata.create_all) and
        the engine is connected to PostgreSQL.  Functions use CREATE OR
        REPLACE so repeated installs are harmless.
    """
    with engine.connect() as conn:
        conn.execute(text(_load_all_trigger_sql()))
        conn.commit()
    logger.info("immutability_triggers_installed", extra={"triggers": ALL_TRIGGER_NAMES})


def uninstall_immutability_triggers(engine: Engine) -> None:
    """
    Remove the append-only triggers.

    Only for tests that simulate tampering and for migrations; re-install
    immediately afterwards.
    """
    with engine.connect() as conn:
        conn.execute(text(_load_sql_file(DROP_FILE)))
        conn.commit()
    logger.warning("immutability_triggers_uninstalled")


def get_installed_triggers(engine: Engine) -> list[str]:
    """List the append-only triggers currently present in pg_trigger."""
    trigger_list = ", ".join(f"'{name}'" for name in ALL_TRIGGER_NAMES)
    check_sql = f"""
    SELECT tgname FROM pg_trigger
    WHERE tgname IN ({trigger_list})
    ORDER BY tgname;
    """
    with engine.connect() as conn:
        return [row[0] for row in conn.execute(text(check_sql))]


def triggers_installed(engine: Engine) -> bool:
    return len(get_installed_triggers(engine)) == len(ALL_TRIGGER_NAMES)
