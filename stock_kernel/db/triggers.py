"""
Module: stock_kernel.db.triggers
Responsibility: Loading, installing, and verifying the PostgreSQL ledger
    triggers.  These are the database-level complement to the in-process
    location validation (domain/locations.py) and the ORM immutability
    listeners (db/immutability.py).
Architecture position: Kernel > DB.  May import from db/ only.

Invariants enforced (PostgreSQL only):
    - stock_movements / stock_records: exactly one location discriminator
      per location, matching its kind tag (BEFORE INSERT).
    - stock_movements: no UPDATE, no DELETE, unless the transaction sets
      ``stock_ledger.allow_backfill = 'on'`` for an audited backfill.

Failure modes:
    - RAISE EXCEPTION on violation, surfaced by SQLAlchemy as IntegrityError
      or InternalError.
    - FileNotFoundError if SQL files are missing from the sql/ directory.
    - OperationalError on deadlock during installation (caller retries).
"""

from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Engine

SQL_DIR = Path(__file__).parent / "sql"

TRIGGER_FILES = [
    "01_location_discriminator.sql",
    "02_movement_immutability.sql",
]

DROP_FILE = "99_drop_all.sql"

ALL_TRIGGER_NAMES = [
    "trg_stock_movement_location_check",
    "trg_stock_record_location_check",
    "trg_stock_movement_immutability_update",
    "trg_stock_movement_immutability_delete",
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


def install_ledger_triggers(engine: Engine) -> None:
    """
    Install the ledger triggers (idempotent, CREATE OR REPLACE).

    Preconditions: Tables exist and the engine is connected to PostgreSQL.
    Postconditions: All triggers in ALL_TRIGGER_NAMES are installed.
    """
    with engine.connect() as conn:
        conn.exec_driver_sql(_load_all_trigger_sql())
        conn.commit()


def uninstall_ledger_triggers(engine: Engine) -> None:
    """
    Remove the ledger triggers and their functions.

    Only for schema maintenance; re-install right after.
    """
    with engine.connect() as conn:
        conn.exec_driver_sql(_load_sql_file(DROP_FILE))
        conn.commit()


def get_installed_triggers(engine: Engine) -> list[str]:
    """Names of ledger triggers currently installed, sorted."""
    with engine.connect() as conn:
        result = conn.execute(
            text(
                "SELECT tgname FROM pg_trigger "
                "WHERE tgname = ANY(:names) ORDER BY tgname"
            ),
            {"names": ALL_TRIGGER_NAMES},
        )
        return [row[0] for row in result]


def triggers_installed(engine: Engine) -> bool:
    """True iff every trigger in ALL_TRIGGER_NAMES is installed."""
    return len(get_installed_triggers(engine)) == len(ALL_TRIGGER_NAMES)
