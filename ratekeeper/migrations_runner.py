from __future__ import annotations

import time
from pathlib import Path
from typing import Any

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations" / "postgres"

_LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
  filename TEXT PRIMARY KEY,
  applied_at BIGINT NOT NULL
);
"""


def _migration_files(migrations_dir: Path) -> list[Path]:
    return sorted(p for p in migrations_dir.glob("*.sql") if p.is_file())


def apply_postgres_migrations(conn: Any, *, migrations_dir: Path | None = None) -> list[str]:
    """Run pending `*.sql` files in name order inside one transaction.

    `schema_migrations` records each file once it has run. Returns the names
    applied by this call (empty when the schema is current).
    """

    files = _migration_files(migrations_dir or MIGRATIONS_DIR)
    if not files:
        return []

    applied_now: list[str] = []
    with conn.cursor() as cur:
        cur.execute(_LEDGER_DDL)
        cur.execute("SELECT filename FROM schema_migrations")
        done = {str(row["filename"]) for row in cur.fetchall()}

        for path in files:
            if path.name in done:
                continue
            cur.execute(path.read_text(encoding="utf-8"))
            cur.execute(
                "INSERT INTO schema_migrations (filename, applied_at) VALUES (%s, %s)",
                (path.name, int(time.time())),
            )
            applied_now.append(path.name)

    conn.commit()
    return applied_now
