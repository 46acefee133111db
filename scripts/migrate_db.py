"""
statusflow: migrate the state DB schema.

Purpose
- Bring a state DB up to the schema version this checkout ships.
- Report per-migration status (applied / pending / checksum drift) without
  touching the file when ``--dry-run`` is given.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"

if TYPE_CHECKING:
    from statusflow.persistence.state_db import Migration, MigrationRecord


def _ensure_src_path() -> None:
    if str(SRC_PATH) not in sys.path:
        sys.path.insert(0, str(SRC_PATH))


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Apply or inspect statusflow state DB migrations.",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("state") / "statusflow.sqlite3",
        help="Path to the state SQLite database.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report migration status without creating or changing the database.",
    )
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON output.")
    return parser.parse_args(argv)


def _applied_migrations(db_path: Path) -> tuple[MigrationRecord, ...]:
    from statusflow.persistence.state_db import StateDB

    if not db_path.exists():
        return ()
    db = StateDB(db_path)
    has_table = db.query_one(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_versions'"
    )
    if has_table is None:
        return ()
    return tuple(sorted(db.schema_history(), key=lambda row: row.version))


def _migration_status(
    known: Sequence[Migration],
    applied: tuple[MigrationRecord, ...],
) -> list[dict[str, object]]:
    applied_by_version = {row.version: row for row in applied}
    known_versions = {row.version for row in known}
    rows: list[dict[str, object]] = []
    for migration in known:
        record = applied_by_version.get(migration.version)
        if record is None:
            status, applied_at = "pending", None
        elif record.checksum != migration.checksum:
            status, applied_at = "checksum_mismatch", record.applied_at
        else:
            status, applied_at = "applied", record.applied_at
        rows.append(
            {
                "version": migration.version,
                "name": migration.name,
                "status": status,
                "applied_at": applied_at,
            }
        )
    rows.extend(
        {
            "version": record.version,
            "name": record.name,
            "status": "unknown",
            "applied_at": record.applied_at,
        }
        for record in applied
        if record.version not in known_versions
    )
    rows.sort(key=lambda row: int(str(row["version"])))
    return rows


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _emit_text(payload: Mapping[str, object]) -> None:
    print(f"State DB: {payload['db_path']}")
    print(
        f"Schema version: {payload['schema_version']} "
        f"(this checkout: {payload['target_schema_version']})"
    )
    print(f"Up to date: {'yes' if payload['up_to_date'] else 'no'}")
    rows = payload.get("migrations")
    for row in rows if isinstance(rows, list) else []:
        if isinstance(row, Mapping):
            print(f"  v{row.get('version')}: {row.get('status')} ({row.get('name')})")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    db_path = args.db.expanduser().resolve()

    _ensure_src_path()
    from statusflow.constants import STATE_DB_SCHEMA_VERSION
    from statusflow.persistence.state_db import MIGRATIONS, StateDB, StateDBError

    try:
        if not args.dry_run:
            StateDB(db_path).migrate()
        applied = _applied_migrations(db_path)
    except (StateDBError, OSError) as exc:
        if args.json:
            _emit_json({"db_path": db_path.as_posix(), "error": str(exc)})
        else:
            print(f"error: {exc}", file=sys.stderr)
        return 1

    rows = _migration_status(MIGRATIONS, applied)
    drift = [row for row in rows if row["status"] in {"checksum_mismatch", "unknown"}]
    payload: dict[str, object] = {
        "db_path": db_path.as_posix(),
        "dry_run": bool(args.dry_run),
        "schema_version": applied[-1].version if applied else 0,
        "target_schema_version": STATE_DB_SCHEMA_VERSION,
        "up_to_date": all(row["status"] == "applied" for row in rows),
        "migrations": rows,
    }
    if args.json:
        _emit_json(payload)
    else:
        _emit_text(payload)
    return 1 if drift else 0


if __name__ == "__main__":
    raise SystemExit(main())
