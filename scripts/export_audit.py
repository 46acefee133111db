"""
statusflow: export audit events.

Purpose
- Dump audit events as JSON lines (one event per line, oldest first) for
  archiving before retention cleanup deletes them.
- Report a stable machine-readable summary for downstream automation.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"

_PAGE_SIZE = 500


def _ensure_src_path() -> None:
    if str(SRC_PATH) not in sys.path:
        sys.path.insert(0, str(SRC_PATH))


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Export statusflow audit events as JSON lines.",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("state") / "statusflow.sqlite3",
        help="State DB path.",
    )
    parser.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Write events to this file instead of stdout.",
    )
    parser.add_argument("--level", default=None, help="Only export events of this level.")
    parser.add_argument("--rule-id", type=int, default=None)
    parser.add_argument(
        "--since",
        default=None,
        help="Only export events created at or after this ISO-8601 UTC timestamp.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print a JSON summary to stderr once the export finishes.",
    )
    return parser.parse_args(argv)


def _parse_since(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    parsed = datetime.fromisoformat(raw[:-1] + "+00:00" if raw.endswith("Z") else raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _write_events(sink: TextIO, db_path: Path, args: argparse.Namespace) -> int:
    from statusflow.persistence.repositories import AuditEventRepo, AuditQueryFilters
    from statusflow.persistence.state_db import StateDB

    repo = AuditEventRepo(StateDB(db_path))
    filters = AuditQueryFilters(
        level=args.level,
        rule_id=args.rule_id,
        date_from=_parse_since(args.since),
    )
    exported = 0
    while True:
        page = repo.query(filters, _PAGE_SIZE, exported, "created_at", "ASC")
        for event in page:
            sink.write(event.to_json() + "\n")
        exported += len(page)
        if len(page) < _PAGE_SIZE:
            return exported


def _emit_summary(payload: Mapping[str, object], *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":")), file=sys.stderr)
    else:
        print(f"exported {payload['exported']} events from {payload['db_path']}", file=sys.stderr)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    db_path = args.db.expanduser().resolve()
    out_path = args.out.expanduser().resolve() if args.out is not None else None

    _ensure_src_path()
    from statusflow.domain.errors import AuditQueryValidationError
    from statusflow.persistence.state_db import StateDBError

    if not db_path.exists():
        print(f"error: state DB not found: {db_path.as_posix()}", file=sys.stderr)
        return 1

    try:
        if out_path is None:
            exported = _write_events(sys.stdout, db_path, args)
        else:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            with out_path.open("w", encoding="utf-8") as handle:
                exported = _write_events(handle, db_path, args)
    except (AuditQueryValidationError, StateDBError, OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    _emit_summary(
        {
            "db_path": db_path.as_posix(),
            "exported": exported,
            "out": None if out_path is None else out_path.as_posix(),
        },
        as_json=bool(args.json),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
