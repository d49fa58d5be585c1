"""castdir_etl.shared

Shared utilities used by the export import and the legacy address pass.
Includes RejectWriter, RunCounters, generic insert helpers, the destructive
reset order, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

import psycopg
from psycopg import sql


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ExportLoadError(Exception):
    """Raised when an export file is missing or is not a JSON array."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected source records."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: Mapping[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Source records read
    users_read: int = 0
    offices_read: int = 0
    contacts_read: int = 0
    projects_read: int = 0
    past_projects_read: int = 0
    comments_read: int = 0
    statistics_read: int = 0
    # Owner-user pre-validation
    records_skipped_unknown_user: int = 0
    # Users
    users_inserted: int = 0
    user_emails_inserted: int = 0
    user_preferences_inserted: int = 0
    user_groups_inserted: int = 0
    # Deduplicated sub-documents
    addresses_inserted: int = 0
    addresses_skipped_invalid: int = 0
    addresses_conflicted: int = 0
    links_inserted: int = 0
    links_conflicted: int = 0
    # Entities + owned rows
    offices_inserted: int = 0
    office_addresses_inserted: int = 0
    office_phones_inserted: int = 0
    office_links_inserted: int = 0
    contacts_inserted: int = 0
    contact_addresses_inserted: int = 0
    contact_links_inserted: int = 0
    projects_inserted: int = 0
    project_links_inserted: int = 0
    past_projects_inserted: int = 0
    past_project_links_inserted: int = 0
    slugs_disambiguated: int = 0
    # Relationships
    office_contacts_inserted: int = 0
    office_projects_inserted: int = 0
    office_past_projects_inserted: int = 0
    contact_projects_inserted: int = 0
    contact_past_projects_inserted: int = 0
    dangling_references_dropped: int = 0
    # Tail collections
    comments_inserted: int = 0
    statistics_inserted: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Destructive reset
# ---------------------------------------------------------------------------

# Strict reverse-dependency order: junctions and children before parents.
RESET_ORDER: tuple[str, ...] = (
    "comments",
    "statistics",
    "office_past_projects",
    "office_projects",
    "contact_past_projects",
    "contact_projects",
    "office_contacts",
    "project_links",
    "past_project_links",
    "office_links",
    "contact_links",
    "office_addresses",
    "contact_addresses",
    "office_phones",
    "past_projects",
    "projects",
    "contacts",
    "offices",
    "links",
    "addresses",
    "user_groups",
    "user_preferences",
    "user_emails",
    "users",
)


def reset_target_tables(conn: psycopg.Connection) -> None:
    """Delete every row from every target table.  Caller manages transaction."""
    for table in RESET_ORDER:
        conn.execute(sql.SQL("DELETE FROM {}").format(sql.Identifier(table)))


# ---------------------------------------------------------------------------
# Insert helpers
# ---------------------------------------------------------------------------

def _insert_statement(table: str, columns: list[str], returning: bool) -> sql.Composed:
    stmt = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
        sql.Identifier(table),
        sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        sql.SQL(", ").join(sql.Placeholder() * len(columns)),
    )
    if returning:
        stmt = stmt + sql.SQL(" RETURNING id")
    return stmt


def insert_rows(
    conn: psycopg.Connection,
    table: str,
    rows: Iterable[Mapping[str, Any]],
) -> int:
    """Insert rows that all share the key set of the first row.

    Returns the number of rows written.  Any DB error propagates.
    """
    rows = list(rows)
    if not rows:
        return 0
    columns = list(rows[0].keys())
    stmt = _insert_statement(table, columns, returning=False)
    with conn.cursor() as cur:
        cur.executemany(stmt, [tuple(r[c] for c in columns) for r in rows])
    return len(rows)


def insert_returning_id(
    conn: psycopg.Connection,
    table: str,
    row: Mapping[str, Any],
) -> int:
    """Insert one row and return its generated id."""
    columns = list(row.keys())
    stmt = _insert_statement(table, columns, returning=True)
    result = conn.execute(stmt, tuple(row[c] for c in columns)).fetchone()
    return int(result[0])


# ---------------------------------------------------------------------------
# Report writers
# ---------------------------------------------------------------------------

def write_json_artifact(path: Path, payload: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    return path


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: Any,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    return write_json_artifact(reports_dir / f"{run_id}.json", report)
