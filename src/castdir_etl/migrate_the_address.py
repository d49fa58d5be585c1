"""castdir_etl.migrate_the_address

Legacy pass: move the free-text contacts.the_address column into the shared
addresses table.

Re-runnable.  Each processed contact gets contacts.the_address_migrated_at
set exactly once, whatever the outcome, so later runs only see rows that have
never been attempted.

Per contact:
  1. parse_maybe_json(the_address) (unwraps double-encoded JSON)
  2. normalize_address() on the parsed value, then on address_string, then
     on the raw column text; first usable result wins
  3. nothing usable → failure "Could not parse or normalize address"
  4. reuse an address matching {street1, street2, city, state, zip}
     (NULL-safe comparison) or insert a new one
  5. link contact ↔ address unless already linked
  6. mark migrated

Each contact runs inside its own SAVEPOINT; an error rolls back that row's
writes, is recorded as a failure, and the row is still marked.  The run
commits once at the end (or after every page with commit_every_page).

Output: <output-dir>/addresses-migration-report.json = {report, failures}.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click
import psycopg

from castdir_etl.normalize import normalize_address, parse_maybe_json
from castdir_etl.shared import write_json_artifact

log = logging.getLogger(__name__)

PAGE_SIZE = 100
REPORT_FILENAME = "addresses-migration-report.json"

FAILURE_UNPARSEABLE = "Could not parse or normalize address"
FAILURE_NO_ADDRESS_ID = "Failed to get or create address id"

MATCH_FIELDS = ("street1", "street2", "city", "state", "zip")


# ---------------------------------------------------------------------------
# Counters + report
# ---------------------------------------------------------------------------

@dataclass
class AddressMigrationCounters:
    contacts_read: int = 0
    pages_read: int = 0
    contacts_migrated: int = 0
    addresses_reused: int = 0
    addresses_inserted: int = 0
    links_inserted: int = 0
    links_existing: int = 0
    failures_unparseable: int = 0
    failures_error: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


@dataclass
class AddressMigrationReport:
    report: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    def extend(self, other: AddressMigrationReport) -> None:
        self.report.extend(other.report)
        self.failures.extend(other.failures)

    def to_dict(self) -> dict[str, Any]:
        return {"report": self.report, "failures": self.failures}


# ---------------------------------------------------------------------------
# Value resolution (pure)
# ---------------------------------------------------------------------------

def resolve_address_value(
    raw: str | None,
    address_string: str | None,
) -> dict[str, str | None] | None:
    """Normalize the legacy column, falling back to address_string then raw."""
    for candidate in (parse_maybe_json(raw), address_string, raw):
        normalized = normalize_address(candidate)
        if normalized:
            return normalized
    return None


def build_address_insert(normalized: dict[str, str | None]) -> dict[str, str | None]:
    """Insert shape: city/state are NOT NULL columns and default to ''."""
    return {
        "street1": normalized.get("street1") or None,
        "street2": normalized.get("street2") or None,
        "city": normalized.get("city") or "",
        "state": normalized.get("state") or "",
        "zip": normalized.get("zip") or None,
        "location": normalized.get("location") or None,
        "address_type": normalized.get("address_type") or None,
    }


# ---------------------------------------------------------------------------
# DB helpers
# ---------------------------------------------------------------------------

def fetch_pending_contacts(
    conn: psycopg.Connection,
    after_id: str,
    page_size: int = PAGE_SIZE,
) -> list[tuple[str, str, str | None]]:
    """Next page of unmigrated contacts with id > after_id.

    Keyset pagination: marked rows drop out of the filter, so an OFFSET would
    skip rows that moved into earlier pages.
    """
    return conn.execute(
        """
        SELECT id, the_address, address_string
        FROM contacts
        WHERE the_address_migrated_at IS NULL
          AND the_address IS NOT NULL
          AND id > %s
        ORDER BY id
        LIMIT %s
        """,
        (after_id, page_size),
    ).fetchall()


def find_address_id(conn: psycopg.Connection, addr: dict[str, str | None]) -> int | None:
    row = conn.execute(
        """
        SELECT id FROM addresses
        WHERE street1 IS NOT DISTINCT FROM %s
          AND street2 IS NOT DISTINCT FROM %s
          AND city IS NOT DISTINCT FROM %s
          AND state IS NOT DISTINCT FROM %s
          AND zip IS NOT DISTINCT FROM %s
        ORDER BY id
        LIMIT 1
        """,
        tuple(addr[f] for f in MATCH_FIELDS),
    ).fetchone()
    return row[0] if row else None


def insert_address(conn: psycopg.Connection, addr: dict[str, str | None]) -> int | None:
    row = conn.execute(
        """
        INSERT INTO addresses (street1, street2, city, state, zip, address_type, location)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            addr["street1"], addr["street2"], addr["city"], addr["state"],
            addr["zip"], addr["address_type"], addr["location"],
        ),
    ).fetchone()
    return row[0] if row else None


def ensure_contact_address(conn: psycopg.Connection, contact_id: str, address_id: int) -> bool:
    """Link contact ↔ address unless linked.  Returns True when a row was added."""
    existing = conn.execute(
        "SELECT id FROM contact_addresses WHERE contact_id = %s AND address_id = %s LIMIT 1",
        (contact_id, address_id),
    ).fetchone()
    if existing:
        return False
    conn.execute(
        "INSERT INTO contact_addresses (contact_id, address_id) VALUES (%s, %s)",
        (contact_id, address_id),
    )
    return True


def mark_migrated(conn: psycopg.Connection, contact_id: str) -> None:
    conn.execute(
        "UPDATE contacts SET the_address_migrated_at = now() WHERE id = %s",
        (contact_id,),
    )


# ---------------------------------------------------------------------------
# Per-contact + pass
# ---------------------------------------------------------------------------

def migrate_contact(
    conn: psycopg.Connection,
    contact_id: str,
    raw: str | None,
    address_string: str | None,
    counters: AddressMigrationCounters,
    result: AddressMigrationReport,
) -> None:
    sp = "the_address_row"
    conn.execute(f"SAVEPOINT {sp}")
    try:
        normalized = resolve_address_value(raw, address_string)
        if normalized is None:
            result.failures.append(
                {"contactId": contact_id, "reason": FAILURE_UNPARSEABLE, "raw": raw}
            )
            counters.failures_unparseable += 1
        else:
            addr = build_address_insert(normalized)
            address_id = find_address_id(conn, addr)
            if address_id is not None:
                counters.addresses_reused += 1
            else:
                address_id = insert_address(conn, addr)
                if address_id is not None:
                    counters.addresses_inserted += 1

            if address_id is None:
                result.failures.append(
                    {"contactId": contact_id, "reason": FAILURE_NO_ADDRESS_ID, "normalized": normalized}
                )
                counters.failures_error += 1
            else:
                if ensure_contact_address(conn, contact_id, address_id):
                    counters.links_inserted += 1
                else:
                    counters.links_existing += 1
                result.report.append(
                    {"contactId": contact_id, "addressId": address_id, "normalized": addr}
                )
                counters.contacts_migrated += 1
        mark_migrated(conn, contact_id)
        conn.execute(f"RELEASE SAVEPOINT {sp}")
    except Exception as exc:
        conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
        log.error("Failed for contact %s: %s", contact_id, exc)
        result.failures.append({"contactId": contact_id, "reason": str(exc)})
        counters.failures_error += 1
        counters.warnings.append(f"contact {contact_id}: {type(exc).__name__}: {exc}")
        conn.execute(f"RELEASE SAVEPOINT {sp}")
        mark_migrated(conn, contact_id)


def run_the_address_migration(
    conn: psycopg.Connection,
    counters: AddressMigrationCounters,
    page_size: int = PAGE_SIZE,
    commit_every_page: bool = False,
    result: AddressMigrationReport | None = None,
) -> AddressMigrationReport:
    """Process every pending contact.  Caller commits (unless per-page).

    With commit_every_page, outcomes move into result only once their page
    is committed, so after a failure result holds exactly the durable ones.
    """
    if result is None:
        result = AddressMigrationReport()
    pending = AddressMigrationReport()
    after_id = ""
    while True:
        page = fetch_pending_contacts(conn, after_id, page_size)
        if not page:
            break
        counters.pages_read += 1
        for contact_id, raw, address_string in page:
            counters.contacts_read += 1
            migrate_contact(conn, contact_id, raw, address_string, counters, pending)
        after_id = page[-1][0]
        if commit_every_page:
            conn.commit()
            result.extend(pending)
            pending = AddressMigrationReport()
    result.extend(pending)
    return result


def write_address_report(output_dir: Path, result: AddressMigrationReport) -> Path:
    return write_json_artifact(output_dir / REPORT_FILENAME, result.to_dict())


def build_the_address_report(ctrs: AddressMigrationCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "the_address → addresses Migration Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  contacts read:        {ctrs.contacts_read} ({ctrs.pages_read} pages)",
        f"  contacts migrated:    {ctrs.contacts_migrated}",
        f"  addresses reused:     {ctrs.addresses_reused}",
        f"  addresses inserted:   {ctrs.addresses_inserted}",
        f"  links inserted:       {ctrs.links_inserted} (already linked: {ctrs.links_existing})",
        f"  unparseable:          {ctrs.failures_unparseable}",
        f"  errors:               {ctrs.failures_error}",
    ]
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


def _run_the_address(
    run_id: str,
    db_dsn: str,
    counters: AddressMigrationCounters,
    output_dir: Path,
    page_size: int = PAGE_SIZE,
    commit_every_page: bool = False,
    dry_run: bool = False,
) -> None:
    click.echo(f"[{run_id}] 🚚 Starting migration of the_address → addresses...")
    per_page = commit_every_page and not dry_run
    result = AddressMigrationReport()
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        run_the_address_migration(
            conn, counters, page_size=page_size,
            commit_every_page=per_page, result=result,
        )
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
        else:
            conn.commit()
    except Exception as e:
        conn.rollback()
        click.echo(f"[{run_id}] ❌ Migration failed: {e}", err=True)
        if per_page and (result.report or result.failures):
            # earlier pages are committed and marked; keep their outcomes
            report_path = write_address_report(output_dir, result)
            click.echo(f"[{run_id}] Committed pages reported to {report_path}", err=True)
        sys.exit(1)
    finally:
        conn.close()

    report_path = write_address_report(output_dir, result)
    click.echo(
        f"[{run_id}] ✅ Done. Migrated {len(result.report)} contacts. "
        f"Failures: {len(result.failures)}."
    )
    click.echo(f"[{run_id}] Report written to {report_path}")
