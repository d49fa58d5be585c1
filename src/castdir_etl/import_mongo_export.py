"""castdir_etl.import_mongo_export

Unified CLI entrypoint for casting-directory ingestion.

Modes (--mode):
  mongo_export: full-replace import of the MongoDB JSON export (default)
  the_address: migrate contacts.the_address into addresses (re-runnable)
  validate_export: validate export documents against the source schemas
  listing: run one listing query (offices, contacts, projects, ...)

Usage (mongo_export):
    castdir-etl --mode mongo_export \\
        --db-dsn "$DB_DSN" \\
        --import-dir import/

Usage (the_address):
    castdir-etl --mode the_address \\
        --db-dsn "$DB_DSN" \\
        --output-dir artifacts/migration-output

Processing order (mongo_export):
  1. Load every export file; validate owner-user references
  2. Delete all rows from every target table (reverse-dependency order)
  3. Users (+ emails, preferences, groups)
  4. Deduplicated addresses and links
  5. Offices, contacts, projects, past projects (+ owned rows, junctions)
  6. Cross-entity relationships (only once every entity exists)
  7. Comments, statistics

The whole run is one transaction; any unrecoverable error rolls it back.
"""

from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import click
import psycopg
from dotenv import load_dotenv
from psycopg.types.json import Jsonb

from castdir_etl.dedup import migrate_addresses_and_links, structural_key
from castdir_etl.normalize import (
    disambiguate_slugs,
    mongo_date,
    mongo_date_or_now,
    or_none,
)
from castdir_etl.shared import (
    ExportLoadError,
    RejectWriter,
    RunCounters,
    insert_rows,
    reset_target_tables,
    write_run_report,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Export constants
# ---------------------------------------------------------------------------

EXPORT_FILES = {
    "users": "users.json",
    "offices": "offices.json",
    "contacts": "contacts.json",
    "projects": "projects.json",
    "past_projects": "pastprojects.json",
    "comments": "comments.json",
    "statistics": "statistics.json",
}

OPTIONAL_EXPORT_FILES = {"statistics"}

PROJECT_COLUMNS = {
    "project_type": "projectType",
    "union": "union",
    "network": "network",
    "status": "status",
    "platform_type": "platformType",
    "website": "website",
    "season": "season",
    "order": "order",
    "renewed": "renewed",
    "shooting_location": "shootingLocation",
    "summary": "summary",
    "html_summary": "htmlSummary",
    "notes": "notes",
    "html_notes": "htmlNotes",
    "casting_company": "castingCompany",
    "sort_title": "sortTitle",
}


# ---------------------------------------------------------------------------
# Loading + owner validation
# ---------------------------------------------------------------------------

def load_export(import_dir: Path) -> dict[str, list[dict[str, Any]]]:
    """Read every export file into {collection: [records]}.

    Raises ExportLoadError when a required file is missing or any file is
    not a JSON array.
    """
    export: dict[str, list[dict[str, Any]]] = {}
    for collection, filename in EXPORT_FILES.items():
        path = import_dir / filename
        if not path.exists():
            if collection in OPTIONAL_EXPORT_FILES:
                export[collection] = []
                continue
            raise ExportLoadError(f"missing export file: {path}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise ExportLoadError(f"{path}: invalid JSON ({exc})") from exc
        if not isinstance(data, list):
            raise ExportLoadError(f"{path}: expected a JSON array")
        export[collection] = data
    return export


def filter_by_owner(
    records: list[dict[str, Any]],
    valid_user_ids: set[str],
    label: str,
    counters: RunCounters,
    rejects: RejectWriter,
) -> list[dict[str, Any]]:
    """Drop records whose userId is not a migrated user."""
    kept: list[dict[str, Any]] = []
    for record in records:
        if record.get("userId") in valid_user_ids:
            kept.append(record)
            continue
        msg = f"skipping {label} {record.get('_id')}: user {record.get('userId')} not found"
        log.warning(msg)
        counters.warnings.append(msg)
        counters.records_skipped_unknown_user += 1
        rejects.write(
            {"collection": label, "_id": record.get("_id"), "userId": record.get("userId")},
            "unknown_user",
        )
    return kept


# ---------------------------------------------------------------------------
# Row mappers (export document → destination row)
# ---------------------------------------------------------------------------

def user_row(user: dict[str, Any]) -> dict[str, Any]:
    services = user.get("services")
    auth_methods = None
    if services:
        auth_methods = Jsonb({
            "has_password": bool(services.get("password")),
            "has_github": bool(services.get("github")),
        })
    return {
        "id": user["_id"],
        "username": or_none(user.get("username")),
        "display_name": user.get("displayName"),
        "slug": user.get("slug"),
        "email": or_none(user.get("email")),
        "email_hash": or_none(user.get("emailHash")),
        "is_admin": bool(user.get("isAdmin")),
        "locale": user.get("locale") or "en",
        "bio": or_none(user.get("bio")),
        "html_bio": or_none(user.get("htmlBio")),
        "website": or_none(user.get("website")),
        "twitter_username": or_none(user.get("twitterUsername")),
        "created_at": mongo_date_or_now(user.get("createdAt")),
        "updated_at": mongo_date(user.get("updatedAt")),
        "auth_methods": auth_methods,
    }


def user_email_rows(user: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        {
            "user_id": user["_id"],
            "address": email.get("address"),
            "verified": bool(email.get("verified")),
            "is_primary": bool(email.get("primary")),
        }
        for email in user.get("emails") or []
    ]


def user_preference_row(user: dict[str, Any]) -> dict[str, Any]:
    # Opt-out flags default on; user-notification flag is opt-in.
    return {
        "user_id": user["_id"],
        "notifications_comments": user.get("notifications_comments") is not False,
        "notifications_posts": user.get("notifications_posts") is not False,
        "notifications_replies": user.get("notifications_replies") is not False,
        "notifications_users": user.get("notifications_users") is True,
    }


def user_group_rows(user: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        {"user_id": user["_id"], "group_name": group}
        for group in user.get("groups") or []
    ]


def office_row(office: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": office["_id"],
        "display_name": office.get("displayName"),
        "slug": office.get("slug"),
        "user_id": office.get("userId"),
        "body": or_none(office.get("body")),
        "html_body": or_none(office.get("htmlBody")),
        "created_at": mongo_date_or_now(office.get("createdAt")),
        "updated_at": mongo_date(office.get("updatedAt")),
    }


def office_phone_rows(office: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        {
            "office_id": office["_id"],
            "phone_number_as_input": or_none(phone.get("phoneNumberAsInput")),
            "phone_number_type": or_none(phone.get("phoneNumberType")),
            "phone_number": or_none(phone.get("phoneNumber")),
            "national_format": or_none(phone.get("nationalFormat")),
            "country_code": or_none(phone.get("countryCode")),
        }
        for phone in office.get("phones") or []
    ]


def _the_address_text(value: Any) -> str | None:
    """Legacy theAddress column value: objects are stored as JSON text."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)


def contact_row(contact: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": contact["_id"],
        "display_name": contact.get("displayName"),
        "first_name": or_none(contact.get("firstName")),
        "last_name": or_none(contact.get("lastName")),
        "title": or_none(contact.get("title")),
        "gender": or_none(contact.get("gender")),
        "slug": contact.get("slug"),
        "user_id": contact.get("userId"),
        "the_address": _the_address_text(contact.get("theAddress")),
        "address_string": or_none(contact.get("addressString")),
        "body": or_none(contact.get("body")),
        "html_body": or_none(contact.get("htmlBody")),
        "created_at": mongo_date_or_now(contact.get("createdAt")),
        "updated_at": mongo_date(contact.get("updatedAt")),
    }


def project_row(project: dict[str, Any], slug: str) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": project["_id"],
        "project_title": project.get("projectTitle"),
        "slug": slug,
        "user_id": project.get("userId"),
    }
    for column, source_key in PROJECT_COLUMNS.items():
        row[column] = or_none(project.get(source_key))
    row["created_at"] = mongo_date_or_now(project.get("createdAt"))
    row["updated_at"] = mongo_date(project.get("updatedAt"))
    return row


def comment_row(comment: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": comment["_id"],
        "body": comment.get("body"),
        "html_body": or_none(comment.get("htmlBody")),
        "collection_name": comment.get("collectionName"),
        "object_id": comment.get("objectId"),
        "user_id": comment.get("userId"),
        "parent_comment_id": or_none(comment.get("parentCommentId")),
        "top_level_comment_id": or_none(comment.get("topLevelCommentId")),
        "created_at": mongo_date_or_now(comment.get("createdAt")),
        "posted_at": mongo_date(comment.get("postedAt")),
    }


def statistic_row(stat: dict[str, Any], idx: int, stamp_ms: int) -> dict[str, Any]:
    return {
        "id": stat.get("_id") or f"stat-{stamp_ms}-{idx}",
        "data": Jsonb(stat.get("data") or stat),
        "created_at": mongo_date_or_now(stat.get("createdAt")),
    }


def assign_slugs(
    records: list[dict[str, Any]],
    label: str,
    counters: RunCounters,
) -> list[str]:
    """Disambiguate repeated slugs in source order, warning per rename."""
    original = [r.get("slug") for r in records]
    assigned = disambiguate_slugs(original)
    for record, before, after in zip(records, original, assigned):
        if before != after:
            msg = f'slug conflict "{before}" for {label} {record.get("_id")}, using "{after}"'
            log.warning(msg)
            counters.warnings.append(msg)
            counters.slugs_disambiguated += 1
    return assigned


def junction_rows(
    owners: Iterable[dict[str, Any]],
    embedded_field: str,
    id_map: dict[str, int],
    owner_column: str,
    target_column: str,
) -> list[dict[str, Any]]:
    """Re-point embedded sub-documents at their deduplicated rows.

    Sub-documents missing from id_map (invalid or conflicted) are skipped;
    repeated (owner, target) pairs are emitted once.
    """
    rows: list[dict[str, Any]] = []
    seen: set[tuple[str, int]] = set()
    for owner in owners:
        for doc in owner.get(embedded_field) or []:
            target_id = id_map.get(structural_key(doc))
            if target_id is None:
                continue
            pair = (owner["_id"], target_id)
            if pair in seen:
                continue
            seen.add(pair)
            rows.append({owner_column: owner["_id"], target_column: target_id})
    return rows


def reference_rows(
    owners: Iterable[dict[str, Any]],
    ref_field: str,
    ref_key: str,
    valid_target_ids: set[str],
    owner_column: str,
    target_column: str,
    counters: RunCounters,
    extra: dict[str, str] | None = None,
) -> list[dict[str, Any]]:
    """Build junction rows from embedded cross-references.

    References to ids outside valid_target_ids are dropped; repeated
    (owner, target) pairs are emitted once.  extra maps destination column →
    reference key for additional per-pair values.
    """
    rows: list[dict[str, Any]] = []
    seen: set[tuple[str, str]] = set()
    for owner in owners:
        for ref in owner.get(ref_field) or []:
            target_id = ref.get(ref_key)
            if target_id not in valid_target_ids:
                counters.dangling_references_dropped += 1
                continue
            pair = (owner["_id"], target_id)
            if pair in seen:
                continue
            seen.add(pair)
            row = {owner_column: owner["_id"], target_column: target_id}
            for column, key in (extra or {}).items():
                row[column] = or_none(ref.get(key))
            rows.append(row)
    return rows


# ---------------------------------------------------------------------------
# Entity migrators
# ---------------------------------------------------------------------------

def migrate_users(
    conn: psycopg.Connection,
    users: list[dict[str, Any]],
    counters: RunCounters,
) -> None:
    counters.users_inserted += insert_rows(conn, "users", [user_row(u) for u in users])
    counters.user_emails_inserted += insert_rows(
        conn, "user_emails", [r for u in users for r in user_email_rows(u)]
    )
    counters.user_preferences_inserted += insert_rows(
        conn, "user_preferences", [user_preference_row(u) for u in users]
    )
    counters.user_groups_inserted += insert_rows(
        conn, "user_groups", [r for u in users for r in user_group_rows(u)]
    )


def migrate_offices(
    conn: psycopg.Connection,
    offices: list[dict[str, Any]],
    address_map: dict[str, int],
    link_map: dict[str, int],
    counters: RunCounters,
) -> None:
    counters.offices_inserted += insert_rows(conn, "offices", [office_row(o) for o in offices])
    counters.office_addresses_inserted += insert_rows(
        conn,
        "office_addresses",
        junction_rows(offices, "addresses", address_map, "office_id", "address_id"),
    )
    counters.office_phones_inserted += insert_rows(
        conn, "office_phones", [r for o in offices for r in office_phone_rows(o)]
    )
    counters.office_links_inserted += insert_rows(
        conn,
        "office_links",
        junction_rows(offices, "links", link_map, "office_id", "link_id"),
    )


def migrate_contacts(
    conn: psycopg.Connection,
    contacts: list[dict[str, Any]],
    address_map: dict[str, int],
    link_map: dict[str, int],
    counters: RunCounters,
) -> None:
    counters.contacts_inserted += insert_rows(conn, "contacts", [contact_row(c) for c in contacts])
    counters.contact_addresses_inserted += insert_rows(
        conn,
        "contact_addresses",
        junction_rows(contacts, "addresses", address_map, "contact_id", "address_id"),
    )
    counters.contact_links_inserted += insert_rows(
        conn,
        "contact_links",
        junction_rows(contacts, "links", link_map, "contact_id", "link_id"),
    )


def migrate_projects(
    conn: psycopg.Connection,
    projects: list[dict[str, Any]],
    link_map: dict[str, int],
    counters: RunCounters,
    past: bool = False,
) -> None:
    """Migrate projects, or past projects when past=True."""
    table, links_table, label = (
        ("past_projects", "past_project_links", "past project")
        if past
        else ("projects", "project_links", "project")
    )
    slugs = assign_slugs(projects, label, counters)
    inserted = insert_rows(conn, table, [project_row(p, s) for p, s in zip(projects, slugs)])
    linked = insert_rows(
        conn,
        links_table,
        junction_rows(projects, "links", link_map, "project_id", "link_id"),
    )
    if past:
        counters.past_projects_inserted += inserted
        counters.past_project_links_inserted += linked
    else:
        counters.projects_inserted += inserted
        counters.project_links_inserted += linked


def create_relationships(
    conn: psycopg.Connection,
    offices: list[dict[str, Any]],
    contacts: list[dict[str, Any]],
    projects: list[dict[str, Any]],
    past_projects: list[dict[str, Any]],
    counters: RunCounters,
) -> None:
    """Office↔contact, office↔(past) project and contact↔(past) project rows.

    Owners are the already-filtered valid records; targets are checked
    against the ids of the other filtered collections.
    """
    contact_ids = {c["_id"] for c in contacts}
    project_ids = {p["_id"] for p in projects}
    past_project_ids = {p["_id"] for p in past_projects}

    counters.office_contacts_inserted += insert_rows(
        conn,
        "office_contacts",
        reference_rows(offices, "contacts", "contactId", contact_ids,
                       "office_id", "contact_id", counters),
    )
    counters.office_projects_inserted += insert_rows(
        conn,
        "office_projects",
        reference_rows(offices, "projects", "projectId", project_ids,
                       "office_id", "project_id", counters),
    )
    counters.office_past_projects_inserted += insert_rows(
        conn,
        "office_past_projects",
        reference_rows(offices, "pastProjects", "projectId", past_project_ids,
                       "office_id", "project_id", counters),
    )
    role = {"title_for_project": "titleForProject"}
    counters.contact_projects_inserted += insert_rows(
        conn,
        "contact_projects",
        reference_rows(contacts, "projects", "projectId", project_ids,
                       "contact_id", "project_id", counters, extra=role),
    )
    counters.contact_past_projects_inserted += insert_rows(
        conn,
        "contact_past_projects",
        reference_rows(contacts, "pastProjects", "projectId", past_project_ids,
                       "contact_id", "project_id", counters, extra=role),
    )


def migrate_comments(
    conn: psycopg.Connection,
    comments: list[dict[str, Any]],
    counters: RunCounters,
) -> None:
    counters.comments_inserted += insert_rows(conn, "comments", [comment_row(c) for c in comments])


def migrate_statistics(
    conn: psycopg.Connection,
    statistics: list[dict[str, Any]],
    counters: RunCounters,
) -> None:
    stamp_ms = int(time.time() * 1000)
    counters.statistics_inserted += insert_rows(
        conn,
        "statistics",
        [statistic_row(s, idx, stamp_ms) for idx, s in enumerate(statistics)],
    )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def run_mongo_export(
    conn: psycopg.Connection,
    export: dict[str, list[dict[str, Any]]],
    run_id: str,
    counters: RunCounters,
    rejects: RejectWriter,
) -> None:
    """Full-replace import of one export.  Caller commits or rolls back."""
    users = export["users"]
    offices = export["offices"]
    contacts = export["contacts"]
    projects = export["projects"]
    past_projects = export["past_projects"]
    comments = export["comments"]
    statistics = export["statistics"]

    counters.users_read = len(users)
    counters.offices_read = len(offices)
    counters.contacts_read = len(contacts)
    counters.projects_read = len(projects)
    counters.past_projects_read = len(past_projects)
    counters.comments_read = len(comments)
    counters.statistics_read = len(statistics)

    valid_user_ids = {u["_id"] for u in users}
    valid_offices = filter_by_owner(offices, valid_user_ids, "office", counters, rejects)
    valid_contacts = filter_by_owner(contacts, valid_user_ids, "contact", counters, rejects)
    valid_projects = filter_by_owner(projects, valid_user_ids, "project", counters, rejects)
    valid_past_projects = filter_by_owner(
        past_projects, valid_user_ids, "past project", counters, rejects
    )
    valid_comments = filter_by_owner(comments, valid_user_ids, "comment", counters, rejects)
    click.echo(
        f"[{run_id}] ✓ After validation: {len(valid_offices)} offices, "
        f"{len(valid_contacts)} contacts, {len(valid_projects)} projects, "
        f"{len(valid_past_projects)} past projects, {len(valid_comments)} comments"
    )

    click.echo(f"[{run_id}] 🧹 Cleaning existing data...")
    reset_target_tables(conn)

    click.echo(f"[{run_id}] 👥 Migrating users...")
    migrate_users(conn, users, counters)

    click.echo(f"[{run_id}] 📍 Migrating addresses and links...")
    address_map, link_map = migrate_addresses_and_links(
        conn, offices, contacts, projects, past_projects, counters
    )

    click.echo(f"[{run_id}] 🏢 Migrating offices...")
    migrate_offices(conn, valid_offices, address_map, link_map, counters)

    click.echo(f"[{run_id}] 👤 Migrating contacts...")
    migrate_contacts(conn, valid_contacts, address_map, link_map, counters)

    click.echo(f"[{run_id}] 🎬 Migrating projects...")
    migrate_projects(conn, valid_projects, link_map, counters)

    click.echo(f"[{run_id}] 📦 Migrating past projects...")
    migrate_projects(conn, valid_past_projects, link_map, counters, past=True)

    click.echo(f"[{run_id}] 🔗 Creating relationships...")
    create_relationships(
        conn, valid_offices, valid_contacts, valid_projects, valid_past_projects, counters
    )

    click.echo(f"[{run_id}] 💬 Migrating comments...")
    migrate_comments(conn, valid_comments, counters)

    if statistics:
        click.echo(f"[{run_id}] 📊 Migrating statistics...")
        migrate_statistics(conn, statistics, counters)


def build_export_report(ctrs: RunCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "MongoDB Export → Postgres Migration Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  users:                {ctrs.users_inserted} / {ctrs.users_read}",
        f"  offices:              {ctrs.offices_inserted} / {ctrs.offices_read}",
        f"  contacts:             {ctrs.contacts_inserted} / {ctrs.contacts_read}",
        f"  projects:             {ctrs.projects_inserted} / {ctrs.projects_read}",
        f"  past projects:        {ctrs.past_projects_inserted} / {ctrs.past_projects_read}",
        f"  comments:             {ctrs.comments_inserted} / {ctrs.comments_read}",
        f"  statistics:           {ctrs.statistics_inserted} / {ctrs.statistics_read}",
        f"  skipped (no user):    {ctrs.records_skipped_unknown_user}",
        f"  addresses inserted:   {ctrs.addresses_inserted} "
        f"(invalid skipped: {ctrs.addresses_skipped_invalid})",
        f"  links inserted:       {ctrs.links_inserted}",
        f"  slugs disambiguated:  {ctrs.slugs_disambiguated}",
        f"  dangling refs:        {ctrs.dangling_references_dropped}",
    ]
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


def _run_mongo_export(
    run_id: str,
    db_dsn: str,
    counters: RunCounters,
    rejects: RejectWriter,
    import_dir: Path,
    dry_run: bool,
) -> None:
    click.echo(f"[{run_id}] 🚀 Starting migration from MongoDB JSON to Postgres...")
    click.echo(f"[{run_id}] 📂 Loading data files from {import_dir}...")
    try:
        export = load_export(import_dir)
    except ExportLoadError as e:
        click.echo(f"[{run_id}] FATAL: {e}", err=True)
        sys.exit(1)
    click.echo(
        f"[{run_id}] ✓ Loaded: {len(export['users'])} users, {len(export['offices'])} offices, "
        f"{len(export['contacts'])} contacts, {len(export['projects'])} projects, "
        f"{len(export['past_projects'])} past projects, {len(export['comments'])} comments"
    )

    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        run_mongo_export(conn, export, run_id, counters, rejects)
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] ✅ Migration completed successfully!")
    except Exception as e:
        conn.rollback()
        click.echo(f"[{run_id}] ❌ Migration failed: {e}", err=True)
        sys.exit(1)
    finally:
        conn.close()
        rejects.close()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="mongo_export",
    type=click.Choice(["mongo_export", "the_address", "validate_export", "listing"]),
    show_default=True,
    help="Ingestion mode",
)
@click.option("--db-dsn", envvar="DB_DSN", default=None, help="PostgreSQL DSN (env: DB_DSN)")
# mongo_export / validate_export flags
@click.option(
    "--import-dir",
    default="./import",
    type=click.Path(file_okay=False),
    show_default=True,
    help="[mongo_export|validate_export] Directory holding the export JSON files",
)
# the_address flags
@click.option(
    "--output-dir",
    default="./artifacts/migration-output",
    type=click.Path(file_okay=False),
    show_default=True,
    help="[the_address] Directory for addresses-migration-report.json",
)
@click.option("--page-size", default=100, type=int, show_default=True, help="[the_address] Contacts fetched per page")
@click.option("--commit-every-page", is_flag=True, default=False, help="[the_address] Commit after each page instead of once")
# listing flags
@click.option("--listing", "listing_name", default="contacts", show_default=True, help="[listing] Listing page name")
@click.option("--listing-config", default="config/listings.yml", type=click.Path(), show_default=True, help="[listing] YAML listing config")
@click.option("--page", default=None, help="[listing] Requested page")
@click.option("--listing-page-size", default=None, help="[listing] Requested pageSize")
@click.option("--search", default=None, help="[listing] Search terms")
@click.option("--sort-by", default=None, help="[listing] Sort column")
@click.option("--sort-order", default=None, help="[listing] asc | desc")
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/mongo_export_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def cli(
    mode: str,
    db_dsn: str | None,
    import_dir: str,
    output_dir: str,
    page_size: int,
    commit_every_page: bool,
    listing_name: str,
    listing_config: str,
    page: str | None,
    listing_page_size: str | None,
    search: str | None,
    sort_by: str | None,
    sort_order: str | None,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
) -> None:
    """Unified casting-directory ingestion CLI."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    if mode == "validate_export":
        from castdir_etl.schemas import build_validation_report, validate_export
        try:
            export = load_export(Path(import_dir))
        except ExportLoadError as e:
            click.echo(f"[{run_id}] FATAL: {e}", err=True)
            sys.exit(1)
        results = validate_export(export)
        click.echo(build_validation_report(results))
        report_path = write_run_report(
            run_id, started_at, mode, dry_run, {"import_dir": import_dir}, results,
        )
        click.echo(f"[{run_id}] Run report: {report_path}")
        return

    if not db_dsn:
        click.echo(f"[{run_id}] FATAL: --db-dsn or DB_DSN is required", err=True)
        sys.exit(1)

    if mode == "listing":
        from castdir_etl.listing import (
            ListingConfigValidationError,
            ListingRedirect,
            load_listing_config,
            run_listing,
        )
        try:
            config = load_listing_config(Path(listing_config))
        except (OSError, ListingConfigValidationError) as e:
            click.echo(f"[{run_id}] FATAL: cannot load listing config: {e}", err=True)
            sys.exit(1)
        if listing_name not in config.pages:
            click.echo(f"[{run_id}] FATAL: unknown listing {listing_name!r}", err=True)
            sys.exit(1)
        raw_params = {
            k: v for k, v in {
                "page": page,
                "pageSize": listing_page_size,
                "search": search,
                "sortBy": sort_by,
                "sortOrder": sort_order,
            }.items() if v is not None
        }
        with psycopg.connect(db_dsn) as conn:
            try:
                result = run_listing(conn, listing_name, raw_params, config)
            except ListingRedirect as redirect:
                click.echo(f"[{run_id}] redirect → {redirect.location}")
                return
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        return

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "the_address":
        from castdir_etl.migrate_the_address import (
            AddressMigrationCounters,
            _run_the_address,
            build_the_address_report,
        )
        address_counters = AddressMigrationCounters()
        _run_the_address(
            run_id, db_dsn, address_counters,
            output_dir=Path(output_dir),
            page_size=page_size,
            commit_every_page=commit_every_page,
            dry_run=dry_run,
        )
        click.echo(build_the_address_report(address_counters, dry_run=dry_run))
        report_path = write_run_report(
            run_id, started_at, mode, dry_run, {"output_dir": output_dir}, address_counters,
        )
        click.echo(f"[{run_id}] Run report: {report_path}")
        return

    counters = RunCounters()
    rejects = RejectWriter(Path(rejects_path))
    _run_mongo_export(run_id, db_dsn, counters, rejects, Path(import_dir), dry_run)
    click.echo(build_export_report(counters, dry_run=dry_run))
    report_path = write_run_report(
        run_id, started_at, mode, dry_run, {"import_dir": import_dir}, counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} rejected record(s) → {rejects_path}")


def main() -> None:
    """Console entrypoint: load .env.local then .env before option parsing."""
    load_dotenv(".env.local")
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
