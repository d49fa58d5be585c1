"""castdir_etl.dedup

Structural-equality deduplication of embedded address and link
sub-documents.

Offices and contacts embed their own copies of addresses; offices,
contacts, projects and past projects embed their own social links.  Both
are collapsed by exact structural equality into one
``addresses`` / ``links`` row per distinct value, and the resulting
``key → id`` maps let the entity migrators re-point each owner at the
shared row through its junction table.

Key derivation:
  - canonical JSON with sorted keys and compact separators
  - explicit nulls and absent keys stay distinct (``{"zip": null}`` is not
    ``{}``); the same function is used for collection and for lookup

Insertion:
  - unique values are inserted in first-seen order, one INSERT ... RETURNING
    per value, each inside its own SAVEPOINT
  - a unique violation leaves that key out of the map (with a warning);
    any other DB error propagates and aborts the run
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Mapping

import psycopg

from castdir_etl.normalize import or_none
from castdir_etl.shared import RunCounters, insert_returning_id

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def structural_key(doc: Mapping[str, Any]) -> str:
    """Canonical, field-order-independent serialization of a sub-document."""
    return json.dumps(doc, sort_keys=True, separators=(",", ":"), default=str)


def is_valid_address(addr: Mapping[str, Any]) -> bool:
    return bool(addr.get("city")) and bool(addr.get("state"))


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------

def collect_unique_addresses(
    owners: Iterable[Mapping[str, Any]],
    counters: RunCounters,
) -> dict[str, Mapping[str, Any]]:
    """Return {key: address} for every distinct valid embedded address.

    Addresses without city or state are skipped with a warning.
    """
    unique: dict[str, Mapping[str, Any]] = {}
    for owner in owners:
        for addr in owner.get("addresses") or []:
            if not is_valid_address(addr):
                counters.addresses_skipped_invalid += 1
                msg = f"skipping invalid address (missing city/state): {structural_key(addr)}"
                log.warning(msg)
                counters.warnings.append(msg)
                continue
            unique.setdefault(structural_key(addr), addr)
    return unique


def collect_unique_links(
    owners: Iterable[Mapping[str, Any]],
) -> dict[str, Mapping[str, Any]]:
    """Return {key: link} for every distinct embedded link."""
    unique: dict[str, Mapping[str, Any]] = {}
    for owner in owners:
        for link in owner.get("links") or []:
            unique.setdefault(structural_key(link), link)
    return unique


# ---------------------------------------------------------------------------
# Row shapes
# ---------------------------------------------------------------------------

def address_row(addr: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "street1": or_none(addr.get("street1")),
        "street2": or_none(addr.get("street2")),
        "city": addr.get("city"),
        "state": addr.get("state"),
        "zip": or_none(addr.get("zip")),
        "address_type": or_none(addr.get("addressType")),
        "location": or_none(addr.get("location")),
    }


def link_row(link: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "platform_name": link.get("platformName"),
        "profile_name": link.get("profileName"),
        "profile_link": link.get("profileLink"),
    }


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def persist_unique(
    conn: psycopg.Connection,
    table: str,
    rows_by_key: Mapping[str, Mapping[str, Any]],
    counters: RunCounters,
) -> tuple[dict[str, int], int]:
    """Insert each unique row and return ({key: id}, conflicts).

    Caller manages the enclosing transaction.
    """
    id_map: dict[str, int] = {}
    conflicts = 0
    for idx, (key, row) in enumerate(rows_by_key.items()):
        sp_name = f"{table}_{idx}"
        conn.execute(f"SAVEPOINT {sp_name}")
        try:
            id_map[key] = insert_returning_id(conn, table, row)
        except psycopg.errors.UniqueViolation as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            conflicts += 1
            msg = f"{table}: unique violation for {key}, owners stay unlinked: {exc}"
            log.warning(msg)
            counters.warnings.append(msg)
            continue
        conn.execute(f"RELEASE SAVEPOINT {sp_name}")
    return id_map, conflicts


def migrate_addresses_and_links(
    conn: psycopg.Connection,
    offices: list[dict[str, Any]],
    contacts: list[dict[str, Any]],
    projects: list[dict[str, Any]],
    past_projects: list[dict[str, Any]],
    counters: RunCounters,
) -> tuple[dict[str, int], dict[str, int]]:
    """Deduplicate and insert all embedded addresses and links.

    Addresses come from offices and contacts; links from every entity that
    embeds them.  Returns (address_map, link_map), each keyed by
    structural_key().
    """
    addresses = collect_unique_addresses([*offices, *contacts], counters)
    address_map, conflicts = persist_unique(
        conn,
        "addresses",
        {k: address_row(a) for k, a in addresses.items()},
        counters,
    )
    counters.addresses_inserted += len(address_map)
    counters.addresses_conflicted += conflicts

    links = collect_unique_links([*offices, *contacts, *projects, *past_projects])
    link_map, conflicts = persist_unique(
        conn,
        "links",
        {k: link_row(lk) for k, lk in links.items()},
        counters,
    )
    counters.links_inserted += len(link_map)
    counters.links_conflicted += conflicts

    return address_map, link_map
