"""castdir_etl.listing

Read-side listing queries over the migrated tables.

Responsibilities:
  - Load and validate the YAML page definitions (config/listings.yml)
  - Parse raw query parameters (page, pageSize, search, sortBy, sortOrder)
    with the same lenient integer parsing browsers' query strings get
  - Build one count query and one page query per request with psycopg.sql
  - Clamp out-of-range pages / disallowed page sizes by raising
    ListingRedirect with the corrected query string
  - Contact detail (with nested addresses and links) and contact deletion

Usage:
    from pathlib import Path
    from castdir_etl.listing import load_listing_config, run_listing

    config = load_listing_config(Path("config/listings.yml"))
    result = run_listing(conn, "offices", {"search": "burbank", "page": "2"}, config)
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlencode

import psycopg
import yaml
from psycopg import sql
from psycopg.rows import dict_row

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_SORT_COLUMN = "updated_at"
DEFAULT_SORT_ORDER = "desc"

REQUIRED_PAGE_KEYS = frozenset({"table", "columns", "search_fields", "sort_columns", "default_sort"})

ADDRESS_COLUMNS = ("id", "street1", "street2", "city", "state", "zip", "address_type", "location")

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ListingConfigValidationError(ValueError):
    """Raised when the YAML listing config fails schema validation."""


class ListingRedirect(Exception):
    """Requested page or page size was corrected; location is the new query string."""

    def __init__(self, location: str) -> None:
        super().__init__(location)
        self.location = location


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

@dataclass
class AddressJunction:
    table: str
    owner_column: str


@dataclass
class ListingPageConfig:
    name: str
    table: str
    columns: list[str]
    search_fields: list[str]
    sort_columns: list[str]
    default_sort: str
    address_junction: AddressJunction | None = None


@dataclass
class ListingConfig:
    allowed_page_sizes: list[int]
    default_page_size: int
    pages: dict[str, ListingPageConfig] = field(default_factory=dict)


def load_listing_config(yaml_path: Path) -> ListingConfig:
    """Load, validate, and return the listing config.

    Raises:
        ListingConfigValidationError: If the file does not match the schema.
        FileNotFoundError: If the YAML file does not exist.
    """
    data = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    validate_listing_config(data)
    pages = {}
    for name, page in data["pages"].items():
        junction = page.get("address_junction")
        pages[name] = ListingPageConfig(
            name=name,
            table=page["table"],
            columns=list(page["columns"]),
            search_fields=list(page["search_fields"]),
            sort_columns=list(page["sort_columns"]),
            default_sort=page["default_sort"],
            address_junction=(
                AddressJunction(junction["table"], junction["owner_column"]) if junction else None
            ),
        )
    return ListingConfig(
        allowed_page_sizes=[int(s) for s in data["allowed_page_sizes"]],
        default_page_size=int(data["default_page_size"]),
        pages=pages,
    )


def _check_identifiers(where: str, names: Any) -> None:
    if not isinstance(names, list) or not names:
        raise ListingConfigValidationError(f"{where} must be a non-empty list")
    for n in names:
        if not isinstance(n, str) or not _IDENTIFIER_RE.match(n):
            raise ListingConfigValidationError(f"{where}: invalid column name {n!r}")


def validate_listing_config(data: Any) -> None:
    """Raise ListingConfigValidationError if data does not match the schema.

    Validates:
      - allowed_page_sizes is a non-empty list of positive ints
      - default_page_size is one of allowed_page_sizes
      - every page has the required keys with valid identifiers
      - default_sort is one of the page's sort_columns
    """
    if not isinstance(data, dict):
        raise ListingConfigValidationError("listing config must be a mapping")

    sizes = data.get("allowed_page_sizes")
    if not isinstance(sizes, list) or not sizes or not all(
        isinstance(s, int) and s > 0 for s in sizes
    ):
        raise ListingConfigValidationError("allowed_page_sizes must be a non-empty list of positive ints")
    if data.get("default_page_size") not in sizes:
        raise ListingConfigValidationError("default_page_size must be one of allowed_page_sizes")

    pages = data.get("pages")
    if not isinstance(pages, dict) or not pages:
        raise ListingConfigValidationError("pages must be a non-empty mapping")

    for name, page in pages.items():
        if not isinstance(page, dict):
            raise ListingConfigValidationError(f"pages.{name} must be a mapping")
        missing = REQUIRED_PAGE_KEYS - set(page)
        if missing:
            raise ListingConfigValidationError(
                f"pages.{name}: missing required keys: {sorted(missing)}"
            )
        _check_identifiers(f"pages.{name}.table", [page["table"]])
        _check_identifiers(f"pages.{name}.columns", page["columns"])
        _check_identifiers(f"pages.{name}.search_fields", page["search_fields"])
        _check_identifiers(f"pages.{name}.sort_columns", page["sort_columns"])
        if page["default_sort"] not in page["sort_columns"]:
            raise ListingConfigValidationError(
                f"pages.{name}.default_sort {page['default_sort']!r} not in sort_columns"
            )
        junction = page.get("address_junction")
        if junction is not None:
            if not isinstance(junction, dict) or {"table", "owner_column"} - set(junction):
                raise ListingConfigValidationError(
                    f"pages.{name}.address_junction needs table and owner_column"
                )
            _check_identifiers(
                f"pages.{name}.address_junction",
                [junction["table"], junction["owner_column"]],
            )


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

@dataclass
class ListingParams:
    requested_page: int
    page: int
    requested_page_size: int | None
    page_size: int
    search: str
    sort_by: str
    sort_order: str

    @property
    def ascending(self) -> bool:
        return self.sort_order == "asc"

    @property
    def search_terms(self) -> list[str]:
        return self.search.split()


def parse_int_prefix(value: Any) -> int | None:
    """Leading integer of a query-string value ('12abc' → 12), else None."""
    if value is None:
        return None
    m = _LEADING_INT_RE.match(str(value))
    return int(m.group(1)) if m else None


def parse_listing_params(
    raw: Mapping[str, Any],
    config: ListingConfig,
    page_config: ListingPageConfig,
) -> ListingParams:
    # Missing, unparseable or zero page means page 1.
    requested_page = parse_int_prefix(raw.get("page")) or 1

    if raw.get("pageSize") is None:
        requested_page_size: int | None = config.default_page_size
    else:
        requested_page_size = parse_int_prefix(raw.get("pageSize"))
    page_size = (
        requested_page_size
        if requested_page_size in config.allowed_page_sizes
        else config.default_page_size
    )

    sort_by = raw.get("sortBy") or page_config.default_sort
    if sort_by not in page_config.sort_columns:
        sort_by = page_config.default_sort
    sort_order = "asc" if raw.get("sortOrder") == "asc" else DEFAULT_SORT_ORDER

    return ListingParams(
        requested_page=requested_page,
        page=max(1, requested_page),
        requested_page_size=requested_page_size,
        page_size=page_size,
        search=(raw.get("search") or "").strip().lower(),
        sort_by=sort_by,
        sort_order=sort_order,
    )


def build_query_string(
    page: int,
    page_size: int,
    default_page_size: int,
    search: str = "",
    sort_by: str = DEFAULT_SORT_COLUMN,
    sort_order: str = DEFAULT_SORT_ORDER,
) -> str:
    """'?search=..&page=..' with every parameter left at its default omitted.

    page is always present.
    """
    params: list[tuple[str, str]] = []
    if search:
        params.append(("search", search))
    params.append(("page", str(page)))
    if page_size != default_page_size:
        params.append(("pageSize", str(page_size)))
    if sort_by != DEFAULT_SORT_COLUMN:
        params.append(("sortBy", sort_by))
    if sort_order != DEFAULT_SORT_ORDER:
        params.append(("sortOrder", sort_order))
    return "?" + urlencode(params)


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------

@dataclass
class ListingQuery:
    count: sql.Composed
    rows: sql.Composed
    args: list[Any]


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_listing_query(page_config: ListingPageConfig, params: ListingParams) -> ListingQuery:
    """Count + page queries for one request.

    Every search term must match at least one search field.  The page query
    ends in LIMIT %s OFFSET %s; callers append those two values to args.
    """
    table = sql.Identifier(page_config.table)
    clauses: list[sql.Composable] = []
    args: list[Any] = []
    for term in params.search_terms:
        pattern = f"%{escape_like(term)}%"
        clauses.append(
            sql.SQL("({})").format(
                sql.SQL(" OR ").join(
                    sql.SQL("{} ILIKE %s").format(sql.Identifier(f))
                    for f in page_config.search_fields
                )
            )
        )
        args.extend([pattern] * len(page_config.search_fields))

    where = sql.SQL("")
    if clauses:
        where = sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses)

    direction = sql.SQL("ASC") if params.ascending else sql.SQL("DESC")
    count = sql.SQL("SELECT count(*) FROM {}").format(table) + where
    rows = (
        sql.SQL("SELECT {} FROM {}").format(
            sql.SQL(", ").join(sql.Identifier(c) for c in page_config.columns),
            table,
        )
        + where
        + sql.SQL(" ORDER BY {} {}, {} ASC LIMIT %s OFFSET %s").format(
            sql.Identifier(params.sort_by), direction, sql.Identifier("id"),
        )
    )
    return ListingQuery(count=count, rows=rows, args=args)


# ---------------------------------------------------------------------------
# Address formatting
# ---------------------------------------------------------------------------

def select_best_address(addresses: list[Mapping[str, Any]]) -> Mapping[str, Any] | None:
    """Prefer an address of type "Office", else the first one."""
    if not addresses:
        return None
    for addr in addresses:
        if addr.get("address_type") == "Office":
            return addr
    return addresses[0]


def format_address(address: Mapping[str, Any] | None) -> str:
    """Render as "street1 street2, city state zip", leaving out empty parts."""
    if not address:
        return ""
    street = " ".join(address[k] for k in ("street1", "street2") if address.get(k))
    locality = " ".join(address[k] for k in ("city", "state", "zip") if address.get(k))
    return ", ".join(part for part in (street, locality) if part)


def _linked_addresses(
    conn: psycopg.Connection,
    junction_table: str,
    owner_column: str,
    owner_ids: list[str],
) -> dict[str, list[dict[str, Any]]]:
    """{owner_id: [address, ...]} in junction insertion order."""
    if not owner_ids:
        return {}
    query = sql.SQL(
        "SELECT j.{owner} AS owner_id, {cols} FROM {junction} j "
        "JOIN addresses a ON a.id = j.address_id "
        "WHERE j.{owner} = ANY(%s) ORDER BY j.id"
    ).format(
        owner=sql.Identifier(owner_column),
        cols=sql.SQL(", ").join(sql.SQL("a.{}").format(sql.Identifier(c)) for c in ADDRESS_COLUMNS),
        junction=sql.Identifier(junction_table),
    )
    out: dict[str, list[dict[str, Any]]] = {}
    with conn.cursor(row_factory=dict_row) as cur:
        for row in cur.execute(query, (owner_ids,)).fetchall():
            owner_id = row.pop("owner_id")
            out.setdefault(owner_id, []).append(row)
    return out


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

@dataclass
class ListingResult:
    rows: list[dict[str, Any]]
    total_count: int
    page_size: int
    current_page: int
    page_count: int
    search: str
    sort_by: str
    sort_order: str

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def run_listing(
    conn: psycopg.Connection,
    page_name: str,
    raw_params: Mapping[str, Any],
    config: ListingConfig,
) -> ListingResult:
    """Run one listing page request.

    Raises:
        ListingRedirect: the requested page or page size had to be corrected.
        KeyError: page_name is not configured.
    """
    page_config = config.pages[page_name]
    params = parse_listing_params(raw_params, config, page_config)
    query = build_listing_query(page_config, params)

    total_count = conn.execute(query.count, query.args).fetchone()[0]
    page_count = math.ceil(total_count / params.page_size)
    clamped_page = max(1, min(params.page, page_count or 1))

    if clamped_page != params.requested_page or params.page_size != params.requested_page_size:
        raise ListingRedirect(
            build_query_string(
                clamped_page,
                params.page_size,
                config.default_page_size,
                search=params.search,
                sort_by=params.sort_by,
                sort_order=params.sort_order,
            )
        )

    offset = (clamped_page - 1) * params.page_size
    with conn.cursor(row_factory=dict_row) as cur:
        rows = cur.execute(query.rows, [*query.args, params.page_size, offset]).fetchall()

    junction = page_config.address_junction
    if junction is not None:
        linked = _linked_addresses(conn, junction.table, junction.owner_column, [r["id"] for r in rows])
        for row in rows:
            row["formatted_address"] = format_address(select_best_address(linked.get(row["id"], [])))

    return ListingResult(
        rows=rows,
        total_count=total_count,
        page_size=params.page_size,
        current_page=clamped_page,
        page_count=page_count,
        search=params.search,
        sort_by=params.sort_by,
        sort_order=params.sort_order,
    )


# ---------------------------------------------------------------------------
# Contact detail + delete
# ---------------------------------------------------------------------------

CONTACT_DETAIL_COLUMNS = (
    "id", "display_name", "first_name", "last_name", "title", "gender",
    "html_body", "created_at", "updated_at",
)

# Junction tables referencing contacts.id, cleared before the contact row.
CONTACT_JUNCTIONS = (
    "contact_addresses",
    "contact_links",
    "office_contacts",
    "contact_projects",
    "contact_past_projects",
)


def load_contact_detail(conn: psycopg.Connection, contact_id: str) -> dict[str, Any] | None:
    """Contact row with nested addresses and links, or None if absent."""
    with conn.cursor(row_factory=dict_row) as cur:
        contact = cur.execute(
            sql.SQL("SELECT {} FROM contacts WHERE id = %s").format(
                sql.SQL(", ").join(sql.Identifier(c) for c in CONTACT_DETAIL_COLUMNS)
            ),
            (contact_id,),
        ).fetchone()
        if contact is None:
            return None
        contact["addresses"] = cur.execute(
            """
            SELECT a.id, a.street1, a.street2, a.city, a.state, a.zip, a.address_type, a.location
            FROM contact_addresses ca
            JOIN addresses a ON a.id = ca.address_id
            WHERE ca.contact_id = %s
            ORDER BY ca.id
            """,
            (contact_id,),
        ).fetchall()
        contact["links"] = cur.execute(
            """
            SELECT l.id, l.platform_name, l.profile_name, l.profile_link
            FROM contact_links cl
            JOIN links l ON l.id = cl.link_id
            WHERE cl.contact_id = %s
            ORDER BY cl.id
            """,
            (contact_id,),
        ).fetchall()
    return contact


def delete_contact(conn: psycopg.Connection, contact_id: str) -> bool:
    """Delete a contact and its junction rows.  Caller commits.

    Returns True when the contact existed.
    """
    for table in CONTACT_JUNCTIONS:
        conn.execute(
            sql.SQL("DELETE FROM {} WHERE contact_id = %s").format(sql.Identifier(table)),
            (contact_id,),
        )
    cur = conn.execute("DELETE FROM contacts WHERE id = %s", (contact_id,))
    return cur.rowcount > 0
