"""Normalization functions for the casting-directory export.

Export fields are loosely typed: helpers accept Any and return None for
absent or unusable values.  Address helpers also accept strings and decoded
JSON because the legacy columns they read were never validated.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any


# ---------------------------------------------------------------------------
# Rule 1: or_none  (export fields: absent / falsy → NULL)
# ---------------------------------------------------------------------------

def or_none(value: Any) -> Any:
    """Return value unless it is falsy ('' / 0 / False / [] / None), else None."""
    return value if value else None


# ---------------------------------------------------------------------------
# Rule 2: mongo_date
# ---------------------------------------------------------------------------

def mongo_date(value: Any) -> datetime | None:
    """Convert an extended-JSON date ({"$date": ...}) to an aware datetime.

    Accepts an ISO-8601 string, epoch milliseconds, or {"$numberLong": "..."}
    under the "$date" key.  Returns None when the value is absent or cannot
    be read.
    """
    if not isinstance(value, Mapping):
        return None
    raw = value.get("$date")
    if isinstance(raw, Mapping):
        raw = raw.get("$numberLong")
    if raw is None:
        return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
    if isinstance(raw, str):
        v = raw.strip()
        if v.lstrip("-").isdigit():
            return datetime.fromtimestamp(int(v) / 1000, tz=timezone.utc)
        if v.endswith("Z"):
            v = v[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(v)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def mongo_date_or_now(value: Any) -> datetime:
    """mongo_date() for NOT NULL timestamp columns: falls back to now (UTC)."""
    return mongo_date(value) or datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Rule 3: key-style helpers
# ---------------------------------------------------------------------------

def camel_to_snake(key: str) -> str:
    """'postalCode' → 'postal_code'."""
    return re.sub(r"[A-Z]", lambda m: "_" + m.group(0).lower(), key)


def snake_to_camel(key: str) -> str:
    """'postal_code' → 'postalCode'."""
    return re.sub(r"_([a-z])", lambda m: m.group(1).upper(), key)


# ---------------------------------------------------------------------------
# Rule 4: parse_maybe_json
# ---------------------------------------------------------------------------

def parse_maybe_json(value: Any) -> Any:
    """Decode a value that may be JSON, double-encoded JSON, or plain text.

    - None / blank string            → None
    - dict / list                    → returned unchanged
    - other non-string scalars       → None
    - string                         → decoded up to twice; when a decode
                                       yields another string it is decoded
                                       again.  If the first decode fails the
                                       trimmed raw string is returned.
    """
    if value is None:
        return None
    if isinstance(value, (Mapping, list)):
        return value
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    for _ in range(2):
        try:
            parsed = json.loads(s)
        except ValueError:
            break
        if isinstance(parsed, str):
            s = parsed
            continue
        return parsed

    return s


# ---------------------------------------------------------------------------
# Rule 5: normalize_address
# ---------------------------------------------------------------------------

ADDRESS_FIELDS = (
    "street1", "street2", "city", "state", "zip", "location", "address_type",
)

# Target field → source keys tried in order (each also tried in snake_case
# and camelCase form).
_ADDRESS_ALIASES: dict[str, tuple[str, ...]] = {
    "street1": ("street1", "street_1", "street"),
    "street2": ("street2", "street_2", "apt"),
    "city": ("city",),
    "state": ("state",),
    "zip": ("zip", "postal_code"),
    "location": ("location", "location_text", "formatted"),
    "address_type": ("address_type", "type", "addressType"),
}


def _address_field(obj: Mapping[str, Any], key: str) -> str:
    for candidate in (key, camel_to_snake(key), snake_to_camel(key)):
        v = obj.get(candidate)
        if v is not None:
            return str(v).strip()
    return ""


def normalize_address(value: Any) -> dict[str, str | None] | None:
    """Map an address-like value onto the canonical address shape.

    Strings become {"street1": <trimmed>}.  Mappings are read field by field
    through _ADDRESS_ALIASES.  Returns None when nothing meaningful is left
    (no street1, city, state or location).
    """
    if value is None:
        return None

    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        return {"street1": raw}

    if not isinstance(value, Mapping):
        return None

    out: dict[str, str | None] = {}
    for target, aliases in _ADDRESS_ALIASES.items():
        found = ""
        for alias in aliases:
            found = _address_field(value, alias)
            if found:
                break
        out[target] = found or None

    if not (out["street1"] or out["city"] or out["state"] or out["location"]):
        return None
    return out


# ---------------------------------------------------------------------------
# Rule 6: disambiguate_slugs
# ---------------------------------------------------------------------------

def disambiguate_slugs(slugs: list[str]) -> list[str]:
    """Return slugs with repeats suffixed -1, -2, ... in iteration order.

    The first occurrence of a slug is kept unchanged.
    """
    usage: dict[str, int] = {}
    out: list[str] = []
    for slug in slugs:
        count = usage.get(slug, 0)
        usage[slug] = count + 1
        out.append(slug if count == 0 else f"{slug}-{count}")
    return out
