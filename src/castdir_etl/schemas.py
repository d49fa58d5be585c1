"""castdir_etl.schemas

pydantic models mirroring the source document shapes of the MongoDB export,
plus the validate_export pass that checks every record against them.

The bulk import does not depend on these models: the export is loosely
typed, and the migrators read raw dicts.  Unknown keys are allowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import AnyUrl, BaseModel, ConfigDict, EmailStr, Field, ValidationError
from pydantic.alias_generators import to_camel


class _SourceModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)


# ---------------------------------------------------------------------------
# Shared sub-documents
# ---------------------------------------------------------------------------

class MongoDate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date: datetime = Field(alias="$date")


class Address(_SourceModel):
    street1: Optional[str] = None
    street2: Optional[str] = None
    city: str
    state: str
    zip: Optional[str] = None
    address_type: Optional[str] = None
    location: Optional[str] = None


class Link(_SourceModel):
    platform_name: str
    profile_name: str
    profile_link: AnyUrl


class OfficeRef(_SourceModel):
    office_id: str
    office_location: Optional[str] = None
    office_name: Optional[str] = None


class ContactRef(_SourceModel):
    contact_id: str
    contact_name: str
    contact_title: Optional[str] = None


class ProjectRef(_SourceModel):
    project_id: str
    project_title: Optional[str] = None


class ProjectWithRole(ProjectRef):
    title_for_project: Optional[str] = None


class Phone(_SourceModel):
    phone_number_as_input: str
    phone_number_type: str
    phone_number: str
    national_format: str
    country_code: Optional[str] = None


class Email(_SourceModel):
    address: EmailStr
    verified: bool
    primary: Optional[bool] = None


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

class User(_SourceModel):
    id: str = Field(alias="_id")
    username: Optional[str] = None
    display_name: str
    slug: str
    email: Optional[EmailStr] = None
    emails: list[Email] = Field(default_factory=list)
    email_hash: Optional[str] = None
    bio: Optional[str] = None
    html_bio: Optional[str] = None
    website: Optional[AnyUrl] = None
    twitter_username: Optional[str] = None
    services: Optional[dict[str, Any]] = None
    is_admin: bool = False
    locale: str = "en"
    groups: list[str] = Field(default_factory=list)
    # Stored with snake_case keys in the source.
    notifications_comments: Optional[bool] = Field(default=None, alias="notifications_comments")
    notifications_posts: Optional[bool] = Field(default=None, alias="notifications_posts")
    notifications_replies: Optional[bool] = Field(default=None, alias="notifications_replies")
    notifications_users: Optional[bool] = Field(default=None, alias="notifications_users")
    created_at: MongoDate
    updated_at: Optional[MongoDate] = None


class Office(_SourceModel):
    id: str = Field(alias="_id")
    display_name: str
    slug: str
    user_id: str
    created_at: MongoDate
    updated_at: Optional[MongoDate] = None
    addresses: list[Address] = Field(default_factory=list)
    projects: list[ProjectRef] = Field(default_factory=list)
    past_projects: list[ProjectRef] = Field(default_factory=list)
    contacts: list[ContactRef] = Field(default_factory=list)
    phones: list[Phone] = Field(default_factory=list)
    links: list[Link] = Field(default_factory=list)
    body: Optional[str] = None
    html_body: Optional[str] = None


class Contact(_SourceModel):
    id: str = Field(alias="_id")
    display_name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    title: Optional[str] = None
    gender: Optional[str] = None
    slug: str
    user_id: str
    created_at: MongoDate
    updated_at: Optional[MongoDate] = None
    offices: list[OfficeRef] = Field(default_factory=list)
    projects: list[ProjectWithRole] = Field(default_factory=list)
    past_projects: list[ProjectWithRole] = Field(default_factory=list)
    links: list[Link] = Field(default_factory=list)
    addresses: list[Address] = Field(default_factory=list)
    the_address: Optional[Address] = None
    address_string: Optional[str] = None
    body: Optional[str] = None
    html_body: Optional[str] = None


class Project(_SourceModel):
    id: str = Field(alias="_id")
    project_title: str
    slug: str
    user_id: str
    created_at: MongoDate
    updated_at: Optional[MongoDate] = None
    project_type: Optional[str] = None
    union: Optional[str] = None
    network: Optional[str] = None
    status: Optional[str] = None
    platform_type: Optional[str] = None
    website: Optional[AnyUrl] = None
    season: Optional[str] = None
    order: Optional[str] = None
    renewed: Optional[bool] = None
    shooting_location: Optional[str] = None
    summary: Optional[str] = None
    html_summary: Optional[str] = None
    notes: Optional[str] = None
    html_notes: Optional[str] = None
    sort_title: Optional[str] = None
    offices: list[OfficeRef] = Field(default_factory=list)
    contacts: list[ContactRef] = Field(default_factory=list)
    links: list[Link] = Field(default_factory=list)


class PastProject(Project):
    casting_company: Optional[str] = None


class Comment(_SourceModel):
    id: str = Field(alias="_id")
    body: str
    html_body: Optional[str] = None
    collection_name: Literal["Projects", "Offices", "Contacts", "PastProjects"]
    object_id: str
    user_id: str
    created_at: MongoDate
    posted_at: Optional[MongoDate] = None
    parent_comment_id: Optional[str] = None
    top_level_comment_id: Optional[str] = None


COLLECTION_MODELS: dict[str, type[BaseModel]] = {
    "users": User,
    "offices": Office,
    "contacts": Contact,
    "projects": Project,
    "past_projects": PastProject,
    "comments": Comment,
}


# ---------------------------------------------------------------------------
# validate_export
# ---------------------------------------------------------------------------

MAX_ISSUES_PER_COLLECTION = 10


@dataclass
class CollectionValidation:
    total: int = 0
    invalid: int = 0
    issues: list[str] = field(default_factory=list)


@dataclass
class ExportValidationResults:
    collections: dict[str, CollectionValidation] = field(default_factory=dict)

    @property
    def invalid(self) -> int:
        return sum(c.invalid for c in self.collections.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            name: {"total": c.total, "invalid": c.invalid, "issues": c.issues}
            for name, c in self.collections.items()
        }


def _format_error(record: Any, exc: ValidationError) -> str:
    record_id = record.get("_id") if isinstance(record, dict) else None
    first = exc.errors()[0]
    loc = ".".join(str(part) for part in first["loc"]) or "<root>"
    extra = f" (+{exc.error_count() - 1} more)" if exc.error_count() > 1 else ""
    return f"{record_id}: {loc}: {first['msg']}{extra}"


def validate_records(model: type[BaseModel], records: list[Any]) -> CollectionValidation:
    """Validate each record; keep the first few issue messages."""
    result = CollectionValidation(total=len(records))
    for record in records:
        try:
            model.model_validate(record)
        except ValidationError as exc:
            result.invalid += 1
            if len(result.issues) < MAX_ISSUES_PER_COLLECTION:
                result.issues.append(_format_error(record, exc))
    return result


def validate_export(export: dict[str, list[Any]]) -> ExportValidationResults:
    results = ExportValidationResults()
    for collection, model in COLLECTION_MODELS.items():
        results.collections[collection] = validate_records(model, export.get(collection, []))
    return results


def build_validation_report(results: ExportValidationResults) -> str:
    lines = [
        "=" * 60,
        "Export Validation Report",
        "=" * 60,
    ]
    for name, c in results.collections.items():
        lines.append(f"  {name:<15} {c.total - c.invalid} valid / {c.total} ({c.invalid} invalid)")
        for issue in c.issues:
            lines.append(f"    - {issue}")
    lines.append("=" * 60)
    return "\n".join(lines)
