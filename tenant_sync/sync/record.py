"""
Source record data model for Notion pages.

A Notion page in the clients database becomes a SourceRecord whose
properties are parsed into typed variants keyed on Notion's ``type``
discriminator. Field extraction (tenant name, contact email, products and
services) works on those variants rather than on raw API dictionaries.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

# Names that identify a placeholder page rather than a real tenant
PLACEHOLDER_NAMES = frozenset({"unknown client", "untitled"})

_EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")


class InvalidRecordError(Exception):
    """Raised when a source record lacks the fields needed to sync it."""

    pass


# =============================================================================
# Property variants
# =============================================================================


@dataclass(frozen=True)
class TitleProperty:
    text: str


@dataclass(frozen=True)
class RichTextProperty:
    text: str


@dataclass(frozen=True)
class EmailProperty:
    email: str


@dataclass(frozen=True)
class SelectProperty:
    name: str


@dataclass(frozen=True)
class MultiSelectProperty:
    names: tuple[str, ...]


@dataclass(frozen=True)
class UrlProperty:
    url: str


@dataclass(frozen=True)
class UnsupportedProperty:
    """Any Notion property type the sync does not read."""

    type: str
    raw: Any = None


PropertyValue = Union[
    TitleProperty,
    RichTextProperty,
    EmailProperty,
    SelectProperty,
    MultiSelectProperty,
    UrlProperty,
    UnsupportedProperty,
]


def _plain_text(fragments: Optional[list[dict[str, Any]]]) -> str:
    """Join Notion rich text fragments into plain text."""
    if not fragments:
        return ""
    parts = []
    for fragment in fragments:
        text = fragment.get("plain_text")
        if text is None:
            text = (fragment.get("text") or {}).get("content", "")
        parts.append(text or "")
    return "".join(parts)


def parse_property(prop: dict[str, Any]) -> PropertyValue:
    """
    Parse one Notion property object into its typed variant.

    Example property objects::

        {"type": "title", "title": [{"plain_text": "Acme"}]}
        {"type": "email", "email": "ops@acme.test"}
        {"type": "multi_select", "multi_select": [{"name": "Hosting"}]}
    """
    prop_type = prop.get("type", "")

    if prop_type == "title":
        return TitleProperty(_plain_text(prop.get("title")).strip())
    if prop_type == "rich_text":
        return RichTextProperty(_plain_text(prop.get("rich_text")).strip())
    if prop_type == "email":
        return EmailProperty((prop.get("email") or "").strip())
    if prop_type == "select":
        option = prop.get("select") or {}
        return SelectProperty((option.get("name") or "").strip())
    if prop_type == "multi_select":
        options = prop.get("multi_select") or []
        return MultiSelectProperty(
            tuple(o.get("name", "").strip() for o in options if o.get("name"))
        )
    if prop_type == "url":
        return UrlProperty((prop.get("url") or "").strip())

    return UnsupportedProperty(prop_type, prop.get(prop_type))


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a Notion ISO 8601 timestamp ("2024-03-01T10:00:00.000Z")."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


# =============================================================================
# Source record
# =============================================================================


@dataclass
class SourceRecord:
    """
    One page of the Notion clients database.

    Attributes:
        id: Notion page id
        properties: Property name to parsed variant, in page order
        last_modified_at: Page last_edited_time
        parent_collection_id: Database id the page belongs to
        archived: True when the page is archived or in the trash
        url: Notion URL of the page

    Usage:
        record = SourceRecord.from_api_response(page)
        name = record.name()
    """

    id: str
    properties: dict[str, PropertyValue] = field(default_factory=dict)
    last_modified_at: Optional[datetime] = None
    parent_collection_id: Optional[str] = None
    archived: bool = False
    url: str = ""

    @classmethod
    def from_api_response(cls, page: dict[str, Any]) -> SourceRecord:
        """
        Create a SourceRecord from a Notion page object.

        Example page structure::

            {
                "object": "page",
                "id": "59833787-2cf9-4fdf-8782-e53db20768a5",
                "last_edited_time": "2024-03-01T10:00:00.000Z",
                "archived": false,
                "parent": {"type": "database_id", "database_id": "..."},
                "properties": {"Name": {"type": "title", "title": [...]}}
            }
        """
        parent = page.get("parent") or {}
        properties = {
            name: parse_property(prop)
            for name, prop in (page.get("properties") or {}).items()
            if isinstance(prop, dict)
        }
        return cls(
            id=page.get("id", ""),
            properties=properties,
            last_modified_at=parse_timestamp(page.get("last_edited_time")),
            parent_collection_id=parent.get("database_id"),
            archived=bool(page.get("archived") or page.get("in_trash")),
            url=page.get("url", "") or "",
        )

    def _of_type(self, kind: type) -> list:
        return [p for p in self.properties.values() if isinstance(p, kind)]

    def name(self) -> str:
        """
        Tenant name: the title property, else the first non-empty rich text.

        Returns an empty string when the page has no usable name.
        """
        for prop in self._of_type(TitleProperty):
            if prop.text:
                return prop.text
        for prop in self._of_type(RichTextProperty):
            if prop.text:
                return prop.text
        return ""

    def contact_email(self) -> str:
        """
        Contact email: an email property, else an address found in rich
        text, else a mailto: URL. Empty string when none is present.
        """
        for prop in self._of_type(EmailProperty):
            if prop.email:
                return prop.email
        for prop in self._of_type(RichTextProperty):
            found = _EMAIL_PATTERN.search(prop.text)
            if found:
                return found.group(0)
        for prop in self._of_type(UrlProperty):
            if prop.url.lower().startswith("mailto:"):
                return prop.url[len("mailto:") :].split("?", 1)[0]
        return ""

    def products_services(self) -> str:
        """
        Products and services: multi-select names joined with ", ", else a
        select name, else a rich text property other than the one that
        supplied the name.
        """
        for prop in self._of_type(MultiSelectProperty):
            if prop.names:
                return ", ".join(prop.names)
        for prop in self._of_type(SelectProperty):
            if prop.name:
                return prop.name
        name = self.name()
        for prop in self._of_type(RichTextProperty):
            if prop.text and prop.text != name and not _EMAIL_PATTERN.search(
                prop.text
            ):
                return prop.text
        return ""

    def require_name(self) -> str:
        """
        Return the tenant name or raise when the record has none.

        Raises:
            InvalidRecordError: If the name is missing or a placeholder
        """
        name = self.name()
        if not name or name.lower() in PLACEHOLDER_NAMES:
            raise InvalidRecordError(
                f"Record {self.id} has no usable name ({name or 'empty'})"
            )
        return name

    def properties_snapshot(self) -> dict[str, Any]:
        """Plain-value view of the supported properties, stored with the tenant."""
        snapshot: dict[str, Any] = {}
        for key, prop in self.properties.items():
            if isinstance(prop, (TitleProperty, RichTextProperty)):
                snapshot[key] = prop.text
            elif isinstance(prop, EmailProperty):
                snapshot[key] = prop.email
            elif isinstance(prop, SelectProperty):
                snapshot[key] = prop.name
            elif isinstance(prop, MultiSelectProperty):
                snapshot[key] = list(prop.names)
            elif isinstance(prop, UrlProperty):
                snapshot[key] = prop.url
        return snapshot


def blocks_to_text(blocks: list[dict[str, Any]]) -> list[str]:
    """
    Convert Notion block objects to plain text lines.

    Paragraphs, headings, list items and code keep their text; quotes are
    wrapped in double quotes. Other block types and empty blocks are
    dropped.
    """
    lines = []
    for block in blocks:
        block_type = block.get("type", "")
        content = block.get(block_type) or {}
        if block_type in (
            "paragraph",
            "heading_1",
            "heading_2",
            "heading_3",
            "bulleted_list_item",
            "numbered_list_item",
            "to_do",
            "code",
        ):
            text = _plain_text(content.get("rich_text"))
        elif block_type == "quote":
            quoted = _plain_text(content.get("rich_text"))
            text = f'"{quoted}"' if quoted else ""
        else:
            continue
        if text.strip():
            lines.append(text)
    return lines
