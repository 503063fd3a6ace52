"""
Tenant entity model for the registry.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# Keys used inside TenantEntity.metadata
META_SOURCE_RECORD_ID = "sourceRecordId"
META_SOURCE_LAST_MODIFIED = "sourceLastModifiedAt"
META_LAST_SYNCED = "lastSyncedAt"
META_SOURCE_PROPERTIES = "sourceProperties"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TenantEntity:
    """
    Canonical tenant row.

    Attributes:
        id: Opaque unique id, generated once
        name: Display name mirrored from the source record
        slug: URL-safe key; assigned at creation and never changed
        contact_email: Primary contact address, may be empty
        products_services: Free text of products or services
        page_info: Plain text extracted from the source page body
        metadata: Sync bookkeeping (see META_* keys)
        created_at: Creation time (UTC)
        updated_at: Last update time (UTC)
    """

    name: str
    slug: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    contact_email: str = ""
    products_services: str = ""
    page_info: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def source_record_id(self) -> Optional[str]:
        """Id of the Notion page this tenant is linked to, if any."""
        return self.metadata.get(META_SOURCE_RECORD_ID) or None

    @classmethod
    def from_row(cls, row: Any) -> TenantEntity:
        """Build an entity from a sqlite3.Row of the tenants table."""
        raw_metadata = row["metadata"]
        metadata = json.loads(raw_metadata) if raw_metadata else {}
        return cls(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            contact_email=row["contact_email"] or "",
            products_services=row["products_services"] or "",
            page_info=row["page_info"] or "",
            metadata=metadata,
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "contact_email": self.contact_email,
            "products_services": self.products_services,
            "page_info": self.page_info,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
