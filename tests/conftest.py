"""
Shared fixtures for tenant_sync tests.

Provides an in-memory registry, a scriptable fake Notion source, a ticking
clock and a wired SyncEngine.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from tenant_sync.api.notion_api import RecordNotFoundError
from tenant_sync.storage.db import RegistryDatabase
from tenant_sync.sync.engine import SyncEngine
from tenant_sync.sync.record import SourceRecord

COLLECTION_ID = "20f9a8ee-e622-805e-a2ec-d18f3d424818"
BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_page(
    page_id: str,
    name: str,
    email: Optional[str] = None,
    products: Optional[list[str]] = None,
    edited: datetime = BASE_TIME,
    database_id: str = COLLECTION_ID,
    archived: bool = False,
) -> dict[str, Any]:
    """Build a Notion page object as returned by pages.retrieve."""
    properties: dict[str, Any] = {
        "Name": {
            "id": "title",
            "type": "title",
            "title": [{"type": "text", "plain_text": name}],
        }
    }
    if email is not None:
        properties["Email"] = {"id": "em", "type": "email", "email": email}
    if products is not None:
        properties["Services"] = {
            "id": "sv",
            "type": "multi_select",
            "multi_select": [{"name": p} for p in products],
        }
    return {
        "object": "page",
        "id": page_id,
        "last_edited_time": edited.isoformat().replace("+00:00", "Z"),
        "archived": archived,
        "in_trash": False,
        "parent": {"type": "database_id", "database_id": database_id},
        "url": f"https://www.notion.so/{page_id.replace('-', '')}",
        "properties": properties,
    }


class FakeSource:
    """
    In-memory stand-in for NotionSource.

    Pages are stored as SourceRecords; errors can be scripted per record
    for get_record and get_child_content, or for the collection query.
    """

    def __init__(self):
        self.records: dict[str, SourceRecord] = {}
        self.content: dict[str, str] = {}
        self.record_errors: dict[str, Exception] = {}
        self.content_errors: dict[str, Exception] = {}
        self.query_error: Optional[Exception] = None
        self.get_record_calls: list[str] = []
        self.query_calls: list[Optional[datetime]] = []
        self.on_upsert_fetch = None

    def add(self, page_id: str, name: str, **kwargs: Any) -> SourceRecord:
        record = SourceRecord.from_api_response(make_page(page_id, name, **kwargs))
        self.records[page_id] = record
        return record

    def remove(self, page_id: str) -> None:
        self.records.pop(page_id, None)

    def get_record(self, record_id: str, include_archived: bool = False) -> SourceRecord:
        self.get_record_calls.append(record_id)
        if record_id in self.record_errors:
            raise self.record_errors[record_id]
        record = self.records.get(record_id)
        if record is None or (record.archived and not include_archived):
            raise RecordNotFoundError(record_id)
        return record

    def query_collection(
        self, collection_id: str, modified_after: Optional[datetime] = None
    ) -> list[SourceRecord]:
        self.query_calls.append(modified_after)
        if self.query_error is not None:
            raise self.query_error
        return [
            r
            for r in self.records.values()
            if not r.archived
            and (
                modified_after is None
                or (r.last_modified_at is not None and r.last_modified_at > modified_after)
            )
        ]

    def get_child_content(self, record_id: str) -> str:
        if record_id in self.content_errors:
            raise self.content_errors[record_id]
        return self.content.get(record_id, "")


class TickingClock:
    """Returns a time one second later on every call."""

    def __init__(self, start: datetime = BASE_TIME):
        self.current = start

    def __call__(self) -> datetime:
        self.current = self.current + timedelta(seconds=1)
        return self.current


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def db():
    """Create an initialized in-memory registry."""
    database = RegistryDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def engine(source, db, clock):
    return SyncEngine(source, db, COLLECTION_ID, clock=clock)


@pytest.fixture
def page_factory():
    return make_page


@pytest.fixture
def collection_id():
    return COLLECTION_ID


@pytest.fixture
def base_time():
    return BASE_TIME
