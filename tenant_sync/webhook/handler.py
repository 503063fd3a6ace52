"""
Notion webhook event handling.

Validates signatures, answers verification handshakes, extracts the page
and database ids from each event type, filters out events from other
databases and dispatches the rest to the sync engine.

Notion puts the page id in different places depending on the event:
page.created and page.updated carry a ``page`` object, while
page.content_updated, page.properties_updated and page.deleted carry an
``entity`` reference with the parent under ``data``.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from tenant_sync.api.notion_api import RecordNotFoundError, SourceError
from tenant_sync.storage.db import RegistryError
from tenant_sync.sync.record import InvalidRecordError

if TYPE_CHECKING:
    from tenant_sync.api.notion_api import NotionSource
    from tenant_sync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


class InvalidWebhookPayloadError(Exception):
    """Raised when a webhook event lacks the data needed to process it."""

    pass


class EventType(str, Enum):
    CREATED = "page.created"
    UPDATED = "page.updated"
    CONTENT_UPDATED = "page.content_updated"
    PROPERTIES_UPDATED = "page.properties_updated"
    DELETED = "page.deleted"
    PING = "ping"
    VERIFICATION = "verification"
    UNKNOWN = "unknown"

    @classmethod
    def from_payload_type(cls, value: Optional[str]) -> "EventType":
        for member in cls:
            if member.value == value:
                return member
        return cls.UNKNOWN


UPSERT_EVENTS = frozenset(
    {
        EventType.CREATED,
        EventType.UPDATED,
        EventType.CONTENT_UPDATED,
        EventType.PROPERTIES_UPDATED,
    }
)


@dataclass
class WebhookEvent:
    type: EventType
    raw_type: Optional[str]
    record_id: Optional[str] = None
    collection_id: Optional[str] = None
    challenge: Optional[str] = None


@dataclass
class WebhookResult:
    """
    Outcome of handling one webhook delivery.

    Attributes:
        success: False when the event could not be processed
        message: Human-readable outcome
        action: "handshake", "ignored", "upserted", "deleted" or "failed"
        challenge: Verification token to echo back, for handshakes
    """

    success: bool
    message: str
    action: str = "ignored"
    challenge: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        if self.challenge is not None:
            return {"challenge": self.challenge}
        body: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "action": self.action,
        }
        body.update(self.details)
        return body


def normalize_notion_id(value: Optional[str]) -> str:
    """Notion ids appear with and without hyphens; compare them bare."""
    return (value or "").replace("-", "").lower()


def compute_signature(secret: str, body: bytes, timestamp: Optional[str] = None) -> str:
    """Hex HMAC-SHA256 of the body, prefixed with the timestamp when given."""
    message = f"{timestamp}.".encode() + body if timestamp else body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    body: bytes,
    signature: Optional[str],
    timestamp: Optional[str] = None,
) -> bool:
    """
    Check an X-Notion-Signature header value.

    Accepts the bare hex digest or one prefixed with "sha256=". The
    comparison is constant time.
    """
    if not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX) :]
    expected = compute_signature(secret, body, timestamp)
    return hmac.compare_digest(provided.lower(), expected)


def parse_event(payload: dict[str, Any]) -> WebhookEvent:
    """
    Classify a webhook payload and extract its ids.

    Raises:
        InvalidWebhookPayloadError: If the payload is not an object or a
            page event carries no page id
    """
    if not isinstance(payload, dict):
        raise InvalidWebhookPayloadError("Webhook payload must be a JSON object")

    raw_type = payload.get("type")
    challenge = payload.get("challenge") or payload.get("verification_token")
    if raw_type == EventType.PING.value:
        return WebhookEvent(EventType.PING, raw_type, challenge=challenge)
    if challenge:
        return WebhookEvent(EventType.VERIFICATION, raw_type, challenge=challenge)

    event_type = EventType.from_payload_type(raw_type)
    if event_type == EventType.UNKNOWN:
        return WebhookEvent(event_type, raw_type)

    page = payload.get("page") or {}
    entity = payload.get("entity") or {}
    data = payload.get("data") or {}
    data_parent = data.get("parent") or {}

    if event_type in (EventType.CREATED, EventType.UPDATED):
        record_id = page.get("id") or entity.get("id")
        collection_id = (page.get("parent") or {}).get("database_id") or data_parent.get(
            "id"
        )
    else:
        record_id = entity.get("id")
        collection_id = data_parent.get("id")

    if not record_id:
        raise InvalidWebhookPayloadError(
            f"No page id found in {raw_type} webhook "
            f"(keys: {', '.join(sorted(payload.keys()))})"
        )

    return WebhookEvent(event_type, raw_type, record_id, collection_id)


class WebhookHandler:
    """
    Dispatch Notion webhook events to the sync engine.

    Usage:
        handler = WebhookHandler(engine, source, collection_id)
        result = handler.handle(payload)
    """

    def __init__(
        self,
        engine: "SyncEngine",
        source: "NotionSource",
        collection_id: str,
    ):
        self.engine = engine
        self.source = source
        self.collection_id = collection_id

    def handle(self, payload: dict[str, Any]) -> WebhookResult:
        """
        Process one webhook payload.

        Expected failures (bad payload, unreachable source, unusable record,
        registry write errors) come back as a result with success=False so
        the endpoint can still answer 2xx. Unexpected exceptions propagate.
        """
        try:
            event = parse_event(payload)
        except InvalidWebhookPayloadError as e:
            logger.error(f"Invalid webhook payload: {e}")
            return WebhookResult(False, str(e), action="failed")

        if event.type in (EventType.PING, EventType.VERIFICATION):
            logger.info(f"Webhook handshake received (type={event.raw_type})")
            return WebhookResult(
                True,
                "Webhook endpoint verified",
                action="handshake",
                challenge=event.challenge,
            )

        if event.type == EventType.UNKNOWN:
            logger.info(f"Ignoring unsupported webhook event type {event.raw_type}")
            return WebhookResult(True, f"Event type {event.raw_type} ignored")

        logger.info(f"Webhook {event.raw_type} for page {event.record_id}")

        if not self._from_clients_collection(event):
            return WebhookResult(
                True,
                f"Webhook ignored: page not from clients database "
                f"({event.collection_id})",
            )

        if event.type == EventType.DELETED:
            return self._handle_delete(event.record_id)
        return self._handle_upsert(event.record_id)

    def _from_clients_collection(self, event: WebhookEvent) -> bool:
        collection_id = event.collection_id
        if not collection_id and event.type != EventType.DELETED:
            try:
                record = self.source.get_record(event.record_id, include_archived=True)
                collection_id = record.parent_collection_id
            except SourceError as e:
                logger.warning(
                    f"Could not resolve database of page {event.record_id}, "
                    f"processing anyway: {e}"
                )
                return True

        if not collection_id:
            return True

        if normalize_notion_id(collection_id) != normalize_notion_id(self.collection_id):
            logger.info(
                f"Webhook ignored: page {event.record_id} belongs to database "
                f"{collection_id}, expected {self.collection_id}"
            )
            return False
        return True

    def _handle_upsert(self, record_id: str) -> WebhookResult:
        try:
            outcome = self.engine.upsert_one(record_id)
        except RecordNotFoundError:
            logger.info(f"Page {record_id} no longer exists, removing its tenant")
            return self._handle_delete(record_id)
        except (SourceError, InvalidRecordError, RegistryError) as e:
            logger.error(f"Webhook upsert of {record_id} failed: {e}")
            return WebhookResult(False, f"Failed to sync page {record_id}: {e}", "failed")

        verb = "Created" if outcome.created else "Updated"
        return WebhookResult(
            True,
            f"{verb} tenant {outcome.entity.slug}",
            action="upserted",
            details={"tenant_id": outcome.entity.id, "created": outcome.created},
        )

    def _handle_delete(self, record_id: str) -> WebhookResult:
        try:
            deleted = self.engine.delete_for_record(record_id)
        except (SourceError, RegistryError) as e:
            logger.error(f"Webhook delete of {record_id} failed: {e}")
            return WebhookResult(False, f"Failed to delete page {record_id}: {e}", "failed")

        if not deleted:
            return WebhookResult(True, f"No tenant found for page {record_id}")
        return WebhookResult(
            True,
            f"Deleted {len(deleted)} tenant(s) for page {record_id}",
            action="deleted",
            details={"tenant_ids": [t.id for t in deleted]},
        )
