"""
tenant_sync.webhook - Notion webhook processing
"""

from tenant_sync.webhook.handler import (
    EventType,
    InvalidWebhookPayloadError,
    WebhookEvent,
    WebhookHandler,
    WebhookResult,
    parse_event,
    verify_signature,
)

__all__ = [
    "EventType",
    "InvalidWebhookPayloadError",
    "WebhookEvent",
    "WebhookHandler",
    "WebhookResult",
    "parse_event",
    "verify_signature",
]
