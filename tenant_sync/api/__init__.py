"""
tenant_sync.api - Notion source access

Notion API wrapper, error classification and request rate limiting.
"""

from tenant_sync.api.notion_api import (
    NotionSource,
    RateLimitError,
    RecordNotFoundError,
    SourceError,
    TransientSourceError,
)
from tenant_sync.api.rate_limit import RateLimiter

__all__ = [
    "NotionSource",
    "RateLimiter",
    "SourceError",
    "RecordNotFoundError",
    "TransientSourceError",
    "RateLimitError",
]
