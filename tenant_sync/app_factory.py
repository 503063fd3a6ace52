"""
Service wiring for tenant-sync.

Builds the registry, Notion source, engine, scheduler and webhook handler
from resolved settings. Every entry point (CLI commands, the web app)
gets its collaborators from here instead of module-level singletons.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from tenant_sync.api.notion_api import NotionSource
from tenant_sync.api.rate_limit import RateLimiter
from tenant_sync.config.settings import Settings
from tenant_sync.daemon.scheduler import SyncScheduler
from tenant_sync.storage.db import RegistryDatabase, RegistryError
from tenant_sync.sync.engine import SyncEngine
from tenant_sync.webhook.handler import WebhookHandler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: RegistryDatabase
    source: NotionSource
    engine: SyncEngine
    scheduler: SyncScheduler
    webhook_handler: WebhookHandler


def open_registry(db_path: str) -> RegistryDatabase:
    """Open and initialize the registry, creating its directory if needed."""
    db = RegistryDatabase(db_path)
    if not db.is_memory:
        try:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RegistryError(f"Cannot create registry directory: {e}") from e
    db.initialize()
    return db


def build_services(
    settings: Settings,
    source: Optional[NotionSource] = None,
    db: Optional[RegistryDatabase] = None,
) -> Services:
    """
    Create and connect every runtime component.

    Args:
        settings: Resolved settings
        source: Notion source to use instead of one built from the token
        db: Registry to use instead of one opened at settings.db_path

    Raises:
        ConfigError: If no source is given and the token or collection id
            is missing
    """
    if db is None:
        db = open_registry(settings.db_path)
    else:
        db.initialize()

    if source is None:
        settings.require_source()
        source = NotionSource(
            token=settings.notion_token,
            rate_limiter=RateLimiter(settings.inter_request_delay),
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
        )

    engine = SyncEngine(
        source,
        db,
        settings.collection_id,
        fuzzy_threshold=settings.fuzzy_threshold,
    )
    scheduler = SyncScheduler(
        engine,
        incremental_interval=settings.incremental_interval,
        full_interval=settings.full_interval,
        incremental_lookback=settings.incremental_lookback,
        max_staleness=settings.max_staleness,
        active_hours=(settings.active_hours_start, settings.active_hours_end),
    )
    handler = WebhookHandler(engine, source, settings.collection_id)

    if not settings.verifies_signatures:
        logger.warning(
            "NOTION_WEBHOOK_SECRET is not set: webhook signature verification "
            "is disabled and any caller can trigger syncs"
        )

    return Services(
        settings=settings,
        db=db,
        source=source,
        engine=engine,
        scheduler=scheduler,
        webhook_handler=handler,
    )
