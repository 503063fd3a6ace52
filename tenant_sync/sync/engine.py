"""
Sync engine for Notion to tenant registry synchronization.

Orchestrates full and incremental pulls of the clients database, single
record upserts from webhooks, and deletion reconciliation. Bulk runs are
single-flight: a second full or incremental run requested while one is in
progress returns immediately instead of queueing.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from tenant_sync.api.notion_api import (
    RecordNotFoundError,
    SourceError,
)
from tenant_sync.storage.db import DuplicateSlugError, RegistryDatabase, RegistryError
from tenant_sync.sync.matcher import DEFAULT_FUZZY_THRESHOLD, MatchResult, TenantMatcher
from tenant_sync.sync.record import InvalidRecordError, SourceRecord
from tenant_sync.sync.tenant import (
    META_LAST_SYNCED,
    META_SOURCE_LAST_MODIFIED,
    META_SOURCE_PROPERTIES,
    META_SOURCE_RECORD_ID,
    TenantEntity,
    utcnow,
)
from tenant_sync.utils.normalization import slugify

if TYPE_CHECKING:
    from tenant_sync.api.notion_api import NotionSource

logger = logging.getLogger(__name__)

ALREADY_IN_PROGRESS_MESSAGE = "Sync already in progress"


class SyncKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class RunStatus(str, Enum):
    """Terminal state of a bulk sync run."""

    COMPLETED = "completed"
    FAILED = "failed"  # setup failed, no records processed
    CANCELLED = "cancelled"  # stopped between records
    ALREADY_IN_PROGRESS = "already_in_progress"  # rejected by single-flight


@dataclass
class SyncRun:
    """
    Result of a full or incremental sync run.

    Counters only cover this run; runs are reported, not persisted.
    """

    kind: SyncKind
    since: Optional[datetime] = None
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    status: RunStatus = RunStatus.COMPLETED
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        """True when the run completed without any per-record error."""
        return self.status == RunStatus.COMPLETED and not self.errors

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "since": self.since.isoformat() if self.since else None,
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "deleted": self.deleted,
            "errors": list(self.errors),
            "status": self.status.value,
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
        }

    def summary(self) -> str:
        """
        Generate a human-readable summary of the run.

        Returns:
            Formatted multi-line string
        """
        title = f"{self.kind.value.capitalize()} sync {self.status.value}"
        if self.since:
            title += f" (since {self.since.isoformat()})"
        lines = [
            title,
            f"  Records:  {self.total}",
            f"  Created:  {self.created}",
            f"  Updated:  {self.updated}",
            f"  Skipped:  {self.skipped}",
            f"  Deleted:  {self.deleted}",
        ]
        if self.duration_seconds is not None:
            lines.append(f"  Duration: {self.duration_seconds:.1f}s")
        if self.errors:
            lines.append(f"  Errors ({len(self.errors)}):")
            lines.extend(f"    - {error}" for error in self.errors)
        return "\n".join(lines)


@dataclass
class UpsertOutcome:
    """Result of upserting one source record."""

    entity: TenantEntity
    created: bool
    match: Optional[MatchResult] = None


class SyncEngine:
    """
    Entity resolution and synchronization engine.

    Attributes:
        source: Notion source (get_record, query_collection, get_child_content)
        db: Tenant registry
        collection_id: Notion database id of the clients collection
        matcher: Tenant matcher used for every upsert

    Usage:
        engine = SyncEngine(source, db, collection_id)
        run = engine.run_full()
        print(run.summary())

        run = engine.run_incremental(since)
        outcome = engine.upsert_one(page_id)
    """

    def __init__(
        self,
        source: "NotionSource",
        db: RegistryDatabase,
        collection_id: str,
        matcher: Optional[TenantMatcher] = None,
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the sync engine.

        Args:
            source: Notion source client
            db: Initialized tenant registry
            collection_id: Notion database id of the clients collection
            matcher: Matcher to use (built from db and threshold if omitted)
            fuzzy_threshold: Threshold for the default matcher
            clock: Returns the current UTC time
        """
        self.source = source
        self.db = db
        self.collection_id = collection_id
        self.matcher = matcher or TenantMatcher(db, threshold=fuzzy_threshold)
        self._clock = clock
        self._run_lock = threading.Lock()
        # Held from match to write of each upsert; reentrant for nested upserts
        self._write_lock = threading.RLock()
        self._cancel = threading.Event()

    @property
    def is_running(self) -> bool:
        """True while a full or incremental run holds the single-flight lock."""
        return self._run_lock.locked()

    def request_cancel(self) -> None:
        """Ask the current bulk run to stop after the record in flight."""
        if self.is_running:
            logger.info("Cancellation requested for running sync")
        self._cancel.set()

    # =========================================================================
    # Bulk runs
    # =========================================================================

    def run_full(self) -> SyncRun:
        """
        Upsert every record in the clients collection.

        Returns:
            SyncRun; status ALREADY_IN_PROGRESS when another run holds the lock
        """
        return self._run(SyncKind.FULL, None)

    def run_incremental(self, since: datetime) -> SyncRun:
        """
        Upsert records modified after since, then reconcile deletions.

        Args:
            since: Lower bound (exclusive) on the source last-edited time
        """
        return self._run(SyncKind.INCREMENTAL, since)

    def _run(self, kind: SyncKind, since: Optional[datetime]) -> SyncRun:
        if not self._run_lock.acquire(blocking=False):
            logger.info(f"{kind.value} sync requested while another sync is running")
            run = SyncRun(kind=kind, since=since, started_at=self._clock())
            run.status = RunStatus.ALREADY_IN_PROGRESS
            run.errors.append(ALREADY_IN_PROGRESS_MESSAGE)
            run.finished_at = run.started_at
            return run

        try:
            self._cancel.clear()
            run = SyncRun(kind=kind, since=since, started_at=self._clock())
            logger.info(
                f"Starting {kind.value} sync"
                + (f" of records modified after {since.isoformat()}" if since else "")
            )

            try:
                records = self.source.query_collection(
                    self.collection_id, modified_after=since
                )
            except (SourceError, RegistryError) as e:
                logger.error(f"{kind.value} sync failed to query collection: {e}")
                run.status = RunStatus.FAILED
                run.errors = [f"Failed to query collection: {e}"]
                run.finished_at = self._clock()
                return run

            run.total = len(records)
            self._process_records(run, records)

            if kind == SyncKind.INCREMENTAL and run.status != RunStatus.CANCELLED:
                self.reconcile_deletions(run, seen_ids=(r.id for r in records))

            run.finished_at = self._clock()
            log = logger.warning if run.errors else logger.info
            log(
                f"{kind.value} sync {run.status.value}: {run.total} records, "
                f"{run.created} created, {run.updated} updated, "
                f"{run.skipped} skipped, {run.deleted} deleted"
            )
            return run
        finally:
            self._run_lock.release()

    def _process_records(self, run: SyncRun, records: list[SourceRecord]) -> None:
        for index, record in enumerate(records):
            if self._cancel.is_set():
                logger.info(
                    f"Sync cancelled after {index} of {len(records)} records"
                )
                run.status = RunStatus.CANCELLED
                return

            try:
                outcome = self.upsert_record(record)
            except (SourceError, InvalidRecordError, RegistryError) as e:
                run.skipped += 1
                run.errors.append(f"{record.id}: {e}")
                logger.warning(f"Skipped record {record.id}: {e}")
                continue
            except Exception as e:
                run.skipped += 1
                run.errors.append(f"{record.id}: unexpected error: {e}")
                logger.exception(f"Unexpected error syncing record {record.id}")
                continue

            if outcome.created:
                run.created += 1
            else:
                run.updated += 1

    # =========================================================================
    # Deletion reconciliation
    # =========================================================================

    def reconcile_deletions(
        self, run: SyncRun, seen_ids: Iterable[str] = ()
    ) -> None:
        """
        Delete tenants whose source record no longer exists.

        Each linked source record id is probed at most once per pass. Only a
        confirmed not-found deletes; any other failure leaves the tenant in
        place for the next pass.

        Args:
            run: Run whose deleted counter is updated
            seen_ids: Record ids already known to exist in this pass
        """
        # record id -> True (exists), False (gone), None (unknown)
        probes: dict[str, Optional[bool]] = {rid: True for rid in seen_ids}

        try:
            linked = self.db.list_with_source_record_id()
        except RegistryError as e:
            logger.error(f"Deletion reconciliation skipped: {e}")
            run.errors.append(f"Deletion reconciliation failed: {e}")
            return

        for entity in linked:
            if self._cancel.is_set():
                run.status = RunStatus.CANCELLED
                return

            record_id = entity.source_record_id
            if record_id is None:
                continue

            if record_id not in probes:
                probes[record_id] = self._probe(record_id)

            if probes[record_id] is False:
                try:
                    self.db.delete_tenant(entity.id)
                except RegistryError as e:
                    run.errors.append(f"{entity.id}: delete failed: {e}")
                    logger.error(f"Failed to delete tenant {entity.slug}: {e}")
                    continue
                run.deleted += 1
                logger.info(
                    f"Deleted tenant {entity.slug} ({entity.id}); "
                    f"source record {record_id} no longer exists"
                )

    def _probe(self, record_id: str) -> Optional[bool]:
        try:
            self.source.get_record(record_id)
            return True
        except RecordNotFoundError:
            return False
        except SourceError as e:
            logger.warning(
                f"Could not check source record {record_id}, keeping tenant: {e}"
            )
            return None
        except Exception as e:
            logger.exception(
                f"Unexpected error checking source record {record_id}, "
                f"keeping tenant: {e}"
            )
            return None

    def delete_for_record(self, record_id: str) -> list[TenantEntity]:
        """
        Delete the tenant(s) belonging to a deleted source record.

        Looks up tenants linked to record_id. When none is linked, falls
        back to the record's last known title and looks up by slug, then by
        exact name. A tenant linked to a different source record is never
        deleted.

        Returns:
            Tenants that were deleted (empty when nothing matched)

        Raises:
            TransientSourceError: If the fallback lookup could not reach Notion
            RegistryError: If the registry could not be read or written
        """
        targets = self.db.find_by_source_record_id(record_id)

        if not targets:
            targets = self._fallback_delete_targets(record_id)

        deleted = []
        for entity in targets:
            if self.db.delete_tenant(entity.id):
                deleted.append(entity)
                logger.info(
                    f"Deleted tenant {entity.slug} ({entity.id}) for deleted "
                    f"source record {record_id}"
                )
        if not deleted:
            logger.info(f"No tenant found for deleted source record {record_id}")
        return deleted

    def _fallback_delete_targets(self, record_id: str) -> list[TenantEntity]:
        try:
            record = self.source.get_record(record_id, include_archived=True)
        except RecordNotFoundError:
            return []

        name = record.name()
        if not name:
            return []

        candidate = self.db.find_by_slug(slugify(name))
        if candidate is None:
            by_name = self.db.find_by_name(name)
            candidate = by_name[0] if by_name else None
        if candidate is None:
            return []

        linked_to = candidate.source_record_id
        if linked_to and linked_to != record_id:
            logger.warning(
                f"Not deleting tenant {candidate.slug}: linked to source record "
                f"{linked_to}, not {record_id}"
            )
            return []
        return [candidate]

    # =========================================================================
    # Upsert
    # =========================================================================

    def upsert_one(self, record_id: str) -> UpsertOutcome:
        """
        Fetch one record and create or update its tenant.

        Not gated by the single-flight lock; safe to call while a bulk run
        is in progress.

        Raises:
            RecordNotFoundError: If the record does not exist
            TransientSourceError: If Notion could not be reached
            InvalidRecordError: If the record has no usable name
            RegistryError: If the registry write failed
        """
        record = self.source.get_record(record_id)
        return self.upsert_record(record)

    def upsert_record(self, record: SourceRecord) -> UpsertOutcome:
        """Resolve an already fetched record and write its tenant."""
        name = record.require_name()
        contact_email = record.contact_email()
        page_info = self._fetch_page_info(record.id)

        with self._write_lock:
            return self._resolve_and_write(record, name, contact_email, page_info)

    def _resolve_and_write(
        self,
        record: SourceRecord,
        name: str,
        contact_email: str,
        page_info: Optional[str],
    ) -> UpsertOutcome:
        match = self.matcher.find_match(name, contact_email, record.id)
        if match is None and self.db.slug_exists(slugify(name)):
            # Another upsert of this record may have created it since the lookup
            logger.debug(f"Slug for '{name}' taken, re-matching before create")
            match = self.matcher.find_match(name, contact_email, record.id)
        if match is not None:
            entity = self._update(match.entity, record, name, contact_email, page_info)
            return UpsertOutcome(entity=entity, created=False, match=match)

        try:
            entity = self._create(record, name, contact_email, page_info)
        except DuplicateSlugError as e:
            # A concurrent upsert created the tenant first; converge on it
            logger.info(f"Slug {e.slug} taken during create, re-matching '{name}'")
            match = self.matcher.find_match(name, contact_email, record.id)
            if match is None:
                entity = self._create(record, name, contact_email, page_info)
                return UpsertOutcome(entity=entity, created=True)
            entity = self._update(match.entity, record, name, contact_email, page_info)
            return UpsertOutcome(entity=entity, created=False, match=match)

        return UpsertOutcome(entity=entity, created=True)

    def _fetch_page_info(self, record_id: str) -> Optional[str]:
        """Page body text, or None when it could not be read."""
        try:
            return self.source.get_child_content(record_id)
        except SourceError as e:
            logger.warning(f"Could not read content of record {record_id}: {e}")
            return None

    def _sync_metadata(
        self, metadata: dict[str, Any], record: SourceRecord
    ) -> dict[str, Any]:
        updated = dict(metadata)
        linked_to = updated.get(META_SOURCE_RECORD_ID)
        if not linked_to:
            updated[META_SOURCE_RECORD_ID] = record.id
        elif linked_to != record.id:
            logger.warning(
                f"Tenant matched record {record.id} but is linked to {linked_to}; "
                "keeping existing link"
            )
        if record.last_modified_at is not None:
            updated[META_SOURCE_LAST_MODIFIED] = record.last_modified_at.isoformat()
        updated[META_LAST_SYNCED] = self._clock().isoformat()
        updated[META_SOURCE_PROPERTIES] = record.properties_snapshot()
        return updated

    def _update(
        self,
        entity: TenantEntity,
        record: SourceRecord,
        name: str,
        contact_email: str,
        page_info: Optional[str],
    ) -> TenantEntity:
        if entity.name != name:
            logger.info(
                f"Tenant {entity.slug} renamed '{entity.name}' -> '{name}' "
                "(slug unchanged)"
            )
        entity.name = name
        entity.contact_email = contact_email
        entity.products_services = record.products_services()
        if page_info is not None:
            entity.page_info = page_info
        entity.metadata = self._sync_metadata(entity.metadata, record)
        entity.updated_at = self._clock()
        self.db.update_tenant(entity)
        logger.debug(f"Updated tenant {entity.slug} from record {record.id}")
        return entity

    def _create(
        self,
        record: SourceRecord,
        name: str,
        contact_email: str,
        page_info: Optional[str],
    ) -> TenantEntity:
        now = self._clock()
        entity = TenantEntity(
            name=name,
            slug=self._available_slug(slugify(name)),
            contact_email=contact_email,
            products_services=record.products_services(),
            page_info=page_info or "",
            metadata=self._sync_metadata({}, record),
            created_at=now,
            updated_at=now,
        )
        self.db.insert_tenant(entity)
        logger.info(f"Created tenant {entity.slug} ({entity.id}) for '{name}'")
        return entity

    def _available_slug(self, slug: str) -> str:
        if not self.db.slug_exists(slug):
            return slug
        suffix = 2
        while self.db.slug_exists(f"{slug}-{suffix}"):
            suffix += 1
        candidate = f"{slug}-{suffix}"
        logger.warning(
            f"Slug collision: '{slug}' belongs to an unmatched tenant; "
            f"creating as '{candidate}', manual review needed"
        )
        return candidate
