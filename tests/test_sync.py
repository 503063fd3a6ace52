"""
Tests for the sync engine.

Runs the engine against an in-memory registry and a fake Notion source
(see conftest.py).
"""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from tenant_sync.api.notion_api import RecordNotFoundError, TransientSourceError
from tenant_sync.sync.engine import (
    ALREADY_IN_PROGRESS_MESSAGE,
    RunStatus,
    SyncKind,
    SyncRun,
)
from tenant_sync.sync.matcher import MatchStrategy
from tenant_sync.sync.record import InvalidRecordError
from tenant_sync.sync.tenant import (
    META_LAST_SYNCED,
    META_SOURCE_LAST_MODIFIED,
    META_SOURCE_PROPERTIES,
    META_SOURCE_RECORD_ID,
    TenantEntity,
)


def only(db):
    tenants = db.list_tenants()
    assert len(tenants) == 1
    return tenants[0]


class TestSyncRun:
    """Tests for the SyncRun result object."""

    def test_success_requires_completed_without_errors(self):
        assert SyncRun(kind=SyncKind.FULL).success is True
        assert SyncRun(kind=SyncKind.FULL, errors=["x"]).success is False
        assert SyncRun(kind=SyncKind.FULL, status=RunStatus.CANCELLED).success is False

    def test_summary_lists_counters_and_errors(self):
        run = SyncRun(kind=SyncKind.INCREMENTAL, total=3, created=1, errors=["p1: bad"])
        summary = run.summary()
        assert summary.startswith("Incremental sync completed")
        assert "Created:  1" in summary
        assert "p1: bad" in summary

    def test_to_dict(self, base_time):
        run = SyncRun(kind=SyncKind.FULL, started_at=base_time)
        run.finished_at = base_time + timedelta(seconds=4)
        data = run.to_dict()
        assert data["kind"] == "full"
        assert data["status"] == "completed"
        assert data["duration_seconds"] == 4.0
        assert data["since"] is None


class TestUpsert:
    """Tests for creating and updating tenants from records."""

    def test_creates_tenant(self, engine, source, db):
        source.add("p1", "Acme Corp", email="ops@acme.test", products=["Hosting", "Support"])
        source.content["p1"] = "Key account"

        outcome = engine.upsert_one("p1")

        assert outcome.created is True
        entity = only(db)
        assert entity.slug == "acme-corp"
        assert entity.name == "Acme Corp"
        assert entity.contact_email == "ops@acme.test"
        assert entity.products_services == "Hosting, Support"
        assert entity.page_info == "Key account"
        assert entity.source_record_id == "p1"

    def test_create_writes_sync_metadata(self, engine, source, db, base_time):
        source.add("p1", "Acme Corp", email="ops@acme.test")
        engine.upsert_one("p1")

        metadata = only(db).metadata
        assert metadata[META_SOURCE_RECORD_ID] == "p1"
        assert metadata[META_SOURCE_LAST_MODIFIED] == base_time.isoformat()
        assert META_LAST_SYNCED in metadata
        assert metadata[META_SOURCE_PROPERTIES] == {
            "Name": "Acme Corp",
            "Email": "ops@acme.test",
        }

    def test_upsert_is_idempotent(self, engine, source, db):
        source.add("p1", "Acme Corp")
        first = engine.upsert_one("p1")
        second = engine.upsert_one("p1")

        assert second.created is False
        assert second.match.strategy == MatchStrategy.DIRECT_REFERENCE
        assert second.entity.id == first.entity.id
        assert db.get_tenant_count() == 1

    def test_rename_keeps_slug_and_id(self, engine, source, db):
        """A renamed page updates the name but never the slug."""
        source.add("p1", "Acme Corp")
        created = engine.upsert_one("p1").entity

        source.add("p1", "Acme Corporation International")
        outcome = engine.upsert_one("p1")

        entity = only(db)
        assert outcome.created is False
        assert entity.id == created.id
        assert entity.slug == "acme-corp"
        assert entity.name == "Acme Corporation International"

    def test_links_existing_unlinked_tenant(self, engine, db, source):
        legacy = db.insert_tenant(TenantEntity(name="Globex", slug="globex"))
        source.add("p7", "Globex")

        outcome = engine.upsert_one("p7")

        assert outcome.match.strategy == MatchStrategy.EXACT_NAME
        assert outcome.entity.id == legacy.id
        assert db.find_by_source_record_id("p7")[0].id == legacy.id

    def test_existing_link_not_overwritten(self, engine, db, source):
        """A tenant linked to another page keeps its link when matched by name."""
        db.insert_tenant(
            TenantEntity(name="Globex", slug="globex", metadata={META_SOURCE_RECORD_ID: "p1"})
        )
        source.add("p2", "Globex")

        outcome = engine.upsert_one("p2")

        assert outcome.entity.source_record_id == "p1"
        assert db.find_by_source_record_id("p2") == []

    def test_invalid_record_raises(self, engine, source):
        source.add("p1", "Untitled")
        with pytest.raises(InvalidRecordError):
            engine.upsert_one("p1")

    def test_missing_record_raises(self, engine):
        with pytest.raises(RecordNotFoundError):
            engine.upsert_one("nope")

    def test_content_failure_keeps_page_info_on_update(self, engine, source, db):
        source.add("p1", "Acme Corp")
        source.content["p1"] = "Original notes"
        engine.upsert_one("p1")

        source.content_errors["p1"] = TransientSourceError("blocks down")
        engine.upsert_one("p1")

        assert only(db).page_info == "Original notes"

    def test_content_failure_creates_with_empty_page_info(self, engine, source, db):
        source.add("p1", "Acme Corp")
        source.content_errors["p1"] = TransientSourceError("blocks down")
        engine.upsert_one("p1")
        assert only(db).page_info == ""

    def test_overlapping_upserts_of_one_record_converge(self, engine, source, db):
        """An upsert that lands between lookup and create is updated, not duplicated."""
        source.add("p1", "Acme Corp")
        record = source.get_record("p1")

        real_find = engine.matcher.find_match
        calls = []

        def overlapping_find(*args):
            calls.append(args)
            result = real_find(*args)
            if len(calls) == 1:
                # The webhook upsert of the same page finishes first
                engine.upsert_record(record)
            return result

        with patch.object(engine.matcher, "find_match", side_effect=overlapping_find):
            outcome = engine.upsert_one("p1")

        assert outcome.created is False
        assert outcome.match.strategy == MatchStrategy.DIRECT_REFERENCE
        assert [(t.slug, t.source_record_id) for t in db.list_tenants()] == [
            ("acme-corp", "p1")
        ]

    def test_overlapping_upserts_from_threads_converge(self, engine, source, db):
        source.add("p1", "Acme Corp")
        record = source.get_record("p1")
        barrier = threading.Barrier(2)

        def upsert():
            barrier.wait()
            engine.upsert_record(record)

        threads = [threading.Thread(target=upsert) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert [(t.slug, t.source_record_id) for t in db.list_tenants()] == [
            ("acme-corp", "p1")
        ]

    def test_slug_taken_at_insert_converges(self, engine, source, db):
        """A slug claimed after the pre-create check re-matches and updates."""
        db.insert_tenant(TenantEntity(name="Acme Corp", slug="acme-corp"))
        source.add("p1", "Acme Corp")

        real_find = engine.matcher.find_match
        calls = []

        def racing_find(*args):
            calls.append(args)
            if len(calls) == 1:
                return None
            return real_find(*args)

        # slug_exists reports free so only the insert sees the collision
        with patch.object(engine.matcher, "find_match", side_effect=racing_find), \
                patch.object(db, "slug_exists", return_value=False):
            outcome = engine.upsert_one("p1")

        assert len(calls) == 2
        assert outcome.created is False
        assert db.get_tenant_count() == 1
        assert only(db).source_record_id == "p1"

    def test_names_at_or_below_threshold_stay_distinct(self, engine, source, db):
        source.add("p1", "Acme Zeta")
        source.add("p2", "Acme Zexy")  # scores exactly 0.75 against p1
        source.add("p3", "Harbor Lights")
        source.add("p4", "Harbor Freight")

        outcomes = [engine.upsert_one(p) for p in ("p1", "p2", "p3", "p4")]

        assert all(outcome.created for outcome in outcomes)
        assert sorted(t.slug for t in db.list_tenants()) == [
            "acme-zeta",
            "acme-zexy",
            "harbor-freight",
            "harbor-lights",
        ]

    def test_variant_above_threshold_matches(self, engine, source, db):
        source.add("p1", "Acme Pearls")
        source.add("p2", "Acme Pearxy")
        engine.upsert_one("p1")

        outcome = engine.upsert_one("p2")

        assert outcome.created is False
        assert outcome.match.strategy == MatchStrategy.FUZZY_NAME
        assert db.get_tenant_count() == 1

    def test_hyphenated_name_not_merged_by_base_name(self, engine, source, db):
        source.add("p1", "Hewlett Foundation")
        source.add("p2", "Hewlett-Packard")
        engine.upsert_one("p1")

        outcome = engine.upsert_one("p2")

        assert outcome.created is True
        assert sorted(t.name for t in db.list_tenants()) == [
            "Hewlett Foundation",
            "Hewlett-Packard",
        ]

    def test_available_slug_appends_counter(self, engine, db):
        db.insert_tenant(TenantEntity(name="A", slug="acme-corp"))
        db.insert_tenant(TenantEntity(name="B", slug="acme-corp-2"))
        assert engine._available_slug("acme-corp") == "acme-corp-3"
        assert engine._available_slug("globex") == "globex"


class TestFullSync:
    """Tests for run_full()."""

    def test_creates_all_records(self, engine, source, db):
        source.add("p1", "Acme Corp")
        source.add("p2", "Globex")

        run = engine.run_full()

        assert run.status == RunStatus.COMPLETED
        assert run.success is True
        assert (run.total, run.created, run.updated) == (2, 2, 0)
        assert run.finished_at is not None
        assert db.get_tenant_count() == 2

    def test_second_run_updates_only(self, engine, source, db):
        source.add("p1", "Acme Corp")
        source.add("p2", "Globex")
        engine.run_full()
        slugs = {t.id: t.slug for t in db.list_tenants()}

        run = engine.run_full()

        assert (run.created, run.updated) == (0, 2)
        assert {t.id: t.slug for t in db.list_tenants()} == slugs

    def test_full_sync_does_not_delete(self, engine, source, db):
        source.add("p1", "Acme Corp")
        engine.run_full()
        source.remove("p1")

        run = engine.run_full()

        assert run.deleted == 0
        assert db.get_tenant_count() == 1

    def test_bad_record_is_skipped(self, engine, source, db):
        source.add("p1", "Untitled")
        source.add("p2", "Globex")

        run = engine.run_full()

        assert run.status == RunStatus.COMPLETED
        assert (run.created, run.skipped) == (1, 1)
        assert run.errors[0].startswith("p1:")
        assert run.success is False

    def test_unexpected_error_is_skipped(self, engine, source):
        source.add("p1", "Acme Corp")
        source.content_errors["p1"] = ZeroDivisionError("boom")

        run = engine.run_full()

        assert run.skipped == 1
        assert "unexpected error" in run.errors[0]

    def test_query_failure_fails_run(self, engine, source):
        source.query_error = TransientSourceError("Notion unavailable")

        run = engine.run_full()

        assert run.status == RunStatus.FAILED
        assert run.errors == ["Failed to query collection: Notion unavailable"]
        assert run.success is False

    def test_single_flight(self, engine, source):
        """A run requested while another holds the lock returns immediately."""
        source.add("p1", "Acme Corp")
        engine._run_lock.acquire()
        try:
            assert engine.is_running is True
            run = engine.run_full()
        finally:
            engine._run_lock.release()

        assert run.status == RunStatus.ALREADY_IN_PROGRESS
        assert run.errors == [ALREADY_IN_PROGRESS_MESSAGE]
        assert source.query_calls == []

    def test_lock_released_after_run(self, engine):
        engine.run_full()
        assert engine.is_running is False

    def test_cancel_stops_between_records(self, engine, source, db):
        for i in range(3):
            source.add(f"p{i}", f"Tenant Number {i}")

        def cancel_after_first(record_id):
            engine.request_cancel()
            return ""

        source.get_child_content = cancel_after_first
        run = engine.run_full()

        assert run.status == RunStatus.CANCELLED
        assert run.created == 1
        assert db.get_tenant_count() == 1

    def test_earlier_cancel_does_not_leak_into_next_run(self, engine, source):
        source.add("p1", "Acme Corp")
        engine.request_cancel()
        run = engine.run_full()
        assert run.status == RunStatus.COMPLETED


class TestIncrementalSync:
    """Tests for run_incremental() and deletion reconciliation."""

    def test_only_modified_records(self, engine, source, base_time):
        source.add("p1", "Acme Corp", edited=base_time)
        source.add("p2", "Globex", edited=base_time + timedelta(hours=2))

        run = engine.run_incremental(base_time + timedelta(hours=1))

        assert run.kind == SyncKind.INCREMENTAL
        assert run.total == 1
        assert source.query_calls == [base_time + timedelta(hours=1)]

    def test_rename_between_full_and_incremental_keeps_entity(
        self, engine, source, db, base_time
    ):
        source.add("p1", "Hockey Think Tank", edited=base_time)
        full = engine.run_full()
        created = only(db)
        assert full.created == 1
        assert created.slug == "hockey-think-tank"

        source.add("p1", "Hockey Think Tank 123", edited=base_time + timedelta(hours=2))
        run = engine.run_incremental(base_time + timedelta(hours=1))

        entity = only(db)
        assert run.updated == 1
        assert run.created == 0
        assert entity.id == created.id
        assert entity.slug == "hockey-think-tank"
        assert entity.name == "Hockey Think Tank 123"

    def test_renamed_record_matches_unlinked_tenant_by_name(
        self, engine, source, db, base_time
    ):
        db.insert_tenant(TenantEntity(name="Hockey Think Tank", slug="hockey-think-tank"))
        source.add("p1", "Hockey Think Tank 123", edited=base_time + timedelta(hours=2))

        run = engine.run_incremental(base_time + timedelta(hours=1))

        entity = only(db)
        assert run.updated == 1
        assert entity.slug == "hockey-think-tank"
        assert entity.name == "Hockey Think Tank 123"
        assert entity.source_record_id == "p1"

    def test_deletes_tenant_of_missing_record(self, engine, source, db, base_time):
        source.add("p1", "Acme Corp")
        source.add("p2", "Globex")
        engine.run_full()
        source.remove("p2")

        run = engine.run_incremental(base_time + timedelta(hours=1))

        assert run.deleted == 1
        assert [t.name for t in db.list_tenants()] == ["Acme Corp"]

    def test_archived_record_counts_as_deleted(self, engine, source, db, base_time):
        source.add("p1", "Acme Corp")
        engine.run_full()
        source.add("p1", "Acme Corp", archived=True)

        run = engine.run_incremental(base_time + timedelta(hours=1))

        assert run.deleted == 1
        assert db.get_tenant_count() == 0

    def test_transient_error_never_deletes(self, engine, source, db, base_time):
        source.add("p1", "Acme Corp")
        engine.run_full()
        source.record_errors["p1"] = TransientSourceError("timeout")

        run = engine.run_incremental(base_time + timedelta(hours=1))

        assert run.deleted == 0
        assert db.get_tenant_count() == 1

    def test_unexpected_check_error_keeps_tenant(self, engine, source, db, base_time):
        source.add("p1", "Acme Corp")
        engine.run_full()
        source.record_errors["p1"] = RuntimeError("bad payload")

        run = engine.run_incremental(base_time + timedelta(hours=1))

        assert run.status == RunStatus.COMPLETED
        assert run.deleted == 0
        assert db.get_tenant_count() == 1

    def test_records_seen_in_query_are_not_probed(self, engine, source, base_time):
        source.add("p1", "Acme Corp", edited=base_time + timedelta(hours=2))
        engine.run_full()
        source.get_record_calls.clear()

        engine.run_incremental(base_time + timedelta(hours=1))

        assert source.get_record_calls == []

    def test_each_record_probed_once(self, engine, source, db, base_time):
        """Duplicate tenants linked to one page share a single probe."""
        source.add("p1", "Acme Corp")
        engine.run_full()
        db.insert_tenant(
            TenantEntity(
                name="Acme Corp Duplicate",
                slug="acme-corp-dup",
                metadata={META_SOURCE_RECORD_ID: "p1"},
            )
        )
        source.remove("p1")
        source.get_record_calls.clear()

        run = engine.run_incremental(base_time + timedelta(hours=1))

        assert source.get_record_calls == ["p1"]
        assert run.deleted == 2

    def test_unlinked_tenants_untouched(self, engine, db, base_time):
        db.insert_tenant(TenantEntity(name="Manual", slug="manual"))
        run = engine.run_incremental(base_time)
        assert run.deleted == 0
        assert db.get_tenant_count() == 1

    def test_cancelled_run_skips_reconciliation(self, engine, source, db, base_time):
        source.add("p1", "Acme Corp")
        engine.run_full()
        source.remove("p1")
        source.add("p2", "Globex", edited=base_time + timedelta(hours=2))

        def cancel(record_id):
            engine.request_cancel()
            return ""

        source.get_child_content = cancel
        run = engine.run_incremental(base_time + timedelta(hours=1))

        assert run.status == RunStatus.CANCELLED
        assert run.deleted == 0
        assert db.find_by_source_record_id("p1")


class TestDeleteForRecord:
    """Tests for delete_for_record()."""

    def test_deletes_linked_tenant(self, engine, source, db):
        source.add("p1", "Acme Corp")
        engine.upsert_one("p1")

        deleted = engine.delete_for_record("p1")

        assert [t.name for t in deleted] == ["Acme Corp"]
        assert db.get_tenant_count() == 0

    def test_deletes_all_linked_duplicates(self, engine, db):
        for slug in ("acme", "acme-2"):
            db.insert_tenant(
                TenantEntity(name="Acme", slug=slug, metadata={META_SOURCE_RECORD_ID: "p1"})
            )
        assert len(engine.delete_for_record("p1")) == 2

    def test_fallback_by_slug_of_archived_page(self, engine, source, db):
        unlinked = db.insert_tenant(TenantEntity(name="ACME Corp.", slug="acme-corp"))
        source.add("p9", "Acme Corp", archived=True)

        deleted = engine.delete_for_record("p9")

        assert [t.id for t in deleted] == [unlinked.id]

    def test_fallback_by_exact_name(self, engine, source, db):
        unlinked = db.insert_tenant(TenantEntity(name="Acme Corp", slug="acme-legacy"))
        source.add("p9", "Acme Corp", archived=True)

        assert [t.id for t in engine.delete_for_record("p9")] == [unlinked.id]

    def test_fallback_never_deletes_tenant_linked_elsewhere(self, engine, source, db):
        db.insert_tenant(
            TenantEntity(name="Acme Corp", slug="acme-corp", metadata={META_SOURCE_RECORD_ID: "p1"})
        )
        source.add("p9", "Acme Corp", archived=True)

        assert engine.delete_for_record("p9") == []
        assert db.get_tenant_count() == 1

    def test_unknown_record(self, engine):
        assert engine.delete_for_record("missing") == []

    def test_fallback_transient_error_propagates(self, engine, source):
        source.record_errors["p9"] = TransientSourceError("down")
        with pytest.raises(TransientSourceError):
            engine.delete_for_record("p9")
