"""
SQLite registry of tenants.

Provides persistent storage for tenant entities and the lookups used by
the tenant matcher: by linked source record, exact name, contact email,
slug, slug prefix and name words.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from tenant_sync.sync.tenant import META_SOURCE_RECORD_ID, TenantEntity

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS tenants (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    contact_email TEXT NOT NULL DEFAULT '',
    products_services TEXT NOT NULL DEFAULT '',
    page_info TEXT NOT NULL DEFAULT '',
    metadata TEXT NOT NULL DEFAULT '{}',
    source_record_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tenants_name ON tenants(name);
CREATE INDEX IF NOT EXISTS idx_tenants_email ON tenants(contact_email);
"""

# Created after the migration so older tables gain the column first.
# Not unique: legacy rows may share a source record id.
SOURCE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_tenants_source_record ON tenants(source_record_id);
"""

_COLUMNS = (
    "id, name, slug, contact_email, products_services, page_info, "
    "metadata, source_record_id, created_at, updated_at"
)

# Oldest row first; id breaks created_at ties deterministically
_ORDER = "ORDER BY created_at ASC, id ASC"


class RegistryError(Exception):
    """Raised when a registry read or write fails."""

    pass


class DuplicateSlugError(RegistryError):
    """Raised when an insert collides with an existing slug."""

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Slug already exists: {slug}")


def _timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class RegistryDatabase:
    """
    SQLite database manager for the tenant registry.

    Every lookup that can return several rows returns them oldest first,
    so callers that need a single canonical row take the first one.

    Usage:
        db = RegistryDatabase('/path/to/registry.db')
        db.initialize()

        # Or use in-memory for testing:
        db = RegistryDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        In-memory databases share one connection so the schema persists;
        access to it is serialized by self._lock. File databases get a new
        connection per operation.
        """
        if self.is_memory:
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success, rolls back on error. sqlite3 errors are
        re-raised as RegistryError.

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM tenants")
        """
        with self._lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise RegistryError(f"Registry operation failed: {e}") from e
            except Exception:
                conn.rollback()
                raise
            finally:
                if not self.is_memory:
                    conn.close()

    def initialize(self) -> None:
        """
        Create the schema and backfill the source_record_id column.

        Tables created before source_record_id existed get the column added
        and populated from metadata.sourceRecordId. Safe to call repeatedly.
        """
        with self.connection() as conn:
            conn.executescript(SCHEMA)

            columns = {
                row["name"] for row in conn.execute("PRAGMA table_info(tenants)")
            }
            if "source_record_id" not in columns:
                conn.execute("ALTER TABLE tenants ADD COLUMN source_record_id TEXT")
                logger.info("Added source_record_id column to tenants table")

            cursor = conn.execute(
                f"""
                UPDATE tenants
                SET source_record_id = json_extract(metadata, '$.{META_SOURCE_RECORD_ID}')
                WHERE source_record_id IS NULL
                  AND json_extract(metadata, '$.{META_SOURCE_RECORD_ID}') IS NOT NULL
                """
            )
            if cursor.rowcount > 0:
                logger.info(
                    f"Backfilled source_record_id for {cursor.rowcount} tenant(s)"
                )

            conn.executescript(SOURCE_INDEX)

    def close(self) -> None:
        """Close the shared in-memory connection, discarding its data."""
        with self._lock:
            if self._shared_connection is not None:
                self._shared_connection.close()
                self._shared_connection = None

    # =========================================================================
    # Writes
    # =========================================================================

    def insert_tenant(self, tenant: TenantEntity) -> TenantEntity:
        """
        Insert a new tenant.

        Raises:
            DuplicateSlugError: If the slug is already taken
            RegistryError: For other database failures
        """
        with self.connection() as conn:
            try:
                conn.execute(
                    f"INSERT INTO tenants ({_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        tenant.id,
                        tenant.name,
                        tenant.slug,
                        tenant.contact_email,
                        tenant.products_services,
                        tenant.page_info,
                        json.dumps(tenant.metadata),
                        tenant.source_record_id,
                        _timestamp(tenant.created_at),
                        _timestamp(tenant.updated_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                if "tenants.slug" in str(e):
                    raise DuplicateSlugError(tenant.slug) from e
                raise
        return tenant

    def update_tenant(self, tenant: TenantEntity) -> TenantEntity:
        """
        Persist the mutable fields of an existing tenant.

        The slug and created_at columns are never written by this method.

        Raises:
            RegistryError: If the tenant does not exist or the write fails
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE tenants
                SET name = ?, contact_email = ?, products_services = ?,
                    page_info = ?, metadata = ?, source_record_id = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    tenant.name,
                    tenant.contact_email,
                    tenant.products_services,
                    tenant.page_info,
                    json.dumps(tenant.metadata),
                    tenant.source_record_id,
                    _timestamp(tenant.updated_at),
                    tenant.id,
                ),
            )
            if cursor.rowcount == 0:
                raise RegistryError(f"Tenant not found: {tenant.id}")
        return tenant

    def delete_tenant(self, tenant_id: str) -> bool:
        """
        Delete a tenant by id.

        Returns:
            True if a row was deleted
        """
        with self.connection() as conn:
            cursor = conn.execute("DELETE FROM tenants WHERE id = ?", (tenant_id,))
            return cursor.rowcount > 0

    # =========================================================================
    # Lookups
    # =========================================================================

    def _select(self, where: str, params: tuple = ()) -> list[TenantEntity]:
        with self.connection() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM tenants WHERE {where} {_ORDER}", params
            ).fetchall()
        return [TenantEntity.from_row(row) for row in rows]

    def get_tenant(self, tenant_id: str) -> Optional[TenantEntity]:
        found = self._select("id = ?", (tenant_id,))
        return found[0] if found else None

    def find_by_source_record_id(self, record_id: str) -> list[TenantEntity]:
        """All tenants linked to a source record, oldest first."""
        return self._select("source_record_id = ?", (record_id,))

    def find_by_name(self, name: str) -> list[TenantEntity]:
        """Tenants whose name equals name exactly, oldest first."""
        return self._select("name = ?", (name,))

    def find_by_email(self, email: str) -> list[TenantEntity]:
        """Tenants whose contact email equals email ignoring case."""
        if not email:
            return []
        return self._select("lower(contact_email) = lower(?)", (email,))

    def find_by_slug(self, slug: str) -> Optional[TenantEntity]:
        found = self._select("slug = ?", (slug,))
        return found[0] if found else None

    def find_by_slug_prefix(self, prefix: str) -> list[TenantEntity]:
        """Tenants whose slug starts with prefix, oldest first."""
        return self._select(
            "slug LIKE ? ESCAPE '\\'", (f"{_escape_like(prefix)}%",)
        )

    def find_by_name_words(self, words: list[str]) -> list[TenantEntity]:
        """
        Tenants whose name contains any of the given words (case-insensitive).

        Used to pre-select fuzzy match candidates instead of scoring the
        whole registry.
        """
        if not words:
            return []
        clause = " OR ".join("lower(name) LIKE ? ESCAPE '\\'" for _ in words)
        params = tuple(f"%{_escape_like(w.lower())}%" for w in words)
        return self._select(f"({clause})", params)

    def list_with_source_record_id(self) -> list[TenantEntity]:
        """Every tenant linked to a source record, oldest first."""
        return self._select("source_record_id IS NOT NULL AND source_record_id != ''")

    def list_tenants(self) -> list[TenantEntity]:
        return self._select("1 = 1")

    def slug_exists(self, slug: str) -> bool:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM tenants WHERE slug = ? LIMIT 1", (slug,)
            ).fetchone()
        return row is not None

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_tenant_count(self) -> int:
        with self.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM tenants").fetchone()
        return int(row["n"])

    def get_linked_count(self) -> int:
        """Number of tenants linked to a source record."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM tenants "
                "WHERE source_record_id IS NOT NULL AND source_record_id != ''"
            ).fetchone()
        return int(row["n"])
