"""
Cache - SQLite feature cache with TTL expiry.

Three tables:
- resources: one row per resource identity (canonical URL)
- features:  one row per (resource, feature key), overwritten in place
- providers: capability provider registrations

The database runs in WAL mode so background indexing and foreground
extraction can write while readers keep going.
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Callable, Iterable, List, Optional

from .config import get_config, StoreConfig
from .errors import InvalidInput, NotFound, StorageError
from .models import (
    CacheStats, Feature, FeatureFilter, FeatureRecord, ProviderRegistration,
    Resource, ResourceKind, ValueKind, encode_value,
)


logger = logging.getLogger(__name__)


SCHEMA = """
    -- Tracked resources
    CREATE TABLE IF NOT EXISTS resources (
        url TEXT PRIMARY KEY,
        kind TEXT NOT NULL CHECK(kind IN ('file', 'url', 'directory')),
        last_processed INTEGER NOT NULL,
        checksum TEXT,
        size INTEGER,
        media_type TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );

    -- Cached features with TTL
    CREATE TABLE IF NOT EXISTS features (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        resource_url TEXT NOT NULL,
        feature_key TEXT NOT NULL,
        value TEXT NOT NULL,
        value_kind TEXT NOT NULL
            CHECK(value_kind IN ('text', 'number', 'binary', 'embedding', 'json')),
        generated_at INTEGER NOT NULL,
        ttl INTEGER NOT NULL,
        expires_at INTEGER NOT NULL,
        provider TEXT NOT NULL,
        metadata TEXT,
        FOREIGN KEY (resource_url) REFERENCES resources(url) ON DELETE CASCADE,
        UNIQUE(resource_url, feature_key)
    );

    CREATE INDEX IF NOT EXISTS idx_features_expires ON features(expires_at);
    CREATE INDEX IF NOT EXISTS idx_features_key ON features(feature_key);
    CREATE INDEX IF NOT EXISTS idx_features_resource ON features(resource_url);
    CREATE INDEX IF NOT EXISTS idx_features_provider ON features(provider);

    -- Capability provider registrations
    CREATE TABLE IF NOT EXISTS providers (
        name TEXT PRIMARY KEY,
        media_types TEXT NOT NULL,
        feature_keys TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 100,
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_providers_enabled ON providers(enabled);
"""


class FeatureCache:
    """
    Durable feature cache.

    All methods are synchronous; callers on the event loop never see a
    partially written batch.
    """

    def __init__(
        self,
        config: StoreConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or get_config()
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None

    def now(self) -> int:
        return int(self._clock())

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(str(self.config.db_path))
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA journal_mode = WAL")
                self._conn.execute("PRAGMA synchronous = NORMAL")
                self._conn.execute(f"PRAGMA busy_timeout = {int(self.config.busy_timeout_ms)}")
                self._conn.execute("PRAGMA foreign_keys = ON")
                self._conn.executescript(SCHEMA)
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn = None
                raise StorageError(f"Failed to open feature cache at {self.config.db_path}: {e}") from e
            logger.debug(f"Opened feature cache at {self.config.db_path}")
        return self._conn

    @contextmanager
    def _transaction(self, operation: str):
        """Run a block in one transaction, mapping sqlite errors to StorageError."""
        conn = self._get_connection()
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            logger.error(f"{operation} failed: {e}")
            raise StorageError(f"{operation} failed: {e}", context={"operation": operation}) from e

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def upsert_resource(self, resource: Resource) -> None:
        """Insert or update a resource by identity (last write wins)."""
        now = self.now()
        with self._transaction("upsert_resource") as conn:
            conn.execute(
                """
                INSERT INTO resources
                    (url, kind, last_processed, checksum, size, media_type, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(url) DO UPDATE SET
                    kind = excluded.kind,
                    last_processed = excluded.last_processed,
                    checksum = excluded.checksum,
                    size = excluded.size,
                    media_type = excluded.media_type,
                    updated_at = excluded.updated_at
                """,
                (
                    resource.url,
                    resource.kind.value,
                    resource.last_processed or now,
                    resource.checksum,
                    resource.size,
                    resource.media_type,
                    now,
                    now,
                )
            )

    def get_resource(self, url: str) -> Optional[Resource]:
        """Find a resource by identity. Returns None if not tracked."""
        with self._transaction("get_resource") as conn:
            row = conn.execute("SELECT * FROM resources WHERE url = ?", (url,)).fetchone()
        return self._row_to_resource(row) if row else None

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    def make_features(
        self,
        resource_url: str,
        records: Iterable[FeatureRecord],
        provider: str = "built-in",
        default_ttl: Optional[int] = None,
    ) -> List[Feature]:
        """Build Feature rows for records as of now, without writing them."""
        now = self.now()
        fallback_ttl = default_ttl or self.config.default_ttl
        features: List[Feature] = []

        for record in records:
            ttl = record.ttl or fallback_ttl
            features.append(Feature(
                resource_url=resource_url,
                key=record.key,
                value=encode_value(record.value, record.kind),
                kind=record.kind,
                provider=record.provider or provider,
                generated_at=now,
                ttl=ttl,
                expires_at=now + ttl,
                metadata=dict(record.metadata or {}),
            ))
        return features

    def store_features(
        self,
        resource_url: str,
        records: Iterable[FeatureRecord],
        provider: str = "built-in",
        default_ttl: Optional[int] = None,
    ) -> List[Feature]:
        """
        Upsert a batch of features in a single transaction.

        Each record's expiry is now + ttl at write time. A record's own ttl
        wins over default_ttl, which wins over config.default_ttl; a
        record without a provider is attributed to `provider`.

        Returns:
            The stored features, in input order
        """
        stored = self.make_features(resource_url, records, provider, default_ttl)
        if not stored:
            return stored

        with self._transaction("store_features") as conn:
            conn.executemany(
                """
                INSERT INTO features (
                    resource_url, feature_key, value, value_kind,
                    generated_at, ttl, expires_at, provider, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(resource_url, feature_key) DO UPDATE SET
                    value = excluded.value,
                    value_kind = excluded.value_kind,
                    generated_at = excluded.generated_at,
                    ttl = excluded.ttl,
                    expires_at = excluded.expires_at,
                    provider = excluded.provider,
                    metadata = excluded.metadata
                """,
                [
                    (
                        f.resource_url, f.key, f.value, f.kind.value,
                        f.generated_at, f.ttl, f.expires_at, f.provider,
                        json.dumps(f.metadata) if f.metadata else None,
                    )
                    for f in stored
                ]
            )

        logger.debug(f"Stored {len(stored)} features for {resource_url}")
        return stored

    def query_features(self, flt: FeatureFilter | None = None) -> List[Feature]:
        """
        Return features matching every given filter field.

        Expired rows (expires_at <= now) are excluded unless
        flt.include_expired is set.
        """
        flt = flt or FeatureFilter()
        query = "SELECT * FROM features WHERE 1=1"
        bindings: list = []

        if flt.resource_id:
            query += " AND resource_url = ?"
            bindings.append(flt.resource_id)

        if flt.keys:
            query += f" AND feature_key IN ({','.join('?' * len(flt.keys))})"
            bindings.extend(flt.keys)

        if flt.providers:
            query += f" AND provider IN ({','.join('?' * len(flt.providers))})"
            bindings.extend(flt.providers)

        if not flt.include_expired:
            query += " AND expires_at > ?"
            bindings.append(self.now())

        query += " ORDER BY resource_url, feature_key"

        with self._transaction("query_features") as conn:
            rows = conn.execute(query, bindings).fetchall()
        return [self._row_to_feature(row) for row in rows]

    def update_ttl(self, resource_url: str, key: str, ttl: int) -> Feature:
        """
        Give one feature a new TTL, counted from now.

        Raises:
            InvalidInput: ttl is not a positive integer
            NotFound: no such (resource, key) row
        """
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
            raise InvalidInput(f"ttl must be a positive integer, got {ttl!r}")

        expires_at = self.now() + ttl
        with self._transaction("update_ttl") as conn:
            cursor = conn.execute(
                """
                UPDATE features SET ttl = ?, expires_at = ?
                WHERE resource_url = ? AND feature_key = ?
                """,
                (ttl, expires_at, resource_url, key)
            )
            if cursor.rowcount == 0:
                raise NotFound(
                    f"Feature not found: {resource_url} / {key}",
                    context={"resource": resource_url, "key": key},
                )
            row = conn.execute(
                "SELECT * FROM features WHERE resource_url = ? AND feature_key = ?",
                (resource_url, key)
            ).fetchone()
        return self._row_to_feature(row)

    def sweep_expired(self) -> int:
        """
        Delete every feature whose expiry has passed.

        Returns:
            Number of rows removed
        """
        with self._transaction("sweep_expired") as conn:
            cursor = conn.execute("DELETE FROM features WHERE expires_at <= ?", (self.now(),))
            removed = cursor.rowcount

        if removed:
            logger.info(f"Swept {removed} expired features")
        return removed

    # ------------------------------------------------------------------
    # Provider registrations
    # ------------------------------------------------------------------

    def register_provider(self, registration: ProviderRegistration) -> None:
        """Insert or replace a provider registration by name."""
        now = self.now()
        with self._transaction("register_provider") as conn:
            conn.execute(
                """
                INSERT INTO providers
                    (name, media_types, feature_keys, priority, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    media_types = excluded.media_types,
                    feature_keys = excluded.feature_keys,
                    priority = excluded.priority,
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    registration.name,
                    json.dumps(registration.media_types),
                    json.dumps(registration.feature_keys),
                    registration.priority,
                    1 if registration.enabled else 0,
                    now,
                    now,
                )
            )

    def get_provider(self, name: str) -> Optional[ProviderRegistration]:
        with self._transaction("get_provider") as conn:
            row = conn.execute("SELECT * FROM providers WHERE name = ?", (name,)).fetchone()
        return self._row_to_registration(row) if row else None

    def list_providers(
        self,
        enabled: Optional[bool] = None,
        media_type: Optional[str] = None,
    ) -> List[ProviderRegistration]:
        """Registrations ordered by priority, optionally filtered."""
        query = "SELECT * FROM providers WHERE 1=1"
        bindings: list = []

        if enabled is not None:
            query += " AND enabled = ?"
            bindings.append(1 if enabled else 0)

        query += " ORDER BY priority ASC, name ASC"

        with self._transaction("list_providers") as conn:
            rows = conn.execute(query, bindings).fetchall()

        registrations = [self._row_to_registration(row) for row in rows]
        if media_type:
            registrations = [r for r in registrations if r.accepts(media_type)]
        return registrations

    def set_provider_enabled(self, name: str, enabled: bool) -> None:
        with self._transaction("set_provider_enabled") as conn:
            cursor = conn.execute(
                "UPDATE providers SET enabled = ?, updated_at = ? WHERE name = ?",
                (1 if enabled else 0, self.now(), name)
            )
            if cursor.rowcount == 0:
                raise NotFound(f"Provider not found: {name}", provider=name)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> CacheStats:
        now = self.now()
        with self._transaction("stats") as conn:
            resources = conn.execute("SELECT COUNT(*) FROM resources").fetchone()[0]
            features = conn.execute("SELECT COUNT(*) FROM features").fetchone()[0]
            expired = conn.execute(
                "SELECT COUNT(*) FROM features WHERE expires_at <= ?", (now,)
            ).fetchone()[0]
            providers = conn.execute(
                "SELECT COUNT(*) FROM providers WHERE enabled = 1"
            ).fetchone()[0]

        return CacheStats(
            resource_count=resources,
            feature_count=features,
            expired_count=expired,
            enabled_provider_count=providers,
        )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_resource(row: sqlite3.Row) -> Resource:
        return Resource(
            url=row["url"],
            kind=ResourceKind(row["kind"]),
            last_processed=row["last_processed"],
            checksum=row["checksum"],
            size=row["size"],
            media_type=row["media_type"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_feature(row: sqlite3.Row) -> Feature:
        return Feature(
            resource_url=row["resource_url"],
            key=row["feature_key"],
            value=row["value"],
            kind=ValueKind(row["value_kind"]),
            provider=row["provider"],
            generated_at=row["generated_at"],
            ttl=row["ttl"],
            expires_at=row["expires_at"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    @staticmethod
    def _row_to_registration(row: sqlite3.Row) -> ProviderRegistration:
        return ProviderRegistration(
            name=row["name"],
            media_types=json.loads(row["media_types"]),
            feature_keys=json.loads(row["feature_keys"]),
            priority=row["priority"],
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def close(self):
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
