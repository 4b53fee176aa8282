"""
Spec Store - SQLite storage for synthesized spec versions.
Every version is kept per target; the latest one is the diff baseline for the next run.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import ValidationError

from ..core.errors import SpecStoreError
from ..core.models import ApiSpecVersion, SpecChangelog


logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


class SpecStore:
    """
    SQLite-based storage for ApiSpecVersion snapshots and their changelogs.
    Versions are immutable once saved.
    """

    def __init__(self, db_path: str):
        """
        Initialize spec store.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self.db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Initialize database and create tables."""
        if self.db_path != MEMORY_DB:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db = await aiosqlite.connect(self.db_path)

        await self.db.executescript("""
            -- One row per synthesized version
            CREATE TABLE IF NOT EXISTS spec_versions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                target TEXT NOT NULL,
                version TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                fingerprint TEXT NOT NULL,
                payload JSON NOT NULL,
                changelog JSON,
                UNIQUE (target, version)
            );

            CREATE INDEX IF NOT EXISTS idx_spec_versions_target
                ON spec_versions(target);
        """)

        await self.db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self.db:
            await self.db.close()
            self.db = None

    async def __aenter__(self) -> "SpecStore":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _connection(self) -> aiosqlite.Connection:
        if self.db is None:
            raise SpecStoreError("spec store is not initialized")
        return self.db

    # =========================================================================
    # Version Operations
    # =========================================================================

    async def save(
        self,
        spec: ApiSpecVersion,
        changelog: SpecChangelog | None = None
    ) -> None:
        """
        Persist a spec version.

        Args:
            spec: Version to store
            changelog: Diff against the previous version, if computed

        Raises:
            SpecStoreError: If the (target, version) pair already exists
        """
        db = self._connection()
        try:
            await db.execute("""
                INSERT INTO spec_versions
                (target, version, created_at, fingerprint, payload, changelog)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                spec.target,
                spec.version,
                spec.created_at.isoformat(),
                spec.fingerprint,
                spec.model_dump_json(),
                changelog.model_dump_json() if changelog else None,
            ))
            await db.commit()
        except sqlite3.IntegrityError as e:
            raise SpecStoreError(
                f"version {spec.version} already stored for {spec.target}"
            ) from e

        logger.info("Stored spec %s version %s (%s)", spec.target, spec.version, spec.fingerprint[:12])

    async def latest(self, target: str) -> ApiSpecVersion | None:
        """Most recently saved version for a target, or None."""
        db = self._connection()
        async with db.execute("""
            SELECT payload FROM spec_versions
            WHERE target = ?
            ORDER BY id DESC LIMIT 1
        """, (target,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._load(row[0])

    async def get(self, target: str, version: str) -> ApiSpecVersion | None:
        """A specific version for a target, or None."""
        db = self._connection()
        async with db.execute("""
            SELECT payload FROM spec_versions
            WHERE target = ? AND version = ?
        """, (target, version)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._load(row[0])

    async def get_changelog(self, target: str, version: str) -> SpecChangelog | None:
        """Changelog stored with a version, or None."""
        db = self._connection()
        async with db.execute("""
            SELECT changelog FROM spec_versions
            WHERE target = ? AND version = ?
        """, (target, version)) as cursor:
            row = await cursor.fetchone()
        if row is None or row[0] is None:
            return None
        return SpecChangelog.model_validate_json(row[0])

    async def list_versions(self, target: str) -> list[dict[str, Any]]:
        """Version summaries for a target, oldest first."""
        db = self._connection()
        versions = []
        async with db.execute("""
            SELECT version, created_at, fingerprint FROM spec_versions
            WHERE target = ?
            ORDER BY id
        """, (target,)) as cursor:
            async for row in cursor:
                versions.append({
                    "version": row[0],
                    "created_at": row[1],
                    "fingerprint": row[2],
                })
        return versions

    async def list_targets(self) -> list[str]:
        """All targets with at least one stored version."""
        db = self._connection()
        async with db.execute(
            "SELECT DISTINCT target FROM spec_versions ORDER BY target"
        ) as cursor:
            return [row[0] async for row in cursor]

    def _load(self, payload: str) -> ApiSpecVersion:
        try:
            return ApiSpecVersion.model_validate_json(payload)
        except ValidationError as e:
            raise SpecStoreError(f"stored spec payload is invalid: {e}") from e
