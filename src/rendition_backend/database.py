"""
SQLite persistence for assets, versions, upload sessions and renditions.

Every public method opens its own connection, so one Database instance can be
shared by request threads and by the worker. Writes run under
``BEGIN IMMEDIATE`` which takes SQLite's reserved lock up front; that is what
serializes version-number allocation across threads and processes.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence
from uuid import uuid4

from .errors import NotFoundError
from .models import AssetType, CompletionStep, RenditionKind, UploadState, UploadTarget

# Default database path
DEFAULT_DB_PATH = Path("data/renditions.db")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


@dataclass
class Asset:
    id: str
    title: str
    type: AssetType
    current_version_id: Optional[str]
    created_by: str
    created_at: datetime
    updated_at: datetime


@dataclass
class AssetVersion:
    id: str
    asset_id: str
    version: int
    bucket: str
    key: str
    size: int
    sha256: Optional[str]
    mime: str
    tech_meta: Optional[Dict[str, Any]]
    created_by: str
    created_at: datetime


@dataclass
class UploadSession:
    id: str
    target: UploadTarget
    asset_id: Optional[str]
    file_name: str
    mime: str
    total_size: int
    part_size: int
    part_count: int
    s3_upload_id: str
    bucket: str
    key_temp: str
    received_bytes: int
    state: UploadState
    completion_step: CompletionStep
    final_key: Optional[str]
    result_asset_id: Optional[str]
    result_version_id: Optional[str]
    created_by: str
    created_at: datetime
    expires_at: datetime


@dataclass
class Rendition:
    id: str
    asset_version_id: str
    kind: RenditionKind
    bucket: str
    key: str
    width: Optional[int]
    height: Optional[int]
    page: Optional[int]
    ready: bool
    created_at: datetime


class Database:
    """
    SQLite database for asset, upload and rendition records.

    Thread-safe: each call uses its own connection and SQLite handles
    concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a connection wrapped in a transaction; writers take the reserved lock immediately."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection(write=True) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS assets (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    type TEXT NOT NULL,
                    current_version_id TEXT,
                    created_by TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS asset_versions (
                    id TEXT PRIMARY KEY,
                    asset_id TEXT NOT NULL REFERENCES assets(id) ON DELETE CASCADE,
                    version INTEGER NOT NULL CHECK (version > 0),
                    bucket TEXT NOT NULL,
                    key TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    sha256 TEXT,
                    mime TEXT NOT NULL,
                    tech_meta TEXT,
                    created_by TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (asset_id, version)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS upload_sessions (
                    id TEXT PRIMARY KEY,
                    target TEXT NOT NULL,
                    asset_id TEXT,
                    file_name TEXT NOT NULL,
                    mime TEXT NOT NULL,
                    total_size INTEGER NOT NULL,
                    part_size INTEGER NOT NULL,
                    part_count INTEGER NOT NULL,
                    s3_upload_id TEXT NOT NULL,
                    bucket TEXT NOT NULL,
                    key_temp TEXT NOT NULL,
                    received_bytes INTEGER NOT NULL DEFAULT 0,
                    state TEXT NOT NULL,
                    completion_step TEXT NOT NULL,
                    final_key TEXT,
                    result_asset_id TEXT,
                    result_version_id TEXT,
                    created_by TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS renditions (
                    id TEXT PRIMARY KEY,
                    asset_version_id TEXT NOT NULL REFERENCES asset_versions(id) ON DELETE CASCADE,
                    kind TEXT NOT NULL,
                    bucket TEXT NOT NULL,
                    key TEXT NOT NULL,
                    width INTEGER,
                    height INTEGER,
                    page INTEGER,
                    ready INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_upload_sessions_expires_at
                ON upload_sessions(expires_at)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_renditions_version
                ON renditions(asset_version_id)
            """)

    # ------------------------------------------------------------------
    # Assets and versions
    # ------------------------------------------------------------------

    def get_asset(self, asset_id: str) -> Optional[Asset]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM assets WHERE id = ?", (asset_id,)).fetchone()
            return self._row_to_asset(row) if row else None

    def get_version(self, version_id: str) -> Optional[AssetVersion]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM asset_versions WHERE id = ?", (version_id,)).fetchone()
            return self._row_to_version(row) if row else None

    def list_versions(self, asset_id: str) -> List[AssetVersion]:
        """Versions of an asset, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM asset_versions WHERE asset_id = ? ORDER BY version DESC",
                (asset_id,),
            ).fetchall()
            return [self._row_to_version(row) for row in rows]

    def create_version_for_session(
        self,
        session: UploadSession,
        asset_type: AssetType,
        sha256: Optional[str] = None,
    ) -> AssetVersion:
        """
        Create the asset (for new_asset) and the next version, and record the
        result on the session, in one transaction.

        For new_asset the version is 1 and becomes the asset's current version.
        For new_version the number is max(version) + 1 and the current-version
        pointer is left alone.

        If the session already records a result version, that version is
        returned and nothing is created.
        """
        if not session.final_key:
            raise ValueError("Session has no final key; copy step has not run")

        now = utcnow()
        with self._get_connection(write=True) as conn:
            recorded = conn.execute(
                "SELECT result_version_id FROM upload_sessions WHERE id = ?",
                (session.id,),
            ).fetchone()
            if recorded and recorded["result_version_id"]:
                row = conn.execute(
                    "SELECT * FROM asset_versions WHERE id = ?",
                    (recorded["result_version_id"],),
                ).fetchone()
                if row:
                    return self._row_to_version(row)

            if session.target == UploadTarget.NEW_ASSET:
                asset_id = uuid4().hex
                conn.execute(
                    """
                    INSERT INTO assets (id, title, type, current_version_id, created_by, created_at, updated_at)
                    VALUES (?, ?, ?, NULL, ?, ?, ?)
                    """,
                    (
                        asset_id,
                        session.file_name,
                        asset_type.value,
                        session.created_by,
                        _serialize_datetime(now),
                        _serialize_datetime(now),
                    ),
                )
                version_number = 1
            else:
                asset_id = session.asset_id or ""
                exists = conn.execute("SELECT 1 FROM assets WHERE id = ?", (asset_id,)).fetchone()
                if not exists:
                    raise NotFoundError(f"Asset {asset_id} not found")
                row = conn.execute(
                    "SELECT COALESCE(MAX(version), 0) AS latest FROM asset_versions WHERE asset_id = ?",
                    (asset_id,),
                ).fetchone()
                version_number = int(row["latest"]) + 1

            version = AssetVersion(
                id=uuid4().hex,
                asset_id=asset_id,
                version=version_number,
                bucket=session.bucket,
                key=session.final_key,
                size=session.total_size,
                sha256=sha256,
                mime=session.mime,
                tech_meta=None,
                created_by=session.created_by,
                created_at=now,
            )
            conn.execute(
                """
                INSERT INTO asset_versions (
                    id, asset_id, version, bucket, key, size, sha256, mime,
                    tech_meta, created_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    version.id,
                    version.asset_id,
                    version.version,
                    version.bucket,
                    version.key,
                    version.size,
                    version.sha256,
                    version.mime,
                    None,
                    version.created_by,
                    _serialize_datetime(version.created_at),
                ),
            )

            if session.target == UploadTarget.NEW_ASSET:
                conn.execute(
                    "UPDATE assets SET current_version_id = ?, updated_at = ? WHERE id = ?",
                    (version.id, _serialize_datetime(now), asset_id),
                )

            conn.execute(
                """
                UPDATE upload_sessions
                SET completion_step = ?, result_asset_id = ?, result_version_id = ?
                WHERE id = ?
                """,
                (CompletionStep.VERSIONED.value, asset_id, version.id, session.id),
            )

        return version

    # ------------------------------------------------------------------
    # Upload sessions
    # ------------------------------------------------------------------

    def create_session(self, session: UploadSession) -> None:
        with self._get_connection(write=True) as conn:
            conn.execute(
                """
                INSERT INTO upload_sessions (
                    id, target, asset_id, file_name, mime, total_size, part_size,
                    part_count, s3_upload_id, bucket, key_temp, received_bytes,
                    state, completion_step, final_key, result_asset_id,
                    result_version_id, created_by, created_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.target.value,
                    session.asset_id,
                    session.file_name,
                    session.mime,
                    session.total_size,
                    session.part_size,
                    session.part_count,
                    session.s3_upload_id,
                    session.bucket,
                    session.key_temp,
                    session.received_bytes,
                    session.state.value,
                    session.completion_step.value,
                    session.final_key,
                    session.result_asset_id,
                    session.result_version_id,
                    session.created_by,
                    _serialize_datetime(session.created_at),
                    _serialize_datetime(session.expires_at),
                ),
            )

    def get_session(self, session_id: str) -> Optional[UploadSession]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM upload_sessions WHERE id = ?", (session_id,)).fetchone()
            return self._row_to_session(row) if row else None

    def transition_session(
        self,
        session_id: str,
        allowed_from: Sequence[UploadState],
        to: UploadState,
        received_bytes: Optional[int] = None,
    ) -> Optional[UploadSession]:
        """
        Compare-and-set the session state.

        Returns the updated session, or None when the session is missing or its
        state is not in ``allowed_from``. State and received bytes change in the
        same statement.
        """
        placeholders = ", ".join("?" for _ in allowed_from)
        updates = ["state = ?"]
        values: List[Any] = [to.value]
        if received_bytes is not None:
            updates.append("received_bytes = ?")
            values.append(received_bytes)
        values.append(session_id)
        values.extend(state.value for state in allowed_from)

        with self._get_connection(write=True) as conn:
            cursor = conn.execute(
                f"UPDATE upload_sessions SET {', '.join(updates)} WHERE id = ? AND state IN ({placeholders})",
                values,
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM upload_sessions WHERE id = ?", (session_id,)).fetchone()
            return self._row_to_session(row)

    def record_completion_step(
        self,
        session_id: str,
        step: CompletionStep,
        final_key: Optional[str] = None,
    ) -> Optional[UploadSession]:
        """
        Advance the session to ``step`` if it is still at an earlier step.

        Steps never move backwards; a caller that lost the race leaves the row
        as it is. Either way the current session is returned, or None if the
        session does not exist.
        """
        earlier = [s.value for s in CompletionStep if s.rank < step.rank]
        placeholders = ", ".join("?" for _ in earlier)
        with self._get_connection(write=True) as conn:
            if final_key is not None:
                conn.execute(
                    f"""
                    UPDATE upload_sessions SET completion_step = ?, final_key = ?
                    WHERE id = ? AND completion_step IN ({placeholders})
                    """,
                    (step.value, final_key, session_id, *earlier),
                )
            else:
                conn.execute(
                    f"""
                    UPDATE upload_sessions SET completion_step = ?
                    WHERE id = ? AND completion_step IN ({placeholders})
                    """,
                    (step.value, session_id, *earlier),
                )
            row = conn.execute("SELECT * FROM upload_sessions WHERE id = ?", (session_id,)).fetchone()
            return self._row_to_session(row) if row else None

    def list_expired_sessions(self, now: Optional[datetime] = None) -> List[UploadSession]:
        cutoff = _serialize_datetime(now or utcnow())
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM upload_sessions WHERE expires_at < ?",
                (cutoff,),
            ).fetchall()
            return [self._row_to_session(row) for row in rows]

    def delete_sessions(self, session_ids: Sequence[str]) -> int:
        if not session_ids:
            return 0
        placeholders = ", ".join("?" for _ in session_ids)
        with self._get_connection(write=True) as conn:
            cursor = conn.execute(
                f"DELETE FROM upload_sessions WHERE id IN ({placeholders})",
                list(session_ids),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Renditions
    # ------------------------------------------------------------------

    def create_rendition(
        self,
        asset_version_id: str,
        kind: RenditionKind,
        bucket: str,
        key: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        page: Optional[int] = None,
        ready: bool = False,
        dedupe: bool = False,
    ) -> Rendition:
        """
        Insert a rendition row.

        With ``dedupe`` an existing row for the same (version, kind, width,
        page, key) is updated in place instead of appending a new one.
        """
        with self._get_connection(write=True) as conn:
            if dedupe:
                existing = conn.execute(
                    """
                    SELECT * FROM renditions
                    WHERE asset_version_id = ? AND kind = ? AND key = ?
                      AND width IS ? AND page IS ?
                    """,
                    (asset_version_id, kind.value, key, width, page),
                ).fetchone()
                if existing:
                    conn.execute(
                        "UPDATE renditions SET height = ?, ready = ? WHERE id = ?",
                        (height, int(ready), existing["id"]),
                    )
                    row = conn.execute("SELECT * FROM renditions WHERE id = ?", (existing["id"],)).fetchone()
                    return self._row_to_rendition(row)

            rendition = Rendition(
                id=uuid4().hex,
                asset_version_id=asset_version_id,
                kind=kind,
                bucket=bucket,
                key=key,
                width=width,
                height=height,
                page=page,
                ready=ready,
                created_at=utcnow(),
            )
            conn.execute(
                """
                INSERT INTO renditions (
                    id, asset_version_id, kind, bucket, key, width, height, page, ready, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rendition.id,
                    rendition.asset_version_id,
                    rendition.kind.value,
                    rendition.bucket,
                    rendition.key,
                    rendition.width,
                    rendition.height,
                    rendition.page,
                    int(rendition.ready),
                    _serialize_datetime(rendition.created_at),
                ),
            )
            return rendition

    def mark_rendition_ready(self, rendition_id: str) -> bool:
        with self._get_connection(write=True) as conn:
            cursor = conn.execute("UPDATE renditions SET ready = 1 WHERE id = ?", (rendition_id,))
            return cursor.rowcount > 0

    def list_renditions(self, asset_version_id: str, ready_only: bool = False) -> List[Rendition]:
        query = "SELECT * FROM renditions WHERE asset_version_id = ?"
        if ready_only:
            query += " AND ready = 1"
        query += " ORDER BY created_at, rowid"
        with self._get_connection() as conn:
            rows = conn.execute(query, (asset_version_id,)).fetchall()
            return [self._row_to_rendition(row) for row in rows]

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_asset(self, row: sqlite3.Row) -> Asset:
        return Asset(
            id=row["id"],
            title=row["title"],
            type=AssetType(row["type"]),
            current_version_id=row["current_version_id"],
            created_by=row["created_by"],
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
        )

    def _row_to_version(self, row: sqlite3.Row) -> AssetVersion:
        return AssetVersion(
            id=row["id"],
            asset_id=row["asset_id"],
            version=row["version"],
            bucket=row["bucket"],
            key=row["key"],
            size=row["size"],
            sha256=row["sha256"],
            mime=row["mime"],
            tech_meta=json.loads(row["tech_meta"]) if row["tech_meta"] else None,
            created_by=row["created_by"],
            created_at=_deserialize_datetime(row["created_at"]),
        )

    def _row_to_session(self, row: sqlite3.Row) -> UploadSession:
        return UploadSession(
            id=row["id"],
            target=UploadTarget(row["target"]),
            asset_id=row["asset_id"],
            file_name=row["file_name"],
            mime=row["mime"],
            total_size=row["total_size"],
            part_size=row["part_size"],
            part_count=row["part_count"],
            s3_upload_id=row["s3_upload_id"],
            bucket=row["bucket"],
            key_temp=row["key_temp"],
            received_bytes=row["received_bytes"],
            state=UploadState(row["state"]),
            completion_step=CompletionStep(row["completion_step"]),
            final_key=row["final_key"],
            result_asset_id=row["result_asset_id"],
            result_version_id=row["result_version_id"],
            created_by=row["created_by"],
            created_at=_deserialize_datetime(row["created_at"]),
            expires_at=_deserialize_datetime(row["expires_at"]),
        )

    def _row_to_rendition(self, row: sqlite3.Row) -> Rendition:
        return Rendition(
            id=row["id"],
            asset_version_id=row["asset_version_id"],
            kind=RenditionKind(row["kind"]),
            bucket=row["bucket"],
            key=row["key"],
            width=row["width"],
            height=row["height"],
            page=row["page"],
            ready=bool(row["ready"]),
            created_at=_deserialize_datetime(row["created_at"]),
        )
