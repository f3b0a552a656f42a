"""
Audit store implementation on SQLite.

This module provides append-only storage for audit records with per-target
history queries. Records are never updated or deleted; the table carries
triggers that reject UPDATE and DELETE at the database level as well.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Iterator
from uuid import UUID, uuid4

from pydantic import ValidationError as PydanticValidationError

from revision_trail.actor_context import (
    AuditContext,
    actor_adapter,
    get_actor,
    get_correlation_id,
    get_remote_address,
    new_correlation_id,
    normalize_correlation_id,
)
from revision_trail.change_codec import ChangeCodec, ColumnEncoding
from revision_trail.errors import AuditStoreError, ValidationError
from revision_trail.structured_logging import get_logger

from .models import (
    SUPPRESSED,
    AuditAction,
    AuditQuery,
    AuditRecord,
    AuditRecordCreate,
    AuditStats,
    SortOrder,
    Suppressed,
)

logger = get_logger(__name__)

# Structured payload columns are declared as JSON and parsed on read
sqlite3.register_converter("JSON", json.loads)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

_SELECT_COLUMNS = """
    seq, id, target_type, target_id, action, version, changes, actor,
    comment, correlation_id, remote_address, created_at
"""


def _format_timestamp(value: datetime) -> str:
    """Fixed-width UTC text so lexical order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


class RecordSequence:
    """
    Lazy, restartable view over an ordered query result.

    Nothing is read until iteration starts; every iteration re-runs the query
    against the current contents of the store and streams rows in batches.
    """

    def __init__(self, store: "AuditStore", sql: str, params: list[Any]) -> None:
        self._store = store
        self._sql = sql
        self._params = params

    def __iter__(self) -> Iterator[AuditRecord]:
        with self._store._get_connection() as conn:
            try:
                cursor = conn.execute(self._sql, self._params)
                while True:
                    rows = cursor.fetchmany(self._store.batch_size)
                    if not rows:
                        break
                    for row in rows:
                        yield self._store._row_to_record(row)
            except sqlite3.Error as e:
                raise AuditStoreError(f"Failed to read audit records: {e}") from e

    def first(self) -> AuditRecord | None:
        for record in self:
            return record
        return None

    def last(self) -> AuditRecord | None:
        record = None
        for record in self:
            pass
        return record


class AuditStore:
    """
    Append-only audit record store with SQLite backend.

    Thread-safe for concurrent appends. Version assignment and insert run in
    a single BEGIN IMMEDIATE transaction, which also serialises appenders in
    other processes sharing the database file.
    """

    batch_size = 200

    def __init__(
        self,
        db_path: str | Path = "audit.db",
        context: AuditContext | None = None,
        payload_encoding: ColumnEncoding = ColumnEncoding.TEXT,
    ) -> None:
        """
        Initialize audit store.

        Args:
            db_path: Path to SQLite database file
            context: Audit switches (disabled flag, versioning mode). A fresh
                context with tracking enabled is used when omitted.
            payload_encoding: Column type for the change payload when the
                table is created. An existing table keeps its declared type.
        """
        self.db_path = Path(db_path)
        self.context = context or AuditContext()
        self._write_lock = Lock()
        self._last_created_at: datetime | None = None
        self._init_db(ColumnEncoding(payload_encoding))
        self._column_encoding = self._detect_payload_encoding()
        self.codec = ChangeCodec(lambda: self._column_encoding)

    def _init_db(self, payload_encoding: ColumnEncoding) -> None:
        """Create database schema if it doesn't exist."""
        column_type = "JSON" if payload_encoding == ColumnEncoding.STRUCTURED else "TEXT"
        with self._get_connection() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS audit_records (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    target_type TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    changes {column_type} NOT NULL,
                    actor TEXT,
                    comment TEXT,
                    correlation_id TEXT NOT NULL,
                    remote_address TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_target
                ON audit_records(target_type, target_id, version)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_created_at
                ON audit_records(created_at)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_correlation_id
                ON audit_records(correlation_id)
            """)

            conn.execute("""
                CREATE TRIGGER IF NOT EXISTS audit_records_no_update
                BEFORE UPDATE ON audit_records
                BEGIN
                    SELECT RAISE(ABORT, 'audit records are append-only');
                END
            """)
            conn.execute("""
                CREATE TRIGGER IF NOT EXISTS audit_records_no_delete
                BEFORE DELETE ON audit_records
                BEGIN
                    SELECT RAISE(ABORT, 'audit records are append-only');
                END
            """)

    def _detect_payload_encoding(self) -> ColumnEncoding:
        """Ask the schema whether the payload column is text or structured."""
        with self._get_connection() as conn:
            for column in conn.execute("PRAGMA table_info(audit_records)").fetchall():
                if column["name"] == "changes":
                    if column["type"].upper() == "JSON":
                        return ColumnEncoding.STRUCTURED
                    return ColumnEncoding.TEXT
        return ColumnEncoding.TEXT

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get an autocommit connection; transactions are opened explicitly."""
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=30,
                isolation_level=None,
                detect_types=sqlite3.PARSE_DECLTYPES,
            )
        except sqlite3.Error as e:
            raise AuditStoreError(f"Failed to open audit database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _next_created_at(self, requested: datetime | None) -> datetime:
        if requested is not None:
            if requested.tzinfo is None:
                return requested.replace(tzinfo=timezone.utc)
            return requested.astimezone(timezone.utc)

        now = datetime.now(timezone.utc)
        # Store-assigned timestamps never go backwards
        if self._last_created_at is not None and now < self._last_created_at:
            now = self._last_created_at
        self._last_created_at = now
        return now

    def append(self, record: AuditRecordCreate | dict[str, Any]) -> AuditRecord | Suppressed:
        """
        Append a new audit record to the store.

        Args:
            record: Record data to append. Plain dicts are validated as
                AuditRecordCreate.

        Returns:
            The stored record with generated id, created_at and version, or
            SUPPRESSED when tracking is disabled (nothing is written).

        Raises:
            ValidationError: If identity fields are missing or the action is invalid
            CodecError: If the change payload cannot be serialized
            AuditStoreError: If the record cannot be persisted
        """
        if self.context.disabled:
            logger.debug("audit_append_suppressed", reason="tracking_disabled")
            return SUPPRESSED

        if not isinstance(record, AuditRecordCreate):
            try:
                record = AuditRecordCreate.model_validate(record)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid audit record: {e}") from e

        actor = record.actor if record.actor is not None else get_actor()
        correlation_id = self._resolve_correlation_id(record.correlation_id)
        remote_address = record.remote_address or get_remote_address()
        payload = self.codec.encode(record.changes)
        if isinstance(payload, dict):
            payload = json.dumps(payload, sort_keys=True)

        try:
            with self._write_lock, self._get_connection() as conn:
                # Validated in full before anything is written
                stored = self._build_record(
                    record, actor, correlation_id, remote_address,
                    self._next_created_at(record.created_at),
                )
                conn.execute("BEGIN IMMEDIATE")
                try:
                    version = self._next_version(conn, stored.target_type, stored.target_id)
                    stored = stored.model_copy(update={"version": version})
                    conn.execute(
                        """
                        INSERT INTO audit_records
                        (id, target_type, target_id, action, version, changes, actor,
                         comment, correlation_id, remote_address, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            str(stored.id),
                            stored.target_type,
                            stored.target_id,
                            stored.action.value,
                            stored.version,
                            payload,
                            stored.actor.model_dump_json() if stored.actor is not None else None,
                            stored.comment,
                            stored.correlation_id,
                            stored.remote_address,
                            _format_timestamp(stored.created_at),
                        ),
                    )
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as e:
            raise AuditStoreError(f"Failed to append audit record: {e}") from e

        logger.info(
            "audit_record_appended",
            record_id=str(stored.id),
            target_type=stored.target_type,
            target_id=stored.target_id,
            action=stored.action.value,
            version=stored.version,
        )
        self.context.register_type(stored.target_type)
        return stored

    def _resolve_correlation_id(self, explicit: str | None) -> str:
        """Explicit ID, else a usable ambient one, else a fresh one."""
        if explicit is not None:
            return explicit
        ambient = get_correlation_id()
        correlation_id = normalize_correlation_id(ambient)
        if correlation_id is None:
            if ambient:
                logger.warning("ambient_correlation_id_rejected", length=len(ambient))
            correlation_id = new_correlation_id()
        return correlation_id

    def _build_record(
        self,
        record: AuditRecordCreate,
        actor: Any,
        correlation_id: str,
        remote_address: str | None,
        created_at: datetime,
    ) -> AuditRecord:
        try:
            return AuditRecord(
                id=uuid4(),
                target_type=record.target_type,
                target_id=record.target_id,
                action=record.action,
                version=0,
                changes=record.changes,
                actor=actor,
                comment=record.comment,
                correlation_id=correlation_id,
                remote_address=remote_address,
                created_at=created_at,
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid audit record: {e}") from e

    def _next_version(self, conn: sqlite3.Connection, target_type: str, target_id: str) -> int:
        if not self.context.versioning_enabled:
            return 0
        current = conn.execute(
            """
            SELECT MAX(version) FROM audit_records
            WHERE target_type = ? AND target_id = ?
            """,
            (target_type, target_id),
        ).fetchone()[0]
        return (current or 0) + 1

    def get_record(self, record_id: str | UUID) -> AuditRecord | None:
        """
        Retrieve a specific record by ID.

        Args:
            record_id: UUID of the record

        Returns:
            The record if found, None otherwise
        """
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM audit_records WHERE id = ?",
                (str(record_id),),
            ).fetchone()

            if not row:
                return None

            return self._row_to_record(row)

    def query(
        self,
        target_type: str,
        target_id: str | int,
        options: AuditQuery | None = None,
    ) -> RecordSequence:
        """
        Query one target's history.

        Args:
            target_type: Audited record type name
            target_id: Audited record identifier
            options: Ordering, version/time bounds, action filter, paging

        Returns:
            Lazy sequence ordered by version, then append order
        """
        options = options or AuditQuery()
        conditions = ["target_type = ?", "target_id = ?"]
        params: list[Any] = [target_type, str(target_id)]

        if options.from_version is not None:
            conditions.append("version >= ?")
            params.append(options.from_version)

        if options.to_version is not None:
            conditions.append("version <= ?")
            params.append(options.to_version)

        if options.up_until is not None:
            conditions.append("created_at <= ?")
            params.append(_format_timestamp(options.up_until))

        if options.actions:
            placeholders = ",".join("?" * len(options.actions))
            conditions.append(f"action IN ({placeholders})")
            params.extend(action.value for action in options.actions)

        return RecordSequence(self, self._ordered_sql(conditions, options), params)

    def ancestors_of(self, record: AuditRecord) -> RecordSequence:
        """
        Return the record and every earlier record of the same target.

        With versioning enabled this is ``version <= record.version``. When
        every version is 0 the append sequence bounds the slice instead, so
        records appended after ``record`` are never included.

        Args:
            record: A record previously returned by this store

        Returns:
            Lazy sequence in ascending order, ending with ``record``
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT seq FROM audit_records WHERE id = ?", (str(record.id),)
            ).fetchone()
        record_seq = row["seq"] if row else None

        conditions = ["target_type = ?", "target_id = ?"]
        params: list[Any] = [record.target_type, record.target_id]
        if record_seq is None:
            conditions.append("version <= ?")
            params.append(record.version)
        else:
            conditions.append("(version < ? OR (version = ? AND seq <= ?))")
            params.extend([record.version, record.version, record_seq])

        return RecordSequence(self, self._ordered_sql(conditions, AuditQuery()), params)

    def _ordered_sql(self, conditions: list[str], options: AuditQuery) -> str:
        direction = "DESC" if options.order == SortOrder.DESCENDING else "ASC"
        sql = f"""
            SELECT {_SELECT_COLUMNS} FROM audit_records
            WHERE {' AND '.join(conditions)}
            ORDER BY version {direction}, seq {direction}
        """
        if options.limit is not None:
            sql += f" LIMIT {int(options.limit)} OFFSET {int(options.offset)}"
        elif options.offset:
            sql += f" LIMIT -1 OFFSET {int(options.offset)}"
        return sql

    def distinct_tracked_types(self) -> set[str]:
        """
        Every target type that has at least one audit record.

        Returns:
            Set of target type names
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT target_type FROM audit_records ORDER BY target_type"
            ).fetchall()
            return {row["target_type"] for row in rows}

    def count(self, target_type: str | None = None, target_id: str | int | None = None) -> int:
        """
        Count stored records, optionally for one type or one target.
        """
        conditions = []
        params: list[Any] = []
        if target_type is not None:
            conditions.append("target_type = ?")
            params.append(target_type)
        if target_id is not None:
            conditions.append("target_id = ?")
            params.append(str(target_id))

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._get_connection() as conn:
            return conn.execute(
                f"SELECT COUNT(*) FROM audit_records {where_clause}", params
            ).fetchone()[0]

    def get_stats(self) -> AuditStats:
        """
        Get statistics about stored audit records.

        Returns:
            Statistics summary
        """
        with self._get_connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM audit_records").fetchone()[0]

            action_rows = conn.execute("""
                SELECT action, COUNT(*) as count
                FROM audit_records
                GROUP BY action
            """).fetchall()
            action_counts = {row["action"]: row["count"] for row in action_rows}

            type_rows = conn.execute("""
                SELECT target_type, COUNT(*) as count
                FROM audit_records
                GROUP BY target_type
            """).fetchall()
            type_counts = {row["target_type"]: row["count"] for row in type_rows}

            time_range = conn.execute("""
                SELECT
                    MIN(created_at) as earliest,
                    MAX(created_at) as latest
                FROM audit_records
            """).fetchone()

            earliest = (
                datetime.fromisoformat(time_range["earliest"])
                if time_range["earliest"]
                else None
            )
            latest = (
                datetime.fromisoformat(time_range["latest"])
                if time_range["latest"]
                else None
            )

            corr_count = conn.execute("""
                SELECT COUNT(DISTINCT correlation_id)
                FROM audit_records
            """).fetchone()[0]

            return AuditStats(
                total_records=total,
                action_counts=action_counts,
                target_type_counts=type_counts,
                earliest_record=earliest,
                latest_record=latest,
                correlation_id_count=corr_count,
            )

    def _row_to_record(self, row: sqlite3.Row) -> AuditRecord:
        """Convert database row to AuditRecord model."""
        try:
            actor = actor_adapter.validate_json(row["actor"]) if row["actor"] else None
            return AuditRecord(
                id=row["id"],
                target_type=row["target_type"],
                target_id=row["target_id"],
                action=AuditAction.parse(row["action"]),
                version=row["version"],
                changes=self.codec.decode(row["changes"]),
                actor=actor,
                comment=row["comment"],
                correlation_id=row["correlation_id"],
                remote_address=row["remote_address"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
        except PydanticValidationError as e:
            raise AuditStoreError(f"Stored audit record {row['id']} is invalid: {e}") from e
