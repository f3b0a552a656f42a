"""
Unit tests for audit record models and the SQLite audit store.
"""

import contextvars
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest

from revision_trail.actor_context import (
    AuditContext,
    IdentifiedActor,
    NamedActor,
    as_actor,
    set_correlation_id,
    unit_of_work,
)
from revision_trail.audit_store import (
    SUPPRESSED,
    AuditAction,
    AuditQuery,
    AuditRecord,
    AuditRecordCreate,
    AuditStore,
    SortOrder,
    Suppressed,
)
from revision_trail.change_codec import ColumnEncoding
from revision_trail.errors import AuditStoreError, CodecError, ValidationError

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _create(target_id="1", action=AuditAction.UPDATE, changes=None, **kwargs) -> AuditRecordCreate:
    return AuditRecordCreate(
        target_type="Widget",
        target_id=target_id,
        action=action,
        changes=changes or {},
        **kwargs,
    )


class TestAuditRecordModel:
    """Tests for AuditRecord Pydantic model."""

    def test_record_creation(self) -> None:
        record = AuditRecord(
            target_type="Widget",
            target_id=7,
            action="create",
            changes={"name": [None, "Bolt"]},
            correlation_id="corr-1",
        )

        assert record.id is not None
        assert record.target_id == "7"
        assert record.action == AuditAction.CREATE
        assert record.changes == {"name": (None, "Bolt")}
        assert record.version == 0
        assert str(record.target) == "Widget#7"

    def test_record_immutability(self) -> None:
        record = AuditRecord(
            target_type="Widget", target_id="1", action="update", correlation_id="c"
        )

        with pytest.raises(Exception):  # Pydantic raises ValidationError or TypeError
            record.comment = "changed"  # type: ignore

    def test_correlation_id_validation(self) -> None:
        from pydantic import ValidationError as PydanticValidationError

        with pytest.raises(PydanticValidationError):
            AuditRecord(target_type="Widget", target_id="1", action="update", correlation_id="")

        with pytest.raises(ValueError, match="correlation_id cannot be empty"):
            AuditRecord(target_type="Widget", target_id="1", action="update", correlation_id="   ")

    def test_legacy_destroy_action(self) -> None:
        record = AuditRecord(
            target_type="Widget", target_id="1", action="destroy", correlation_id="c"
        )

        assert record.action == AuditAction.DELETE

    def test_old_and_new_attributes(self) -> None:
        record = AuditRecord(
            target_type="Widget",
            target_id="1",
            action="update",
            changes={"name": ("Nut", "Bolt"), "size": (3, 4)},
            correlation_id="c",
        )

        assert record.old_attributes == {"name": "Nut", "size": 3}
        assert record.new_attributes == {"name": "Bolt", "size": 4}

    def test_string_actor_becomes_named_actor(self) -> None:
        record = AuditRecord(
            target_type="Widget", target_id="1", action="update", actor="alice", correlation_id="c"
        )

        assert record.actor == NamedActor(name="alice")

    def test_query_action_shorthands(self) -> None:
        query = AuditQuery(actions=["creates", "destroys"])

        assert query.actions == [AuditAction.CREATE, AuditAction.DELETE]
        assert AuditQuery(actions="updates").actions == [AuditAction.UPDATE]

    def test_suppressed_is_falsy_singleton(self) -> None:
        assert Suppressed() is SUPPRESSED
        assert not SUPPRESSED
        assert repr(SUPPRESSED) == "SUPPRESSED"


class TestAppend:
    """Tests for AuditStore.append."""

    def test_store_initialization(self, audit_store: AuditStore) -> None:
        assert audit_store.db_path.exists()
        assert audit_store.codec.encoding == ColumnEncoding.TEXT

    def test_append_assigns_identity_and_version(self, audit_store: AuditStore) -> None:
        record = audit_store.append(
            _create(action=AuditAction.CREATE, changes={"name": (None, "Bolt")})
        )

        assert isinstance(record, AuditRecord)
        assert record.version == 1
        assert record.correlation_id
        assert record.created_at.tzinfo is not None
        assert audit_store.get_record(record.id) == record

    def test_versions_increment_per_target(self, audit_store: AuditStore) -> None:
        first = audit_store.append(_create("1"))
        second = audit_store.append(_create("1"))
        other = audit_store.append(_create("2"))

        assert (first.version, second.version, other.version) == (1, 2, 1)

    def test_append_accepts_dict(self, audit_store: AuditStore) -> None:
        record = audit_store.append(
            {"target_type": "Widget", "target_id": 5, "action": "destroy", "changes": {}}
        )

        assert record.target_id == "5"
        assert record.action == AuditAction.DELETE

    def test_missing_identity_rejected(self, audit_store: AuditStore) -> None:
        with pytest.raises(ValidationError):
            audit_store.append({"target_id": "1", "action": "create"})

        with pytest.raises(ValidationError):
            audit_store.append({"target_type": "Widget", "target_id": "", "action": "create"})

        assert audit_store.count() == 0

    def test_invalid_action_rejected(self, audit_store: AuditStore) -> None:
        with pytest.raises(ValidationError):
            audit_store.append({"target_type": "Widget", "target_id": "1", "action": "explode"})

    def test_unserializable_payload_rejected(self, audit_store: AuditStore) -> None:
        with pytest.raises(CodecError):
            audit_store.append(_create(changes={"tags": (None, {"a"})}))

        assert audit_store.count() == 0

    def test_actor_taken_from_context(self, audit_store: AuditStore) -> None:
        with as_actor("alice"):
            record = audit_store.append(_create())

        assert record.actor == NamedActor(name="alice")
        assert audit_store.get_record(record.id).actor == NamedActor(name="alice")

    def test_explicit_actor_wins(self, audit_store: AuditStore) -> None:
        actor = IdentifiedActor(kind="User", ref="42")

        with as_actor("alice"):
            record = audit_store.append(_create(actor=actor))

        assert audit_store.get_record(record.id).actor == actor

    def test_unit_of_work_shares_correlation_id(self, audit_store: AuditStore) -> None:
        with unit_of_work(actor="bob", remote_address="10.0.0.1") as correlation_id:
            first = audit_store.append(_create("1"))
            second = audit_store.append(_create("2"))

        assert first.correlation_id == second.correlation_id == correlation_id
        assert first.remote_address == "10.0.0.1"

    def test_bare_appends_get_distinct_correlation_ids(self, audit_store: AuditStore) -> None:
        first = audit_store.append(_create())
        second = audit_store.append(_create())

        assert first.correlation_id != second.correlation_id

    @pytest.mark.parametrize("ambient", ["   ", "x" * 150])
    def test_unusable_ambient_correlation_id_replaced(
        self, audit_store: AuditStore, ambient: str
    ) -> None:
        def append_with_ambient() -> AuditRecord:
            set_correlation_id(ambient)
            return audit_store.append(_create("7", action=AuditAction.CREATE))

        record = contextvars.copy_context().run(append_with_ambient)

        assert record.correlation_id.strip()
        assert len(record.correlation_id) <= 100
        assert list(audit_store.query("Widget", "7")) == [record]

    def test_unusable_unit_of_work_correlation_id_replaced(self, audit_store: AuditStore) -> None:
        with unit_of_work(correlation_id=" ") as correlation_id:
            record = audit_store.append(_create("7"))

        assert record.correlation_id == correlation_id
        assert correlation_id.strip()

    def test_too_long_explicit_correlation_id_rejected(self, audit_store: AuditStore) -> None:
        with pytest.raises(ValidationError):
            audit_store.append(
                {"target_type": "Widget", "target_id": "1", "action": "update", "correlation_id": "x" * 150}
            )

        assert audit_store.count() == 0

    def test_invalid_stored_row_raises_store_error(self, audit_store: AuditStore) -> None:
        conn = sqlite3.connect(str(audit_store.db_path))
        try:
            conn.execute(
                """
                INSERT INTO audit_records
                (id, target_type, target_id, action, version, changes,
                 correlation_id, created_at)
                VALUES (?, 'Widget', '7', 'create', 1, '{}', ' ', ?)
                """,
                (str(uuid4()), T0.isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(AuditStoreError, match="is invalid"):
            list(audit_store.query("Widget", "7"))

    def test_suppressed_when_disabled(self, audit_store: AuditStore) -> None:
        audit_store.context.disabled = True

        result = audit_store.append(_create())

        assert result is SUPPRESSED
        assert audit_store.count() == 0

    def test_tracking_disabled_block(self, audit_store: AuditStore) -> None:
        with audit_store.context.tracking_disabled():
            assert audit_store.append(_create()) is SUPPRESSED

        assert isinstance(audit_store.append(_create()), AuditRecord)
        assert audit_store.count() == 1

    def test_store_assigned_timestamps_never_decrease(self, audit_store: AuditStore) -> None:
        records = [audit_store.append(_create()) for _ in range(5)]

        stamps = [record.created_at for record in records]
        assert stamps == sorted(stamps)

    def test_concurrent_appends_get_unique_versions(self, audit_store: AuditStore) -> None:
        errors: list[Exception] = []

        def worker() -> None:
            try:
                for _ in range(5):
                    audit_store.append(_create("1"))
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        versions = [record.version for record in audit_store.query("Widget", "1")]
        assert versions == list(range(1, 21))

    def test_records_cannot_be_updated_or_deleted(self, audit_store: AuditStore) -> None:
        audit_store.append(_create())

        conn = sqlite3.connect(str(audit_store.db_path))
        try:
            with pytest.raises(sqlite3.DatabaseError, match="append-only"):
                conn.execute("UPDATE audit_records SET comment = 'x'")
            with pytest.raises(sqlite3.DatabaseError, match="append-only"):
                conn.execute("DELETE FROM audit_records")
        finally:
            conn.close()

        assert audit_store.count() == 1


class TestQuery:
    """Tests for history queries."""

    @pytest.fixture
    def history(self, audit_store: AuditStore) -> list[AuditRecord]:
        return [
            audit_store.append(_create(action=AuditAction.CREATE, changes={"name": (None, "Nut")}, created_at=T0)),
            audit_store.append(_create(changes={"name": ("Nut", "Bolt")}, created_at=T0 + timedelta(minutes=1))),
            audit_store.append(_create(changes={"size": (None, 4)}, created_at=T0 + timedelta(minutes=2))),
            audit_store.append(_create(action=AuditAction.DELETE, changes={"name": ("Bolt", None)}, created_at=T0 + timedelta(minutes=3))),
        ]

    def test_ascending_by_default(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        assert [r.version for r in audit_store.query("Widget", "1")] == [1, 2, 3, 4]

    def test_integer_target_id(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        assert len(list(audit_store.query("Widget", 1))) == 4

    def test_descending(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        records = audit_store.query("Widget", "1", AuditQuery(order=SortOrder.DESCENDING))

        assert [r.version for r in records] == [4, 3, 2, 1]

    def test_version_bounds(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        records = audit_store.query("Widget", "1", AuditQuery(from_version=2, to_version=3))

        assert [r.version for r in records] == [2, 3]

    def test_up_until(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        records = audit_store.query(
            "Widget", "1", AuditQuery(up_until=T0 + timedelta(minutes=1, seconds=30))
        )

        assert [r.version for r in records] == [1, 2]

    def test_action_filter(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        updates = audit_store.query("Widget", "1", AuditQuery(actions="updates"))
        lifecycle = audit_store.query("Widget", "1", AuditQuery(actions=["creates", "destroys"]))

        assert [r.version for r in updates] == [2, 3]
        assert [r.action for r in lifecycle] == [AuditAction.CREATE, AuditAction.DELETE]

    def test_limit_and_offset(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        page = audit_store.query("Widget", "1", AuditQuery(limit=2, offset=1))
        tail = audit_store.query("Widget", "1", AuditQuery(offset=3))

        assert [r.version for r in page] == [2, 3]
        assert [r.version for r in tail] == [4]

    def test_first_and_last(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        records = audit_store.query("Widget", "1")

        assert records.first() == history[0]
        assert records.last() == history[-1]
        assert audit_store.query("Widget", "missing").first() is None

    def test_sequence_is_restartable(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        records = audit_store.query("Widget", "1")
        assert len(list(records)) == 4

        audit_store.append(_create())

        assert len(list(records)) == 5

    def test_payload_round_trips(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        stored = audit_store.get_record(history[1].id)

        assert stored.changes == {"name": ("Nut", "Bolt")}
        assert stored.created_at == T0 + timedelta(minutes=1)

    def test_get_nonexistent_record(self, audit_store: AuditStore) -> None:
        assert audit_store.get_record(uuid4()) is None

    def test_ancestors_of(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        ancestors = list(audit_store.ancestors_of(history[2]))

        assert ancestors == history[:3]

    def test_ancestors_of_first_record(self, audit_store: AuditStore, history: list[AuditRecord]) -> None:
        assert list(audit_store.ancestors_of(history[0])) == [history[0]]


class TestStoreSummaries:
    """Tests for counts, tracked types and stats."""

    def test_distinct_tracked_types(self, audit_store: AuditStore) -> None:
        audit_store.append(_create())
        audit_store.append(AuditRecordCreate(target_type="Gadget", target_id="1", action="create"))

        assert audit_store.distinct_tracked_types() == {"Widget", "Gadget"}
        assert audit_store.context.audited_types() == {"Widget", "Gadget"}

    def test_count(self, audit_store: AuditStore) -> None:
        audit_store.append(_create("1"))
        audit_store.append(_create("1"))
        audit_store.append(_create("2"))

        assert audit_store.count() == 3
        assert audit_store.count("Widget", 1) == 2
        assert audit_store.count("Gadget") == 0

    def test_stats(self, audit_store: AuditStore) -> None:
        with unit_of_work():
            audit_store.append(_create(action=AuditAction.CREATE, created_at=T0))
            audit_store.append(_create(created_at=T0 + timedelta(hours=1)))
        audit_store.append(_create("2", action=AuditAction.DELETE, created_at=T0 + timedelta(hours=2)))

        stats = audit_store.get_stats()

        assert stats.total_records == 3
        assert stats.action_counts == {"create": 1, "update": 1, "delete": 1}
        assert stats.target_type_counts == {"Widget": 3}
        assert stats.earliest_record == T0
        assert stats.latest_record == T0 + timedelta(hours=2)
        assert stats.correlation_id_count == 2

    def test_empty_stats(self, audit_store: AuditStore) -> None:
        stats = audit_store.get_stats()

        assert stats.total_records == 0
        assert stats.earliest_record is None


class TestStructuredPayloadColumn:
    """Tests for stores whose payload column is declared JSON."""

    def test_structured_round_trip(self, tmp_path: Path) -> None:
        store = AuditStore(tmp_path / "structured.db", payload_encoding=ColumnEncoding.STRUCTURED)
        record = store.append(_create(changes={"tags": (None, ["a", "b"]), "name": ("Nut", "Bolt")}))

        assert store.codec.encoding == ColumnEncoding.STRUCTURED
        assert store.get_record(record.id).changes == {
            "tags": (None, ["a", "b"]),
            "name": ("Nut", "Bolt"),
        }

    def test_existing_table_keeps_its_column_type(self, tmp_path: Path) -> None:
        db_path = tmp_path / "audit.db"
        AuditStore(db_path).append(_create(changes={"name": (None, "Bolt")}))

        reopened = AuditStore(db_path, payload_encoding=ColumnEncoding.STRUCTURED)

        assert reopened.codec.encoding == ColumnEncoding.TEXT
        assert reopened.query("Widget", "1").first().changes == {"name": (None, "Bolt")}


class TestLegacyVersioning:
    """Tests for stores that record every change at version 0."""

    @pytest.fixture
    def legacy_store(self, tmp_path: Path) -> AuditStore:
        return AuditStore(tmp_path / "legacy.db", context=AuditContext(versioning_enabled=False))

    def test_versions_are_zero(self, legacy_store: AuditStore) -> None:
        records = [legacy_store.append(_create()) for _ in range(3)]

        assert [r.version for r in records] == [0, 0, 0]

    def test_append_order_breaks_ties(self, legacy_store: AuditStore) -> None:
        records = [
            legacy_store.append(_create(changes={"size": (None, n)}, created_at=T0))
            for n in range(3)
        ]

        assert list(legacy_store.query("Widget", "1")) == records

    def test_ancestors_stop_at_record(self, legacy_store: AuditStore) -> None:
        records = [legacy_store.append(_create(created_at=T0)) for _ in range(3)]

        assert list(legacy_store.ancestors_of(records[1])) == records[:2]

    def test_append_order_wins_over_created_at(self, legacy_store: AuditStore) -> None:
        later = legacy_store.append(_create(created_at=T0 + timedelta(hours=1)))
        earlier = legacy_store.append(_create(created_at=T0))

        assert list(legacy_store.query("Widget", "1")) == [later, earlier]
        assert list(legacy_store.ancestors_of(later)) == [later]
