"""Live record boundary for the revision trail.

The audit engine never owns the records it audits. It reaches them through a
RecordAccessor per target type, looked up by type name in a TargetRegistry,
and assigns attributes only through LiveRecord.try_set.

This module also ships an in-memory accessor with a fixed attribute schema,
used in tests and for local development in place of a real database.
"""

import itertools
from threading import Lock
from typing import Any, Iterable, Mapping, Protocol, runtime_checkable

from revision_trail.audit_store.models import TargetRef
from revision_trail.structured_logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class LiveRecord(Protocol):
    """A mutable application record that accepts attribute assignment."""

    def try_set(self, name: str, value: Any) -> bool:
        """Assign ``value`` to attribute ``name``.

        Returns:
            True if the attribute exists and was set, False if the record
            does not support that attribute (nothing is changed).
        """
        ...


class RecordAccessor(Protocol):
    """Operations the audit engine needs from the live record store.

    One accessor serves one target type.
    """

    def find(self, target_id: str) -> Any | None:
        """Return the live record with this id, or None."""
        ...

    def new(self) -> Any:
        """Return a fresh, unsaved record of this type."""
        ...

    def create(self, attributes: Mapping[str, Any]) -> Any:
        """Persist a new record built from ``attributes`` and return it."""
        ...

    def update(self, record: Any, attributes: Mapping[str, Any]) -> Any:
        """Persist ``attributes`` onto an existing record and return it."""
        ...

    def delete(self, record: Any) -> None:
        """Remove an existing record."""
        ...

    def identity_of(self, record: Any) -> str:
        """Return the record's id as the audit log stores it."""
        ...

    def snapshot(self, record: Any) -> dict[str, Any]:
        """Return the record's current attribute values."""
        ...


class RecordNotFoundError(LookupError):
    """Raised by an accessor when the record to change does not exist."""
    pass


class RecordExistsError(ValueError):
    """Raised by an accessor when creating a record whose id is taken."""
    pass


class TargetRegistry:
    """Maps target type names to the accessors that reach their records."""

    def __init__(self, accessors: Mapping[str, RecordAccessor] | None = None) -> None:
        self._accessors: dict[str, RecordAccessor] = dict(accessors or {})

    def register(self, kind: str, accessor: RecordAccessor) -> None:
        self._accessors[kind] = accessor

    def get(self, kind: str) -> RecordAccessor | None:
        return self._accessors.get(kind)

    def kinds(self) -> set[str]:
        return set(self._accessors)

    def resolve(self, target: TargetRef) -> Any | None:
        """Find the live record behind a target reference, if it still exists."""
        accessor = self.get(target.kind)
        if accessor is None:
            return None
        return accessor.find(target.id)

    def __contains__(self, kind: str) -> bool:
        return kind in self._accessors


class InMemoryRecord:
    """Record with a fixed set of attributes.

    Attributes outside the schema are rejected by ``try_set``; they can still
    be read as None so that old audit payloads never break a reader.
    """

    def __init__(self, kind: str, fields: Iterable[str], values: Mapping[str, Any] | None = None) -> None:
        self.kind = kind
        self._fields = tuple(fields)
        self._values: dict[str, Any] = {name: None for name in self._fields}
        for name, value in (values or {}).items():
            self.try_set(name, value)

    @property
    def fields(self) -> tuple[str, ...]:
        return self._fields

    @property
    def id(self) -> Any:
        return self._values.get("id")

    def try_set(self, name: str, value: Any) -> bool:
        if name not in self._values:
            return False
        self._values[name] = value
        return True

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    @property
    def attributes(self) -> dict[str, Any]:
        return dict(self._values)

    def copy(self) -> "InMemoryRecord":
        return InMemoryRecord(self.kind, self._fields, self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, InMemoryRecord):
            return NotImplemented
        return self.kind == other.kind and self._values == other._values

    def __repr__(self) -> str:
        return f"InMemoryRecord({self.kind!r}, {self._values!r})"


class InMemoryRecordStore:
    """Thread-safe in-memory RecordAccessor for one record type.

    Ids are unique. Records handed out are copies: changing one does not
    touch the store until it is passed back through ``update``.
    """

    def __init__(self, kind: str, fields: Iterable[str]) -> None:
        """
        Args:
            kind: Target type name served by this store.
            fields: Attribute schema. An ``id`` field is always included.
        """
        self.kind = kind
        fields = list(fields)
        if "id" not in fields:
            fields.insert(0, "id")
        self.fields = tuple(fields)
        self._records: dict[str, InMemoryRecord] = {}
        self._ids = itertools.count(1)
        self._lock = Lock()

    def identity_of(self, record: InMemoryRecord) -> str:
        return str(record.id)

    def snapshot(self, record: InMemoryRecord) -> dict[str, Any]:
        return record.attributes

    def find(self, target_id: Any) -> InMemoryRecord | None:
        with self._lock:
            record = self._records.get(str(target_id))
            return record.copy() if record is not None else None

    def new(self) -> InMemoryRecord:
        return InMemoryRecord(self.kind, self.fields)

    def create(self, attributes: Mapping[str, Any]) -> InMemoryRecord:
        with self._lock:
            record = InMemoryRecord(self.kind, self.fields, attributes)
            if record.id is None:
                record.try_set("id", self._allocate_id())
            key = str(record.id)
            if key in self._records:
                raise RecordExistsError(f"{self.kind} {key} already exists")
            self._records[key] = record
            logger.debug("live_record_created", kind=self.kind, record_id=key)
            return record.copy()

    def _allocate_id(self) -> int:
        while True:
            candidate = next(self._ids)
            if str(candidate) not in self._records:
                return candidate

    def update(self, record: InMemoryRecord, attributes: Mapping[str, Any]) -> InMemoryRecord:
        with self._lock:
            key = str(record.id)
            stored = self._records.get(key)
            if stored is None:
                raise RecordNotFoundError(f"{self.kind} {key} not found")
            for name, value in attributes.items():
                if name == "id":
                    continue
                stored.try_set(name, value)
                record.try_set(name, value)
            return stored.copy()

    def delete(self, record: InMemoryRecord) -> None:
        with self._lock:
            key = str(record.id)
            if self._records.pop(key, None) is None:
                raise RecordNotFoundError(f"{self.kind} {key} not found")
            logger.debug("live_record_deleted", kind=self.kind, record_id=key)

    def all(self) -> list[InMemoryRecord]:
        with self._lock:
            return [record.copy() for record in self._records.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


__all__ = [
    "InMemoryRecord",
    "InMemoryRecordStore",
    "LiveRecord",
    "RecordAccessor",
    "RecordExistsError",
    "RecordNotFoundError",
    "TargetRegistry",
]
