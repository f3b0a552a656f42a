"""Record store wrapper with audit logging.

This module provides a wrapper around a record accessor that automatically
appends an audit record for every create, update and delete it performs.
A mutation whose audit record cannot be written is reverted.

TrackedRecordStore is itself a RecordAccessor, so registering it in a
TargetRegistry makes the undo engine's inverse operations audited too.
"""

from typing import Any, Mapping

from revision_trail.actor_context import unit_of_work
from revision_trail.audit_store import (
    AuditAction,
    AuditRecord,
    AuditStore,
    Suppressed,
)
from revision_trail.change_codec import ChangeSet
from revision_trail.errors import RevisionTrailError
from revision_trail.structured_logging import get_logger
from revision_trail.targets import RecordAccessor

logger = get_logger(__name__)


class TrackedRecordStore:
    """Wrapper that adds audit logging to any record accessor.

    This class wraps an accessor for one target type and records a change
    payload for each mutation, enabling full reconstruction and undo.
    """

    def __init__(
        self,
        kind: str,
        accessor: RecordAccessor,
        audit_store: AuditStore,
    ) -> None:
        """Initialize tracked store.

        Args:
            kind: Target type name written to the audit records.
            accessor: Underlying live record accessor.
            audit_store: Audit store receiving the records.
        """
        self.kind = kind
        self._accessor = accessor
        self._audit = audit_store
        self._audit.context.register_type(kind)

    def find(self, target_id: Any) -> Any | None:
        return self._accessor.find(target_id)

    def new(self) -> Any:
        return self._accessor.new()

    def identity_of(self, record: Any) -> str:
        return self._accessor.identity_of(record)

    def snapshot(self, record: Any) -> dict[str, Any]:
        return self._accessor.snapshot(record)

    def create(self, attributes: Mapping[str, Any], comment: str | None = None) -> Any:
        """Create a record and audit every attribute it was created with."""
        with unit_of_work():
            self._check_payload({name: (None, value) for name, value in attributes.items()})
            record = self._accessor.create(attributes)
            changes = {
                name: (None, value)
                for name, value in self._accessor.snapshot(record).items()
            }
            try:
                self._emit(AuditAction.CREATE, self._accessor.identity_of(record), changes, comment)
            except RevisionTrailError:
                self._accessor.delete(record)
                raise
        return record

    def update(self, record: Any, attributes: Mapping[str, Any], comment: str | None = None) -> Any:
        """Update a record and audit the attributes whose value changed.

        No audit record is written when nothing actually changes.
        """
        with unit_of_work():
            target_id = self._accessor.identity_of(record)
            current = self._accessor.find(target_id)
            before = self._accessor.snapshot(current if current is not None else record)
            self._check_payload(
                {name: (before.get(name), value) for name, value in attributes.items()}
            )

            updated = self._accessor.update(record, attributes)

            after = self._accessor.snapshot(updated)
            changes = {
                name: (before.get(name), after[name])
                for name in attributes
                if name in after and before.get(name) != after[name]
            }
            if changes:
                try:
                    self._emit(AuditAction.UPDATE, target_id, changes, comment)
                except RevisionTrailError:
                    self._accessor.update(record, {name: old for name, (old, _) in changes.items()})
                    raise
            else:
                logger.debug("tracked_update_without_changes", kind=self.kind, target_id=target_id)
        return updated

    def delete(self, record: Any, comment: str | None = None) -> None:
        """Delete a record and audit the attribute values it had."""
        with unit_of_work():
            target_id = self._accessor.identity_of(record)
            current = self._accessor.find(target_id)
            before = self._accessor.snapshot(current if current is not None else record)
            changes = {name: (value, None) for name, value in before.items()}
            self._check_payload(changes)

            self._accessor.delete(record)

            try:
                self._emit(AuditAction.DELETE, target_id, changes, comment)
            except RevisionTrailError:
                self._accessor.create(before)
                raise

    def _check_payload(self, changes: ChangeSet) -> None:
        """Raise CodecError before mutating if the payload cannot be stored."""
        if not self._audit.context.disabled:
            self._audit.codec.encode(changes)

    def _emit(
        self,
        action: AuditAction,
        target_id: str,
        changes: ChangeSet,
        comment: str | None,
    ) -> AuditRecord | Suppressed:
        """Append audit record.

        Args:
            action: Kind of change.
            target_id: Identity of the changed record.
            changes: Attribute name -> (old, new).
            comment: Optional annotation.
        """
        return self._audit.append(
            {
                "target_type": self.kind,
                "target_id": target_id,
                "action": action,
                "changes": changes,
                "comment": comment,
            }
        )


__all__ = ["TrackedRecordStore"]
