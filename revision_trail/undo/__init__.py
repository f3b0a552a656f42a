"""Undo of recorded changes.

Applies the inverse of one audit record to the live record store:

- create -> delete the live record
- delete -> create a new record from the payload's old values
- update -> write each changed attribute back to its old value

Every precondition is checked before the single mutating call to the
accessor, so a refused undo leaves the live store untouched. Undo is not
audited here; route the inverse through a TrackedRecordStore if it should be.
"""

from typing import Any

from revision_trail.audit_store import AuditAction, AuditRecord
from revision_trail.errors import UndoError, UndoFailure
from revision_trail.structured_logging import get_logger
from revision_trail.targets import (
    RecordAccessor,
    RecordExistsError,
    RecordNotFoundError,
    TargetRegistry,
)

logger = get_logger(__name__)


class UndoEngine:
    """Computes and applies the inverse of a single audit record."""

    def __init__(self, registry: TargetRegistry) -> None:
        """
        Args:
            registry: Accessors for every target type that can be undone.
        """
        self._registry = registry

    def undo(self, record: AuditRecord) -> Any | None:
        """
        Reverse the change described by ``record``.

        Args:
            record: The audit record to invert.

        Returns:
            The recreated or reverted live record; None after undoing a create.

        Raises:
            UndoError: TARGET_MISSING if the live record to delete or revert
                is gone, DUPLICATE if a record to recreate already exists,
                INVALID_ACTION for an unknown action, UNKNOWN_TARGET if no
                accessor is registered for the target type.
        """
        try:
            action = AuditAction.parse(record.action)
        except ValueError:
            raise UndoError(UndoFailure.INVALID_ACTION, f"invalid action given {record.action!r}")

        accessor = self._registry.get(record.target_type)
        if accessor is None:
            raise UndoError(UndoFailure.UNKNOWN_TARGET, record.target_type)

        if action == AuditAction.CREATE:
            result = self._undo_create(accessor, record)
        elif action == AuditAction.DELETE:
            result = self._undo_delete(accessor, record)
        else:
            result = self._undo_update(accessor, record)

        logger.info(
            "undo_applied",
            record_id=str(record.id),
            target_type=record.target_type,
            target_id=record.target_id,
            action=action.value,
        )
        return result

    def _undo_create(self, accessor: RecordAccessor, record: AuditRecord) -> None:
        live = accessor.find(record.target_id)
        if live is None:
            raise UndoError(UndoFailure.TARGET_MISSING, str(record.target))
        try:
            accessor.delete(live)
        except RecordNotFoundError as e:
            raise UndoError(UndoFailure.TARGET_MISSING, str(record.target)) from e
        return None

    def _undo_delete(self, accessor: RecordAccessor, record: AuditRecord) -> Any:
        if accessor.find(record.target_id) is not None:
            raise UndoError(UndoFailure.DUPLICATE, str(record.target))
        try:
            return accessor.create(record.old_attributes)
        except RecordExistsError as e:
            raise UndoError(UndoFailure.DUPLICATE, str(record.target)) from e

    def _undo_update(self, accessor: RecordAccessor, record: AuditRecord) -> Any:
        live = accessor.find(record.target_id)
        if live is None:
            raise UndoError(UndoFailure.TARGET_MISSING, str(record.target))
        try:
            return accessor.update(live, record.old_attributes)
        except RecordNotFoundError as e:
            raise UndoError(UndoFailure.TARGET_MISSING, str(record.target)) from e


__all__ = ["UndoEngine", "UndoError", "UndoFailure"]
