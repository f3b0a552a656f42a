"""Reconstruction of historical record state.

Folds an ordered slice of audit records into the attribute state a target had
at that point in its history: for every record, each changed attribute takes
the record's new value (last write wins), and the state's version becomes the
record's version.

Reconstruction never fails on missing history; an empty slice yields an empty
state at version 0. Deciding whether that means "not found" or "start from a
fresh record" is up to the caller.
"""

from datetime import datetime
from typing import Any, Iterable, Iterator

from revision_trail.audit_store import AuditQuery, AuditRecord, AuditStore, ReconstructedState
from revision_trail.structured_logging import get_logger
from revision_trail.targets import TargetRegistry

logger = get_logger(__name__)

AUDIT_VERSION_ATTRIBUTE = "audit_version"


def reconstruct(
    ancestors: Iterable[AuditRecord],
    to_version: int | None = None,
) -> ReconstructedState:
    """Fold ascending audit records into an attribute state.

    Args:
        ancestors: Records of one target in ascending order.
        to_version: Stop before the first record above this version, without
            reading the rest of the sequence.

    Returns:
        The folded attributes and the version of the last record applied.
    """
    attributes: dict[str, Any] = {}
    version = 0
    for record in ancestors:
        if to_version is not None and record.version > to_version:
            break
        attributes.update(record.new_attributes)
        version = record.version
    return ReconstructedState(attributes=attributes, version=version)


def apply_to(target: Any, state: ReconstructedState | dict[str, Any]) -> Any:
    """Best-effort assignment of reconstructed attributes onto a record.

    Records implementing ``try_set`` decide for themselves which attributes
    they accept. Plain objects only receive attributes they already have.
    Attributes the target does not support, or whose assignment raises, are
    dropped: old history may mention columns that no longer exist.

    Args:
        target: Live or freshly built record.
        state: Reconstructed state, or a bare attribute mapping.

    Returns:
        The same target, for chaining.
    """
    attributes = state.attributes if isinstance(state, ReconstructedState) else state
    try_set = getattr(target, "try_set", None)
    for name, value in attributes.items():
        try:
            if callable(try_set):
                try_set(name, value)
            elif hasattr(target, name) and not callable(getattr(target, name)):
                setattr(target, name, value)
        except Exception as e:
            logger.debug("attribute_not_assigned", attribute=name, error=str(e))
    return target


class ReconstructionEngine:
    """Rebuilds past states of audited targets from the audit store."""

    def __init__(self, store: AuditStore, registry: TargetRegistry | None = None) -> None:
        """
        Args:
            store: Audit store to read history from.
            registry: Target accessors, needed only by ``revision``.
        """
        self._store = store
        self._registry = registry or TargetRegistry()

    def state_at(
        self,
        target_type: str,
        target_id: str | int,
        version: int | None = None,
        up_until: datetime | None = None,
    ) -> ReconstructedState:
        """Reconstruct a target's attributes at a version or point in time.

        The bounds go into the query, so history past them is never loaded.

        Args:
            target_type: Audited record type name.
            target_id: Audited record identifier.
            version: Highest version to include. None means the latest.
            up_until: Latest created_at to include.

        Returns:
            The reconstructed state (empty at version 0 if nothing matches).
        """
        history = self._store.query(
            target_type,
            target_id,
            AuditQuery(to_version=version, up_until=up_until),
        )
        state = reconstruct(history, to_version=version)
        logger.debug(
            "state_reconstructed",
            target_type=target_type,
            target_id=str(target_id),
            version=state.version,
            attribute_count=len(state.attributes),
        )
        return state

    def revision(self, record: AuditRecord) -> Any:
        """What the target looked like right after ``record``.

        Starts from the live record when it still exists, otherwise from a
        fresh unsaved record, and applies the reconstructed state plus an
        ``audit_version`` attribute. Nothing is persisted.

        Args:
            record: Record previously read from the store.

        Returns:
            The record instance carrying the historical attributes, or None
            when no accessor is registered for the target type.
        """
        accessor = self._registry.get(record.target_type)
        if accessor is None:
            logger.warning("revision_unknown_target_type", target_type=record.target_type)
            return None

        state = reconstruct(self._store.ancestors_of(record))
        instance = accessor.find(record.target_id)
        if instance is None:
            instance = accessor.new()
        attributes = dict(state.attributes)
        attributes[AUDIT_VERSION_ATTRIBUTE] = state.version
        return apply_to(instance, attributes)

    def revisions(self, target_type: str, target_id: str | int) -> Iterator[ReconstructedState]:
        """Yield the state after each record of a target's history, in order."""
        attributes: dict[str, Any] = {}
        for record in self._store.query(target_type, target_id):
            attributes.update(record.new_attributes)
            yield ReconstructedState(attributes=dict(attributes), version=record.version)


__all__ = [
    "AUDIT_VERSION_ATTRIBUTE",
    "ReconstructionEngine",
    "apply_to",
    "reconstruct",
]
