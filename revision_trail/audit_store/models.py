"""
Audit record models for the revision trail.

This module provides the data models for the audit log: one immutable
AuditRecord per recorded change to one target record, plus the query,
statistics and reconstruction value types built on top of it.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from revision_trail.actor_context.actors import Actor, coerce_actor
from revision_trail.change_codec import ChangeSet


class AuditAction(str, Enum):
    """Kinds of change an audit record can describe."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> "AuditAction":
        """Parse an action name, accepting the legacy "destroy" spelling."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            value = value.strip().lower()
            if value == "destroy":
                return cls.DELETE
        return cls(value)


# Shorthand filters accepted by AuditQuery.actions
ACTION_SCOPES: dict[str, AuditAction] = {
    "creates": AuditAction.CREATE,
    "updates": AuditAction.UPDATE,
    "destroys": AuditAction.DELETE,
}


class SortOrder(str, Enum):
    """Ordering of records within one target's history."""

    ASCENDING = "ascending"
    DESCENDING = "descending"


class TargetRef(BaseModel):
    """Tagged identity of an audited record: kind name plus id."""

    kind: str = Field(..., min_length=1, description="Target type name")
    id: str = Field(..., min_length=1, description="Target identifier")

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return f"{self.kind}#{self.id}"


def _normalize_target_id(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("target_id must be a string or integer")
    if isinstance(value, (int, UUID)):
        return str(value)
    return value


def _normalize_action(value: Any) -> Any:
    try:
        return AuditAction.parse(value)
    except ValueError:
        # Leave it to the field validator to report
        return value


def _normalize_changes(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, dict):
        normalized = {}
        for attribute, pair in value.items():
            if isinstance(pair, list) and len(pair) == 2:
                pair = (pair[0], pair[1])
            normalized[attribute] = pair
        return normalized
    return value


class AuditRecord(BaseModel):
    """
    Immutable record of one change to one audited target.

    Records are append-only: once stored they are never updated or deleted.
    The target is a weak (type, id) reference; the target record itself may
    no longer exist.
    """

    id: UUID = Field(default_factory=uuid4, description="Unique record identifier")
    target_type: str = Field(..., min_length=1, description="Audited record type name")
    target_id: str = Field(..., min_length=1, description="Audited record identifier")
    action: AuditAction = Field(..., description="Kind of change")
    version: int = Field(0, ge=0, description="Position within the target's history")
    changes: ChangeSet = Field(
        default_factory=dict,
        description="Attribute name -> (old value, new value)",
    )
    actor: Actor | None = Field(None, description="Who performed the change")
    comment: str | None = Field(None, description="Free-text annotation")
    correlation_id: str = Field(
        ...,
        description="Groups records produced by one originating operation",
        min_length=1,
        max_length=100,
    )
    remote_address: str | None = Field(None, description="Origin network address")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the change was recorded (UTC)",
    )

    @field_validator("target_id", mode="before")
    @classmethod
    def validate_target_id(cls, v: Any) -> Any:
        return _normalize_target_id(v)

    @field_validator("action", mode="before")
    @classmethod
    def validate_action(cls, v: Any) -> Any:
        return _normalize_action(v)

    @field_validator("changes", mode="before")
    @classmethod
    def validate_changes(cls, v: Any) -> Any:
        return _normalize_changes(v)

    @field_validator("actor", mode="before")
    @classmethod
    def validate_actor(cls, v: Any) -> Any:
        return coerce_actor(v)

    @field_validator("correlation_id")
    @classmethod
    def validate_correlation_id(cls, v: str) -> str:
        """Ensure correlation ID is not blank."""
        if not v.strip():
            raise ValueError("correlation_id cannot be empty")
        return v.strip()

    model_config = {"frozen": True}  # Immutable

    @property
    def target(self) -> TargetRef:
        return TargetRef(kind=self.target_type, id=self.target_id)

    @property
    def new_attributes(self) -> dict[str, Any]:
        """Changed attributes with their values after the change."""
        return {attribute: pair[1] for attribute, pair in self.changes.items()}

    @property
    def old_attributes(self) -> dict[str, Any]:
        """Changed attributes with their values before the change."""
        return {attribute: pair[0] for attribute, pair in self.changes.items()}


class AuditRecordCreate(BaseModel):
    """
    Model for appending new audit records (without store-assigned fields).

    Fields left unset are filled at append time: actor, correlation_id and
    remote_address from the ambient actor context, created_at from the clock,
    version from the target's history.
    """

    target_type: str = Field(..., min_length=1)
    target_id: str = Field(..., min_length=1)
    action: AuditAction
    changes: ChangeSet = Field(default_factory=dict)
    actor: Actor | None = None
    comment: str | None = None
    correlation_id: str | None = Field(None, max_length=100)
    remote_address: str | None = None
    created_at: datetime | None = None

    @field_validator("target_id", mode="before")
    @classmethod
    def validate_target_id(cls, v: Any) -> Any:
        return _normalize_target_id(v)

    @field_validator("action", mode="before")
    @classmethod
    def validate_action(cls, v: Any) -> Any:
        return _normalize_action(v)

    @field_validator("changes", mode="before")
    @classmethod
    def validate_changes(cls, v: Any) -> Any:
        return _normalize_changes(v)

    @field_validator("actor", mode="before")
    @classmethod
    def validate_actor(cls, v: Any) -> Any:
        return coerce_actor(v)

    @field_validator("correlation_id")
    @classmethod
    def validate_correlation_id(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip()


class AuditQuery(BaseModel):
    """
    Options for reading one target's history.
    """

    order: SortOrder = Field(SortOrder.ASCENDING, description="Version ordering")
    from_version: int | None = Field(None, ge=0, description="Lowest version (inclusive)")
    to_version: int | None = Field(None, ge=0, description="Highest version (inclusive)")
    up_until: datetime | None = Field(None, description="Latest created_at (inclusive)")
    actions: list[AuditAction] | None = Field(None, description="Filter by actions")
    limit: int | None = Field(None, ge=1, description="Maximum results to return")
    offset: int = Field(0, ge=0, description="Offset for pagination")

    @field_validator("actions", mode="before")
    @classmethod
    def validate_actions(cls, v: Any) -> Any:
        """Accept the creates/updates/destroys shorthands."""
        if v is None:
            return None
        if isinstance(v, str):
            v = [v]
        return [ACTION_SCOPES.get(item, item) if isinstance(item, str) else item for item in v]


class AuditStats(BaseModel):
    """
    Statistics about stored audit records.
    """

    total_records: int = Field(..., description="Total number of records")
    action_counts: dict[str, int] = Field(default_factory=dict, description="Count by action")
    target_type_counts: dict[str, int] = Field(
        default_factory=dict, description="Count by target type"
    )
    earliest_record: datetime | None = Field(None, description="created_at of earliest record")
    latest_record: datetime | None = Field(None, description="created_at of latest record")
    correlation_id_count: int = Field(..., description="Number of unique correlation IDs")


class ReconstructedState(BaseModel):
    """Attribute state of a target folded from its ordered history."""

    attributes: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(0, ge=0)

    @property
    def is_empty(self) -> bool:
        return not self.attributes


class Suppressed:
    """Result of an append while tracking is disabled.

    Not an error and not a record: the caller should read it as "tracking is
    currently off".
    """

    _instance: "Suppressed | None" = None

    def __new__(cls) -> "Suppressed":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "SUPPRESSED"


SUPPRESSED = Suppressed()
