"""
Audit store package for the revision trail.

This package provides the append-only audit log: record models, the SQLite
store with per-target history queries, and the request middleware that
supplies ambient audit context.
"""

from .models import (
    SUPPRESSED,
    AuditAction,
    AuditQuery,
    AuditRecord,
    AuditRecordCreate,
    AuditStats,
    ReconstructedState,
    SortOrder,
    Suppressed,
    TargetRef,
)
from .store import AuditStore, RecordSequence
from .middleware import AuditContextMiddleware

__all__ = [
    "SUPPRESSED",
    "AuditAction",
    "AuditContextMiddleware",
    "AuditQuery",
    "AuditRecord",
    "AuditRecordCreate",
    "AuditStats",
    "AuditStore",
    "RecordSequence",
    "ReconstructedState",
    "SortOrder",
    "Suppressed",
    "TargetRef",
]
