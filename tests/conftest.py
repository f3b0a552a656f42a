"""Shared fixtures for revision-trail tests."""

from pathlib import Path

import pytest

from revision_trail.actor_context import AuditContext
from revision_trail.audit_store import AuditStore
from revision_trail.targets import InMemoryRecordStore, TargetRegistry
from revision_trail.tracking import TrackedRecordStore

WIDGET_FIELDS = ("name", "size", "audit_version")


@pytest.fixture
def audit_context() -> AuditContext:
    return AuditContext()


@pytest.fixture
def audit_store(tmp_path: Path, audit_context: AuditContext) -> AuditStore:
    """Audit store on a temporary database."""
    return AuditStore(db_path=tmp_path / "audit.db", context=audit_context)


@pytest.fixture
def widgets() -> InMemoryRecordStore:
    return InMemoryRecordStore("Widget", WIDGET_FIELDS)


@pytest.fixture
def tracked_widgets(widgets: InMemoryRecordStore, audit_store: AuditStore) -> TrackedRecordStore:
    return TrackedRecordStore("Widget", widgets, audit_store)


@pytest.fixture
def registry(widgets: InMemoryRecordStore) -> TargetRegistry:
    return TargetRegistry({"Widget": widgets})
