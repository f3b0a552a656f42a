"""Ambient actor context for audit attribution.

The request/session layer sets the current actor, correlation id and remote
address at the start of a unit of work; the audit store reads them when a
record is appended without explicit values.

Values live in context variables, so every thread and every asyncio task sees
its own copy and concurrent operations never cross-attribute actors.

Usage:
    from revision_trail.actor_context import as_actor, unit_of_work, with_actor

    with unit_of_work(actor="alice", remote_address="10.0.0.1"):
        store.append(...)          # attributed to alice, shared correlation id

    with_actor("batch-job", reimport_catalog)
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from threading import Lock
from typing import Any, Callable, Iterator, TypeVar

from revision_trail.actor_context.actors import (
    Actor,
    IdentifiedActor,
    NamedActor,
    actor_adapter,
    coerce_actor,
)

ActorLike = NamedActor | IdentifiedActor | str | None

T = TypeVar("T")

MAX_CORRELATION_ID_LENGTH = 100

actor_ctx: ContextVar[NamedActor | IdentifiedActor | None] = ContextVar("audit_actor", default=None)
correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")
remote_address_ctx: ContextVar[str | None] = ContextVar("remote_address", default=None)


def get_actor() -> NamedActor | IdentifiedActor | None:
    """Get the ambient actor, or None when nobody is attributed."""
    return actor_ctx.get()


def get_correlation_id() -> str:
    """Get the current correlation ID.

    Returns:
        Current correlation ID or empty string if not set.
    """
    return correlation_id_ctx.get()


def set_correlation_id(correlation_id: str) -> None:
    """Set correlation ID for the current context.

    Args:
        correlation_id: Correlation ID to set.
    """
    correlation_id_ctx.set(correlation_id)


def get_remote_address() -> str | None:
    return remote_address_ctx.get()


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def normalize_correlation_id(value: str | None) -> str | None:
    """Strip a correlation ID, returning None if it is blank or too long.

    Args:
        value: Candidate ID from a caller, a header or the ambient context.

    Returns:
        The stripped ID, or None when it cannot be stored.
    """
    if value is None:
        return None
    value = value.strip()
    if not value or len(value) > MAX_CORRELATION_ID_LENGTH:
        return None
    return value


@contextmanager
def as_actor(actor: ActorLike) -> Iterator[NamedActor | IdentifiedActor | None]:
    """Attribute everything recorded inside the block to ``actor``.

    The previous actor is restored on exit, including when the block raises.
    """
    token = actor_ctx.set(coerce_actor(actor))
    try:
        yield actor_ctx.get()
    finally:
        actor_ctx.reset(token)


def with_actor(actor: ActorLike, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call ``fn`` with the ambient actor temporarily set to ``actor``.

    Args:
        actor: Actor to attribute changes to; strings become NamedActor.
        fn: Callable to run.
        *args: Positional arguments for ``fn``.
        **kwargs: Keyword arguments for ``fn``.

    Returns:
        Whatever ``fn`` returns.
    """
    with as_actor(actor):
        return fn(*args, **kwargs)


@contextmanager
def unit_of_work(
    actor: ActorLike = None,
    correlation_id: str | None = None,
    remote_address: str | None = None,
) -> Iterator[str]:
    """Bracket one logical operation (a request, a job run...).

    Args:
        actor: Actor for the operation. None keeps the ambient actor.
        correlation_id: Correlation ID to use. If omitted (or blank or too
            long), the ambient one is kept, or a fresh one is generated when
            none usable is ambient.
        remote_address: Origin address. None keeps the ambient address.

    Yields:
        The correlation ID in effect for the block.
    """
    effective_id = (
        normalize_correlation_id(correlation_id)
        or normalize_correlation_id(correlation_id_ctx.get())
        or new_correlation_id()
    )
    tokens = [(correlation_id_ctx, correlation_id_ctx.set(effective_id))]
    if actor is not None:
        tokens.append((actor_ctx, actor_ctx.set(coerce_actor(actor))))
    if remote_address is not None:
        tokens.append((remote_address_ctx, remote_address_ctx.set(remote_address)))
    try:
        yield effective_id
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class AuditContext:
    """
    Process-level audit switches, injected into the store.

    Holds the tracking on/off flag, the versioning mode and the registry of
    audited type names. Thread-safe. Each store (and each test) gets its own
    instance instead of sharing class-level state.
    """

    def __init__(self, disabled: bool = False, versioning_enabled: bool = True) -> None:
        """
        Args:
            disabled: Start with tracking switched off.
            versioning_enabled: Assign incrementing per-target versions. When
                False every record gets version 0 and history is ordered by
                append sequence only.
        """
        self._lock = Lock()
        self._disabled = disabled
        self.versioning_enabled = versioning_enabled
        self._audited_types: set[str] = set()

    @property
    def disabled(self) -> bool:
        with self._lock:
            return self._disabled

    @disabled.setter
    def disabled(self, value: bool) -> None:
        with self._lock:
            self._disabled = bool(value)

    @contextmanager
    def tracking_disabled(self) -> Iterator[None]:
        """Switch tracking off for the duration of the block."""
        with self._lock:
            previous = self._disabled
            self._disabled = True
        try:
            yield
        finally:
            with self._lock:
                self._disabled = previous

    def register_type(self, type_name: str) -> None:
        """Record that ``type_name`` is being audited."""
        with self._lock:
            self._audited_types.add(type_name)

    def audited_types(self) -> set[str]:
        with self._lock:
            return set(self._audited_types)


__all__ = [
    "Actor",
    "ActorLike",
    "AuditContext",
    "IdentifiedActor",
    "MAX_CORRELATION_ID_LENGTH",
    "NamedActor",
    "actor_adapter",
    "coerce_actor",
    "as_actor",
    "get_actor",
    "get_correlation_id",
    "get_remote_address",
    "new_correlation_id",
    "normalize_correlation_id",
    "set_correlation_id",
    "unit_of_work",
    "with_actor",
]
