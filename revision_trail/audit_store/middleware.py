"""Audit context middleware for FastAPI.

This module provides middleware that opens one unit of work per request, so
every audit record appended while handling the request shares its
correlation ID, actor and remote address.
"""

from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from revision_trail.actor_context import (
    ActorLike,
    new_correlation_id,
    normalize_correlation_id,
    unit_of_work,
)

CORRELATION_ID_HEADER = "X-Correlation-ID"


class AuditContextMiddleware(BaseHTTPMiddleware):
    """Middleware to bracket each request in an audit unit of work.

    Checks for X-Correlation-ID header and uses it as the correlation ID.
    If the header is missing, blank or too long, generates a new UUID.
    Resolves the acting user through an optional callable.
    Adds X-Correlation-ID header to response.
    """

    def __init__(
        self,
        app: ASGIApp,
        actor_resolver: Callable[[Request], ActorLike] | None = None,
    ) -> None:
        """
        Args:
            app: Wrapped ASGI application.
            actor_resolver: Returns the actor for a request (from the session
                or auth layer). Requests resolve to no actor when omitted.
        """
        super().__init__(app)
        self._actor_resolver = actor_resolver

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        """Process request inside a unit of work.

        Args:
            request: Incoming request.
            call_next: Next middleware/handler in chain.

        Returns:
            Response with X-Correlation-ID header.
        """
        correlation_id = (
            normalize_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
            or new_correlation_id()
        )
        actor = self._actor_resolver(request) if self._actor_resolver else None
        remote_address = request.client.host if request.client else None

        with unit_of_work(
            actor=actor,
            correlation_id=correlation_id,
            remote_address=remote_address,
        ):
            response = await call_next(request)

        response.headers[CORRELATION_ID_HEADER] = correlation_id

        return response
