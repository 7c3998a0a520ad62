"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

enforce_access() is mounted as a router-level dependency, so it runs before
every route on the auth router. It resolves the matched route's path
template, asks the AccessGuard for a decision and stores it on
request.state.auth. Route handlers then read the caller with
get_current_user() instead of re-verifying anything.

Only the Authorization: Bearer <token> header is accepted. There is no cookie
fallback, so there is no CSRF surface.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import uuid

from fastapi import Request

from auth.errors import AuthenticationRequired
from auth.guard import AuthDecision
from auth.models import PublicUser, RequestContext
from auth.service import AuthService


def bearer_token(request: Request) -> str | None:
    """Return the token from an Authorization: Bearer header, or None."""
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def enforce_access(request: Request) -> AuthDecision:
    """Authenticate and authorize the request against the route policy table.

    Raises AuthenticationRequired / InvalidToken (401) or
    InsufficientPermissions (403); api/main.py renders them.
    """
    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    decision = await request.app.state.guard.check(request.method, path, bearer_token(request))
    request.state.auth = decision
    return decision


def get_current_user(request: Request) -> PublicUser:
    """The authenticated caller. Raises AuthenticationRequired on public routes."""
    decision: AuthDecision | None = getattr(request.state, "auth", None)
    if decision is None or not decision.is_authenticated or decision.subject is None:
        raise AuthenticationRequired()
    return decision.subject


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_request_context(request: Request) -> RequestContext:
    """Build the per-call context from the client address and headers."""
    return RequestContext(
        origin=request.client.host if request.client else "unknown",
        user_agent=request.headers.get("User-Agent"),
        request_id=getattr(request.state, "request_id", None) or uuid.uuid4().hex,
    )
