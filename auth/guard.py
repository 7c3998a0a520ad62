"""
auth/guard.py -- Per-request identity and permission decisions.

Pattern: explicit policy table. Each route is looked up by (METHOD, path
template) in a plain dict supplied at construction time. A route missing from
the table requires authentication with no role restriction -- forgetting to
register a policy never opens a route to the public.

Identity is always re-read live through AuthService.get_by_id, so a
deactivated or deleted account is rejected on its very next request even
while its access token has not expired. The role used for authorization is
the stored role, not the one signed into the token.

Layer rule: no imports from api/ or core/. No FastAPI imports -- the FastAPI
glue lives in auth/dependencies.py.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from auth.errors import AuthenticationRequired, InsufficientPermissions, InvalidToken, TokenError
from auth.models import PublicUser, Role

logger = logging.getLogger("storefront.guard")


@dataclass(frozen=True)
class RoutePolicy:
    requires_auth: bool = True
    roles: frozenset[Role] = field(default_factory=frozenset)


PUBLIC = RoutePolicy(requires_auth=False)
AUTHENTICATED = RoutePolicy()
ADMIN_ONLY = RoutePolicy(roles=frozenset({Role.admin}))


@dataclass(frozen=True)
class AuthDecision:
    """Outcome of authentication for one request."""

    is_authenticated: bool
    subject: PublicUser | None = None
    role: Role | None = None


ANONYMOUS = AuthDecision(is_authenticated=False)


class AccessGuard:
    """Decides who is calling and whether they may call this route.

    Usage:
        guard = AccessGuard(service.issuer, service, {("GET", "/users"): ADMIN_ONLY})
        decision = await guard.check("GET", "/users", bearer_token)
    """

    def __init__(self, issuer, service, policies: dict[tuple[str, str], RoutePolicy], default=AUTHENTICATED) -> None:
        self._issuer = issuer
        self._service = service
        self._policies = {(method.upper(), path): policy for (method, path), policy in policies.items()}
        self._default = default

    def policy_for(self, method: str, path: str) -> RoutePolicy:
        return self._policies.get((method.upper(), path), self._default)

    async def authenticate(self, token: str | None, policy: RoutePolicy) -> AuthDecision:
        """Verify the access token and load the live subject.

        Public routes skip verification entirely. Raises
        AuthenticationRequired when no token is presented, InvalidToken when
        it fails verification or names an unknown or inactive user.
        """
        if not policy.requires_auth:
            return ANONYMOUS
        if not token:
            raise AuthenticationRequired()

        try:
            claims = self._issuer.verify(token)
            user_id = int(claims["sub"])
        except TokenError as exc:
            logger.info("Access token rejected: %s", exc.code)
            raise InvalidToken(exc.message) from exc
        except ValueError as exc:
            raise InvalidToken() from exc

        user = await self._service.get_by_id(user_id)
        if user is None:
            logger.info("Access token subject unknown or inactive user_id=%s", user_id)
            raise InvalidToken()
        return AuthDecision(is_authenticated=True, subject=user, role=user.role)

    def authorize(self, decision: AuthDecision, policy: RoutePolicy) -> None:
        if not policy.requires_auth or not policy.roles:
            return
        if decision.role not in policy.roles:
            logger.info(
                "Permission denied user_id=%s role=%s",
                decision.subject.id if decision.subject else None,
                decision.role.value if decision.role else None,
            )
            raise InsufficientPermissions()

    async def check(self, method: str, path: str, token: str | None) -> AuthDecision:
        policy = self.policy_for(method, path)
        decision = await self.authenticate(token, policy)
        self.authorize(decision, policy)
        return decision
