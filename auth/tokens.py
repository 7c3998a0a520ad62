"""
auth/tokens.py -- JWT issuance and verification for access and refresh tokens.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with
       *different* secrets, so presenting one where the other is expected
       always fails signature verification (fail closed).

  Claims: sub (user id as string), email, role, iat, exp, plus iss/aud so a
       token minted for another service is rejected, and jti so two tokens
       minted in the same second for the same user never collide. Refresh
       token strings are stored server-side and matched exactly on rotation.

  verify() raises TokenMalformed / TokenExpired / TokenInvalid. Callers that
       only need best-effort data (logging) use decode(), is_expired() or
       extract_subject(), which never raise. decode() does not check the
       signature and must never feed an authorization decision.

Layer rule: no imports from api/ or core/. Secrets and lifetimes are injected.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Callable

from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.errors import TokenExpired, TokenInvalid, TokenMalformed

logger = logging.getLogger("storefront.auth")

_ALGORITHM = "HS256"
# python-jose skips the aud/iss checks when the claim is absent.
_REQUIRED_CLAIMS = {"require_aud": True, "require_iss": True, "require_exp": True, "require_sub": True}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Signs and verifies the access/refresh token pair.

    Usage:
        issuer = TokenIssuer(access_secret, refresh_secret, issuer="storefront-api",
                             audience="storefront-client")
        token = issuer.issue_access({"sub": "42", "email": "a@b.co", "role": "customer"})
        claims = issuer.verify(token)
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str,
        audience: str,
        access_expire_seconds: int = 15 * 60,
        refresh_expire_seconds: int = 7 * 24 * 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self._issuer = issuer
        self._audience = audience
        self._access_ttl = access_expire_seconds
        self._refresh_ttl = refresh_expire_seconds
        self._clock = clock

    @property
    def access_expires_in(self) -> int:
        return self._access_ttl

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access(self, claims: dict) -> str:
        return self._sign(claims, self._access_secret, self._access_ttl)

    def issue_refresh(self, claims: dict) -> str:
        return self._sign(claims, self._refresh_secret, self._refresh_ttl)

    def _sign(self, claims: dict, secret: str, ttl: int) -> str:
        now = int(self._clock().timestamp())
        payload = {
            "sub": str(claims["sub"]),
            "email": claims["email"],
            "role": getattr(claims["role"], "value", claims["role"]),
            "iat": now,
            "exp": now + ttl,
            "iss": self._issuer,
            "aud": self._audience,
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, is_refresh: bool = False) -> dict:
        """Verify signature, expiry, issuer and audience. Return the claims.

        The secret is chosen by is_refresh. A refresh token checked as an
        access token (or the reverse) fails with TokenInvalid.
        """
        if not token or not isinstance(token, str):
            raise TokenMalformed()
        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenMalformed() from exc

        secret = self._refresh_secret if is_refresh else self._access_secret
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options=_REQUIRED_CLAIMS,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTClaimsError as exc:
            logger.warning("Token claim check failed: %s", exc)
            raise TokenInvalid() from exc
        except JWTError as exc:
            logger.warning("Token verification failed: %s", exc)
            raise TokenInvalid() from exc

        if not claims.get("sub"):
            raise TokenInvalid()
        return claims

    # ------------------------------------------------------------------
    # Best-effort helpers (diagnostics only)
    # ------------------------------------------------------------------

    def decode(self, token: str) -> dict | None:
        """Decode without verifying the signature. Never use for authorization."""
        try:
            return jwt.get_unverified_claims(token)
        except (JWTError, AttributeError, TypeError) as exc:
            logger.warning("Token decode failed: %s", exc)
            return None

    def is_expired(self, token: str) -> bool:
        claims = self.decode(token)
        if not claims or "exp" not in claims:
            return True
        try:
            return int(claims["exp"]) < int(self._clock().timestamp())
        except (TypeError, ValueError):
            return True

    def extract_subject(self, token: str) -> str | None:
        claims = self.decode(token)
        if not claims:
            return None
        sub = claims.get("sub")
        return str(sub) if sub else None


def token_claims_for(user_id: int, email: str, role) -> dict:
    """Build the claim set shared by both token kinds. role may be a Role enum."""
    return {"sub": str(user_id), "email": email, "role": getattr(role, "value", role)}
