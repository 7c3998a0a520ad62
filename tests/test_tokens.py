"""
tests/test_tokens.py -- Unit tests for auth.tokens.TokenIssuer.

Coverage:
  - access and refresh tokens verify only against their own secret
  - expiry, wrong audience/issuer and garbage input map to distinct errors
  - jti keeps tokens minted in the same second distinct
  - best-effort helpers never raise
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.errors import TokenExpired, TokenInvalid, TokenMalformed
from auth.models import Role
from auth.tokens import TokenIssuer, token_claims_for

ACCESS_SECRET = "a" * 64
REFRESH_SECRET = "r" * 64
CLAIMS = {"sub": "42", "email": "a@example.com", "role": "customer"}


def _issuer(**overrides) -> TokenIssuer:
    kwargs = {"issuer": "storefront-api", "audience": "storefront-client"}
    kwargs.update(overrides)
    return TokenIssuer(ACCESS_SECRET, REFRESH_SECRET, **kwargs)


class TestIssueAndVerify:
    def test_access_round_trip(self) -> None:
        issuer = _issuer()
        claims = issuer.verify(issuer.issue_access(CLAIMS))
        assert claims["sub"] == "42"
        assert claims["email"] == "a@example.com"
        assert claims["role"] == "customer"
        assert claims["iss"] == "storefront-api"
        assert claims["aud"] == "storefront-client"
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_refresh_round_trip(self) -> None:
        issuer = _issuer()
        claims = issuer.verify(issuer.issue_refresh(CLAIMS), is_refresh=True)
        assert claims["exp"] - claims["iat"] == 7 * 24 * 3600

    def test_refresh_token_rejected_as_access(self) -> None:
        issuer = _issuer()
        with pytest.raises(TokenInvalid):
            issuer.verify(issuer.issue_refresh(CLAIMS))

    def test_access_token_rejected_as_refresh(self) -> None:
        issuer = _issuer()
        with pytest.raises(TokenInvalid):
            issuer.verify(issuer.issue_access(CLAIMS), is_refresh=True)

    def test_expired(self) -> None:
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        old = _issuer(clock=lambda: past, access_expire_seconds=60)
        with pytest.raises(TokenExpired):
            _issuer().verify(old.issue_access(CLAIMS))

    def test_wrong_audience(self) -> None:
        token = _issuer(audience="someone-else").issue_access(CLAIMS)
        with pytest.raises(TokenInvalid):
            _issuer().verify(token)

    def test_wrong_issuer(self) -> None:
        token = _issuer(issuer="other-api").issue_access(CLAIMS)
        with pytest.raises(TokenInvalid):
            _issuer().verify(token)

    def test_missing_subject(self) -> None:
        token = jwt.encode(
            {"email": "a@example.com", "aud": "storefront-client", "iss": "storefront-api"},
            ACCESS_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(TokenInvalid):
            _issuer().verify(token)

    @pytest.mark.parametrize("missing", ["aud", "iss", "exp"])
    def test_registered_claim_required(self, missing: str) -> None:
        now = int(datetime.now(timezone.utc).timestamp())
        payload = {
            "sub": "1",
            "role": "admin",
            "iss": "storefront-api",
            "aud": "storefront-client",
            "iat": now,
            "exp": now + 600,
        }
        del payload[missing]
        token = jwt.encode(payload, ACCESS_SECRET, algorithm="HS256")
        with pytest.raises(TokenInvalid):
            _issuer().verify(token)

    @pytest.mark.parametrize("token", ["", "garbage", "not.a.jwt"])
    def test_malformed(self, token: str) -> None:
        with pytest.raises(TokenMalformed):
            _issuer().verify(token)

    def test_same_second_tokens_differ(self) -> None:
        fixed = datetime.now(timezone.utc)
        issuer = _issuer(clock=lambda: fixed)
        assert issuer.issue_refresh(CLAIMS) != issuer.issue_refresh(CLAIMS)

    def test_expires_in_reflects_configuration(self) -> None:
        issuer = _issuer(access_expire_seconds=120)
        assert issuer.access_expires_in == 120
        claims = issuer.verify(issuer.issue_access(CLAIMS))
        assert claims["exp"] - claims["iat"] == 120


class TestBestEffortHelpers:
    def test_decode_does_not_verify(self) -> None:
        token = _issuer(audience="someone-else").issue_access(CLAIMS)
        assert _issuer().decode(token)["sub"] == "42"

    def test_decode_garbage(self) -> None:
        assert _issuer().decode("garbage") is None

    def test_is_expired(self) -> None:
        issuer = _issuer()
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        stale = _issuer(clock=lambda: past, access_expire_seconds=60).issue_access(CLAIMS)
        assert issuer.is_expired(issuer.issue_access(CLAIMS)) is False
        assert issuer.is_expired(stale) is True
        assert issuer.is_expired("garbage") is True

    def test_extract_subject(self) -> None:
        issuer = _issuer()
        assert issuer.extract_subject(issuer.issue_access(CLAIMS)) == "42"
        assert issuer.extract_subject("garbage") is None


def test_claims_for_enum_role() -> None:
    assert token_claims_for(7, "a@example.com", Role.admin) == {"sub": "7", "email": "a@example.com", "role": "admin"}
