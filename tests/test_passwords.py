"""
tests/test_passwords.py -- Unit tests for auth.passwords.CredentialHasher.

Coverage:
  - hash/verify round trip, single-character mutation rejected, per-hash salt
  - malformed or empty stored hashes verify as False instead of raising
  - bcrypt's 72-byte input limit does not break long passwords
  - strength rules report every violation at once
  - secure tokens and their SHA-256 digests
"""

from __future__ import annotations

import pytest

from auth.passwords import CredentialHasher


@pytest.fixture
def fast_hasher() -> CredentialHasher:
    return CredentialHasher(rounds=4)


class TestHashAndVerify:
    def test_round_trip(self, fast_hasher: CredentialHasher) -> None:
        stored = fast_hasher.hash("S3cretPass")
        assert fast_hasher.verify("S3cretPass", stored) is True

    @pytest.mark.parametrize("attempt", ["s3cretPass", "S3cretPas", "S3cretPass!", "X3cretPass", " S3cretPass"])
    def test_single_character_change_rejected(self, fast_hasher: CredentialHasher, attempt: str) -> None:
        stored = fast_hasher.hash("S3cretPass")
        assert fast_hasher.verify(attempt, stored) is False

    def test_hash_is_salted(self, fast_hasher: CredentialHasher) -> None:
        assert fast_hasher.hash("S3cretPass") != fast_hasher.hash("S3cretPass")

    def test_hash_never_contains_plaintext(self, fast_hasher: CredentialHasher) -> None:
        assert "S3cretPass" not in fast_hasher.hash("S3cretPass")

    def test_cost_factor_is_encoded_in_hash(self) -> None:
        assert CredentialHasher(rounds=5).hash("S3cretPass").startswith("$2b$05$")

    def test_malformed_hash_is_a_mismatch(self, fast_hasher: CredentialHasher) -> None:
        assert fast_hasher.verify("S3cretPass", "not-a-bcrypt-hash") is False

    @pytest.mark.parametrize("stored", [None, ""])
    def test_missing_hash_is_a_mismatch(self, fast_hasher: CredentialHasher, stored) -> None:
        assert fast_hasher.verify("S3cretPass", stored) is False

    def test_password_longer_than_72_bytes(self, fast_hasher: CredentialHasher) -> None:
        long_password = "Aa1" + "x" * 100
        stored = fast_hasher.hash(long_password)
        assert fast_hasher.verify(long_password, stored) is True


class TestStrength:
    def test_strong_password(self) -> None:
        result = CredentialHasher.validate_strength("Passw0rd")
        assert result.valid is True
        assert result.errors == []

    @pytest.mark.parametrize(
        "password, message",
        [
            ("Pa1", "Password must be at least 6 characters long"),
            ("PASSW0RD", "Password must contain at least one lowercase letter"),
            ("passw0rd", "Password must contain at least one uppercase letter"),
            ("Password", "Password must contain at least one number"),
        ],
    )
    def test_each_rule(self, password: str, message: str) -> None:
        result = CredentialHasher.validate_strength(password)
        assert result.valid is False
        assert result.errors == [message]

    def test_all_violations_reported(self) -> None:
        result = CredentialHasher.validate_strength("")
        assert len(result.errors) == 4


class TestTokens:
    def test_secure_token_shape(self) -> None:
        token = CredentialHasher.generate_secure_token()
        assert len(token) == 64
        int(token, 16)

    def test_secure_tokens_are_unique(self) -> None:
        tokens = {CredentialHasher.generate_secure_token() for _ in range(50)}
        assert len(tokens) == 50

    def test_digest_is_deterministic_sha256(self) -> None:
        digest = CredentialHasher.digest_token("abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        assert CredentialHasher.digest_token("abc") == digest
