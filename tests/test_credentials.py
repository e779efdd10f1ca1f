"""Tests for password hashing and input validation."""

import base64

import pytest

from citadel.service import credentials
from citadel.service.credentials import hash_password, verify_password
from citadel.service.errors import CredentialError, ValidationError
from citadel.service.users import (
    normalize_email,
    validate_email,
    validate_password,
    validate_username,
)


class TestPasswordHashing:
    def test_verify_accepts_the_original_password(self):
        digest, salt = hash_password("Abcd1234!")
        assert verify_password("Abcd1234!", digest, salt)

    def test_verify_rejects_a_wrong_password(self):
        digest, salt = hash_password("Abcd1234!")
        assert not verify_password("Abcd1234?", digest, salt)

    def test_digest_and_salt_lengths(self):
        digest, salt = hash_password("Abcd1234!")
        assert len(salt) == credentials.SALT_LENGTH
        assert len(base64.b64decode(digest)) == credentials.KEY_LENGTH

    def test_same_password_fresh_salts_differ(self):
        first, salt_a = hash_password("Abcd1234!")
        second, salt_b = hash_password("Abcd1234!")
        assert salt_a != salt_b
        assert first != second

    def test_explicit_salt_is_deterministic(self):
        salt = b"\x01" * 32
        assert hash_password("Abcd1234!", salt)[0] == hash_password("Abcd1234!", salt)[0]

    def test_verify_compares_in_constant_time(self, monkeypatch):
        digest, salt = hash_password("Abcd1234!")
        real_compare = credentials.hmac.compare_digest
        calls = []

        def recording_compare(a, b):
            calls.append((a, b))
            return real_compare(a, b)

        monkeypatch.setattr(credentials.hmac, "compare_digest", recording_compare)
        assert verify_password("Abcd1234!", digest, salt)
        assert not verify_password("Abcd1234?", digest, salt)
        assert len(calls) == 2
        assert all(b == digest.encode("ascii") for _, b in calls)

    def test_kdf_failure_is_an_error_not_a_mismatch(self, monkeypatch):
        def broken_scrypt(*args, **kwargs):
            raise ValueError("memory limit exceeded")

        monkeypatch.setattr(credentials.hashlib, "scrypt", broken_scrypt)
        with pytest.raises(CredentialError):
            verify_password("Abcd1234!", "AAAA", b"\x00" * 32)


class TestEmailValidation:
    def test_normalize_strips_and_lowercases(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    def test_valid_email_is_normalized(self):
        assert validate_email("A@B.com") == "a@b.com"

    @pytest.mark.parametrize("email", ["", "no-at-sign", "a@b", "a@b.c", "a b@c.com"])
    def test_invalid_email_rejected(self, email):
        with pytest.raises(ValidationError):
            validate_email(email)

    def test_overlong_email_rejected(self):
        with pytest.raises(ValidationError):
            validate_email("a" * 250 + "@b.com")


class TestPasswordValidation:
    def test_strong_password_passes(self):
        validate_password("Abcd1234!")

    @pytest.mark.parametrize(
        "password",
        [
            "Ab1!",  # too short
            "abcd1234!",  # no uppercase
            "ABCD1234!",  # no lowercase
            "Abcdefgh!",  # no digit
            "Abcd12345",  # no special character
            "Aa1!" + "x" * 130,  # too long
        ],
    )
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(ValidationError):
            validate_password(password)


class TestUsernameValidation:
    def test_valid_username(self):
        assert validate_username("alice_01") == "alice_01"

    @pytest.mark.parametrize("username", ["ab", "has space", "x" * 51, "semi;colon"])
    def test_invalid_usernames(self, username):
        with pytest.raises(ValidationError):
            validate_username(username)
