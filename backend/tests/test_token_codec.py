"""
Tests for the admission token codec.
"""

from datetime import datetime, timezone

import pytest

from gatepass.core.security import sign_admission_token, verify_admission_token

ISSUED_AT = datetime(2026, 3, 14, 18, 30, 5, 123000, tzinfo=timezone.utc)


def test_signed_token_decodes_to_its_registration():
    token = sign_admission_token("reg-123", issued_at=ISSUED_AT)
    result = verify_admission_token(token)

    assert result.valid
    assert result.registration_id == "reg-123"
    assert result.issued_at == ISSUED_AT


def test_token_is_url_safe_and_unpadded():
    token = sign_admission_token("0f8fad5b-d9cb-469f-a165-70867728950e", issued_at=ISSUED_AT)
    assert "=" not in token
    assert "+" not in token and "/" not in token


def test_any_single_character_change_is_rejected():
    token = sign_admission_token("reg-123", issued_at=ISSUED_AT)
    for i, char in enumerate(token):
        replacement = "A" if char != "A" else "B"
        tampered = token[:i] + replacement + token[i + 1:]
        assert not verify_admission_token(tampered).valid, f"position {i} accepted"


def test_token_signed_with_another_secret_is_rejected():
    token = sign_admission_token("reg-123", issued_at=ISSUED_AT, secret="someone-else")
    assert not verify_admission_token(token).valid
    assert verify_admission_token(token, secret="someone-else").valid


@pytest.mark.parametrize("garbage", ["", "   ", "not a token", "abc$def", "YWJj", "YWJjOmRlZg"])
def test_garbage_is_rejected(garbage):
    assert not verify_admission_token(garbage).valid


def test_padded_spelling_is_rejected():
    token = sign_admission_token("reg-123", issued_at=ISSUED_AT)
    assert not verify_admission_token(token + "==").valid


def test_registration_id_with_separator_cannot_be_signed():
    with pytest.raises(ValueError):
        sign_admission_token("a:b")
