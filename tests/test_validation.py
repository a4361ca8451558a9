"""Input validation tests: email normalization and the password policy."""

import pytest

from playerdash.service.auth import PASSWORD_POLICY_MESSAGE, check_password_policy
from playerdash.service.errors import ValidationError
from playerdash.service.validation import (
    is_valid_email,
    is_valid_password,
    normalize_email,
    password_policy_errors,
    validate_email,
)


class TestEmail:
    def test_normalizes_case_and_whitespace(self):
        assert normalize_email("  Speler@Example.COM ") == "speler@example.com"

    def test_strips_zero_width_characters(self):
        assert validate_email("spe\u200bler@example.com") == "speler@example.com"

    @pytest.mark.parametrize(
        "address",
        ["", "no-at-sign", "@example.com", "user@", "user@localhost", "us er@example.com"],
    )
    def test_rejects_invalid_addresses(self, address):
        assert not is_valid_email(address)

    def test_rejects_overlong_local_part(self):
        with pytest.raises(ValueError):
            validate_email("a" * 65 + "@example.com")


class TestPasswordPolicy:
    def test_strong_password_passes(self):
        assert is_valid_password("Sterk#Wachtw00rd")
        assert password_policy_errors("Sterk#Wachtw00rd") == []

    def test_reports_every_missing_class(self):
        """A lowercase-only password misses uppercase, digit and special."""
        errors = password_policy_errors("alleenkleine")

        assert len(errors) == 3
        assert any("hoofdletter" in e for e in errors)
        assert any("cijfer" in e for e in errors)
        assert any("speciaal" in e for e in errors)

    def test_length_bounds(self):
        assert any("minimaal 8" in e for e in password_policy_errors("Ab1!"))
        assert any("maximaal 128" in e for e in password_policy_errors("Ab1!" * 40))

    def test_missing_password(self):
        assert password_policy_errors(None) == ["Wachtwoord is verplicht"]

    def test_policy_violation_raises_with_field_errors(self):
        with pytest.raises(ValidationError) as excinfo:
            check_password_policy("zwak")
        assert excinfo.value.message == PASSWORD_POLICY_MESSAGE
        assert excinfo.value.detail
