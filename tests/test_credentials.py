"""Tests for the password policy and the validated credential primitives."""

import pytest

from todo_api.service.credentials import (
    Email,
    PasswordPolicy,
    PersonName,
    RawPassword,
    check_password,
    validate_password,
)
from todo_api.service.errors import ValidationError

POLICY = PasswordPolicy()


class TestPasswordPolicy:
    def test_valid_password_passes(self):
        assert check_password("Valid1@Pass", POLICY) == []

    @pytest.mark.parametrize(
        "raw,rule",
        [
            ("short1!", "too_short"),
            ("alllowercase1!", "missing_uppercase"),
            ("NoDigits!!", "missing_digit"),
            ("NoSymbol123", "missing_symbol"),
            ("ALLUPPER1!", "missing_lowercase"),
            ("aaaAAA111!!!", "too_many_same_chars"),
            ("Xaaa1!bc", "too_many_consecutive_chars"),
            ("Ab1!" + "".join(chr(ord("c") + i) for i in range(30)), "too_long"),
            ("Valid1@Pass\udc80", "invalid_characters"),
        ],
    )
    def test_rule_failure_is_reported(self, raw, rule):
        assert rule in check_password(raw, POLICY)

    def test_every_failed_rule_is_listed(self):
        failures = check_password("aaa", POLICY)

        assert failures == [
            "too_short",
            "missing_uppercase",
            "missing_digit",
            "missing_symbol",
            "too_many_same_chars",
            "too_many_consecutive_chars",
        ]

    def test_repeats_up_to_the_limit_are_allowed(self):
        # two of each, never three in a row
        assert check_password("aaBB11!!", POLICY) == []

    def test_custom_symbol_set(self):
        policy = PasswordPolicy(symbols="#")

        assert "missing_symbol" in check_password("Valid1@Pass", policy)
        assert check_password("Valid1#Pass", policy) == []

    def test_limits_come_from_settings(self, settings):
        policy = PasswordPolicy.from_settings(settings)

        assert policy.min_length == settings.password_min_length
        assert policy.max_consecutive_chars == settings.password_max_consecutive_chars


class TestRawPassword:
    def test_validate_password_raises_with_failures(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_password("short1!", POLICY)

        assert exc_info.value.status_code == 400
        assert "too_short" in exc_info.value.detail["failures"]

    def test_raw_password_is_redacted(self):
        password = validate_password("Valid1@Pass", POLICY)

        assert isinstance(password, RawPassword)
        assert "Valid1@Pass" not in repr(password)
        assert "Valid1@Pass" not in str(password)
        assert password.expose() == "Valid1@Pass"


class TestEmail:
    def test_email_is_trimmed_and_lowercased(self):
        assert Email.parse("  Jane.Doe@Example.COM ") == "jane.doe@example.com"

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "no-at-sign",
            "two@@example.com",
            "a@b@c.com",
            "user@localhost",
            "@x.com",
            "us er@x.com",
            "e\udc80@x.com",
        ],
    )
    def test_invalid_email_is_rejected(self, value):
        with pytest.raises(ValidationError):
            Email.parse(value)

    def test_overlong_email_is_rejected(self):
        with pytest.raises(ValidationError):
            Email.parse("a" * 250 + "@x.com")


class TestPersonName:
    def test_name_is_trimmed(self):
        assert PersonName.parse("  Jane ") == "Jane"

    def test_name_length_counts_characters(self):
        assert PersonName.parse("🙂" * 100) == "🙂" * 100

    @pytest.mark.parametrize("value", ["", "   ", "a" * 101, "Jane\udc80"])
    def test_name_out_of_bounds_is_rejected(self, value):
        with pytest.raises(ValidationError) as exc_info:
            PersonName.parse(value, field="given_name")

        assert exc_info.value.detail == {"field": "given_name"}
