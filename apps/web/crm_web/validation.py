"""Form validation rules shared by the customer, contact, deal and user forms.

A rule is checked in a fixed order: presence, pattern, length, then the
custom check. Optional fields that are empty pass without further checks.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERN = re.compile(r"(\+\d{1,3}\s?)?(\(\d{1,4}\)|\d{1,4})[\s.-]?\d{1,4}[\s.-]?\d{1,9}")
WEBSITE_PATTERN = re.compile(r"(https?://)?([\da-z]([.-]?[\da-z]+)*\.)+[a-z]{2,}(/.*)?", re.IGNORECASE)
CURRENCY_PATTERN = re.compile(r"-?\$?\d{1,3}(,\d{3})*(\.\d{1,2})?")
POSTAL_CODE_PATTERN = re.compile(r"[A-Z\d]{3,10}(\s[A-Z\d]{3,10})?", re.IGNORECASE)
NAME_PATTERN = re.compile(r"[a-zA-Z\s'-]+")

PASSWORD_REQUIREMENTS = (
    (re.compile(r"\d"), "one number"),
    (re.compile(r"[a-z]"), "one lowercase letter"),
    (re.compile(r"[A-Z]"), "one uppercase letter"),
    (re.compile(r"[!@#$%^&*(),.?\":{}|<>]"), "one special character"),
)

Check = Callable[[str], "str | None"]


@dataclass(frozen=True)
class FieldRule:
    required: bool = False
    pattern: re.Pattern[str] | None = None
    min_length: int | None = None
    max_length: int | None = None
    check: Check | None = None
    error_message: str | None = None


def validate_field(rule: FieldRule, value: Any) -> str | None:
    """Return the error message for ``value``, or ``None`` when it passes."""
    if value is None or value == "":
        if rule.required:
            return rule.error_message or "This field is required"
        return None

    error: str | None = None
    if isinstance(value, str):
        if rule.pattern is not None and not rule.pattern.fullmatch(value):
            error = rule.error_message or "Invalid format"
        if rule.min_length is not None and len(value) < rule.min_length:
            error = rule.error_message or f"Minimum {rule.min_length} characters required"
        if rule.max_length is not None and len(value) > rule.max_length:
            error = rule.error_message or f"Maximum {rule.max_length} characters allowed"
    if error is None and rule.check is not None:
        error = rule.check(str(value))
    return error


def validate_form(rules: Mapping[str, FieldRule], data: Mapping[str, Any]) -> dict[str, str]:
    errors: dict[str, str] = {}
    for name, rule in rules.items():
        message = validate_field(rule, data.get(name))
        if message is not None:
            errors[name] = message
    return errors


def _number(value: float) -> str:
    return f"{value:g}"


def _locale_date(value: date) -> str:
    return f"{value.month}/{value.day}/{value.year}"


def email_rule(required: bool = True) -> FieldRule:
    return FieldRule(required=required, pattern=EMAIL_PATTERN, error_message="Please enter a valid email address")


def phone_rule(required: bool = False) -> FieldRule:
    return FieldRule(
        required=required,
        pattern=PHONE_PATTERN,
        error_message="Please enter a valid phone number (e.g., +1 (555) 123-4567)",
    )


def website_rule(required: bool = False) -> FieldRule:
    return FieldRule(
        required=required,
        pattern=WEBSITE_PATTERN,
        error_message="Please enter a valid website URL (e.g., https://example.com)",
    )


def postal_code_rule(required: bool = False) -> FieldRule:
    return FieldRule(required=required, pattern=POSTAL_CODE_PATTERN, error_message="Please enter a valid postal/zip code")


def required_rule(field_name: str) -> FieldRule:
    return FieldRule(required=True, error_message=f"{field_name} is required")


def name_rule(required: bool = True, min_length: int = 2, max_length: int = 100) -> FieldRule:
    def check(value: str) -> str | None:
        if not NAME_PATTERN.fullmatch(value):
            return "Name can only contain letters, spaces, hyphens, and apostrophes"
        return None

    return FieldRule(
        required=required,
        min_length=min_length,
        max_length=max_length,
        check=check,
        error_message=f"Name must be between {min_length} and {max_length} characters",
    )


def currency_rule(required: bool = True, minimum: float | None = None, maximum: float | None = None) -> FieldRule:
    def check(value: str) -> str | None:
        amount = float(value.replace("$", "").replace(",", ""))
        if minimum is not None and amount < minimum:
            return f"Amount must be at least {_number(minimum)}"
        if maximum is not None and amount > maximum:
            return f"Amount must not exceed {_number(maximum)}"
        return None

    return FieldRule(
        required=required,
        pattern=CURRENCY_PATTERN,
        check=check,
        error_message="Please enter a valid amount (e.g., $1,234.56)",
    )


def password_strength_error(value: str) -> str | None:
    missing = [message for pattern, message in PASSWORD_REQUIREMENTS if not pattern.search(value)]
    if missing:
        return f"Password must contain at least {', '.join(missing)}"
    return None


def password_rule(check_strength: bool = True) -> FieldRule:
    return FieldRule(
        required=True,
        min_length=8,
        max_length=128,
        check=password_strength_error if check_strength else None,
        error_message="Password must be between 8 and 128 characters",
    )


def _parse_date(value: str) -> date | None:
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        return None


def date_rule(required: bool = True, min_date: date | None = None, max_date: date | None = None) -> FieldRule:
    def check(value: str) -> str | None:
        parsed = _parse_date(value)
        if parsed is None:
            return "Please enter a valid date"
        if min_date is not None and parsed < min_date:
            return f"Date must be after {_locale_date(min_date)}"
        if max_date is not None and parsed > max_date:
            return f"Date must be before {_locale_date(max_date)}"
        return None

    return FieldRule(required=required, check=check, error_message="Please enter a valid date")
