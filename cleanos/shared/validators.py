"""Shared validation utilities"""

import re
from datetime import date, datetime
from typing import Optional

from ..errors import ValidationError

EMAIL_PATTERN = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


def normalize_email(email: Optional[str]) -> str:
    """Trim and lower-case an email address (suppression/send key form)"""
    return (email or "").strip().lower()


def validate_email(email: Optional[str]) -> Optional[str]:
    """
    Validate email format.

    Returns:
        Normalized email address

    Raises:
        ValidationError: If email format is invalid
    """
    if not email:
        return email

    email = normalize_email(email)
    if not re.match(EMAIL_PATTERN, email):
        raise ValidationError(f"Invalid email address: {email}")
    return email


def parse_service_date(value) -> date:
    """Parse a YYYY-MM-DD calendar date (no time zone conversion)"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid date '{value}', expected YYYY-MM-DD") from e


def validate_time_hhmm(value: str) -> str:
    if not value or not re.match(TIME_PATTERN, value):
        raise ValidationError(f"Invalid time '{value}', expected HH:MM")
    return value


def sunday_first_weekday(day: date) -> int:
    """Weekday index with 0 = Sunday ... 6 = Saturday"""
    return (day.weekday() + 1) % 7
