"""
Form validation rules shared by the API and the dashboard client
Each validator returns (ok, error_message)
"""

import re
from typing import Optional, Tuple

from utils.content_filter import contains_blocked_content

HOSTNAME_PATTERN = re.compile(r'^[a-z0-9]([a-z0-9-]*[a-z0-9])?$')
HOSTNAME_MAX_LENGTH = 63

SERVER_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9\s\-_.]*$')
SERVER_NAME_MIN_LENGTH = 2
SERVER_NAME_MAX_LENGTH = 48

MIN_TOPUP_CENTS = 500
MAX_TOPUP_CENTS = 50000

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

ValidationResult = Tuple[bool, Optional[str]]


def normalize_hostname(hostname: Optional[str]) -> str:
    return (hostname or '').strip().lower()


def validate_hostname(hostname: Optional[str]) -> ValidationResult:
    """Hostname must be a single DNS label: lowercase alphanumerics and inner hyphens, 63 chars max"""
    value = normalize_hostname(hostname)
    if not value:
        return False, "Hostname is required"
    if len(value) > HOSTNAME_MAX_LENGTH:
        return False, f"Hostname must be {HOSTNAME_MAX_LENGTH} characters or less"
    if not HOSTNAME_PATTERN.match(value):
        return False, ("Hostname must be lowercase, start and end with a letter or number, "
                       "and contain only letters, numbers, and hyphens")
    return True, None


def validate_server_name(name: Optional[str]) -> ValidationResult:
    trimmed = (name or '').strip()
    if not trimmed:
        return False, "Server name cannot be empty"
    if len(trimmed) > SERVER_NAME_MAX_LENGTH:
        return False, f"Server name must be {SERVER_NAME_MAX_LENGTH} characters or less"
    if len(trimmed) < SERVER_NAME_MIN_LENGTH:
        return False, f"Server name must be at least {SERVER_NAME_MIN_LENGTH} characters"
    if contains_blocked_content(trimmed):
        return False, "Server name contains inappropriate content"
    if not SERVER_NAME_PATTERN.match(trimmed):
        return False, "Server name can only contain letters, numbers, spaces, hyphens, underscores, and periods"
    return True, None


def validate_topup_amount(amount_cents: Optional[int]) -> ValidationResult:
    """Top-ups are bounded to $5.00 - $500.00 inclusive"""
    if amount_cents is None or isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        return False, "Please enter a valid amount"
    if amount_cents < MIN_TOPUP_CENTS:
        return False, "Minimum top-up amount is $5.00"
    if amount_cents > MAX_TOPUP_CENTS:
        return False, "Maximum top-up amount is $500.00"
    return True, None


def dollars_to_cents(value: str) -> Optional[int]:
    """Parse a user-typed dollar string ('12.5', '$20') into cents; None when unparseable or not positive"""
    cleaned = re.sub(r'[^0-9.]', '', value or '')
    if not cleaned:
        return None
    parts = cleaned.split('.')
    if len(parts) > 2:
        cleaned = parts[0] + '.' + ''.join(parts[1:])
    try:
        dollars = float(cleaned)
    except ValueError:
        return None
    if dollars <= 0:
        return None
    return int(round(dollars * 100))


def validate_email(email: Optional[str]) -> ValidationResult:
    value = (email or '').strip()
    if not EMAIL_PATTERN.match(value):
        return False, "Invalid email address"
    return True, None
