"""
sensitive.py

Pure pattern matchers for sensitive data and sensitive form contexts.
No I/O, no state: safe to call from any evaluation path.
"""

from __future__ import annotations

import re
from typing import List, Optional

_DIGIT_SEPARATORS = re.compile(r"(?<=\d)[\s\-](?=\d)")
_CARD_DIGITS = re.compile(r"(?<!\d)\d{13,19}(?!\d)")
_SSN = re.compile(r"\b\d{3}[\-\s]?\d{2}[\-\s]?\d{4}\b")

# Financial-only; login/register pages are not sensitive forms.
SENSITIVE_FORM_PATTERNS: List[str] = [
    "checkout", "payment", "billing", "credit card",
    "transfer funds", "wire transfer",
]

SENSITIVE_LABELS: List[str] = [
    "password", "credit card", "card number", "cvv", "ssn",
    "social security", "routing number", "account number",
    "bank", "pin", "secret", "token", "api key",
]

SECURE_FIELD_ROLE = "AXSecureTextField"


def contains_credit_card(text: str) -> bool:
    """13-19 contiguous digits once spaces and dashes between digits are removed."""
    return _CARD_DIGITS.search(_DIGIT_SEPARATORS.sub("", text)) is not None


def contains_ssn(text: str) -> bool:
    return _SSN.search(text) is not None


def contains_sensitive_data(text: str) -> bool:
    return contains_credit_card(text) or contains_ssn(text)


def is_sensitive_form_context(window_title: Optional[str], url: Optional[str]) -> bool:
    title = (window_title or "").lower()
    link = (url or "").lower()
    return any(p in title or p in link for p in SENSITIVE_FORM_PATTERNS)


def is_sensitive_label(label: Optional[str]) -> bool:
    lowered = (label or "").lower()
    return any(p in lowered for p in SENSITIVE_LABELS)


def is_secure_field(role: Optional[str]) -> bool:
    return role == SECURE_FIELD_ROLE
