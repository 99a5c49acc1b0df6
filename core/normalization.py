"""
normalization.py
-----------------
Text and amount normalisation shared by ingestion, matching and grouping.

The transaction fingerprint deliberately leaves the date out: two lines with
the same user, amount and description are the same real-world transaction
for deduplication purposes (one stored row per recurring bill).
"""

import hashlib
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from core.models import to_decimal

_WHITESPACE_RE = re.compile(r"\s+")

# Payment-type markers banks put around the payee name
_PAYMENT_PREFIX_RE = re.compile(r"^(DD|SO|TFR|CHQ|FPO|FPI|ATM|POS|BGC|DEB|CR)\s+", re.IGNORECASE)
_PAYMENT_SUFFIX_RE = re.compile(r"\s+(DD|SO|TFR|CHQ|FPO|FPI|ATM|POS|BGC|DEB|CR)$", re.IGNORECASE)
_TRAILING_DATE_RE = re.compile(r"\s+\d{2}[/-]\d{2}[/-]\d{2,4}.*$")
_TRAILING_AMOUNT_RE = re.compile(r"\s+£?\d+\.?\d*$")
_TRAILING_REF_RE = re.compile(r"\s+REF\s+\w+$", re.IGNORECASE)


def normalize_description(description: str) -> str:
    """Upper-cases and collapses whitespace."""
    return _WHITESPACE_RE.sub(" ", str(description or "")).strip().upper()


def canonical_amount(amount: Any) -> str:
    """'-85.5', -85.50 and Decimal('-85.500') all become '-85.50'."""
    value = to_decimal(amount, "amount").quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if value == 0:
        value = Decimal("0.00")
    return str(value)


def transaction_fingerprint(user_id: str, amount: Any, description: str) -> str:
    """
    Deterministic SHA-256 over user, amount and normalised description.

    Fields are joined with a separator so ("ab", "c") and ("a", "bc") cannot
    collide.
    """
    payload = "|".join([str(user_id), canonical_amount(amount), normalize_description(description)])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def extract_payee_name(description: str) -> str:
    """
    Strips payment-type markers, trailing dates, amounts and references from
    a raw description and title-cases what is left.

        "DD BRITISH GAS 15/08/25" -> "British Gas"
    """
    payee = normalize_description(description)
    payee = _PAYMENT_PREFIX_RE.sub("", payee)
    payee = _PAYMENT_SUFFIX_RE.sub("", payee)
    payee = _TRAILING_DATE_RE.sub("", payee)
    payee = _TRAILING_AMOUNT_RE.sub("", payee)
    payee = _TRAILING_REF_RE.sub("", payee)
    payee = payee.strip() or normalize_description(description)
    return payee.title()
