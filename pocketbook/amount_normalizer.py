from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

NON_NUMERIC_CHARS = re.compile(r"[^0-9.,\-+()]")
COMMA_THOUSANDS = re.compile(r"^[1-9]\d{0,2}(,\d{3})+$")
PERIOD_THOUSANDS = re.compile(r"^[1-9]\d{0,2}(\.\d{3})+$")


def normalize_amount(raw: str | None) -> Decimal | None:
    """
    Parse a bank-export amount cell into a signed Decimal.

    Handles currency symbols, US (``1,234.56``) and European (``1.234,56``)
    separators, accounting parentheses and leading or trailing minus signs.
    Returns None for blank or unparseable input.
    """
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None

    cleaned = NON_NUMERIC_CHARS.sub("", text)
    negative = "(" in cleaned and ")" in cleaned
    cleaned = cleaned.replace("(", "").replace(")", "")
    if text.startswith("-") or cleaned.startswith("-") or cleaned.endswith("-"):
        negative = True

    digits = cleaned.strip("+-")
    if not digits or "+" in digits or "-" in digits:
        return None

    normalized = normalize_separators(digits)
    if normalized is None:
        return None

    try:
        amount = Decimal(normalized)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None

    if negative and amount > 0:
        amount = -amount
    return amount


def normalize_separators(digits: str) -> str | None:
    has_comma = "," in digits
    has_period = "." in digits

    if has_comma and has_period:
        # The right-most separator is the decimal point.
        if digits.rfind(",") > digits.rfind("."):
            return digits.replace(".", "").replace(",", ".")
        return digits.replace(",", "")

    if has_comma:
        # Whole groups of three are thousands and win over the decimal-comma rule:
        # 1,234 is 1234 while 45,50 and 1,5 are decimals.
        if COMMA_THOUSANDS.match(digits):
            return digits.replace(",", "")
        if digits.count(",") > 1:
            return None
        return digits.replace(",", ".")

    if digits.count(".") > 1:
        if PERIOD_THOUSANDS.match(digits):
            return digits.replace(".", "")
        return None

    return digits
