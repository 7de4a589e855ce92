"""Kenyan MSISDN normalization."""
import re

from tip_reconciliation.core.errors import ValidationError

_NON_DIGITS = re.compile(r"\D")


def normalize_phone_number(phone: str) -> str:
    """
    Normalize a Kenyan mobile number to 254XXXXXXXXX.

    Accepts 2547.../2541... (12 digits), 07.../01... (10 digits) and
    7.../1... (9 digits), with any punctuation or a leading '+'.

    Raises:
        ValidationError: If the number is not a Kenyan mobile number
    """
    digits = _NON_DIGITS.sub("", phone or "")

    if len(digits) == 12 and digits.startswith(("2547", "2541")):
        return digits
    if len(digits) == 10 and digits.startswith(("07", "01")):
        return "254" + digits[1:]
    if len(digits) == 9 and digits.startswith(("7", "1")):
        return "254" + digits

    raise ValidationError(f"Invalid Kenyan phone number: {phone!r}")


def is_valid_phone_number(phone: str) -> bool:
    try:
        normalize_phone_number(phone)
    except ValidationError:
        return False
    return True
