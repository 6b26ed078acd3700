"""Recipient phone number normalization."""

import re

from courier.constants import DEFAULT_COUNTRY_CODE
from courier.core.exceptions import MessageRejectedError

_NON_DIGITS = re.compile(r"\D")

MIN_SUBSCRIBER_DIGITS = 7
MAX_E164_DIGITS = 15


def normalize_recipient(phone: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Normalize a phone number to international digits without a leading plus.

    Examples (country code 964):
        "0770 123 4567"   -> "9647701234567"
        "+964 770 123 4567" -> "9647701234567"
        "7701234567"      -> "9647701234567"
        "00447911123456"  -> "447911123456"

    Args:
        phone: Number as typed by the customer
        country_code: Code prepended to local numbers

    Returns:
        Normalized number usable as an OTP key and transport target

    Raises:
        MessageRejectedError: If no plausible number remains
    """
    if not phone:
        raise MessageRejectedError("Phone number is empty")

    explicit_international = phone.strip().startswith("+")
    digits = _NON_DIGITS.sub("", phone)

    if digits.startswith("00"):
        digits = digits[2:]
        explicit_international = True

    if not explicit_international:
        has_country_code = (
            digits.startswith(country_code)
            and len(digits) > len(country_code) + MIN_SUBSCRIBER_DIGITS
        )
        if not has_country_code:
            # Local trunk prefix "0" is replaced by the country code
            digits = country_code + (digits[1:] if digits.startswith("0") else digits)

    if len(digits) < MIN_SUBSCRIBER_DIGITS or len(digits) > MAX_E164_DIGITS:
        raise MessageRejectedError("Phone number has an invalid length", target=phone)

    return digits
