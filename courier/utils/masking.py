"""Utility functions for masking sensitive data in logs and outputs."""


def mask_phone(phone: str) -> str:
    """
    Mask phone number for logging purposes.

    Example: +9647701234567 -> +***4567

    Args:
        phone: Phone number to mask

    Returns:
        Masked phone number
    """
    if not phone or len(phone) < 4:
        return "***"

    # Show only the + and last 4 digits
    if phone.startswith("+"):
        return "+" + "***" + phone[-4:]
    return "***" + phone[-4:]


def mask_otp(otp: str) -> str:
    """
    Mask OTP code completely.

    Args:
        otp: OTP code to mask

    Returns:
        Completely masked OTP (all asterisks)
    """
    if not otp:
        return "****"
    return "*" * len(otp)


def mask_pairing_code(code: str) -> str:
    """Keep the first 4 characters of a pairing code."""
    if not code or len(code) <= 4:
        return "****"
    return code[:4] + "..."
