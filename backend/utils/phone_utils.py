"""
Phone number utilities.

WhatsApp identifies people by JID (``<digits>@s.whatsapp.net``); contacts are
stored by normalized digits so inbound webhooks and agent sends match the
same row.
"""

from typing import Any


def normalize_phone_number(value: Any) -> str:
    """
    Normalize a phone number to digits with country code.

    Brazilian numbers without country code get ``55`` prepended.

    Args:
        value: The phone number to normalize

    Returns:
        Normalized phone number string, or "" when there are no digits
    """
    s = str(value or '').strip()
    if not s:
        return ''

    digits = ''.join(ch for ch in s if ch.isdigit())
    if not digits:
        return ''

    # International prefix 00
    if digits.startswith('00'):
        digits = digits[2:].lstrip('0')
    elif len(digits) > 10:
        digits = digits.lstrip('0')

    if digits.startswith('55'):
        return digits

    # US/Russia 11-digit numbers starting with 1 or 7
    if len(digits) == 11 and digits[0] in ('1', '7'):
        return digits

    if len(digits) in (10, 11):
        return f"55{digits}"

    return digits


def extract_phone_from_jid(jid: str) -> str:
    """
    Extract phone number from WhatsApp JID.

    Args:
        jid: WhatsApp JID (e.g., "5511999999999@s.whatsapp.net" or "5511999999999:12@s.whatsapp.net")

    Returns:
        Phone number digits
    """
    if not jid:
        return ""

    phone = str(jid).split("@")[0]
    # device suffix of multi-device JIDs
    phone = phone.split(":")[0]

    return ''.join(ch for ch in phone if ch.isdigit())

