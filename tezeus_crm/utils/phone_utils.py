"""
Phone number and WhatsApp JID helpers.

Contacts are stored with the digits-only phone number; providers speak JIDs
(``<digits>@s.whatsapp.net``) and sometimes send formatted numbers.
"""

from typing import Any

WHATSAPP_USER_SUFFIX = "@s.whatsapp.net"


def normalize_phone_number(value: Any) -> str:
    """
    Normalize a phone number to digits with country code.

    Brazilian numbers without country code get ``55`` prepended.
    """
    s = str(value or '').strip()
    if not s:
        return ''

    if '@' in s:
        s = s.split('@')[0]

    digits = ''.join(ch for ch in s if ch.isdigit())
    if not digits:
        return ''

    # Remove leading zeros for long numbers
    if len(digits) > 10:
        digits = digits.lstrip('0')

    if digits.startswith('00'):
        digits = digits[2:].lstrip('0')

    if digits.startswith('55'):
        return digits

    # US/Russia 11-digit numbers starting with 1 or 7
    if len(digits) == 11 and digits[0] in ('1', '7'):
        return digits

    if len(digits) in (10, 11):
        return f"55{digits}"

    return digits


def is_group_jid(jid: str) -> bool:
    return str(jid or '').strip().lower().endswith('@g.us')


def extract_phone_from_jid(jid: str) -> str:
    """Digits of a user JID; group JIDs yield an empty string."""
    if not jid or is_group_jid(jid):
        return ""
    phone = str(jid).split("@")[0].split(":")[0]
    return ''.join(ch for ch in phone if ch.isdigit())


def phone_to_jid(phone: str) -> str:
    digits = ''.join(ch for ch in str(phone or '') if ch.isdigit())
    if not digits:
        return ""
    return f"{digits}{WHATSAPP_USER_SUFFIX}"
