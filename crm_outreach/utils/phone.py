# crm_outreach/utils/phone.py
import re
from typing import Optional

import phonenumbers


def sanitize_phone(raw: Optional[str]) -> str:
    """Keep digits and a single leading '+'."""
    raw = (raw or "").strip()
    if not raw:
        return ""
    cleaned = re.sub(r"[^\d+]", "", raw)
    if cleaned.startswith("+"):
        return "+" + cleaned[1:].replace("+", "")
    return cleaned.replace("+", "")


def normalize_phone(raw: Optional[str], region: str = "IN") -> Optional[str]:
    """
    Sanitize and format as E.164. Returns None when the number is not
    possible for WhatsApp delivery (caller treats it as missing).
    """
    cleaned = sanitize_phone(raw)
    if not cleaned:
        return None
    try:
        pn = phonenumbers.parse(cleaned, region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_possible_number(pn):
        return None
    return phonenumbers.format_number(pn, phonenumbers.PhoneNumberFormat.E164)
