"""PII masking for logs and operator-facing payload views.

Masking is key based: values stored under a known personal-data field, or
under a key ending in ``email``, ``phone`` or ``tel``, are replaced; everything
else passes through. Email addresses keep the first character of the local
part and the domain; other fields keep only their last four characters.
"""

from typing import Any

PII_FIELDS = frozenset({
    "phone",
    "phone_number",
    "email",
    "name",
    "first_name",
    "last_name",
    "full_name",
    "display_name",
    "address",
    "ip",
    "from",
    "from_phone",
    "wa_id",
})

MASK = "***"

# Keys ending in one of these are personal data whatever their prefix (customer_email, mobile_phone).
PII_SUFFIXES = ("email", "phone", "tel")


def is_pii_key(key: str) -> bool:
    lowered = key.lower()
    return lowered in PII_FIELDS or lowered.endswith(PII_SUFFIXES)


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep or not local:
        return mask_value(value)
    return f"{local[0]}{MASK}@{domain}"


def mask_value(value: Any) -> str:
    text = str(value)
    if len(text) <= 4:
        return MASK
    return f"{MASK}{text[-4:]}"


def _mask_field(key: str, value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (dict, list)):
        return mask_pii(value)
    text = str(value)
    if key.endswith("email") or ("@" in text and key in {"name", "address"}):
        return mask_email(text)
    return mask_value(text)


def mask_pii(obj: Any) -> Any:
    """Return a masked deep copy of ``obj``."""
    if isinstance(obj, dict):
        masked = {}
        for key, value in obj.items():
            if isinstance(key, str) and is_pii_key(key):
                masked[key] = _mask_field(key.lower(), value)
            else:
                masked[key] = mask_pii(value)
        return masked
    if isinstance(obj, list):
        return [mask_pii(item) for item in obj]
    if isinstance(obj, tuple):
        return tuple(mask_pii(item) for item in obj)
    return obj
