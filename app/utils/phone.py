"""
Destination normalization for phone-addressed channels.
"""

import re

# E.164 allows at most 15 digits; shorter than 8 is never a full international number
_MIN_DIGITS = 8
_MAX_DIGITS = 15

_FORMATTING = re.compile(r"[\s\-().]")


class InvalidDestinationError(ValueError):
    """Raised when a destination cannot be turned into an international number."""


def normalize_phone_number(raw: str) -> str:
    """
    Normalize a phone number to international digits.

    Accepts "+92 300 123-4567", "whatsapp:+923001234567", "00923001234567",
    "923001234567" or an existing "923001234567@c.us" chat id.

    Args:
        raw: User-entered destination

    Returns:
        Country code and subscriber number as digits only, e.g. "923001234567"

    Raises:
        InvalidDestinationError: If the value is not an international number
    """
    if raw is None:
        raise InvalidDestinationError("Destination is empty")

    value = raw.strip()
    if value.lower().startswith("whatsapp:"):
        value = value[len("whatsapp:"):]
    if value.endswith("@c.us"):
        value = value[: -len("@c.us")]

    value = _FORMATTING.sub("", value)

    if value.startswith("+"):
        value = value[1:]
    elif value.startswith("00"):
        value = value[2:]

    if not value:
        raise InvalidDestinationError("Destination is empty")
    if not value.isdigit():
        raise InvalidDestinationError(f"Destination contains invalid characters: {raw!r}")
    if value.startswith("0"):
        raise InvalidDestinationError(f"Destination is not in international format: {raw!r}")
    if not _MIN_DIGITS <= len(value) <= _MAX_DIGITS:
        raise InvalidDestinationError(f"Destination has an invalid length: {raw!r}")

    return value


def to_chat_id(raw: str) -> str:
    """Build a WhatsApp Web chat id ("<digits>@c.us") from a phone number."""
    return f"{normalize_phone_number(raw)}@c.us"


def to_e164(raw: str) -> str:
    """Build an E.164 number ("+<digits>") from a phone number."""
    return f"+{normalize_phone_number(raw)}"
