from __future__ import annotations


def _digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


def normalize_phone(value: str | None, country_code: str = "91") -> str | None:
    """Normalize a phone number to ``+<country><number>``.

    Ten-digit local numbers get ``country_code`` prepended; numbers that
    already carry the country code or a leading ``+`` pass through. Anything
    else is rejected with ``None``.
    """
    if not value:
        return None
    cleaned = value.strip()
    digits = _digits(cleaned)
    if not digits:
        return None

    if len(digits) == 10:
        return f"+{country_code}{digits}"
    if digits.startswith(country_code) and len(digits) == len(country_code) + 10:
        return f"+{digits}"
    if cleaned.startswith("+"):
        return f"+{digits}"
    return None


def messaging_phone(value: str | None, country_code: str = "91") -> str | None:
    """Same rules as :func:`normalize_phone` but without the leading ``+``."""
    normalized = normalize_phone(value, country_code)
    return normalized[1:] if normalized else None


def display_phone(value: str | None, country_code: str = "91") -> str | None:
    if not value:
        return None
    if value.startswith("+"):
        return value
    digits = _digits(value)
    if len(digits) == 10:
        return f"+{country_code} {digits}"
    return value
