"""Channel UID helpers."""

import secrets
from typing import Any

MIN_UID = 1
MAX_UID = 65535


def make_rtc_uid() -> int:
    """Generate a random UID in ``[1, 65535]``."""
    return secrets.randbelow(MAX_UID) + MIN_UID


def normalize_uid(value: Any) -> int:
    """Accept ``value`` as a session UID or replace it with a fresh random one.

    Integers (and integral numeric strings or floats) strictly greater than 0
    and at most 65535 are accepted. Anything else, including ``None`` and
    booleans, yields :func:`make_rtc_uid`.

    Args:
        value: Candidate UID from a backend response or the caller

    Returns:
        UID in ``[1, 65535]``
    """
    if isinstance(value, bool) or value is None:
        return make_rtc_uid()

    candidate: int | None = None
    if isinstance(value, int):
        candidate = value
    elif isinstance(value, float):
        if value.is_integer():
            candidate = int(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            number = float(text)
        except ValueError:
            number = None
        if number is not None and number.is_integer():
            candidate = int(number)

    if candidate is not None and MIN_UID <= candidate <= MAX_UID:
        return candidate
    return make_rtc_uid()
