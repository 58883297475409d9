"""Phone number normalization."""

from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(value: str | None) -> str:
    """Return ``value`` in E.164 form.

    Ten digit numbers are assumed to be North American and get a ``+1``
    prefix; eleven digits or more are taken as already carrying a country
    code. Anything shorter than ten or longer than fifteen digits raises
    :class:`ValueError`.
    """

    if not value:
        raise ValueError("Phone number is required")
    digits = _NON_DIGITS.sub("", value)
    if len(digits) == 10:
        return f"+1{digits}"
    if 11 <= len(digits) <= 15:
        return f"+{digits}"
    raise ValueError(f"Invalid phone number: {value!r}")
