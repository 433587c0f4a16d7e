"""Time-of-use band classification shared by validation and billing transforms."""

from typing import Literal

Band = Literal["day", "night", "peak", "ev", "24_hour"]

# Order matters only for reporting; matching is independent per keyword.
_KEYWORDS: tuple[tuple[Band, str], ...] = (
    ("day", "day"),
    ("night", "night"),
    ("peak", "peak"),
    ("ev", "ev"),
)


def classify_band(label: str | None) -> Band:
    """Bucket a free-text register/rate label into a named band.

    Matching is a case-insensitive substring test. A label that matches no
    keyword, or more than one ("Day/Night"), falls into the catch-all
    24-hour/NSH band.

    Examples:
        >>> classify_band("Day Units")
        'day'
        >>> classify_band("NIGHT")
        'night'
        >>> classify_band("Standard")
        '24_hour'
    """
    text = (label or "").lower()
    matches = [band for band, keyword in _KEYWORDS if keyword in text]
    if len(matches) == 1:
        return matches[0]
    return "24_hour"
