"""
Presence rules and fallback values for enriched fields.

A cached rating or summary only counts as present when it passes these
checks; anything else is treated as absent and refetched.
"""
import re

MIN_RATING = 1.0
MAX_RATING = 5.0
MIN_SUMMARY_LENGTH = 100
MIN_ISBN_LENGTH = 10

FALLBACK_RATING = "4.0"
FALLBACK_SUMMARY = (
    "A detailed summary for this title is not available yet. "
    "It was identified on your shelf and its description will be filled in "
    "the next time enrichment succeeds."
)

_RATING_PATTERN = re.compile(r"\d+(?:\.\d+)?")


def is_rating_present(rating: str | None) -> bool:
    if rating is None:
        return False
    try:
        value = float(rating)
    except ValueError:
        return False
    return MIN_RATING <= value <= MAX_RATING


def is_summary_present(summary: str | None) -> bool:
    return summary is not None and len(summary.strip()) > MIN_SUMMARY_LENGTH


def parse_rating(raw: str | None) -> str | None:
    """
    Pull a rating out of free-form model output ("4.5", "4.5 stars", "Rating: 4").

    Returns the rating with one decimal place, or None when no number in
    range can be found.
    """
    if not raw:
        return None
    match = _RATING_PATTERN.search(raw)
    if not match:
        return None
    value = float(match.group(0))
    if not MIN_RATING <= value <= MAX_RATING:
        return None
    return f"{value:.1f}"
