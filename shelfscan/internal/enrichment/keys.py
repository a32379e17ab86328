import re

from rapidfuzz import utils

UNKNOWN_AUTHOR = "unknown"
KEY_SEPARATOR = "|"


def normalize_text(text: str | None) -> str:
    if not text:
        return ""
    # lower-cases and replaces every non-alphanumeric character with a space
    normalized = str(utils.default_process(str(text)))
    return re.sub(r"\s+", " ", normalized).strip()


def derive_cache_key(title: str | None, author: str | None) -> str:
    """
    Deterministic cache key for a (title, author) pair.

    "The Hobbit" / "J.R.R. Tolkien" and "the hobbit" / "j.r.r. tolkien"
    produce the same key. A missing author maps to "unknown".
    """
    norm_title = normalize_text(title)
    norm_author = normalize_text(author) or UNKNOWN_AUTHOR
    return f"{norm_title}{KEY_SEPARATOR}{norm_author}"
