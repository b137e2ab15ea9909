"""Canonical form of free-text answers used for comparison."""

import re

_WHITESPACE = re.compile(r"\s+")
UNICODE_MINUS = "−"


def normalize(text) -> str:
    """Return the comparison form of a free-text answer.

    Trims, maps the Unicode minus sign to an ASCII hyphen, collapses runs
    of whitespace to one space and lowercases. `None` normalizes to an
    empty string. Never apply this to option identifiers.
    """
    s = "" if text is None else str(text)
    s = s.strip().replace(UNICODE_MINUS, "-")
    return _WHITESPACE.sub(" ", s).lower()
