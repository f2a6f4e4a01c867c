"""Utility functions for sanitization and question text layout."""

import math
import re
from typing import List, NamedTuple

import bleach

ALLOWED_TAGS = ["b", "i", "u", "em", "strong", "p", "br", "code", "pre", "ul", "ol", "li", "sub", "sup"]

ROMAN_LABELS = ["i.", "ii.", "iii.", "iv.", "v.", "vi.", "vii.", "viii.", "ix.", "x."]

_ANY_ROMAN = re.compile(r"\b[ivxIVX]+\.\s*")
_SUB_POINT = re.compile(r"\b(?:i|ii|iii|iv|v|vi|vii|viii|ix|x)\.\s*", re.IGNORECASE)


def sanitize_question_text(text: str) -> str:
    """Sanitize question or explanation text coming from the question bank.

    Allows basic formatting tags but removes script/dangerous content.
    """
    if not text:
        return ""
    sanitized = bleach.clean(text, tags=ALLOWED_TAGS, attributes={}, strip=True)
    return sanitized.strip()


class SubPoints(NamedTuple):
    has_sub_points: bool
    main_question: str
    sub_points: List[str]


def split_sub_points(text: str) -> SubPoints:
    """Split "Which is true? i. A ii. B iii. C" into a stem and its sub-points."""
    if not text:
        return SubPoints(False, "", [])

    if not _ANY_ROMAN.search(text):
        return SubPoints(False, text, [])

    first = _SUB_POINT.search(text)
    if first is None:
        return SubPoints(False, text, [])

    main_question = text[: first.start()].strip()
    points = [p.strip() for p in _SUB_POINT.split(text[first.start():]) if p.strip()]
    return SubPoints(True, main_question, points)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (builtin round() is banker's)."""
    return int(math.floor(value + 0.5))
