from __future__ import annotations

import re

from rapidfuzz.distance import Levenshtein

from ink2md.core.constants import ILLEGIBLE_MARKER


MAX_TITLE_LENGTH = 80

_UNSAFE_TITLE_CHARS = re.compile(r'[\\/:*?"<>|]')
_TITLE_QUOTES = "\"'“”"
_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_WORD_SEPARATORS = re.compile(r"[^a-z0-9']+")


def normalize_title(raw: str) -> str:
    first_line = raw.splitlines()[0].strip() if raw.strip() else ""
    return sanitize_title(first_line.strip(_TITLE_QUOTES))


def sanitize_title(title: str) -> str:
    cleaned = _UNSAFE_TITLE_CHARS.sub("", title)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip().strip(".")
    if not cleaned:
        return ""
    return cleaned[:MAX_TITLE_LENGTH].strip() if len(cleaned) > MAX_TITLE_LENGTH else cleaned


def normalize_multiline_output(text: str) -> str:
    return text.replace("\r\n", "\n").strip()


def normalize_line_output(text: str) -> str:
    """Collapse a model reply to a single logical line."""
    normalized = normalize_multiline_output(text)
    if not normalized:
        return ""
    return _WHITESPACE.sub(" ", normalized).strip()


def count_illegible(text: str) -> int:
    return text.count(ILLEGIBLE_MARKER)


def has_illegible_token(text: str) -> bool:
    return ILLEGIBLE_MARKER in text


def pick_better_line(a: str, b: str) -> str:
    a_illegible = count_illegible(a)
    b_illegible = count_illegible(b)
    if a_illegible != b_illegible:
        return a if a_illegible < b_illegible else b
    if len(a) != len(b):
        return a if len(a) > len(b) else b
    return a


def _normalize_for_similarity(line: str) -> str:
    lowered = line.strip().lower()
    return _WHITESPACE.sub(" ", _NON_ALNUM.sub(" ", lowered)).strip()


def line_similarity(line_a: str, line_b: str) -> float:
    """Normalized edit similarity in [0, 1] over lowercase alphanumeric text."""
    a = _normalize_for_similarity(line_a)
    b = _normalize_for_similarity(line_b)
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    distance = Levenshtein.distance(a, b)
    return 1.0 - distance / max(len(a), len(b))


def tokenize_words(text: str) -> list[str]:
    lowered = text.lower().replace(ILLEGIBLE_MARKER.lower(), " illegible ")
    normalized = _WORD_SEPARATORS.sub(" ", lowered).strip()
    return normalized.split() if normalized else []


def preserves_word_sequence(raw: str, formatted: str) -> bool:
    return tokenize_words(raw) == tokenize_words(formatted)
