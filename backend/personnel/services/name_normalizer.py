"""Canonical forms for spoken or typed person names.

Transcripts deliver names as "JOHN SMITH", "j. smith", "Dr. José Álvarez" or
"Owen glass burner". Everything downstream (exact lookup, alias index, fuzzy
ranking) compares the normalized key produced here, never the raw string.
"""

from __future__ import annotations

import re
import unicodedata

from personnel.models.employee import ParsedName

HONORIFICS: frozenset[str] = frozenset({"mr", "mrs", "ms", "miss", "dr", "sir", "madam"})

_APOSTROPHES = re.compile(r"['`‘’]")
_PUNCTUATION = re.compile(r"[^\w\s]|_")
_WORD_START = re.compile(r"\b\w")


def _fold_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _strip_honorifics(tokens: list[str]) -> list[str]:
    # "Dr" on its own is still a (poor) name, so one token always survives
    while len(tokens) > 1 and tokens[0] in HONORIFICS:
        tokens = tokens[1:]
    return tokens


def normalize_name(raw: str | None) -> str:
    """Return the comparison key for a raw name, or "" when nothing is left.

    Lower-cased, accents folded, apostrophes dropped ("O'Brien" -> "obrien"),
    other punctuation turned into spaces ("j.smith" -> "j smith"), leading
    honorifics removed, whitespace collapsed.
    """
    if not raw:
        return ""
    value = _fold_accents(raw).lower()
    value = _APOSTROPHES.sub("", value)
    value = _PUNCTUATION.sub(" ", value)
    return " ".join(_strip_honorifics(value.split()))


def compact_key(normalized: str) -> str:
    """Whitespace-free form, so "glass burner" and "glassburn" compare by spelling only."""
    return normalized.replace(" ", "")


def display_name(raw: str | None) -> str:
    """Title-cased, whitespace-collapsed form for storing and showing names."""
    if not raw:
        return ""
    collapsed = " ".join(raw.split()).lower()
    return _WORD_START.sub(lambda m: m.group(0).upper(), collapsed)


def parse_name(raw: str | None) -> ParsedName:
    """Split a display name into first / middle / last.

    A single token is a first name with no surname ("Scott"); three or more
    tokens put everything between the first and the last into the middle name.
    """
    tokens = display_name(raw).split()
    while len(tokens) > 1 and normalize_name(tokens[0]) in HONORIFICS | {""}:
        tokens = tokens[1:]

    if not tokens:
        return ParsedName(first_name="")
    if len(tokens) == 1:
        return ParsedName(first_name=tokens[0])
    if len(tokens) == 2:
        return ParsedName(first_name=tokens[0], last_name=tokens[1])
    return ParsedName(
        first_name=tokens[0],
        middle_name=" ".join(tokens[1:-1]),
        last_name=tokens[-1],
    )


def compose_full_name(first_name: str, last_name: str = "") -> str:
    return display_name(f"{first_name} {last_name}")
