"""Keyword normalization and matching helpers (core domain)."""

from __future__ import annotations

import hashlib
import re
from typing import Dict, Iterable, List, Tuple

from opsroute.core.models import Keyword

_DEVANAGARI = re.compile(r"[\u0900-\u097F]")


def _collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def normalize_text(text: str) -> str:
    """Normalize text for case-insensitive, whitespace-insensitive matching."""

    return _collapse_whitespace(text).casefold()


def guess_language(text: str) -> str:
    """Tag an untagged keyword: Devanagari script is Hindi, anything else English."""

    if _DEVANAGARI.search(text):
        return "hi"
    return "en"


def build_keywords(raw: object) -> Tuple[Keyword, ...]:
    """Build keywords from either a flat list or a ``{language: [...]}`` mapping.

    Flat lists get their language guessed per entry; the mapping form is used
    for explicit tags such as ``hinglish``.
    """

    keywords: List[Keyword] = []
    if isinstance(raw, dict):
        for language, entries in raw.items():
            for entry in entries or []:
                keywords.append(Keyword(text=str(entry), language=str(language).lower()))
    else:
        for entry in raw or []:
            if isinstance(entry, Keyword):
                keywords.append(entry)
            else:
                keywords.append(Keyword(text=str(entry), language=guess_language(str(entry))))
    return tuple(keywords)


def group_by_language(keywords: Iterable[Keyword]) -> Dict[str, List[str]]:
    """Return normalized keyword lists keyed by language, preserving order."""

    grouped: Dict[str, List[str]] = {}
    for keyword in keywords:
        normalized = normalize_text(keyword.text)
        if not normalized:
            continue
        bucket = grouped.setdefault(keyword.language, [])
        if normalized not in bucket:
            bucket.append(normalized)
    return grouped


def _contains_phrase(text: str, phrase: str) -> bool:
    """Whole-word containment: "smell" does not hit "smelly"."""

    return re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text) is not None


def match_keywords(text: str, keywords_by_language: Dict[str, List[str]]) -> Dict[str, List[str]]:
    """Return the keywords found in ``text``, per language.

    Each language list is matched independently; a hit in any language counts
    as a category keyword hit.
    """

    normalized = normalize_text(text)
    hits: Dict[str, List[str]] = {}
    for language, entries in keywords_by_language.items():
        found = [entry for entry in entries if _contains_phrase(normalized, entry)]
        if found:
            hits[language] = found
    return hits


def delivery_key(message_id: str, channel_id: int, escalation_level: int) -> str:
    """Stable idempotency key for one delivery of a message to a channel."""

    payload = f"{message_id}\n{channel_id}\n{escalation_level}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
