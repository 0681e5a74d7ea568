from __future__ import annotations

import re
from typing import Iterable, Optional, Sequence

import structlog

from ..models import KeywordMatch

logger = structlog.get_logger(__name__)

# Inline decorative markup the platforms embed in message text.
DEFAULT_MARKUP_PATTERNS: tuple[str, ...] = (
    r"\[[A-Za-z][\w-]*:[^\]]*\]",  # [deco:id=1], [sticker:...]
    r"\((?P<tag>emj|met|rol|chn)\).*?\((?P=tag)\)(?:\[[^\]]*\])?",  # (emj)name(emj)[id], (met)id(met)
    r"<a?:\w+:\d+>",  # <:name:id>, <a:name:id>
)


class KeywordFilter:
    def __init__(
        self,
        keywords: Iterable[str] = (),
        *,
        markup_patterns: Iterable[str] = (),
    ) -> None:
        self._keywords = _normalize(keywords)
        patterns = [*DEFAULT_MARKUP_PATTERNS, *markup_patterns]
        self._markup = re.compile("|".join(f"(?:{pattern})" for pattern in patterns), re.DOTALL)
        self._compiled: dict[tuple[str, ...], re.Pattern[str]] = {}

    @property
    def keywords(self) -> tuple[str, ...]:
        return self._keywords

    def strip_markup(self, text: str) -> str:
        return self._strip(text)[0]

    def _strip(self, text: str) -> tuple[str, list[int]]:
        """Replace markup segments with a space; also map each kept char to its raw index."""
        parts: list[str] = []
        positions: list[int] = []
        cursor = 0
        for segment in self._markup.finditer(text):
            parts.append(text[cursor:segment.start()])
            positions.extend(range(cursor, segment.start()))
            # A space keeps the words on either side of a segment from fusing.
            parts.append(" ")
            positions.append(segment.start())
            cursor = segment.end()
        parts.append(text[cursor:])
        positions.extend(range(cursor, len(text)))
        return "".join(parts), positions

    def scan(self, raw_text: str, keywords: Optional[Sequence[str]] = None) -> Optional[KeywordMatch]:
        terms = self._keywords if keywords is None else _normalize(keywords)
        if not terms or not raw_text:
            return None
        text, positions = self._strip(raw_text)
        match = self._pattern_for(terms).search(text)
        if match is None:
            return None
        matched = match.group(0)
        by_lower = {term.lower(): term for term in terms}
        term = by_lower.get(matched.lower(), matched)
        offset = positions[match.start()]
        logger.debug("keyword_match", term=term, offset=offset)
        return KeywordMatch(term=term, offset=offset)

    def _pattern_for(self, terms: tuple[str, ...]) -> re.Pattern[str]:
        pattern = self._compiled.get(terms)
        if pattern is None:
            # Longest first, so the leftmost hit reports the longest term at that offset.
            ordered = sorted(terms, key=len, reverse=True)
            pattern = re.compile("|".join(re.escape(term) for term in ordered), re.IGNORECASE)
            self._compiled[terms] = pattern
        return pattern


def _normalize(keywords: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for keyword in keywords:
        keyword = keyword.strip()
        if keyword:
            seen.setdefault(keyword, None)
    return tuple(seen)
