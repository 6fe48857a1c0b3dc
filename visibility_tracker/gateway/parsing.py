"""Response parsing cascades.

Every vendor returns a different, loosely specified JSON shape. Each adapter
declares an ordered list of text extractors and an ordered list of citation
extractors; ``parse_with`` tries them in order and falls back to regex URL
extraction from the answer text when no citation field yields anything.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup

from visibility_tracker.gateway.types import ParsedAnswer

logger = logging.getLogger(__name__)

# URL pattern for extracting citations from answer text
_URL_PATTERN = re.compile(r"https?://[^\s)<>\"]+")

TextExtractor = Callable[[dict], str | None]
CitationExtractor = Callable[[dict], list[str] | None]


@dataclass(frozen=True)
class ParseCascade:
    """Ordered extraction policy for one vendor response shape."""

    text: tuple[TextExtractor, ...]
    citations: tuple[CitationExtractor, ...] = ()
    max_urls: int | None = None
    regex_fallback: bool = True
    extra_urls: tuple[CitationExtractor, ...] = field(default=())


def parse_with(cascade: ParseCascade, payload: dict) -> ParsedAnswer:
    """Run a cascade against a vendor payload.

    The first text extractor returning a non-blank string wins. Citations come
    from the first citation extractor that yields at least one URL; if none do,
    URLs are regex-extracted from the answer text.
    """
    text = ""
    for extractor in cascade.text:
        value = extractor(payload)
        if value and value.strip():
            text = value.strip()
            break

    citations: list[str] = []
    for extractor in cascade.citations:
        found = _clean_urls(extractor(payload) or [])
        if found:
            citations = found
            break

    if not citations and cascade.regex_fallback:
        citations = _extract_urls(text)

    urls = list(citations)
    for extractor in cascade.extra_urls:
        urls.extend(extractor(payload) or [])
    urls = _clean_urls(urls)

    if cascade.max_urls is not None:
        citations = citations[: cascade.max_urls]
        urls = urls[: cascade.max_urls]

    return ParsedAnswer(text=text, citations=citations, urls=urls)


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def field_text(*path: str | int) -> TextExtractor:
    """Extractor returning the string at ``path`` (keys or list indexes)."""

    def extract(payload: dict) -> str | None:
        value = dig(payload, *path)
        return value if isinstance(value, str) else None

    extract.__name__ = "field_text_" + "_".join(str(p) for p in path)
    return extract


def html_text(*path: str | int) -> TextExtractor:
    """Extractor stripping markup from an HTML field."""

    def extract(payload: dict) -> str | None:
        value = dig(payload, *path)
        return strip_html(value) if isinstance(value, str) else None

    return extract


def url_list(*path: str | int, keys: tuple[str, ...] = ("url", "source", "link", "href", "uri")) -> CitationExtractor:
    """Extractor for a list whose items are URL strings or dicts holding one."""

    def extract(payload: dict) -> list[str] | None:
        value = dig(payload, *path)
        if not isinstance(value, list):
            return None
        return list(_urls_from_items(value, keys))

    return extract


def dig(payload: Any, *path: str | int) -> Any:
    """Walk nested dicts/lists; returns None on any missing step."""
    current = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
        if current is None:
            return None
    return current


def strip_html(html: str) -> str:
    """Plain text of an HTML fragment, whitespace collapsed."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()


def _urls_from_items(items: Iterable[Any], keys: tuple[str, ...]) -> Iterable[str]:
    for item in items:
        if isinstance(item, str):
            yield item
        elif isinstance(item, dict):
            for key in keys:
                value = item.get(key)
                if isinstance(value, str) and value.startswith("http"):
                    yield value
                    break


def _extract_urls(text: str) -> list[str]:
    """Extract unique URLs from answer text."""
    if not text:
        return []
    return _clean_urls(_URL_PATTERN.findall(text))


def _clean_urls(urls: Iterable[str]) -> list[str]:
    """Trim, drop non-http entries and deduplicate preserving order."""
    seen: set[str] = set()
    result: list[str] = []
    for url in urls:
        if not isinstance(url, str):
            continue
        cleaned = url.strip().rstrip(".,;:!?")
        if not cleaned.startswith(("http://", "https://")) or cleaned in seen:
            continue
        seen.add(cleaned)
        result.append(cleaned)
    return result
