"""Citation categorizer.

Maps a citation URL to one of six source categories. Categorization is
domain-scoped: the first decision for a domain is cached (in memory and in
``citation_categories``) and every later URL on that domain reuses it.

Resolution order for an unseen domain:
  1. hardcoded domain table
  2. category suggested by the extraction engine for this URL
  3. heuristics on the domain name
  4. Corporate
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from visibility_tracker.db.postgres import insert_for
from visibility_tracker.models.citation import Citation, CitationCategory

logger = logging.getLogger(__name__)


class SourceCategory(str, Enum):
    EDITORIAL = "Editorial"
    CORPORATE = "Corporate"
    REFERENCE = "Reference"
    UGC = "UGC"
    SOCIAL = "Social"
    INSTITUTIONAL = "Institutional"


_KNOWN_DOMAINS: dict[str, SourceCategory] = {
    # Social
    "reddit.com": SourceCategory.SOCIAL,
    "twitter.com": SourceCategory.SOCIAL,
    "x.com": SourceCategory.SOCIAL,
    "facebook.com": SourceCategory.SOCIAL,
    "linkedin.com": SourceCategory.SOCIAL,
    "instagram.com": SourceCategory.SOCIAL,
    "tiktok.com": SourceCategory.SOCIAL,
    "youtube.com": SourceCategory.SOCIAL,
    "pinterest.com": SourceCategory.SOCIAL,
    # Editorial
    "techcrunch.com": SourceCategory.EDITORIAL,
    "forbes.com": SourceCategory.EDITORIAL,
    "medium.com": SourceCategory.EDITORIAL,
    "wired.com": SourceCategory.EDITORIAL,
    "theverge.com": SourceCategory.EDITORIAL,
    "bbc.com": SourceCategory.EDITORIAL,
    "bbc.co.uk": SourceCategory.EDITORIAL,
    "cnn.com": SourceCategory.EDITORIAL,
    "nytimes.com": SourceCategory.EDITORIAL,
    "wsj.com": SourceCategory.EDITORIAL,
    "reuters.com": SourceCategory.EDITORIAL,
    "bloomberg.com": SourceCategory.EDITORIAL,
    "theguardian.com": SourceCategory.EDITORIAL,
    # Reference
    "wikipedia.org": SourceCategory.REFERENCE,
    "wikidata.org": SourceCategory.REFERENCE,
    "stackoverflow.com": SourceCategory.REFERENCE,
    "github.com": SourceCategory.REFERENCE,
    "quora.com": SourceCategory.REFERENCE,
    # Review platforms
    "g2.com": SourceCategory.CORPORATE,
    "capterra.com": SourceCategory.CORPORATE,
    "trustpilot.com": SourceCategory.CORPORATE,
    # Institutional
    "scholar.google.com": SourceCategory.INSTITUTIONAL,
    "pubmed.ncbi.nlm.nih.gov": SourceCategory.INSTITUTIONAL,
    "archive.org": SourceCategory.INSTITUTIONAL,
    # UGC
    "amazon.com": SourceCategory.UGC,
    "yelp.com": SourceCategory.UGC,
    "tripadvisor.com": SourceCategory.UGC,
}

_HEURISTICS: list[tuple[tuple[str, ...], SourceCategory]] = [
    (("university", "college", "academy"), SourceCategory.INSTITUTIONAL),
    (("news", "blog", "media", "magazine", "journal", "times", "post"), SourceCategory.EDITORIAL),
    (("wiki", "docs.", "dictionary", "encyclopedia"), SourceCategory.REFERENCE),
    (("review", "rating", "forum", "community"), SourceCategory.UGC),
]


@dataclass
class CategorizedCitation:
    url: str
    domain: str
    category: SourceCategory
    page_name: str | None
    source: str  # hardcoded | engine | heuristic | default | cache


def extract_domain(url: str) -> str:
    """Hostname without ``www.``, lower-cased. Empty string if unparsable."""
    try:
        host = urlparse(url.strip()).hostname or ""
    except ValueError:
        return ""
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def _known_category(domain: str) -> SourceCategory | None:
    if domain.endswith((".edu", ".gov")) or ".edu." in domain or ".gov." in domain:
        return SourceCategory.INSTITUTIONAL
    if domain.startswith("archive."):
        return SourceCategory.INSTITUTIONAL
    labels = domain.split(".")
    for i in range(len(labels) - 1):
        candidate = ".".join(labels[i:])
        if candidate in _KNOWN_DOMAINS:
            return _KNOWN_DOMAINS[candidate]
    return None


def _heuristic_category(domain: str) -> SourceCategory | None:
    for needles, category in _HEURISTICS:
        if any(n in domain for n in needles):
            return category
    return None


def _engine_category(hint: dict | None) -> SourceCategory | None:
    if not hint:
        return None
    raw = str(hint.get("category", "")).strip().lower()
    for category in SourceCategory:
        if category.value.lower() == raw:
            return category
    return None


def _page_name(domain: str, hint: dict | None) -> str | None:
    if hint and isinstance(hint.get("pageName"), str) and hint["pageName"].strip():
        return hint["pageName"].strip()[:255]
    if not domain:
        return None
    labels = domain.split(".")
    core = labels[-2] if len(labels) >= 2 else labels[0]
    return core.capitalize()


def categorize_domain(domain: str, hint: dict | None = None) -> tuple[SourceCategory, str]:
    """Pure categorization: returns (category, source)."""
    category = _known_category(domain)
    if category:
        return category, "hardcoded"
    category = _engine_category(hint)
    if category:
        return category, "engine"
    category = _heuristic_category(domain)
    if category:
        return category, "heuristic"
    return SourceCategory.CORPORATE, "default"


class CitationCategorizer:
    """Domain-cached categorizer shared across the rows of a scoring run."""

    def __init__(self):
        self._cache: dict[str, tuple[SourceCategory, str | None]] = {}

    async def categorize(
        self, session: AsyncSession, url: str, hint: dict | None = None
    ) -> CategorizedCitation | None:
        domain = extract_domain(url)
        if not domain:
            return None

        if domain in self._cache:
            category, page_name = self._cache[domain]
            return CategorizedCitation(url, domain, category, page_name, "cache")

        stored = await session.get(CitationCategory, domain)
        if stored is not None:
            category = SourceCategory(stored.category)
            self._cache[domain] = (category, stored.page_name)
            return CategorizedCitation(url, domain, category, stored.page_name, "cache")

        category, source = categorize_domain(domain, hint)
        page_name = _page_name(domain, hint)
        await session.execute(
            insert_for(session, CitationCategory)
            .values(domain=domain, category=category.value, page_name=page_name, source=source)
            .on_conflict_do_nothing(index_elements=["domain"])
        )
        self._cache[domain] = (category, page_name)
        logger.debug("Categorized %s as %s (%s)", domain, category.value, source)
        return CategorizedCitation(url, domain, category, page_name, source)

    async def store_citations(
        self,
        session: AsyncSession,
        collector_result_id: int,
        brand_id,
        customer_id,
        urls: list[str],
        hints: dict[str, dict] | None = None,
    ) -> int:
        """Categorize and upsert the citations of one collector result."""
        hints = hints or {}
        stored = 0
        for url in dict.fromkeys(u for u in urls if isinstance(u, str)):
            item = await self.categorize(session, url, hints.get(url))
            if item is None:
                continue
            stmt = insert_for(session, Citation).values(
                collector_result_id=collector_result_id,
                brand_id=brand_id,
                customer_id=customer_id,
                url=url,
                domain=item.domain,
                category=item.category.value,
                page_name=item.page_name,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["collector_result_id", "url"],
                set_={"category": stmt.excluded.category, "page_name": stmt.excluded.page_name},
            )
            await session.execute(stmt)
            stored += 1
        return stored

    async def has_citations(self, session: AsyncSession, collector_result_id: int) -> bool:
        found = await session.execute(
            select(Citation.id).where(Citation.collector_result_id == collector_result_id).limit(1)
        )
        return found.scalar_one_or_none() is not None
