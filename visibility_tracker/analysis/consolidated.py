"""Consolidated Analysis: pipeline stage 1.

One extraction-engine call per collector result returns, for the brand and
every competitor, the products mentioned and the sentiment, plus a category
suggestion for each citation URL. The normalized result is upserted into
``consolidated_analysis_cache``; once a cache row exists the stage is never
run again for that collector result.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from visibility_tracker.analysis.citation_categorizer import CitationCategorizer
from visibility_tracker.analysis.types import AnalysisResult, BrandContext
from visibility_tracker.core.config import settings
from visibility_tracker.db.postgres import insert_for
from visibility_tracker.gateway.vendor_adapters import OPENROUTER_URL
from visibility_tracker.models.collector_result import CollectorResult
from visibility_tracker.models.consolidated_analysis import ConsolidatedAnalysis

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = "You are a precise analysis assistant. Always respond with valid JSON only, no explanations."

TRUNCATION_NOTE = "\n\n[Text truncated to 50,000 characters]"

_PROMPT_TEMPLATE = """\
You are analyzing an AI assistant's answer for brand intelligence. Perform three tasks.

## TASK 1: Product Extraction

Extract official products sold by the brand "{brand}" (maximum 12).
Brand context: {brand_context}

Then extract official products for each competitor mentioned in the answer (maximum 8 each).
Competitors: {competitors}

Rules:
1. Only official products (SKUs, models, variants) that consumers can buy
2. Exclude generics, categories, features, benefits and descriptive phrases
3. Never list a competitor's product under the brand, or the other way round
4. Never invent products

## TASK 2: Citation Categorization

Categorize each citation URL as one of:
- Editorial: news sites, blogs, media outlets
- Corporate: company and business sites, vendor review platforms
- Reference: knowledge bases, wikis, Q&A sites
- UGC: user reviews and marketplaces
- Social: social media platforms
- Institutional: education and government sites

Citations:
{citations}

## TASK 3: Sentiment Analysis

Score the sentiment toward "{brand}" and toward each competitor separately.
Score is an integer from 1 to 100: 1-54 negative, 55-65 neutral, 66-100 positive.
Quote up to three supporting sentences from the answer in positive_sentences / negative_sentences.

## Answer Text
{answer}

## OUTPUT FORMAT
Respond with ONLY valid JSON:
{{
  "products": {{"brand": ["..."], "competitors": {{"Competitor": ["..."]}}}},
  "citations": {{"https://example.com/page": {{"category": "Editorial", "pageName": "Example"}}}},
  "sentiment": {{
    "brand": {{"label": "POSITIVE|NEGATIVE|NEUTRAL", "score": 1, "positive_sentences": [], "negative_sentences": []}},
    "competitors": {{"Competitor": {{"label": "NEUTRAL", "score": 60, "positive_sentences": [], "negative_sentences": []}}}}
  }}
}}"""


def truncate_answer(answer: str, limit: int | None = None) -> str:
    limit = limit or settings.scoring_max_answer_chars
    if len(answer) <= limit:
        return answer
    return answer[:limit] + TRUNCATION_NOTE


def build_prompt(answer: str, ctx: BrandContext, citations: list[str]) -> str:
    citation_lines = "\n".join(f"{i}. {url}" for i, url in enumerate(citations, start=1))
    brand_context = ", ".join(ctx.aliases) if ctx.aliases else "No metadata provided"
    return _PROMPT_TEMPLATE.format(
        brand=ctx.name,
        brand_context=brand_context,
        competitors=", ".join(ctx.competitor_names) or "None",
        citations=citation_lines or "No citations provided",
        answer=truncate_answer(answer),
    )


_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)
_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


def parse_engine_json(raw: str) -> dict:
    """Extract the JSON object from an engine reply.

    Strips markdown fences, then falls back to the outermost ``{...}`` span.
    Raises ValueError if nothing parses.
    """
    text = (raw or "").strip()
    fenced = _FENCE_PATTERN.search(text)
    if fenced:
        text = fenced.group(1)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _OBJECT_PATTERN.search(text)
        if not match:
            raise ValueError("extraction engine reply contains no JSON object")
        data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("extraction engine reply is not a JSON object")
    return data


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------


class ExtractionEngine(Protocol):
    name: str

    async def analyze(self, answer: str, ctx: BrandContext, citations: list[str]) -> AnalysisResult: ...


class OpenRouterExtractionEngine:
    """Chat-completions engine on OpenRouter (gpt-4o-mini by default)."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openrouter_api_key
        self.model = model or settings.scoring_engine_model
        self.timeout = timeout or settings.scoring_engine_timeout_seconds
        self.name = f"openrouter:{self.model}"

    async def analyze(self, answer: str, ctx: BrandContext, citations: list[str]) -> AnalysisResult:
        if not self.api_key:
            raise RuntimeError("OPENROUTER_API_KEY is not configured")

        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        if settings.openrouter_site_url:
            headers["HTTP-Referer"] = settings.openrouter_site_url
        if settings.openrouter_site_title:
            headers["X-Title"] = settings.openrouter_site_title

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(answer, ctx, citations)},
            ],
            "temperature": 0.1,
            "max_tokens": 4096,
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(OPENROUTER_URL, json=payload, headers=headers)
        resp.raise_for_status()
        data = resp.json()

        content = data["choices"][0]["message"]["content"] or ""
        return AnalysisResult.from_engine(parse_engine_json(content), ctx.competitor_names)


# ---------------------------------------------------------------------------
# Stage service
# ---------------------------------------------------------------------------


class ConsolidatedAnalysisService:
    def __init__(self, engine: ExtractionEngine, categorizer: CitationCategorizer | None = None):
        self.engine = engine
        self.categorizer = categorizer or CitationCategorizer()

    async def load(self, session: AsyncSession, collector_result_id: int) -> ConsolidatedAnalysis | None:
        found = await session.execute(
            select(ConsolidatedAnalysis).where(ConsolidatedAnalysis.collector_result_id == collector_result_id)
        )
        return found.scalar_one_or_none()

    async def run(
        self, session: AsyncSession, row: CollectorResult, ctx: BrandContext
    ) -> tuple[AnalysisResult, bool, int]:
        """Return (analysis, engine_was_called, citations_stored).

        The caller commits.
        """
        citations = list(dict.fromkeys([*(row.citations or []), *(row.urls or [])]))
        cached = await self.load(session, row.id)
        if cached is not None:
            analysis = AnalysisResult.from_cache(cached.products, cached.sentiment, cached.citations)
            stored = 0
            # citations are deleted by a backfill while the cache survives it
            if citations and not await self.categorizer.has_citations(session, row.id):
                stored = await self.categorizer.store_citations(
                    session, row.id, row.brand_id, row.customer_id, citations, analysis.citations
                )
            return analysis, False, stored

        analysis = await self.engine.analyze(row.raw_answer or "", ctx, citations)

        stmt = insert_for(session, ConsolidatedAnalysis).values(
            collector_result_id=row.id,
            brand_id=row.brand_id,
            customer_id=row.customer_id,
            products=analysis.products_document(),
            sentiment=analysis.sentiment_document(),
            citations=analysis.citations,
            engine=self.engine.name,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["collector_result_id"],
            set_={
                "products": stmt.excluded.products,
                "sentiment": stmt.excluded.sentiment,
                "citations": stmt.excluded.citations,
                "engine": stmt.excluded.engine,
            },
        )
        await session.execute(stmt)

        stored = await self.categorizer.store_citations(
            session, row.id, row.brand_id, row.customer_id, citations, analysis.citations
        )
        logger.info(
            "Analysis for result %d: %d brand products, %d competitors with sentiment, %d citations",
            row.id,
            len(analysis.brand_products),
            len(analysis.competitor_sentiment),
            stored,
            extra={"collector_result_id": row.id},
        )
        return analysis, True, stored
