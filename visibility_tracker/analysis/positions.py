"""Position Extraction: pipeline stage 2.

Finds where the brand and each competitor are mentioned in the raw answer
(character offsets, case-insensitive, word-boundary aware) and derives:

  visibility_index = 0.6 / log10(first_word_position + 9) + 0.4 * mentions / words
  share_of_answers = 100 * entity_mentions / (brand_mentions + all_competitor_mentions)

Both are rounded to two decimals. Writes MetricFact, BrandMetric and one
CompetitorMetric per competitor that is mentioned or has products.
"""

from __future__ import annotations

import bisect
import logging
import math
import re
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from visibility_tracker.analysis.types import (
    AnalysisResult,
    BrandContext,
    EntityPositions,
    PositionReport,
)
from visibility_tracker.db.postgres import insert_for
from visibility_tracker.models.collector_result import CollectorResult
from visibility_tracker.models.metric_fact import BrandMetric, CompetitorMetric, MetricFact

logger = logging.getLogger(__name__)

# Word token: letters/digits, apostrophes allowed inside ("Nike's" is one word)
_WORD_PATTERN = re.compile(r"\b(?:[^\W_]|['’])+\b")


# ---------------------------------------------------------------------------
# Text measurements
# ---------------------------------------------------------------------------


def word_starts(text: str) -> list[int]:
    return [m.start() for m in _WORD_PATTERN.finditer(text or "")]


def count_words(text: str) -> int:
    return len(word_starts(text))


def _term_pattern(term: str) -> re.Pattern:
    # neither side may touch another letter or digit
    return re.compile(r"(?<![^\W_])" + re.escape(term) + r"(?![^\W_])", re.IGNORECASE)


def find_mentions(text: str, terms: list[str]) -> list[int]:
    """Character offsets of mentions of any of ``terms``.

    Overlapping matches (e.g. "Nike" inside "Nike Air") count once, at the
    start of the merged span.
    """
    if not text:
        return []
    spans: list[tuple[int, int]] = []
    for term in dict.fromkeys(t.strip() for t in terms if t and t.strip()):
        spans.extend((m.start(), m.end()) for m in _term_pattern(term).finditer(text))
    if not spans:
        return []

    spans.sort()
    merged = [spans[0]]
    for start, end in spans[1:]:
        last_start, last_end = merged[-1]
        if start < last_end:
            merged[-1] = (last_start, max(last_end, end))
        else:
            merged.append((start, end))
    return [start for start, _ in merged]


def word_position(starts: list[int], char_offset: int) -> int:
    """1-based index of the word containing (or following) ``char_offset``."""
    return bisect.bisect_right(starts, char_offset) or 1


def visibility_index(first_word_position: int | None, mentions: int, words: int) -> float | None:
    if words == 0:
        return None
    if mentions == 0 or first_word_position is None:
        return 0.0
    prominence = 0.6 / math.log10(first_word_position + 9)
    density = 0.4 * mentions / words
    return round(prominence + density, 2)


def share_of_answers(mentions: int, total_mentions: int) -> float | None:
    if total_mentions == 0:
        return None
    return round(100 * mentions / total_mentions, 2)


def compute_positions(text: str, ctx: BrandContext, analysis: AnalysisResult) -> PositionReport:
    """Pure stage-2 computation for one answer."""
    starts = word_starts(text)
    words = len(starts)

    def measure(terms: list[str]) -> EntityPositions:
        positions = find_mentions(text, terms)
        first_word = word_position(starts, positions[0]) if positions else None
        return EntityPositions(
            positions=positions,
            first_word_position=first_word,
            visibility_index=visibility_index(first_word, len(positions), words),
        )

    brand = measure([ctx.name, *ctx.aliases, *analysis.brand_products])
    competitors: dict[uuid.UUID, EntityPositions] = {}
    for competitor in ctx.competitors:
        products = analysis.competitor_products.get(competitor.name, [])
        positions = measure([competitor.name, *competitor.aliases, *products])
        if positions.mentions or products:
            competitors[competitor.id] = positions

    total = brand.mentions + sum(c.mentions for c in competitors.values())
    brand.share_of_answers = share_of_answers(brand.mentions, total)
    for positions in competitors.values():
        positions.share_of_answers = share_of_answers(positions.mentions, total)

    return PositionReport(word_count=words, brand=brand, competitors=competitors)


# ---------------------------------------------------------------------------
# Stage service
# ---------------------------------------------------------------------------


class PositionExtractionService:
    async def existing_fact_id(self, session: AsyncSession, collector_result_id: int) -> int | None:
        found = await session.execute(
            select(MetricFact.id).where(MetricFact.collector_result_id == collector_result_id)
        )
        return found.scalar_one_or_none()

    async def run(
        self, session: AsyncSession, row: CollectorResult, ctx: BrandContext, analysis: AnalysisResult
    ) -> tuple[int, bool]:
        """Return (metric_fact_id, stage_ran). The caller commits."""
        fact_id = await self.existing_fact_id(session, row.id)
        if fact_id is not None:
            return fact_id, False

        report = compute_positions(row.raw_answer or "", ctx, analysis)
        now = datetime.now(timezone.utc)

        fact_stmt = insert_for(session, MetricFact).values(
            collector_result_id=row.id,
            brand_id=row.brand_id,
            customer_id=row.customer_id,
            query_id=row.query_id,
            collector_type=row.collector_type,
            topic=row.topic,
            processed_at=now,
        )
        fact_stmt = fact_stmt.on_conflict_do_update(
            index_elements=["collector_result_id"],
            set_={"processed_at": fact_stmt.excluded.processed_at, "topic": fact_stmt.excluded.topic},
        ).returning(MetricFact.id)
        fact_id = (await session.execute(fact_stmt)).scalar_one()

        brand = report.brand
        brand_stmt = insert_for(session, BrandMetric).values(
            metric_fact_id=fact_id,
            visibility_index=brand.visibility_index,
            share_of_answers=brand.share_of_answers,
            has_brand_presence=brand.mentions > 0,
            brand_first_position=brand.first_position,
            brand_positions=brand.positions,
            total_brand_mentions=brand.mentions,
            total_word_count=report.word_count,
        )
        excluded = brand_stmt.excluded
        await session.execute(
            brand_stmt.on_conflict_do_update(
                index_elements=["metric_fact_id"],
                set_={
                    "visibility_index": excluded.visibility_index,
                    "share_of_answers": excluded.share_of_answers,
                    "has_brand_presence": excluded.has_brand_presence,
                    "brand_first_position": excluded.brand_first_position,
                    "brand_positions": excluded.brand_positions,
                    "total_brand_mentions": excluded.total_brand_mentions,
                    "total_word_count": excluded.total_word_count,
                },
            )
        )

        for competitor_id, positions in report.competitors.items():
            stmt = insert_for(session, CompetitorMetric).values(
                metric_fact_id=fact_id,
                competitor_id=competitor_id,
                visibility_index=positions.visibility_index,
                share_of_answers=positions.share_of_answers,
                competitor_first_position=positions.first_position,
                competitor_positions=positions.positions,
                competitor_mentions=positions.mentions,
            )
            await session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["metric_fact_id", "competitor_id"],
                    set_={
                        "visibility_index": stmt.excluded.visibility_index,
                        "share_of_answers": stmt.excluded.share_of_answers,
                        "competitor_first_position": stmt.excluded.competitor_first_position,
                        "competitor_positions": stmt.excluded.competitor_positions,
                        "competitor_mentions": stmt.excluded.competitor_mentions,
                    },
                )
            )

        logger.info(
            "Positions for result %d: brand %d mentions, %d competitor rows, %d words",
            row.id,
            brand.mentions,
            len(report.competitors),
            report.word_count,
            extra={"collector_result_id": row.id},
        )
        return fact_id, True
