"""Sentiment Storage: pipeline stage 3.

Copies the sentiment part of the cached consolidated analysis onto the
metric fact: one BrandSentiment row and one CompetitorSentiment row per
competitor whose name resolves to a configured competitor.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from visibility_tracker.analysis.types import AnalysisResult, BrandContext, EntitySentiment
from visibility_tracker.db.postgres import insert_for
from visibility_tracker.models.sentiment import BrandSentiment, CompetitorSentiment

logger = logging.getLogger(__name__)

_UPDATABLE = ("sentiment_label", "sentiment_score", "positive_sentences", "negative_sentences")


def _values(sentiment: EntitySentiment) -> dict:
    return {
        "sentiment_label": sentiment.label.value,
        "sentiment_score": sentiment.score,
        "positive_sentences": sentiment.positive_sentences,
        "negative_sentences": sentiment.negative_sentences,
    }


class SentimentStorageService:
    async def exists(self, session: AsyncSession, metric_fact_id: int) -> bool:
        found = await session.execute(
            select(BrandSentiment.id).where(BrandSentiment.metric_fact_id == metric_fact_id)
        )
        return found.scalar_one_or_none() is not None

    async def run(
        self, session: AsyncSession, metric_fact_id: int, ctx: BrandContext, analysis: AnalysisResult
    ) -> bool:
        """Write sentiment rows; returns False when skipped. The caller commits."""
        if await self.exists(session, metric_fact_id):
            return False
        if not analysis.has_sentiment:
            logger.info("No sentiment in analysis for fact %d, storing neutral default", metric_fact_id)

        brand_sentiment = analysis.brand_sentiment or EntitySentiment()
        stmt = insert_for(session, BrandSentiment).values(metric_fact_id=metric_fact_id, **_values(brand_sentiment))
        await session.execute(
            stmt.on_conflict_do_update(
                index_elements=["metric_fact_id"],
                set_={col: stmt.excluded[col] for col in _UPDATABLE},
            )
        )

        written = 0
        for name, sentiment in analysis.competitor_sentiment.items():
            competitor = ctx.competitor_by_name(name)
            if competitor is None:
                logger.debug("Sentiment for unknown competitor %r ignored", name)
                continue
            stmt = insert_for(session, CompetitorSentiment).values(
                metric_fact_id=metric_fact_id, competitor_id=competitor.id, **_values(sentiment)
            )
            await session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["metric_fact_id", "competitor_id"],
                    set_={col: stmt.excluded[col] for col in _UPDATABLE},
                )
            )
            written += 1

        logger.info(
            "Sentiment for fact %d: brand %s (%.0f), %d competitors",
            metric_fact_id,
            brand_sentiment.label.value,
            brand_sentiment.score,
            written,
        )
        return True
