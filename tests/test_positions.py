"""Tests for mention finding and position metrics."""

import uuid

import pytest
from sqlalchemy import select

from visibility_tracker.analysis.positions import (
    PositionExtractionService,
    compute_positions,
    count_words,
    find_mentions,
    share_of_answers,
    visibility_index,
    word_position,
    word_starts,
)
from visibility_tracker.analysis.types import AnalysisResult, BrandContext, CompetitorRef
from visibility_tracker.models.collector_result import CollectorResult
from visibility_tracker.models.metric_fact import BrandMetric, CompetitorMetric, MetricFact


def _ctx(*competitors: CompetitorRef, name="Nike", aliases=None) -> BrandContext:
    return BrandContext(
        brand_id=uuid.uuid4(),
        customer_id=uuid.uuid4(),
        name=name,
        aliases=aliases or [],
        competitors=list(competitors),
    )


# ==========================================================================
# Test: Mention finding
# ==========================================================================


class TestFindMentions:
    def test_word_boundary(self):
        text = "Nike's Nikeware is great"
        assert find_mentions(text, ["Nike"]) == [0]

    def test_case_insensitive(self):
        assert find_mentions("NIKE and nike and Nike", ["Nike"]) == [0, 9, 18]

    def test_product_overlapping_brand_counts_once(self):
        text = "Nike Air is light. Nike is everywhere."
        assert find_mentions(text, ["Nike", "Nike Air"]) == [0, 19]

    def test_multiword_term_with_punctuation(self):
        text = "I like Dr. Martens boots; dr. martens last."
        assert find_mentions(text, ["Dr. Martens"]) == [7, 26]

    def test_empty_and_blank_terms(self):
        assert find_mentions("", ["Nike"]) == []
        assert find_mentions("Nike", ["", "  "]) == []

    def test_no_match_inside_digits(self):
        assert find_mentions("X100 and X1", ["X1"]) == [9]


class TestWordCounting:
    def test_apostrophes_stay_inside_words(self):
        assert count_words("Nike's Nikeware is great") == 4

    def test_punctuation_is_not_a_word(self):
        assert count_words("Hello, world! -- 42 times.") == 4

    def test_word_position_is_one_based(self):
        text = "The best shoe is Nike."
        starts = word_starts(text)
        assert word_position(starts, text.index("Nike")) == 5
        assert word_position(starts, 0) == 1


# ==========================================================================
# Test: Metric formulas
# ==========================================================================


class TestFormulas:
    def test_visibility_first_word(self):
        # 0.6 / log10(10) + 0.4 * 1 / 4
        assert visibility_index(1, 1, 4) == 0.7

    def test_visibility_later_position(self):
        # 0.6 / log10(100) + 0.4 * 2 / 200 = 0.3 + 0.004
        assert visibility_index(91, 2, 200) == 0.3

    def test_visibility_no_mentions(self):
        assert visibility_index(None, 0, 50) == 0.0

    def test_visibility_no_words(self):
        assert visibility_index(None, 0, 0) is None

    def test_share_of_answers(self):
        assert share_of_answers(1, 3) == 33.33
        assert share_of_answers(2, 2) == 100.0

    def test_share_of_answers_nobody_mentioned(self):
        assert share_of_answers(0, 0) is None


# ==========================================================================
# Test: compute_positions
# ==========================================================================


class TestComputePositions:
    def test_brand_and_competitor(self):
        adidas = CompetitorRef(id=uuid.uuid4(), name="Adidas")
        text = "Nike's Nikeware is great. Adidas is fine. Nike again."
        report = compute_positions(text, _ctx(adidas), AnalysisResult())

        assert report.word_count == 9
        assert report.brand.mentions == 2
        assert report.brand.first_position == 0
        assert report.brand.first_word_position == 1
        assert report.competitors[adidas.id].mentions == 1
        assert report.brand.share_of_answers == 66.67
        assert report.competitors[adidas.id].share_of_answers == 33.33

    def test_unmentioned_competitor_without_products_is_omitted(self):
        puma = CompetitorRef(id=uuid.uuid4(), name="Puma")
        report = compute_positions("Nike only.", _ctx(puma), AnalysisResult())
        assert report.competitors == {}
        assert report.brand.share_of_answers == 100.0

    def test_competitor_with_products_but_no_mentions_is_kept(self):
        puma = CompetitorRef(id=uuid.uuid4(), name="Puma")
        analysis = AnalysisResult(competitor_products={"Puma": ["Suede Classic"]})
        report = compute_positions("Nike only.", _ctx(puma), analysis)
        assert report.competitors[puma.id].mentions == 0
        assert report.competitors[puma.id].visibility_index == 0.0
        assert report.competitors[puma.id].share_of_answers == 0.0

    def test_brand_products_and_aliases_count_as_brand_mentions(self):
        text = "The Pegasus 41 beats everything from Swoosh Inc."
        analysis = AnalysisResult(brand_products=["Pegasus 41"])
        report = compute_positions(text, _ctx(aliases=["Swoosh"]), analysis)
        assert report.brand.mentions == 2
        assert report.brand.first_word_position == 2

    def test_competitor_aliases(self):
        nb = CompetitorRef(id=uuid.uuid4(), name="New Balance", aliases=["NB"])
        report = compute_positions("NB and New Balance and Nike", _ctx(nb), AnalysisResult())
        assert report.competitors[nb.id].mentions == 2
        assert report.brand.mentions == 1

    def test_nobody_mentioned(self):
        report = compute_positions("Generic advice only.", _ctx(), AnalysisResult())
        assert report.brand.mentions == 0
        assert report.brand.visibility_index == 0.0
        assert report.brand.share_of_answers is None

    def test_empty_answer(self):
        report = compute_positions("", _ctx(), AnalysisResult())
        assert report.word_count == 0
        assert report.brand.visibility_index is None


# ==========================================================================
# Test: Stage service (database)
# ==========================================================================


class TestPositionExtractionService:
    @pytest.mark.asyncio
    async def test_writes_fact_and_metrics_once(self, session_factory, brand_setup, make_result):
        result_id = await make_result("BrandX offers free shipping. CompetitorY is pricier.")
        ctx = BrandContext(
            brand_id=brand_setup["brand_id"],
            customer_id=brand_setup["customer_id"],
            name="BrandX",
            competitors=[CompetitorRef(id=brand_setup["competitor_id"], name="CompetitorY")],
        )
        service = PositionExtractionService()

        async with session_factory() as session:
            row = await session.get(CollectorResult, result_id)
            fact_id, ran = await service.run(session, row, ctx, AnalysisResult())
            await session.commit()

            again_id, ran_again = await service.run(session, row, ctx, AnalysisResult())

        assert ran is True
        assert ran_again is False
        assert again_id == fact_id

        async with session_factory() as session:
            fact = await session.get(MetricFact, fact_id)
            brand_metric = (
                await session.execute(select(BrandMetric).where(BrandMetric.metric_fact_id == fact_id))
            ).scalar_one()
            competitor_metrics = (
                (await session.execute(select(CompetitorMetric).where(CompetitorMetric.metric_fact_id == fact_id)))
                .scalars()
                .all()
            )

        assert fact.collector_result_id == result_id
        assert fact.collector_type == "chatgpt"
        assert brand_metric.has_brand_presence is True
        assert brand_metric.total_brand_mentions == 1
        assert brand_metric.brand_first_position == 0
        assert brand_metric.total_word_count == 7
        assert brand_metric.share_of_answers == 50.0
        assert len(competitor_metrics) == 1
        assert competitor_metrics[0].competitor_id == brand_setup["competitor_id"]
        assert competitor_metrics[0].competitor_mentions == 1
