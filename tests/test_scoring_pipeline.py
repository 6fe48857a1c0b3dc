"""Tests for the scoring pipeline coordinator (claims, stages, resumability)."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from visibility_tracker.analysis.pipeline import (
    ScoringCoordinator,
    ScoringRunResult,
    load_brand_context,
    make_worker_id,
)
from visibility_tracker.analysis.positions import PositionExtractionService
from visibility_tracker.analysis.types import AnalysisResult
from visibility_tracker.models.citation import Citation
from visibility_tracker.models.collector_result import CollectorResult
from visibility_tracker.models.consolidated_analysis import ConsolidatedAnalysis
from visibility_tracker.models.metric_fact import BrandMetric, CompetitorMetric, MetricFact
from visibility_tracker.models.sentiment import BrandSentiment, CompetitorSentiment

ANSWER = "BrandX offers free shipping. CompetitorY is pricier."


class DeterministicEngine:
    """Fixed extraction output; counts calls."""

    name = "deterministic"

    def __init__(self, fail: bool = False, with_sentiment: bool = True):
        self.calls = 0
        self.fail = fail
        self.with_sentiment = with_sentiment

    async def analyze(self, answer, ctx, citations):
        self.calls += 1
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("engine unavailable")
        if not self.with_sentiment:
            return AnalysisResult()
        return AnalysisResult.from_engine(
            {
                "products": {"brand": [], "competitors": {}},
                "citations": {},
                "sentiment": {
                    "brand": {"score": 80, "positive_sentences": ["BrandX offers free shipping."]},
                    "competitors": {"competitory": {"score": 40, "negative_sentences": ["CompetitorY is pricier."]}},
                },
            },
            ctx.competitor_names,
        )


class FlakyPositions(PositionExtractionService):
    """Fails the first time it actually has to write."""

    def __init__(self):
        self.failures_left = 1

    async def run(self, session, row, ctx, analysis):
        if self.failures_left:
            self.failures_left -= 1
            raise RuntimeError("metric write failed")
        return await super().run(session, row, ctx, analysis)


def _coordinator(session_factory, engine, worker_id="worker-a", **kwargs) -> ScoringCoordinator:
    return ScoringCoordinator(session_factory, engine=engine, worker_id=worker_id, refresh_view=False, **kwargs)


async def _row(session_factory, result_id) -> CollectorResult:
    async with session_factory() as session:
        return await session.get(CollectorResult, result_id)


async def _assert_completed_rows_are_fully_scored(session_factory) -> None:
    """Every completed row has its fact, brand metric and brand sentiment; rows missing any are not completed."""
    async with session_factory() as session:
        rows = (await session.execute(select(CollectorResult))).scalars().all()
        for row in rows:
            fact = (
                await session.execute(select(MetricFact).where(MetricFact.collector_result_id == row.id))
            ).scalar_one_or_none()
            has_metric = has_sentiment = False
            if fact is not None:
                has_metric = (
                    await session.execute(select(BrandMetric.id).where(BrandMetric.metric_fact_id == fact.id))
                ).scalar_one_or_none() is not None
                has_sentiment = (
                    await session.execute(select(BrandSentiment.id).where(BrandSentiment.metric_fact_id == fact.id))
                ).scalar_one_or_none() is not None
            fully_scored = fact is not None and has_metric and has_sentiment
            assert (row.scoring_status == "completed") == fully_scored, (row.id, row.scoring_status)


# ==========================================================================
# Test: Brand context and worker ids
# ==========================================================================


class TestBrandContext:
    @pytest.mark.asyncio
    async def test_active_competitors_and_aliases(self, session_factory, brand_setup):
        async with session_factory() as session:
            ctx = await load_brand_context(session, brand_setup["brand_id"], brand_setup["customer_id"])
        assert ctx.name == "BrandX"
        assert ctx.aliases == ["Brand X"]
        assert ctx.competitor_names == ["CompetitorY"]

    @pytest.mark.asyncio
    async def test_unknown_brand(self, session_factory, brand_setup):
        async with session_factory() as session:
            with pytest.raises(ValueError, match="not found"):
                await load_brand_context(session, uuid.uuid4(), brand_setup["customer_id"])

    def test_worker_ids_are_unique(self):
        first, second = make_worker_id(), make_worker_id()
        assert first != second
        assert len(first.split(":")) == 3


# ==========================================================================
# Test: End-to-end
# ==========================================================================


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_brand_and_competitor_rows(self, session_factory, brand_setup, make_result):
        result_id = await make_result(ANSWER)
        engine = DeterministicEngine()

        run = await _coordinator(session_factory, engine).run_brand(
            brand_setup["brand_id"], brand_setup["customer_id"]
        )

        assert run.processed == 1
        assert run.completed == 1
        assert run.positions_processed == 1
        assert run.sentiments_processed == 1
        assert run.errors == []

        async with session_factory() as session:
            row = await session.get(CollectorResult, result_id)
            fact = (
                await session.execute(select(MetricFact).where(MetricFact.collector_result_id == result_id))
            ).scalar_one()
            brand_metric = (
                await session.execute(select(BrandMetric).where(BrandMetric.metric_fact_id == fact.id))
            ).scalar_one()
            competitor_metric = (
                await session.execute(select(CompetitorMetric).where(CompetitorMetric.metric_fact_id == fact.id))
            ).scalar_one()
            brand_sentiment = (
                await session.execute(select(BrandSentiment).where(BrandSentiment.metric_fact_id == fact.id))
            ).scalar_one()
            competitor_sentiment = (
                await session.execute(
                    select(CompetitorSentiment).where(CompetitorSentiment.metric_fact_id == fact.id)
                )
            ).scalar_one()

        assert row.scoring_status == "completed"
        assert row.scoring_completed_at is not None
        assert row.scoring_worker_id is None
        assert row.scoring_error is None

        assert brand_metric.has_brand_presence is True
        assert competitor_metric.competitor_id == brand_setup["competitor_id"]
        assert competitor_metric.competitor_mentions == 1

        assert brand_sentiment.sentiment_label == "POSITIVE"
        assert brand_sentiment.positive_sentences == ["BrandX offers free shipping."]
        assert competitor_sentiment.competitor_id == brand_setup["competitor_id"]
        assert competitor_sentiment.sentiment_label == "NEGATIVE"
        await _assert_completed_rows_are_fully_scored(session_factory)

    @pytest.mark.asyncio
    async def test_inactive_competitor_is_ignored(self, session_factory, brand_setup, make_result):
        await make_result("BrandX beats OldRival every time.")

        await _coordinator(session_factory, DeterministicEngine()).run_brand(
            brand_setup["brand_id"], brand_setup["customer_id"]
        )

        async with session_factory() as session:
            competitor_ids = (await session.execute(select(CompetitorMetric.competitor_id))).scalars().all()
        assert brand_setup["inactive_competitor_id"] not in competitor_ids

    @pytest.mark.asyncio
    async def test_rows_without_answer_are_not_claimed(self, session_factory, brand_setup, make_result):
        result_id = await make_result(None, status="failed", scoring_status=None)

        run = await _coordinator(session_factory, DeterministicEngine()).run_brand(
            brand_setup["brand_id"], brand_setup["customer_id"]
        )

        assert run.processed == 0
        assert (await _row(session_factory, result_id)).scoring_status is None

    @pytest.mark.asyncio
    async def test_batch_limit(self, session_factory, brand_setup, make_result):
        for _ in range(3):
            await make_result(ANSWER)

        run = await _coordinator(session_factory, DeterministicEngine(), batch_limit=2).run_brand(
            brand_setup["brand_id"], brand_setup["customer_id"]
        )

        assert run.processed == 2
        async with session_factory() as session:
            statuses = (await session.execute(select(CollectorResult.scoring_status))).scalars().all()
        assert sorted(statuses) == ["completed", "completed", "pending"]

    def test_run_result_dict(self):
        data = ScoringRunResult(processed=2, errors=[{"collector_result_id": 1, "stage": "analysis", "error": "x"}])
        assert data.to_dict()["processed"] == 2
        assert data.to_dict()["errors"][0]["stage"] == "analysis"


# ==========================================================================
# Test: Claims
# ==========================================================================


class TestClaims:
    @pytest.mark.asyncio
    async def test_only_one_worker_wins_a_claim(self, session_factory, brand_setup, make_result):
        result_id = await make_result(ANSWER)
        coordinators = [_coordinator(session_factory, DeterministicEngine(), worker_id=f"w{i}") for i in range(5)]

        won = await asyncio.gather(*(c.claim(result_id) for c in coordinators))

        assert sum(won) == 1
        row = await _row(session_factory, result_id)
        assert row.scoring_status == "processing"
        assert row.scoring_worker_id == f"w{won.index(True)}"
        assert row.scoring_started_at is not None

    @pytest.mark.asyncio
    async def test_concurrent_workers_process_each_row_once(self, session_factory, brand_setup, make_result):
        ids = [await make_result(ANSWER) for _ in range(6)]
        engine = DeterministicEngine()
        coordinators = [_coordinator(session_factory, engine, worker_id=f"w{i}") for i in range(3)]

        runs = await asyncio.gather(
            *(c.run_brand(brand_setup["brand_id"], brand_setup["customer_id"]) for c in coordinators)
        )

        assert sum(r.processed for r in runs) == 6
        assert sum(r.completed for r in runs) == 6
        assert engine.calls == 6
        async with session_factory() as session:
            facts = (await session.execute(select(MetricFact.collector_result_id))).scalars().all()
            statuses = (
                await session.execute(select(CollectorResult.scoring_status).where(CollectorResult.id.in_(ids)))
            ).scalars().all()
        assert sorted(facts) == sorted(ids)
        assert set(statuses) == {"completed"}
        await _assert_completed_rows_are_fully_scored(session_factory)

    @pytest.mark.asyncio
    async def test_processing_rows_are_not_claimable(self, session_factory, brand_setup, make_result):
        result_id = await make_result(ANSWER)
        first = _coordinator(session_factory, DeterministicEngine(), worker_id="w1")
        second = _coordinator(session_factory, DeterministicEngine(), worker_id="w2")

        assert await first.claim(result_id) is True
        assert await second.claim(result_id) is False

    @pytest.mark.asyncio
    async def test_finalize_after_lost_claim_does_not_overwrite(self, session_factory, brand_setup, make_result):
        result_id = await make_result(ANSWER)
        first = _coordinator(session_factory, DeterministicEngine(), worker_id="w1")
        assert await first.claim(result_id)

        async with session_factory() as session:
            await session.execute(
                update(CollectorResult).where(CollectorResult.id == result_id).values(scoring_worker_id="w2")
            )
            await session.commit()

        await first._finalize(result_id)

        row = await _row(session_factory, result_id)
        assert row.scoring_status == "processing"
        assert row.scoring_worker_id == "w2"

    @pytest.mark.asyncio
    async def test_explicit_zero_limits_are_kept(self, session_factory, brand_setup, make_result):
        result_id = await make_result(ANSWER)
        engine = DeterministicEngine()
        coordinator = _coordinator(session_factory, engine, batch_limit=0, stale_minutes=0, max_claim_failures=0)

        assert coordinator.batch_limit == 0
        assert coordinator.stale_minutes == 0
        assert coordinator.max_claim_failures == 0

        run = await coordinator.run_brand(brand_setup["brand_id"], brand_setup["customer_id"])

        assert run.processed == 0
        assert engine.calls == 0
        assert (await _row(session_factory, result_id)).scoring_status == "pending"



# ==========================================================================
# Test: Stale claim recovery
# ==========================================================================


class TestStaleClaims:
    @pytest.mark.asyncio
    async def test_old_claims_are_reset(self, session_factory, brand_setup, make_result):
        now = datetime.now(timezone.utc)
        stale_id = await make_result(
            ANSWER, scoring_status="processing", scoring_started_at=now - timedelta(hours=2), scoring_worker_id="dead"
        )
        fresh_id = await make_result(
            ANSWER, scoring_status="processing", scoring_started_at=now, scoring_worker_id="alive"
        )
        coordinator = _coordinator(session_factory, DeterministicEngine(), stale_minutes=30)

        assert await coordinator.reset_stale_claims() == 1

        stale = await _row(session_factory, stale_id)
        fresh = await _row(session_factory, fresh_id)
        assert stale.scoring_status == "pending"
        assert stale.scoring_worker_id is None
        assert fresh.scoring_status == "processing"
        assert fresh.scoring_worker_id == "alive"

    @pytest.mark.asyncio
    async def test_run_recovers_crashed_claims(self, session_factory, brand_setup, make_result):
        stale_id = await make_result(
            ANSWER,
            scoring_status="processing",
            scoring_started_at=datetime.now(timezone.utc) - timedelta(hours=1),
            scoring_worker_id="dead",
        )

        run = await _coordinator(session_factory, DeterministicEngine(), stale_minutes=30).run_brand(
            brand_setup["brand_id"], brand_setup["customer_id"]
        )

        assert run.stale_reset == 1
        assert run.completed == 1
        assert (await _row(session_factory, stale_id)).scoring_status == "completed"


# ==========================================================================
# Test: Resumability
# ==========================================================================


class TestResumability:
    @pytest.mark.asyncio
    async def test_failed_stage_resumes_without_rerunning_analysis(self, session_factory, brand_setup, make_result):
        result_id = await make_result(ANSWER)
        engine = DeterministicEngine()
        coordinator = _coordinator(session_factory, engine, position_service=FlakyPositions())

        first = await coordinator.run_brand(brand_setup["brand_id"], brand_setup["customer_id"])

        assert first.completed == 0
        assert first.errors[0]["stage"] == "positions"
        assert first.errors[0]["collector_result_id"] == result_id
        row = await _row(session_factory, result_id)
        assert row.scoring_status == "error"
        assert "positions failed" in row.scoring_error
        assert row.scoring_worker_id is None
        async with session_factory() as session:
            cached = (await session.execute(select(ConsolidatedAnalysis))).scalars().all()
            facts = (await session.execute(select(MetricFact))).scalars().all()
        assert len(cached) == 1
        assert facts == []

        second = await coordinator.run_brand(brand_setup["brand_id"], brand_setup["customer_id"])

        assert second.completed == 1
        assert second.analyses_run == 0
        assert engine.calls == 1
        assert (await _row(session_factory, result_id)).scoring_status == "completed"

    @pytest.mark.asyncio
    async def test_resumed_run_matches_clean_run(self, session_factory, brand_setup, make_result):
        flaky_id = await make_result(ANSWER)
        flaky = _coordinator(session_factory, DeterministicEngine(), position_service=FlakyPositions())
        await flaky.run_brand(brand_setup["brand_id"], brand_setup["customer_id"])
        await flaky.run_brand(brand_setup["brand_id"], brand_setup["customer_id"])

        clean_id = await make_result(ANSWER)
        await _coordinator(session_factory, DeterministicEngine(), worker_id="clean").run_brand(
            brand_setup["brand_id"], brand_setup["customer_id"]
        )

        async def snapshot(result_id):
            async with session_factory() as session:
                fact = (
                    await session.execute(select(MetricFact).where(MetricFact.collector_result_id == result_id))
                ).scalar_one()
                bm = (
                    await session.execute(select(BrandMetric).where(BrandMetric.metric_fact_id == fact.id))
                ).scalar_one()
                bs = (
                    await session.execute(select(BrandSentiment).where(BrandSentiment.metric_fact_id == fact.id))
                ).scalar_one()
            return (
                bm.visibility_index,
                bm.share_of_answers,
                bm.brand_positions,
                bm.total_word_count,
                bs.sentiment_label,
                bs.sentiment_score,
            )

        assert await snapshot(flaky_id) == await snapshot(clean_id)

    @pytest.mark.asyncio
    async def test_engine_failure_marks_error_and_keeps_going(self, session_factory, brand_setup, make_result):
        ids = [await make_result(ANSWER) for _ in range(2)]

        run = await _coordinator(session_factory, DeterministicEngine(fail=True)).run_brand(
            brand_setup["brand_id"], brand_setup["customer_id"]
        )

        assert run.processed == 2
        assert run.completed == 0
        assert {e["stage"] for e in run.errors} == {"analysis"}
        for result_id in ids:
            row = await _row(session_factory, result_id)
            assert row.scoring_status == "error"
            assert "engine unavailable" in row.scoring_error

    @pytest.mark.asyncio
    async def test_error_rows_are_retried(self, session_factory, brand_setup, make_result):
        result_id = await make_result(ANSWER, scoring_status="error", scoring_error="earlier failure")

        run = await _coordinator(session_factory, DeterministicEngine()).run_brand(
            brand_setup["brand_id"], brand_setup["customer_id"]
        )

        assert run.completed == 1
        row = await _row(session_factory, result_id)
        assert row.scoring_status == "completed"
        assert row.scoring_error is None

    @pytest.mark.asyncio
    async def test_cache_without_sentiment_stores_neutral_default(self, session_factory, brand_setup, make_result):
        result_id = await make_result(ANSWER)
        async with session_factory() as session:
            session.add(
                ConsolidatedAnalysis(
                    collector_result_id=result_id,
                    brand_id=brand_setup["brand_id"],
                    customer_id=brand_setup["customer_id"],
                    products={"brand": [], "competitors": {}},
                    sentiment={},
                    citations={},
                    engine="legacy",
                )
            )
            await session.commit()
        engine = DeterministicEngine()

        run = await _coordinator(session_factory, engine).run_brand(
            brand_setup["brand_id"], brand_setup["customer_id"]
        )

        assert run.completed == 1
        assert run.positions_processed == 1
        assert run.sentiments_processed == 1
        assert engine.calls == 0
        async with session_factory() as session:
            brand_sentiment = (await session.execute(select(BrandSentiment))).scalar_one()
            competitor_sentiments = (await session.execute(select(CompetitorSentiment))).scalars().all()
        assert brand_sentiment.sentiment_label == "NEUTRAL"
        assert brand_sentiment.sentiment_score == 60.0
        assert competitor_sentiments == []
        await _assert_completed_rows_are_fully_scored(session_factory)

    @pytest.mark.asyncio
    async def test_engine_without_sentiment_still_completes_all_stages(self, session_factory, brand_setup, make_result):
        result_id = await make_result(ANSWER)
        engine = DeterministicEngine(with_sentiment=False)

        run = await _coordinator(session_factory, engine).run_brand(
            brand_setup["brand_id"], brand_setup["customer_id"]
        )

        assert run.completed == 1
        assert run.sentiments_processed == 1
        row = await _row(session_factory, result_id)
        assert row.scoring_status == "completed"
        async with session_factory() as session:
            brand_sentiment = (await session.execute(select(BrandSentiment))).scalar_one()
        assert brand_sentiment.sentiment_label == "NEUTRAL"
        await _assert_completed_rows_are_fully_scored(session_factory)


# ==========================================================================
# Test: Backfill and work discovery
# ==========================================================================


class TestBackfill:
    @pytest.mark.asyncio
    async def test_backfill_rebuilds_facts_from_cache(self, session_factory, brand_setup, make_result):
        result_id = await make_result(ANSWER, citations=["https://www.reddit.com/r/shoes"])
        engine = DeterministicEngine()
        coordinator = _coordinator(session_factory, engine)
        await coordinator.run_brand(brand_setup["brand_id"], brand_setup["customer_id"])

        run = await coordinator.backfill_brand(brand_setup["brand_id"], brand_setup["customer_id"])

        assert run.completed == 1
        assert run.analyses_run == 0
        assert run.citations_processed == 1
        assert engine.calls == 1
        async with session_factory() as session:
            facts = (await session.execute(select(MetricFact))).scalars().all()
            sentiments = (await session.execute(select(BrandSentiment))).scalars().all()
            citations = (await session.execute(select(Citation))).scalars().all()
        assert len(facts) == 1
        assert facts[0].collector_result_id == result_id
        assert len(sentiments) == 1
        assert sentiments[0].metric_fact_id == facts[0].id
        assert [c.domain for c in citations] == ["reddit.com"]
        await _assert_completed_rows_are_fully_scored(session_factory)

    @pytest.mark.asyncio
    async def test_backfill_leaves_rows_held_by_another_worker(self, session_factory, brand_setup, make_result):
        held_id = await make_result(ANSWER)
        free_id = await make_result(ANSWER)
        engine = DeterministicEngine()
        coordinator = _coordinator(session_factory, engine)
        await coordinator.run_brand(brand_setup["brand_id"], brand_setup["customer_id"])

        # another worker is mid-run on held_id
        async with session_factory() as session:
            await session.execute(
                update(CollectorResult)
                .where(CollectorResult.id == held_id)
                .values(
                    scoring_status="processing",
                    scoring_worker_id="worker-b",
                    scoring_started_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
            held_fact_id = (
                await session.execute(select(MetricFact.id).where(MetricFact.collector_result_id == held_id))
            ).scalar_one()

        run = await coordinator.backfill_brand(brand_setup["brand_id"], brand_setup["customer_id"])

        assert run.processed == 1
        assert run.completed == 1
        held = await _row(session_factory, held_id)
        free = await _row(session_factory, free_id)
        assert held.scoring_status == "processing"
        assert held.scoring_worker_id == "worker-b"
        assert free.scoring_status == "completed"
        async with session_factory() as session:
            held_fact = await session.get(MetricFact, held_fact_id)
            held_metric = (
                await session.execute(select(BrandMetric).where(BrandMetric.metric_fact_id == held_fact_id))
            ).scalar_one_or_none()
            held_sentiment = (
                await session.execute(select(BrandSentiment).where(BrandSentiment.metric_fact_id == held_fact_id))
            ).scalar_one_or_none()
            free_facts = (
                await session.execute(select(MetricFact).where(MetricFact.collector_result_id == free_id))
            ).scalars().all()
        assert held_fact is not None
        assert held_metric is not None
        assert held_sentiment is not None
        assert len(free_facts) == 1


    @pytest.mark.asyncio
    async def test_brands_with_pending_work(self, session_factory, brand_setup, make_result):
        await make_result(ANSWER)
        coordinator = _coordinator(session_factory, DeterministicEngine())

        assert await coordinator.brands_with_pending_work() == [
            (brand_setup["brand_id"], brand_setup["customer_id"])
        ]

        await coordinator.run_brand(brand_setup["brand_id"], brand_setup["customer_id"])

        assert await coordinator.brands_with_pending_work() == []

    @pytest.mark.asyncio
    async def test_refresh_view_is_skipped_outside_postgres(self, session_factory, db_engine):
        coordinator = _coordinator(session_factory, DeterministicEngine())
        if db_engine.dialect.name == "postgresql":
            pytest.skip("materialized view only exists after migrations")
        assert await coordinator.refresh_reporting_view() is False
