"""Scoring Pipeline Coordinator.

Drives collector results through the three stages:
  1. Consolidated Analysis (engine call, cached per result)
  2. Position Extraction (MetricFact + BrandMetric + CompetitorMetric)
  3. Sentiment Storage (BrandSentiment + CompetitorSentiment)

Work is claimed one row at a time with a single conditional UPDATE:
``scoring_status`` moves from null/pending/error to processing only if it is
still in one of those states, so exactly one of several concurrent workers
wins a row. Every stage commits on its own and skips itself when its output
already exists; a failing stage marks the row ``error`` and leaves earlier
stages' rows in place so the next claim resumes where it stopped.

Rows left in ``processing`` longer than the stale threshold (crashed worker)
are moved back to ``pending`` before each run.
"""

from __future__ import annotations

import logging
import os
import re
import socket
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, or_, select, text, update
from sqlalchemy.orm import selectinload

from visibility_tracker.analysis.citation_categorizer import CitationCategorizer
from visibility_tracker.analysis.consolidated import (
    ConsolidatedAnalysisService,
    ExtractionEngine,
    OpenRouterExtractionEngine,
)
from visibility_tracker.analysis.positions import PositionExtractionService
from visibility_tracker.analysis.sentiment import SentimentStorageService
from visibility_tracker.analysis.types import BrandContext, CompetitorRef
from visibility_tracker.core.config import settings
from visibility_tracker.core.metrics import SCORING_CLAIMS, SCORING_RESULTS, SCORING_STAGE_DURATION
from visibility_tracker.gateway.errors import StageError
from visibility_tracker.models.brand import Brand
from visibility_tracker.models.citation import Citation
from visibility_tracker.models.collector_result import CollectorResult
from visibility_tracker.models.metric_fact import BrandMetric, CompetitorMetric, MetricFact
from visibility_tracker.models.sentiment import BrandSentiment, CompetitorSentiment

logger = logging.getLogger(__name__)


class ScoringStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


CLAIMABLE = (ScoringStatus.PENDING, ScoringStatus.ERROR)

_VIEW_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


def make_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _claimable():
    return or_(CollectorResult.scoring_status.is_(None), CollectorResult.scoring_status.in_(CLAIMABLE))


@dataclass
class ScoringRunResult:
    processed: int = 0
    completed: int = 0
    positions_processed: int = 0
    sentiments_processed: int = 0
    citations_processed: int = 0
    analyses_run: int = 0
    stale_reset: int = 0
    lost_claims: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "positions_processed": self.positions_processed,
            "sentiments_processed": self.sentiments_processed,
            "citations_processed": self.citations_processed,
            "analyses_run": self.analyses_run,
            "stale_reset": self.stale_reset,
            "lost_claims": self.lost_claims,
            "errors": self.errors,
        }


async def load_brand_context(session, brand_id: uuid.UUID, customer_id: uuid.UUID) -> BrandContext:
    """Resolve the brand and its active competitors once per run."""
    found = await session.execute(
        select(Brand).options(selectinload(Brand.competitors)).where(Brand.id == brand_id)
    )
    brand = found.scalar_one_or_none()
    if brand is None:
        raise ValueError(f"Brand {brand_id} not found")

    metadata = brand.brand_metadata or {}
    competitors = [
        CompetitorRef(
            id=c.id,
            name=c.competitor_name,
            aliases=list((c.competitor_metadata or {}).get("aliases") or []),
        )
        for c in brand.competitors
        if c.is_active
    ]
    return BrandContext(
        brand_id=brand.id,
        customer_id=customer_id,
        name=brand.name,
        aliases=list(metadata.get("aliases") or []),
        competitors=competitors,
    )


class ScoringCoordinator:
    def __init__(
        self,
        session_factory,
        engine: ExtractionEngine | None = None,
        worker_id: str | None = None,
        batch_limit: int | None = None,
        stale_minutes: int | None = None,
        max_claim_failures: int | None = None,
        refresh_view: bool | None = None,
        analysis_service: ConsolidatedAnalysisService | None = None,
        position_service: PositionExtractionService | None = None,
        sentiment_service: SentimentStorageService | None = None,
    ):
        self.session_factory = session_factory
        self.worker_id = worker_id or make_worker_id()
        self.batch_limit = settings.scoring_batch_limit if batch_limit is None else batch_limit
        self.stale_minutes = settings.scoring_stale_claim_minutes if stale_minutes is None else stale_minutes
        self.max_claim_failures = (
            settings.scoring_max_claim_failures if max_claim_failures is None else max_claim_failures
        )
        self.refresh_view = settings.scoring_refresh_view if refresh_view is None else refresh_view
        self.analysis_service = analysis_service or ConsolidatedAnalysisService(
            engine or OpenRouterExtractionEngine(), CitationCategorizer()
        )
        self.position_service = position_service or PositionExtractionService()
        self.sentiment_service = sentiment_service or SentimentStorageService()

    # -- claiming ------------------------------------------------------------

    async def reset_stale_claims(self) -> int:
        """Move claims older than the stale threshold back to pending."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.stale_minutes)
        async with self.session_factory() as session:
            result = await session.execute(
                update(CollectorResult)
                .where(
                    CollectorResult.scoring_status == ScoringStatus.PROCESSING,
                    or_(CollectorResult.scoring_started_at.is_(None), CollectorResult.scoring_started_at < cutoff),
                )
                .values(scoring_status=ScoringStatus.PENDING, scoring_worker_id=None, scoring_started_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.warning("Reset %d stale scoring claims older than %d min", result.rowcount, self.stale_minutes)
        return result.rowcount or 0

    async def claim(self, collector_result_id: int) -> bool:
        """Atomically take a row; False if another worker got there first."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(CollectorResult)
                .where(CollectorResult.id == collector_result_id, _claimable())
                .values(
                    scoring_status=ScoringStatus.PROCESSING,
                    scoring_started_at=datetime.now(timezone.utc),
                    scoring_worker_id=self.worker_id,
                )
                .returning(CollectorResult.id)
                .execution_options(synchronize_session=False)
            )
            claimed = result.scalar_one_or_none()
            await session.commit()

        SCORING_CLAIMS.labels(outcome="claimed" if claimed is not None else "lost").inc()
        return claimed is not None

    async def _finalize(self, collector_result_id: int, error: str | None = None) -> None:
        values = {"scoring_worker_id": None}
        if error is None:
            values.update(
                scoring_status=ScoringStatus.COMPLETED,
                scoring_completed_at=datetime.now(timezone.utc),
                scoring_error=None,
            )
        else:
            values.update(scoring_status=ScoringStatus.ERROR, scoring_error=error[:2000])

        async with self.session_factory() as session:
            result = await session.execute(
                update(CollectorResult)
                .where(
                    CollectorResult.id == collector_result_id,
                    CollectorResult.scoring_worker_id == self.worker_id,
                    CollectorResult.scoring_status == ScoringStatus.PROCESSING,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(
                "Claim on result %d was lost before finalize (worker %s)",
                collector_result_id,
                self.worker_id,
                extra={"collector_result_id": collector_result_id, "worker_id": self.worker_id},
            )
        SCORING_RESULTS.labels(status=values["scoring_status"]).inc()

    async def _candidate_ids(
        self, brand_id: uuid.UUID, customer_id: uuid.UUID, exclude: set[int], limit: int
    ) -> list[int]:
        stmt = (
            select(CollectorResult.id)
            .where(
                CollectorResult.brand_id == brand_id,
                CollectorResult.customer_id == customer_id,
                CollectorResult.raw_answer.is_not(None),
                _claimable(),
            )
            .order_by(CollectorResult.created_at.desc(), CollectorResult.id.desc())
            .limit(limit)
        )
        if exclude:
            stmt = stmt.where(CollectorResult.id.not_in(exclude))
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    # -- processing ----------------------------------------------------------

    async def run_brand(self, brand_id: uuid.UUID, customer_id: uuid.UUID) -> ScoringRunResult:
        """Score claimable results of one brand, one row at a time."""
        result = ScoringRunResult()
        result.stale_reset = await self.reset_stale_claims()

        async with self.session_factory() as session:
            ctx = await load_brand_context(session, brand_id, customer_id)

        seen: set[int] = set()
        lost_in_a_row = 0
        while result.processed < self.batch_limit and lost_in_a_row < self.max_claim_failures:
            candidates = await self._candidate_ids(brand_id, customer_id, seen, self.max_claim_failures)
            if not candidates:
                break

            claimed_id = None
            for candidate in candidates:
                seen.add(candidate)
                if await self.claim(candidate):
                    claimed_id = candidate
                    break
                result.lost_claims += 1
                lost_in_a_row += 1
                if lost_in_a_row >= self.max_claim_failures:
                    break
            if claimed_id is None:
                continue

            lost_in_a_row = 0
            result.processed += 1
            await self.process(claimed_id, ctx, result)

        if lost_in_a_row >= self.max_claim_failures:
            logger.info(
                "Stopping brand %s run after %d consecutive lost claims", brand_id, lost_in_a_row
            )

        if result.processed and self.refresh_view:
            await self.refresh_reporting_view()

        logger.info(
            "Scoring run for brand %s: %d processed, %d completed, %d errors",
            brand_id,
            result.processed,
            result.completed,
            len(result.errors),
            extra={"worker_id": self.worker_id},
        )
        return result

    async def process(self, collector_result_id: int, ctx: BrandContext, result: ScoringRunResult) -> bool:
        """Run the three stages for a claimed row and finalize it."""
        stage = "analysis"
        try:
            async with self.session_factory() as session:
                row = await session.get(CollectorResult, collector_result_id)
                if row is None or not row.raw_answer:
                    raise StageError(stage, collector_result_id, "collector result has no raw answer")

                started = time.monotonic()
                analysis, ran, citations = await self.analysis_service.run(session, row, ctx)
                await session.commit()
                SCORING_STAGE_DURATION.labels(stage=stage).observe(time.monotonic() - started)
                result.analyses_run += int(ran)
                result.citations_processed += citations

                stage = "positions"
                started = time.monotonic()
                fact_id, ran = await self.position_service.run(session, row, ctx, analysis)
                await session.commit()
                SCORING_STAGE_DURATION.labels(stage=stage).observe(time.monotonic() - started)
                result.positions_processed += int(ran)

                stage = "sentiment"
                started = time.monotonic()
                ran = await self.sentiment_service.run(session, fact_id, ctx, analysis)
                await session.commit()
                SCORING_STAGE_DURATION.labels(stage=stage).observe(time.monotonic() - started)
                result.sentiments_processed += int(ran)
        except Exception as e:
            error = e if isinstance(e, StageError) else StageError(stage, collector_result_id, str(e) or type(e).__name__)
            logger.exception(
                "Scoring failed for result %d at stage %s",
                collector_result_id,
                stage,
                extra={"collector_result_id": collector_result_id, "worker_id": self.worker_id},
            )
            result.errors.append({"collector_result_id": collector_result_id, "stage": stage, "error": str(error)})
            await self._finalize(collector_result_id, error=str(error))
            return False

        await self._finalize(collector_result_id)
        result.completed += 1
        return True

    # -- maintenance ---------------------------------------------------------

    async def refresh_reporting_view(self) -> bool:
        """Refresh the read-optimized view; Postgres only, failures are logged."""
        view = settings.scoring_view_name
        if not _VIEW_NAME.match(view):
            logger.error("Refusing to refresh view with invalid name %r", view)
            return False
        async with self.session_factory() as session:
            if session.bind.dialect.name != "postgresql":
                return False
            try:
                await session.execute(text(f"REFRESH MATERIALIZED VIEW {view}"))
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.warning("Refreshing %s failed: %s", view, e)
                return False
        return True

    async def brands_with_pending_work(self) -> list[tuple[uuid.UUID, uuid.UUID]]:
        """(brand_id, customer_id) pairs that have claimable rows."""
        async with self.session_factory() as session:
            found = await session.execute(
                select(CollectorResult.brand_id, CollectorResult.customer_id)
                .where(CollectorResult.raw_answer.is_not(None), _claimable())
                .distinct()
            )
            return [(brand_id, customer_id) for brand_id, customer_id in found.all()]

    async def backfill_brand(self, brand_id: uuid.UUID, customer_id: uuid.UUID) -> ScoringRunResult:
        """Drop a brand's facts and citations and score its results again.

        The consolidated analysis cache is kept, so the engine is not called
        again for results that already have an analysis.

        Rows another worker holds in ``processing`` are left untouched.
        """
        not_processing = or_(
            CollectorResult.scoring_status.is_(None),
            CollectorResult.scoring_status != ScoringStatus.PROCESSING,
        )
        result_ids = (
            select(CollectorResult.id)
            .where(
                CollectorResult.brand_id == brand_id,
                CollectorResult.customer_id == customer_id,
                not_processing,
            )
            .scalar_subquery()
        )
        fact_ids = select(MetricFact.id).where(MetricFact.collector_result_id.in_(result_ids)).scalar_subquery()

        async with self.session_factory() as session:
            for model in (BrandSentiment, CompetitorSentiment, BrandMetric, CompetitorMetric):
                await session.execute(delete(model).where(model.metric_fact_id.in_(fact_ids)))
            await session.execute(delete(MetricFact).where(MetricFact.collector_result_id.in_(result_ids)))
            await session.execute(delete(Citation).where(Citation.collector_result_id.in_(result_ids)))
            reset = await session.execute(
                update(CollectorResult)
                .where(
                    CollectorResult.brand_id == brand_id,
                    CollectorResult.customer_id == customer_id,
                    CollectorResult.raw_answer.is_not(None),
                    not_processing,
                )
                .values(
                    scoring_status=ScoringStatus.PENDING,
                    scoring_error=None,
                    scoring_completed_at=None,
                    scoring_started_at=None,
                    scoring_worker_id=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info("Backfill for brand %s reset %d results", brand_id, reset.rowcount)
        return await self.run_brand(brand_id, customer_id)
