"""Celery tasks for the scoring pipeline.

``scoring_sweep`` runs from beat every ``scoring_worker_poll_seconds`` and enqueues one
``score_brand`` task per brand that has claimable collector results. Several
workers may score the same brand at once; the row-level claim keeps them from
processing the same result twice.
"""

import logging
from uuid import UUID

from visibility_tracker.analysis.pipeline import ScoringCoordinator
from visibility_tracker.tasks.celery_app import celery_app
from visibility_tracker.tasks.common import _make_session_factory, _run_async

logger = logging.getLogger(__name__)


async def _score_brand_async(brand_id: str, customer_id: str, backfill: bool = False) -> dict:
    session_factory, engine = _make_session_factory()
    try:
        coordinator = ScoringCoordinator(session_factory)
        if backfill:
            result = await coordinator.backfill_brand(UUID(brand_id), UUID(customer_id))
        else:
            result = await coordinator.run_brand(UUID(brand_id), UUID(customer_id))
        return {"brand_id": brand_id, "worker_id": coordinator.worker_id, **result.to_dict()}
    finally:
        await engine.dispose()


async def _pending_brands_async() -> list[tuple[UUID, UUID]]:
    session_factory, engine = _make_session_factory()
    try:
        return await ScoringCoordinator(session_factory).brands_with_pending_work()
    finally:
        await engine.dispose()


async def _reset_stale_async() -> int:
    session_factory, engine = _make_session_factory()
    try:
        return await ScoringCoordinator(session_factory).reset_stale_claims()
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="score_brand", max_retries=0)
def score_brand_task(self, brand_id: str, customer_id: str):
    """Celery task: score claimable collector results of one brand."""
    logger.info("Starting scoring for brand=%s customer=%s", brand_id, customer_id)
    try:
        result = _run_async(_score_brand_async(brand_id, customer_id))
        logger.info(
            "Scoring done for brand %s: %d processed, %d errors",
            brand_id,
            result["processed"],
            len(result["errors"]),
        )
        return result
    except Exception as exc:
        logger.error("Scoring failed for brand %s: %s", brand_id, exc)
        return {"error": str(exc), "brand_id": brand_id}


@celery_app.task(bind=True, name="backfill_brand", max_retries=0)
def backfill_brand_task(self, brand_id: str, customer_id: str):
    """Celery task: drop a brand's facts and citations, then score everything again."""
    logger.info("Starting backfill for brand=%s customer=%s", brand_id, customer_id)
    try:
        result = _run_async(_score_brand_async(brand_id, customer_id, backfill=True))
        logger.info("Backfill done for brand %s: %d processed", brand_id, result["processed"])
        return result
    except Exception as exc:
        logger.error("Backfill failed for brand %s: %s", brand_id, exc)
        return {"error": str(exc), "brand_id": brand_id}


@celery_app.task(name="scoring_sweep")
def scoring_sweep_task():
    """Enqueue score_brand for every brand with claimable rows.

    Runs every SCORING_WORKER_POLL_SECONDS via Celery Beat.
    """
    try:
        brands = _run_async(_pending_brands_async())
    except Exception as exc:
        logger.error("Scoring sweep failed: %s", exc)
        return {"status": "error", "error": str(exc)}

    for brand_id, customer_id in brands:
        score_brand_task.delay(str(brand_id), str(customer_id))
    if brands:
        logger.info("Scoring sweep enqueued %d brands", len(brands))
    return {"status": "ok", "enqueued": len(brands)}


@celery_app.task(name="reset_stale_claims")
def reset_stale_claims_task():
    """Move scoring claims abandoned by crashed workers back to pending."""
    try:
        reset = _run_async(_reset_stale_async())
        return {"status": "ok", "reset": reset}
    except Exception as exc:
        logger.error("Stale claim reset failed: %s", exc)
        return {"status": "error", "error": str(exc)}
