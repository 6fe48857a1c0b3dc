"""Scoring API endpoints: run or backfill the scoring pipeline for a brand."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from visibility_tracker.analysis.pipeline import ScoringCoordinator
from visibility_tracker.core.exceptions import BadRequestError, NotFoundError
from visibility_tracker.db.postgres import async_session_factory, get_db
from visibility_tracker.models.brand import Brand
from visibility_tracker.schemas.scoring import ScoringRunRequest, ScoringRunResponse

router = APIRouter(prefix="/scoring", tags=["scoring"])


async def _check_brand(db: AsyncSession, brand_id: uuid.UUID, customer_id: uuid.UUID) -> None:
    brand = await db.get(Brand, brand_id)
    if brand is None:
        raise NotFoundError("Brand not found")
    if brand.customer_id != customer_id:
        raise BadRequestError("Brand does not belong to this customer")


@router.post("/brands/{brand_id}/run", response_model=ScoringRunResponse, status_code=202)
async def run_scoring(brand_id: uuid.UUID, body: ScoringRunRequest, db: AsyncSession = Depends(get_db)):
    """Score the brand's pending collector results."""
    await _check_brand(db, brand_id, body.customer_id)

    if not body.inline:
        from visibility_tracker.tasks.scoring_tasks import score_brand_task

        task = score_brand_task.delay(str(brand_id), str(body.customer_id))
        return ScoringRunResponse(task_id=task.id)

    coordinator = ScoringCoordinator(async_session_factory)
    result = await coordinator.run_brand(brand_id, body.customer_id)
    return ScoringRunResponse(worker_id=coordinator.worker_id, **result.to_dict())


@router.post("/brands/{brand_id}/backfill", response_model=ScoringRunResponse, status_code=202)
async def backfill_scoring(brand_id: uuid.UUID, body: ScoringRunRequest, db: AsyncSession = Depends(get_db)):
    """Drop the brand's facts and citations and score all of its results again.

    Cached consolidated analyses are reused, so the extraction engine is only
    called for results that were never analyzed.
    """
    await _check_brand(db, brand_id, body.customer_id)

    if not body.inline:
        from visibility_tracker.tasks.scoring_tasks import backfill_brand_task

        task = backfill_brand_task.delay(str(brand_id), str(body.customer_id))
        return ScoringRunResponse(task_id=task.id)

    coordinator = ScoringCoordinator(async_session_factory)
    result = await coordinator.backfill_brand(brand_id, body.customer_id)
    return ScoringRunResponse(worker_id=coordinator.worker_id, **result.to_dict())
