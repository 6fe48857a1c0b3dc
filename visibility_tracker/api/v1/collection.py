"""Collection API endpoints: run queries across AI answer engines."""

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from visibility_tracker.core.exceptions import NotFoundError
from visibility_tracker.db.postgres import async_session_factory, get_db
from visibility_tracker.models.brand import Brand
from visibility_tracker.schemas.collection import (
    CollectionExecuteRequest,
    CollectionExecuteResponse,
    CollectionResultOut,
)
from visibility_tracker.services.collection_orchestrator import CollectionOrchestrator, QueryExecutionRequest

router = APIRouter(prefix="/collection", tags=["collection"])


@router.post("/execute", response_model=CollectionExecuteResponse, status_code=202)
async def execute_collection(body: CollectionExecuteRequest, db: AsyncSession = Depends(get_db)):
    """Collect answers for each query from each requested collector.

    With ``inline`` the orchestrator runs inside the request and the results
    are returned; otherwise the batch is handed to a Celery worker.
    """
    brand_ids = {q.brand_id for q in body.queries}
    found = await db.execute(select(Brand.id).where(Brand.id.in_(brand_ids)))
    missing = brand_ids - set(found.scalars().all())
    if missing:
        raise NotFoundError(f"Brand not found: {', '.join(sorted(str(b) for b in missing))}")

    requests = [QueryExecutionRequest(**q.model_dump()) for q in body.queries]

    if not body.inline:
        from visibility_tracker.tasks.collection_tasks import collect_queries_task

        task = collect_queries_task.delay([r.to_dict() for r in requests])
        return CollectionExecuteResponse(task_id=task.id)

    orchestrator = await CollectionOrchestrator.from_settings(async_session_factory)
    outcomes = await orchestrator.execute_queries(requests)
    return CollectionExecuteResponse(
        results=[CollectionResultOut.model_validate(o.to_dict()) for o in outcomes]
    )
