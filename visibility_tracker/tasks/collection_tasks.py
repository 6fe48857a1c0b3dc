"""Celery task running the collection orchestrator for a batch of queries.

Retries happen inside the fallback chain (per-provider retries with
exponential backoff + jitter, then the next provider), so Celery-level
retries are disabled to avoid duplicate CollectorResult rows.
"""

import logging

from visibility_tracker.services.collection_orchestrator import CollectionOrchestrator, QueryExecutionRequest
from visibility_tracker.tasks.celery_app import celery_app
from visibility_tracker.tasks.common import _make_session_factory, _run_async

logger = logging.getLogger(__name__)


async def _collect_queries_async(requests: list[dict]) -> dict:
    parsed = [QueryExecutionRequest.from_dict(r) for r in requests]

    session_factory, engine = _make_session_factory()
    try:
        orchestrator = await CollectionOrchestrator.from_settings(session_factory)
        outcomes = await orchestrator.execute_queries(parsed)
    finally:
        await engine.dispose()

    completed = sum(1 for o in outcomes if o.status == "completed")
    return {
        "requests": len(parsed),
        "results": len(outcomes),
        "completed": completed,
        "failed": len(outcomes) - completed,
        "outcomes": [o.to_dict() for o in outcomes],
    }


@celery_app.task(bind=True, name="collect_queries", max_retries=0)
def collect_queries_task(self, requests: list[dict]):
    """Celery task: collect answers for each request across its collectors."""
    logger.info("Starting collection for %d queries", len(requests))
    try:
        result = _run_async(_collect_queries_async(requests))
        logger.info(
            "Collection done: %d results, %d completed", result["results"], result["completed"]
        )
        return result
    except Exception as exc:
        logger.error("Collection task failed: %s", exc)
        return {"error": str(exc), "requests": len(requests)}
