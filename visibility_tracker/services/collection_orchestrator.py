"""Collection orchestrator: batched, parallel fan-out of queries to collectors.

Requests are processed in batches of ``collection_batch_size``. Requests in a
batch run concurrently and the next batch starts only after the whole batch
has finished, with a short pause in between. Inside a request every collector
runs concurrently; one collector failing never cancels the others, and each
(request, collector) pair produces exactly one CollectorResult row.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from visibility_tracker.core.config import settings
from visibility_tracker.core.metrics import COLLECTOR_RESULTS
from visibility_tracker.gateway.errors import CollectorError, CollectorErrorType
from visibility_tracker.gateway.fallback_chain import FallbackChainExecutor, chain_config_source
from visibility_tracker.gateway.status import CollectionStatus, transition
from visibility_tracker.gateway.types import ChainResult, CollectorType, ProviderRequest
from visibility_tracker.models.collector_result import CollectorResult
from visibility_tracker.models.query_execution import QueryExecution

logger = logging.getLogger(__name__)


@dataclass
class QueryExecutionRequest:
    query_id: uuid.UUID
    brand_id: uuid.UUID
    customer_id: uuid.UUID
    query_text: str
    collectors: list[str]
    intent: str | None = None
    locale: str = "en-US"
    country: str | None = None
    topic: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "QueryExecutionRequest":
        """Build from a JSON payload (Celery task arguments)."""
        return cls(
            query_id=uuid.UUID(str(data["query_id"])),
            brand_id=uuid.UUID(str(data["brand_id"])),
            customer_id=uuid.UUID(str(data["customer_id"])),
            query_text=data["query_text"],
            collectors=list(data.get("collectors") or []),
            intent=data.get("intent"),
            locale=data.get("locale") or "en-US",
            country=data.get("country"),
            topic=data.get("topic"),
        )

    def to_dict(self) -> dict:
        return {
            "query_id": str(self.query_id),
            "brand_id": str(self.brand_id),
            "customer_id": str(self.customer_id),
            "query_text": self.query_text,
            "collectors": self.collectors,
            "intent": self.intent,
            "locale": self.locale,
            "country": self.country,
            "topic": self.topic,
        }


@dataclass
class CollectionOutcome:
    """One (query, collector) result as returned to the caller."""

    query_id: uuid.UUID
    collector_type: str
    status: str
    response: str | None = None
    citations: list[str] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)
    execution_time_ms: int = 0
    error: str | None = None
    provider: str | None = None
    fallback_used: bool = False
    collector_result_id: int | None = None
    execution_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "query_id": str(self.query_id),
            "collector_type": self.collector_type,
            "status": self.status,
            "response": self.response,
            "citations": self.citations,
            "urls": self.urls,
            "execution_time_ms": self.execution_time_ms,
            "error": self.error,
            "provider": self.provider,
            "fallback_used": self.fallback_used,
            "collector_result_id": self.collector_result_id,
            "execution_id": self.execution_id,
        }


@dataclass
class ExecutionHandle:
    """Ids and in-memory state of the rows created for one dispatch."""

    execution_id: int
    collector_result_id: int
    metadata: dict
    execution_log: list = field(default_factory=list)
    result_log: list = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class SqlCollectionStore:
    """Writes QueryExecution and CollectorResult rows, one short session per step."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def start(self, request: QueryExecutionRequest, collector: str) -> ExecutionHandle:
        """Insert both rows as pending, then move them to running."""
        metadata = {
            "intent": request.intent,
            "locale": request.locale,
            "country": request.country or settings.default_country,
            "collectors": list(request.collectors),
        }
        async with self.session_factory() as session:
            execution, result = self._new_rows(request, collector, metadata)
            session.add(execution)
            await session.flush()
            result.execution_id = execution.id
            session.add(result)
            await session.flush()

            handle = ExecutionHandle(
                execution_id=execution.id,
                collector_result_id=result.id,
                metadata=metadata,
            )
            handle.execution_log = await transition(
                session, QueryExecution, execution.id, CollectionStatus.PENDING, CollectionStatus.RUNNING,
                reason="dispatched", started_at=handle.started_at,
            )
            handle.result_log = await transition(
                session, CollectorResult, result.id, CollectionStatus.PENDING, CollectionStatus.RUNNING,
                reason="dispatched",
            )
            await session.commit()
        return handle

    async def reject(self, request: QueryExecutionRequest, collector: str, error: CollectorError) -> ExecutionHandle:
        """Record a dispatch refused before any provider was contacted."""
        metadata = {
            "intent": request.intent,
            "locale": request.locale,
            "country": request.country or settings.default_country,
            "collectors": list(request.collectors),
        }
        async with self.session_factory() as session:
            execution, result = self._new_rows(request, collector, metadata)
            session.add(execution)
            await session.flush()
            result.execution_id = execution.id
            session.add(result)
            await session.flush()

            handle = ExecutionHandle(execution.id, result.id, metadata)
            now = datetime.now(timezone.utc)
            await transition(
                session, QueryExecution, execution.id, CollectionStatus.PENDING, CollectionStatus.FAILED,
                reason=error.error_type.value, error_message=error.message, completed_at=now, duration_ms=0,
            )
            await transition(
                session, CollectorResult, result.id, CollectionStatus.PENDING, CollectionStatus.FAILED,
                reason=error.error_type.value, scoring_status=None, **error.to_database_format(),
            )
            await session.commit()
        return handle

    async def complete(self, handle: ExecutionHandle, chain: ChainResult) -> None:
        now = datetime.now(timezone.utc)
        diagnostics = chain.diagnostics()
        async with self.session_factory() as session:
            await transition(
                session, QueryExecution, handle.execution_id, CollectionStatus.RUNNING, CollectionStatus.COMPLETED,
                status_log=handle.execution_log, reason=f"answered by {chain.provider.value}",
                answer=chain.answer,
                execution_metadata={**handle.metadata, **diagnostics},
                snapshot_id=chain.snapshot_id,
                duration_ms=chain.execution_time_ms,
                completed_at=now,
            )
            await transition(
                session, CollectorResult, handle.collector_result_id, CollectionStatus.RUNNING,
                CollectionStatus.COMPLETED,
                status_log=handle.result_log, reason=f"answered by {chain.provider.value}",
                answer=chain.answer,
                raw_answer=chain.answer,
                provider=chain.provider.value,
                citations=chain.citations,
                urls=chain.urls,
                snapshot_id=chain.snapshot_id,
                execution_time_ms=chain.execution_time_ms,
                result_metadata={**diagnostics, "model": chain.model},
                scoring_status="pending",
            )
            await session.commit()

    async def fail(self, handle: ExecutionHandle, status: CollectionStatus, chain: ChainResult) -> None:
        error = CollectorError.from_exception(chain.error) if chain.error else CollectorError("unknown failure")
        now = datetime.now(timezone.utc)
        diagnostics = chain.diagnostics()
        async with self.session_factory() as session:
            await transition(
                session, QueryExecution, handle.execution_id, CollectionStatus.RUNNING, status,
                status_log=handle.execution_log, reason=error.error_type.value,
                execution_metadata={**handle.metadata, **diagnostics},
                error_message=error.message,
                snapshot_id=chain.snapshot_id,
                duration_ms=chain.execution_time_ms,
                completed_at=now,
            )
            await transition(
                session, CollectorResult, handle.collector_result_id, CollectionStatus.RUNNING, status,
                status_log=handle.result_log, reason=error.error_type.value,
                snapshot_id=chain.snapshot_id,
                execution_time_ms=chain.execution_time_ms,
                result_metadata=diagnostics,
                scoring_status=None,
                **error.to_database_format(),
            )
            await session.commit()

    @staticmethod
    def _new_rows(request: QueryExecutionRequest, collector: str, metadata: dict):
        execution = QueryExecution(
            query_id=request.query_id,
            brand_id=request.brand_id,
            customer_id=request.customer_id,
            collector_type=collector,
            status=CollectionStatus.PENDING.value,
            status_log=[],
            execution_metadata=metadata,
        )
        result = CollectorResult(
            query_id=request.query_id,
            brand_id=request.brand_id,
            customer_id=request.customer_id,
            collector_type=collector,
            question=request.query_text,
            topic=request.topic,
            status=CollectionStatus.PENDING.value,
            status_log=[],
            citations=[],
            urls=[],
            scoring_status=None,
        )
        return execution, result


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class CollectionOrchestrator:
    def __init__(
        self,
        store,
        executor: FallbackChainExecutor,
        batch_size: int | None = None,
        batch_pause: float | None = None,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.executor = executor
        self.batch_size = max(batch_size or settings.collection_batch_size, 1)
        self.batch_pause = settings.collection_batch_pause_seconds if batch_pause is None else batch_pause
        self._sleep = sleep

    @classmethod
    async def from_settings(cls, session_factory) -> "CollectionOrchestrator":
        """Orchestrator with SQL persistence and the configured chain source."""
        config = await chain_config_source(session_factory).load()
        return cls(SqlCollectionStore(session_factory), FallbackChainExecutor(config=config))

    async def execute_queries(self, requests: list[QueryExecutionRequest]) -> list[CollectionOutcome]:
        """Run every request in batches; returns one outcome per (request, collector)."""
        start = time.monotonic()
        outcomes: list[CollectionOutcome] = []

        for offset in range(0, len(requests), self.batch_size):
            batch = requests[offset : offset + self.batch_size]
            batch_outcomes = await asyncio.gather(*(self.execute_query(r) for r in batch))
            for request_outcomes in batch_outcomes:
                outcomes.extend(request_outcomes)

            if offset + self.batch_size < len(requests) and self.batch_pause > 0:
                await self._sleep(self.batch_pause)

        completed = sum(1 for o in outcomes if o.status == CollectionStatus.COMPLETED.value)
        logger.info(
            "Collection finished: %d requests, %d results (%d completed, %d failed) in %.1fs",
            len(requests),
            len(outcomes),
            completed,
            len(outcomes) - completed,
            time.monotonic() - start,
        )
        return outcomes

    async def execute_query(self, request: QueryExecutionRequest) -> list[CollectionOutcome]:
        """Fan one request out to all of its collectors concurrently."""
        results = await asyncio.gather(
            *(self._collect(request, collector) for collector in request.collectors),
            return_exceptions=True,
        )

        outcomes = []
        for collector, result in zip(request.collectors, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Collector %s crashed for query %s: %s",
                    collector,
                    request.query_id,
                    result,
                    exc_info=result,
                )
                COLLECTOR_RESULTS.labels(collector=collector, status=CollectionStatus.FAILED.value).inc()
                result = CollectionOutcome(
                    query_id=request.query_id,
                    collector_type=collector,
                    status=CollectionStatus.FAILED.value,
                    error=str(result) or type(result).__name__,
                )
            outcomes.append(result)
        return outcomes

    async def _collect(self, request: QueryExecutionRequest, collector: str) -> CollectionOutcome:
        try:
            collector_type = CollectorType(collector)
        except ValueError:
            error = CollectorError(f"Unknown collector: {collector}", CollectorErrorType.VALIDATION)
            handle = await self.store.reject(request, collector, error)
            COLLECTOR_RESULTS.labels(collector=collector, status=CollectionStatus.FAILED.value).inc()
            return CollectionOutcome(
                query_id=request.query_id,
                collector_type=collector,
                status=CollectionStatus.FAILED.value,
                error=error.message,
                collector_result_id=handle.collector_result_id,
                execution_id=handle.execution_id,
            )

        handle = await self.store.start(request, collector)
        try:
            chain = await self._run_chain(request, collector_type)
            if chain.success:
                await self.store.complete(handle, chain)
                status = CollectionStatus.COMPLETED
            else:
                retryable = isinstance(chain.error, CollectorError) and chain.error.retryable
                status = CollectionStatus.FAILED_RETRY if retryable else CollectionStatus.FAILED
                await self.store.fail(handle, status, chain)
        except Exception as exc:
            logger.error(
                "Collector %s crashed for query %s: %s", collector, request.query_id, exc, exc_info=True
            )
            chain = ChainResult(collector_type=collector_type, error=CollectorError.from_exception(exc))
            status = CollectionStatus.FAILED
            # a failure here propagates to execute_query
            await self.store.fail(handle, status, chain)

        COLLECTOR_RESULTS.labels(collector=collector, status=status.value).inc()
        return CollectionOutcome(
            query_id=request.query_id,
            collector_type=collector,
            status=status.value,
            response=chain.answer if chain.success else None,
            citations=chain.citations,
            urls=chain.urls,
            execution_time_ms=chain.execution_time_ms,
            error=None if chain.success else str(chain.error),
            provider=chain.provider.value if chain.provider else None,
            fallback_used=chain.fallback_used,
            collector_result_id=handle.collector_result_id,
            execution_id=handle.execution_id,
        )

    async def _run_chain(self, request: QueryExecutionRequest, collector_type: CollectorType) -> ChainResult:
        provider_request = ProviderRequest(
            prompt=request.query_text,
            collector_type=collector_type,
            locale=request.locale or "en-US",
            country=request.country or settings.default_country,
            query_id=str(request.query_id),
            brand_id=str(request.brand_id),
            customer_id=str(request.customer_id),
        )
        return await self.executor.execute(collector_type, provider_request)
