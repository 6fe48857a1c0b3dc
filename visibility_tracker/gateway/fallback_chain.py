"""Provider fallback chain.

For one logical collector the chain walks its enabled entries by ascending
priority. Each entry gets up to ``max_retries + 1`` attempts, every attempt
bounded by the entry timeout. The first successful attempt wins. When an
entry is exhausted the chain advances if ``continue_on_failure`` is set and
aborts otherwise.

Chain configuration is an immutable ChainConfig handed in by a
ChainConfigSource: the built-in table or the ``collector_settings`` rows.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import Protocol

from sqlalchemy import select

from visibility_tracker.core.config import settings
from visibility_tracker.core.metrics import FALLBACK_USED, PROVIDER_DURATION, PROVIDER_REQUESTS
from visibility_tracker.gateway.circuit_breaker import CircuitBreaker
from visibility_tracker.gateway.errors import ChainExhaustedError, CollectorError, CollectorErrorType
from visibility_tracker.gateway.types import (
    DEFAULT_CHAIN_CONFIG,
    AttemptRecord,
    ChainConfig,
    ChainEntry,
    ChainResult,
    CollectorChain,
    CollectorType,
    ProviderName,
    ProviderRequest,
    ProviderResponse,
    ProviderStatus,
)
from visibility_tracker.gateway.vendor_adapters import BaseProviderAdapter, build_adapters
from visibility_tracker.models.collector_setting import CollectorSetting

logger = logging.getLogger(__name__)

# Statuses that will not improve by retrying the same provider
_NO_RETRY = {ProviderStatus.NOT_CONFIGURED, ProviderStatus.AUTH_ERROR, ProviderStatus.CIRCUIT_OPEN}


# ---------------------------------------------------------------------------
# Configuration sources
# ---------------------------------------------------------------------------


class ChainConfigSource(Protocol):
    async def load(self) -> ChainConfig: ...


class StaticChainConfigSource:
    """Serves a fixed ChainConfig (the built-in table unless one is injected)."""

    def __init__(self, config: ChainConfig = DEFAULT_CHAIN_CONFIG):
        self.config = config

    async def load(self) -> ChainConfig:
        return self.config


class DatabaseChainConfigSource:
    """Builds chains from ``collector_settings`` rows.

    Collectors without any row keep their chain from ``fallback``. Rows naming
    an unknown collector or provider are ignored with a warning.
    """

    def __init__(self, session_factory, fallback: ChainConfig = DEFAULT_CHAIN_CONFIG):
        self.session_factory = session_factory
        self.fallback = fallback

    async def load(self) -> ChainConfig:
        async with self.session_factory() as session:
            rows = (await session.execute(select(CollectorSetting))).scalars().all()

        grouped: dict[CollectorType, list[ChainEntry]] = defaultdict(list)
        for row in rows:
            try:
                collector = CollectorType(row.collector_type)
                provider = ProviderName(row.provider)
            except ValueError:
                logger.warning(
                    "Ignoring collector setting %s/%s: unknown collector or provider",
                    row.collector_type,
                    row.provider,
                )
                continue
            grouped[collector].append(
                ChainEntry(
                    provider=provider,
                    priority=row.priority,
                    timeout_ms=row.timeout_ms or settings.collection_default_timeout_ms,
                    max_retries=(
                        settings.collection_default_retries if row.max_retries is None else row.max_retries
                    ),
                    continue_on_failure=bool(row.continue_on_failure),
                    enabled=bool(row.enabled),
                )
            )

        chains: list[CollectorChain] = []
        for collector in CollectorType:
            if collector in grouped:
                chains.append(CollectorChain(collector, tuple(grouped[collector])))
            else:
                chain = self.fallback.for_collector(collector)
                if chain is not None:
                    chains.append(chain)

        return ChainConfig(
            chains=tuple(chains),
            retry_base_delay=self.fallback.retry_base_delay,
            retry_max_delay=self.fallback.retry_max_delay,
        )


def chain_config_source(session_factory=None) -> ChainConfigSource:
    """Source selected by ``settings.fallback_chain_source``."""
    if settings.fallback_chain_source == "database":
        if session_factory is None:
            raise ValueError("database chain configuration needs a session factory")
        return DatabaseChainConfigSource(session_factory)
    return StaticChainConfigSource()


def default_adapters() -> dict[ProviderName, BaseProviderAdapter]:
    return build_adapters(
        settings.provider_credentials(),
        brightdata={
            "poll_interval": settings.brightdata_poll_interval_seconds,
            "max_poll_attempts": settings.brightdata_max_poll_attempts,
        },
    )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class FallbackChainExecutor:
    """Runs a collector's chain against a set of adapters.

    The circuit breaker is shared across collectors so a provider failing for
    one collector is skipped quickly for the others.
    """

    def __init__(
        self,
        config: ChainConfig = DEFAULT_CHAIN_CONFIG,
        adapters: dict[ProviderName, BaseProviderAdapter] | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        sleep=asyncio.sleep,
    ):
        self.config = config
        self.adapters = adapters if adapters is not None else default_adapters()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._sleep = sleep

    async def execute(self, collector_type: CollectorType, request: ProviderRequest) -> ChainResult:
        start = time.monotonic()
        result = ChainResult(collector_type=collector_type)
        chain = self.config.for_collector(collector_type)
        entries = chain.ordered() if chain else []

        last_error: CollectorError | None = None
        for index, entry in enumerate(entries):
            result.fallback_chain.append(entry.provider)
            response = await self._run_entry(entry, request, result)

            if response.ok:
                result.success = True
                result.provider = entry.provider
                result.answer = response.answer
                result.citations = response.citations
                result.urls = response.urls or list(response.citations)
                result.snapshot_id = response.snapshot_id
                result.model = response.model
                result.fallback_used = index > 0
                result.execution_time_ms = int((time.monotonic() - start) * 1000)
                if result.fallback_used:
                    FALLBACK_USED.labels(collector=collector_type.value).inc()
                    logger.info(
                        "%s answered by fallback provider %s after %s failed",
                        collector_type.value,
                        entry.provider.value,
                        ", ".join(p.value for p in result.failed_providers),
                    )
                return result

            if response.snapshot_id:
                result.snapshot_id = response.snapshot_id
            last_error = CollectorError.from_response(response)

            if not entry.continue_on_failure:
                result.error = ChainExhaustedError(
                    collector_type.value, result.fallback_chain, last_error, fallback_disabled=True
                )
                break
        else:
            result.error = ChainExhaustedError(collector_type.value, result.fallback_chain, last_error)

        result.execution_time_ms = int((time.monotonic() - start) * 1000)
        logger.warning("%s collection failed: %s", collector_type.value, result.error)
        return result

    async def _run_entry(self, entry: ChainEntry, request: ProviderRequest, result: ChainResult) -> ProviderResponse:
        """Attempt one chain entry up to max_retries + 1 times."""
        adapter = self.adapters.get(entry.provider)
        response = ProviderResponse(provider=entry.provider, collector_type=request.collector_type)

        for attempt in range(entry.max_retries + 1):
            if adapter is None:
                response.status = ProviderStatus.NOT_CONFIGURED
                response.error_message = f"No adapter available for {entry.provider.value}"
            elif not self.circuit_breaker.allow_request(entry.provider):
                response.status = ProviderStatus.CIRCUIT_OPEN
                response.error_message = f"Circuit open for {entry.provider.value}"
            else:
                response = await self._attempt(adapter, entry, request)

            if response.status == ProviderStatus.SUCCESS and not response.ok:
                # success status with blank text
                response.status = ProviderStatus.PARSE_ERROR
                response.error_message = response.error_message or "empty answer"

            result.attempts.append(
                AttemptRecord(
                    provider=entry.provider,
                    attempt=attempt + 1,
                    status=response.status,
                    latency_ms=response.latency_ms,
                    error=response.error_message,
                )
            )
            PROVIDER_REQUESTS.labels(
                provider=entry.provider.value,
                collector=request.collector_type.value,
                status=response.status.value,
            ).inc()

            if response.ok:
                self.circuit_breaker.record_success(entry.provider)
                return response
            if response.status not in (ProviderStatus.NOT_CONFIGURED, ProviderStatus.CIRCUIT_OPEN):
                self.circuit_breaker.record_failure(entry.provider)

            if response.status in _NO_RETRY or not CollectorError.from_response(response).retryable:
                break
            if attempt < entry.max_retries:
                delay = self.circuit_breaker.calculate_backoff(
                    attempt,
                    base_delay=self.config.retry_base_delay,
                    max_delay=self.config.retry_max_delay,
                )
                logger.info(
                    "Retry %d/%d for %s/%s in %.1fs (%s)",
                    attempt + 1,
                    entry.max_retries,
                    request.collector_type.value,
                    entry.provider.value,
                    delay,
                    response.status.value,
                )
                await self._sleep(delay)

        return response

    async def _attempt(
        self, adapter: BaseProviderAdapter, entry: ChainEntry, request: ProviderRequest
    ) -> ProviderResponse:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                adapter.send(request, timeout=entry.timeout_seconds),
                timeout=entry.timeout_seconds,
            )
        except asyncio.TimeoutError:
            response = ProviderResponse(
                provider=entry.provider,
                collector_type=request.collector_type,
                request_id=request.request_id,
                status=ProviderStatus.TIMEOUT,
                error_message=f"{entry.provider.value} exceeded {entry.timeout_ms}ms",
            )
        except Exception as e:
            logger.exception("Adapter %s raised unexpectedly", entry.provider.value)
            error = CollectorError.from_exception(e, entry.provider)
            response = ProviderResponse(
                provider=entry.provider,
                collector_type=request.collector_type,
                request_id=request.request_id,
                status=ProviderStatus.PARSE_ERROR
                if error.error_type == CollectorErrorType.PARSE
                else ProviderStatus.VENDOR_ERROR,
                error_message=error.message,
            )
        response.latency_ms = response.latency_ms or int((time.monotonic() - start) * 1000)
        PROVIDER_DURATION.labels(provider=entry.provider.value).observe(time.monotonic() - start)
        return response
