"""Tests for the provider fallback chain executor and its configuration sources."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from visibility_tracker.core.config import settings
from visibility_tracker.gateway.circuit_breaker import CircuitBreaker
from visibility_tracker.gateway.errors import ChainExhaustedError, CollectorErrorType
from visibility_tracker.gateway.fallback_chain import (
    DatabaseChainConfigSource,
    FallbackChainExecutor,
    StaticChainConfigSource,
)
from visibility_tracker.gateway.types import (
    DEFAULT_CHAIN_CONFIG,
    ChainConfig,
    ChainEntry,
    CollectorChain,
    CollectorType,
    ProviderName,
    ProviderRequest,
    ProviderResponse,
    ProviderStatus,
)
from visibility_tracker.models.collector_setting import CollectorSetting


class FakeAdapter:
    """Returns scripted statuses in order; the last one repeats."""

    def __init__(self, provider: ProviderName, *outcomes: ProviderStatus, answer: str = "ok answer", delay: float = 0):
        self.provider = provider
        self.outcomes = list(outcomes) or [ProviderStatus.SUCCESS]
        self.answer = answer
        self.delay = delay
        self.calls = 0

    async def send(self, request: ProviderRequest, timeout: float = 60.0) -> ProviderResponse:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        status = self.outcomes[min(self.calls - 1, len(self.outcomes) - 1)]
        response = ProviderResponse(
            provider=self.provider,
            collector_type=request.collector_type,
            request_id=request.request_id,
            status=status,
        )
        if status == ProviderStatus.SUCCESS:
            response.answer = self.answer
            response.citations = ["https://example.com/a"]
        else:
            response.error_message = f"{self.provider.value} {status.value}"
        return response


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _config(*entries: ChainEntry, collector: CollectorType = CollectorType.CHATGPT) -> ChainConfig:
    return ChainConfig(chains=(CollectorChain(collector, tuple(entries)),))


def _request(collector: CollectorType = CollectorType.CHATGPT) -> ProviderRequest:
    return ProviderRequest(prompt="best running shoes", collector_type=collector)


# ==========================================================================
# Test: Chain walking
# ==========================================================================


class TestChainExecution:
    @pytest.mark.asyncio
    async def test_primary_success(self):
        primary = FakeAdapter(ProviderName.BRIGHTDATA)
        secondary = FakeAdapter(ProviderName.OXYLABS)
        executor = FallbackChainExecutor(
            config=_config(
                ChainEntry(ProviderName.BRIGHTDATA, priority=1),
                ChainEntry(ProviderName.OXYLABS, priority=2),
            ),
            adapters={ProviderName.BRIGHTDATA: primary, ProviderName.OXYLABS: secondary},
            sleep=RecordingSleep(),
        )

        result = await executor.execute(CollectorType.CHATGPT, _request())

        assert result.success
        assert result.provider == ProviderName.BRIGHTDATA
        assert result.fallback_used is False
        assert result.answer == "ok answer"
        assert result.urls == ["https://example.com/a"]
        assert result.error is None
        assert secondary.calls == 0

    @pytest.mark.asyncio
    async def test_fallback_after_primary_exhausts_retries(self):
        primary = FakeAdapter(ProviderName.BRIGHTDATA, ProviderStatus.VENDOR_ERROR)
        secondary = FakeAdapter(ProviderName.OXYLABS, answer="from oxylabs")
        sleep = RecordingSleep()
        executor = FallbackChainExecutor(
            config=_config(
                ChainEntry(ProviderName.BRIGHTDATA, priority=1, max_retries=2),
                ChainEntry(ProviderName.OXYLABS, priority=2),
            ),
            adapters={ProviderName.BRIGHTDATA: primary, ProviderName.OXYLABS: secondary},
            sleep=sleep,
        )

        result = await executor.execute(CollectorType.CHATGPT, _request())

        assert result.success
        assert result.provider == ProviderName.OXYLABS
        assert result.fallback_used is True
        assert result.answer == "from oxylabs"
        assert primary.calls == 3
        assert len(sleep.delays) == 2
        assert result.failed_providers == [ProviderName.BRIGHTDATA]
        assert result.retry_count == 3
        diag = result.diagnostics()
        assert diag["fallback_chain"] == ["brightdata", "oxylabs"]
        assert diag["failed_providers"] == ["brightdata"]

    @pytest.mark.asyncio
    async def test_priority_order_not_declaration_order(self):
        a = FakeAdapter(ProviderName.OXYLABS)
        b = FakeAdapter(ProviderName.BRIGHTDATA)
        executor = FallbackChainExecutor(
            config=_config(
                ChainEntry(ProviderName.OXYLABS, priority=5),
                ChainEntry(ProviderName.BRIGHTDATA, priority=1),
            ),
            adapters={ProviderName.OXYLABS: a, ProviderName.BRIGHTDATA: b},
            sleep=RecordingSleep(),
        )
        result = await executor.execute(CollectorType.CHATGPT, _request())
        assert result.provider == ProviderName.BRIGHTDATA
        assert a.calls == 0

    @pytest.mark.asyncio
    async def test_disabled_entries_are_skipped(self):
        a = FakeAdapter(ProviderName.BRIGHTDATA)
        b = FakeAdapter(ProviderName.OXYLABS)
        executor = FallbackChainExecutor(
            config=_config(
                ChainEntry(ProviderName.BRIGHTDATA, priority=1, enabled=False),
                ChainEntry(ProviderName.OXYLABS, priority=2),
            ),
            adapters={ProviderName.BRIGHTDATA: a, ProviderName.OXYLABS: b},
            sleep=RecordingSleep(),
        )
        result = await executor.execute(CollectorType.CHATGPT, _request())
        assert result.provider == ProviderName.OXYLABS
        assert result.fallback_used is False
        assert a.calls == 0

    @pytest.mark.asyncio
    async def test_continue_on_failure_false_stops_chain(self):
        primary = FakeAdapter(ProviderName.OPENROUTER, ProviderStatus.VENDOR_ERROR)
        secondary = FakeAdapter(ProviderName.DATAFORSEO)
        executor = FallbackChainExecutor(
            config=_config(
                ChainEntry(ProviderName.OPENROUTER, priority=1, max_retries=0, continue_on_failure=False),
                ChainEntry(ProviderName.DATAFORSEO, priority=2),
                collector=CollectorType.CLAUDE,
            ),
            adapters={ProviderName.OPENROUTER: primary, ProviderName.DATAFORSEO: secondary},
            sleep=RecordingSleep(),
        )

        result = await executor.execute(CollectorType.CLAUDE, _request(CollectorType.CLAUDE))

        assert not result.success
        assert secondary.calls == 0
        assert isinstance(result.error, ChainExhaustedError)
        assert result.error.details["fallback_disabled"] is True
        assert "fallback is disabled" in str(result.error)

    @pytest.mark.asyncio
    async def test_all_fail(self):
        a = FakeAdapter(ProviderName.BRIGHTDATA, ProviderStatus.TIMEOUT)
        b = FakeAdapter(ProviderName.OXYLABS, ProviderStatus.RATE_LIMITED)
        executor = FallbackChainExecutor(
            config=_config(
                ChainEntry(ProviderName.BRIGHTDATA, priority=1, max_retries=0),
                ChainEntry(ProviderName.OXYLABS, priority=2, max_retries=0),
            ),
            adapters={ProviderName.BRIGHTDATA: a, ProviderName.OXYLABS: b},
            sleep=RecordingSleep(),
        )

        result = await executor.execute(CollectorType.CHATGPT, _request())

        assert not result.success
        assert result.provider is None
        assert isinstance(result.error, ChainExhaustedError)
        assert result.error.tried == [ProviderName.BRIGHTDATA, ProviderName.OXYLABS]
        assert result.error.error_type == CollectorErrorType.RATE_LIMIT
        assert result.error.retryable is True
        assert "Tried: brightdata, oxylabs" in str(result.error)

    @pytest.mark.asyncio
    async def test_unknown_collector_has_no_providers(self):
        executor = FallbackChainExecutor(
            config=_config(ChainEntry(ProviderName.BRIGHTDATA, priority=1)),
            adapters={},
            sleep=RecordingSleep(),
        )
        result = await executor.execute(CollectorType.GROK, _request(CollectorType.GROK))
        assert not result.success
        assert "No providers available" in str(result.error)
        assert result.error.retryable is False


# ==========================================================================
# Test: Per-entry retry behaviour
# ==========================================================================


class TestEntryRetries:
    @pytest.mark.asyncio
    async def test_success_on_retry(self):
        adapter = FakeAdapter(ProviderName.OXYLABS, ProviderStatus.TIMEOUT, ProviderStatus.SUCCESS)
        sleep = RecordingSleep()
        executor = FallbackChainExecutor(
            config=_config(ChainEntry(ProviderName.OXYLABS, priority=1, max_retries=2)),
            adapters={ProviderName.OXYLABS: adapter},
            sleep=sleep,
        )

        result = await executor.execute(CollectorType.CHATGPT, _request())

        assert result.success
        assert result.fallback_used is False
        assert adapter.calls == 2
        assert [a.status for a in result.attempts] == [ProviderStatus.TIMEOUT, ProviderStatus.SUCCESS]
        # first backoff: base * 2^0 + jitter
        assert 1.0 <= sleep.delays[0] <= 1.5

    @pytest.mark.asyncio
    async def test_auth_error_is_not_retried(self):
        adapter = FakeAdapter(ProviderName.OXYLABS, ProviderStatus.AUTH_ERROR)
        sleep = RecordingSleep()
        executor = FallbackChainExecutor(
            config=_config(ChainEntry(ProviderName.OXYLABS, priority=1, max_retries=3)),
            adapters={ProviderName.OXYLABS: adapter},
            sleep=sleep,
        )

        result = await executor.execute(CollectorType.CHATGPT, _request())

        assert not result.success
        assert adapter.calls == 1
        assert sleep.delays == []
        assert result.error.retryable is False

    @pytest.mark.asyncio
    async def test_missing_adapter_is_not_configured(self):
        fallback = FakeAdapter(ProviderName.OXYLABS)
        executor = FallbackChainExecutor(
            config=_config(
                ChainEntry(ProviderName.BRIGHTDATA, priority=1, max_retries=2),
                ChainEntry(ProviderName.OXYLABS, priority=2),
            ),
            adapters={ProviderName.OXYLABS: fallback},
            sleep=RecordingSleep(),
        )

        result = await executor.execute(CollectorType.CHATGPT, _request())

        assert result.success
        assert result.fallback_used is True
        assert result.attempts[0].status == ProviderStatus.NOT_CONFIGURED
        assert len([a for a in result.attempts if a.provider == ProviderName.BRIGHTDATA]) == 1

    @pytest.mark.asyncio
    async def test_empty_success_counts_as_parse_error(self):
        adapter = FakeAdapter(ProviderName.OXYLABS, ProviderStatus.SUCCESS, answer="   ")
        executor = FallbackChainExecutor(
            config=_config(ChainEntry(ProviderName.OXYLABS, priority=1, max_retries=0)),
            adapters={ProviderName.OXYLABS: adapter},
            sleep=RecordingSleep(),
        )

        result = await executor.execute(CollectorType.CHATGPT, _request())

        assert not result.success
        assert result.attempts[0].status == ProviderStatus.PARSE_ERROR
        assert result.error.error_type == CollectorErrorType.PARSE

    @pytest.mark.asyncio
    async def test_attempt_bounded_by_entry_timeout(self):
        slow = FakeAdapter(ProviderName.OXYLABS, delay=2.0)
        executor = FallbackChainExecutor(
            config=_config(ChainEntry(ProviderName.OXYLABS, priority=1, timeout_ms=20, max_retries=0)),
            adapters={ProviderName.OXYLABS: slow},
            sleep=RecordingSleep(),
        )

        result = await executor.execute(CollectorType.CHATGPT, _request())

        assert not result.success
        assert result.attempts[0].status == ProviderStatus.TIMEOUT
        assert result.error.error_type == CollectorErrorType.TIMEOUT

    @pytest.mark.asyncio
    async def test_adapter_exception_is_classified(self):
        class Exploding:
            async def send(self, request, timeout=60.0):
                raise KeyError("choices")

        executor = FallbackChainExecutor(
            config=_config(ChainEntry(ProviderName.OXYLABS, priority=1, max_retries=0)),
            adapters={ProviderName.OXYLABS: Exploding()},
            sleep=RecordingSleep(),
        )

        result = await executor.execute(CollectorType.CHATGPT, _request())

        assert not result.success
        assert result.attempts[0].status == ProviderStatus.PARSE_ERROR


# ==========================================================================
# Test: Circuit breaker integration
# ==========================================================================


class TestCircuitIntegration:
    @pytest.mark.asyncio
    async def test_open_circuit_skips_provider(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=3600)
        breaker.record_failure(ProviderName.BRIGHTDATA)

        primary = FakeAdapter(ProviderName.BRIGHTDATA)
        secondary = FakeAdapter(ProviderName.OXYLABS)
        executor = FallbackChainExecutor(
            config=_config(
                ChainEntry(ProviderName.BRIGHTDATA, priority=1, max_retries=2),
                ChainEntry(ProviderName.OXYLABS, priority=2),
            ),
            adapters={ProviderName.BRIGHTDATA: primary, ProviderName.OXYLABS: secondary},
            circuit_breaker=breaker,
            sleep=RecordingSleep(),
        )

        result = await executor.execute(CollectorType.CHATGPT, _request())

        assert result.provider == ProviderName.OXYLABS
        assert primary.calls == 0
        assert result.attempts[0].status == ProviderStatus.CIRCUIT_OPEN

    @pytest.mark.asyncio
    async def test_failures_open_shared_circuit(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=3600)
        adapter = FakeAdapter(ProviderName.BRIGHTDATA, ProviderStatus.VENDOR_ERROR)
        executor = FallbackChainExecutor(
            config=ChainConfig(
                chains=(
                    CollectorChain(CollectorType.CHATGPT, (ChainEntry(ProviderName.BRIGHTDATA, priority=1, max_retries=1),)),
                    CollectorChain(CollectorType.GROK, (ChainEntry(ProviderName.BRIGHTDATA, priority=1, max_retries=1),)),
                )
            ),
            adapters={ProviderName.BRIGHTDATA: adapter},
            circuit_breaker=breaker,
            sleep=RecordingSleep(),
        )

        await executor.execute(CollectorType.CHATGPT, _request())
        assert breaker.get_circuit_state(ProviderName.BRIGHTDATA)["state"] == "open"

        result = await executor.execute(CollectorType.GROK, _request(CollectorType.GROK))
        assert adapter.calls == 2
        assert result.attempts[0].status == ProviderStatus.CIRCUIT_OPEN


# ==========================================================================
# Test: Configuration sources
# ==========================================================================


class TestChainConfigSources:
    @pytest.mark.asyncio
    async def test_static_source_serves_defaults(self):
        config = await StaticChainConfigSource().load()
        assert config is DEFAULT_CHAIN_CONFIG
        claude = config.for_collector(CollectorType.CLAUDE)
        assert [e.provider for e in claude.ordered()] == [ProviderName.OPENROUTER]

    def test_default_table_covers_every_collector(self):
        assert set(DEFAULT_CHAIN_CONFIG.collector_types) == set(CollectorType)

    @pytest.mark.asyncio
    async def test_database_source_overrides_configured_collectors(self, session_factory):
        async with session_factory() as session:
            session.add_all(
                [
                    CollectorSetting(
                        collector_type="chatgpt",
                        provider="oxylabs",
                        priority=1,
                        timeout_ms=30_000,
                        max_retries=0,
                        continue_on_failure=True,
                        enabled=True,
                    ),
                    CollectorSetting(
                        collector_type="chatgpt",
                        provider="brightdata",
                        priority=2,
                        timeout_ms=600_000,
                        max_retries=1,
                        continue_on_failure=False,
                        enabled=True,
                    ),
                    CollectorSetting(collector_type="chatgpt", provider="nonexistent", priority=3),
                ]
            )
            await session.commit()

        config = await DatabaseChainConfigSource(session_factory).load()

        chatgpt = config.for_collector(CollectorType.CHATGPT).ordered()
        assert [e.provider for e in chatgpt] == [ProviderName.OXYLABS, ProviderName.BRIGHTDATA]
        assert chatgpt[0].timeout_ms == 30_000
        assert chatgpt[1].continue_on_failure is False
        # untouched collectors keep the built-in chain
        assert config.for_collector(CollectorType.GEMINI) == DEFAULT_CHAIN_CONFIG.for_collector(CollectorType.GEMINI)

    @pytest.mark.asyncio
    async def test_database_rows_without_limits_use_configured_defaults(self, session_factory):
        async with session_factory() as session:
            session.add(CollectorSetting(collector_type="perplexity", provider="serpapi", priority=1))
            await session.commit()

        with patch.object(settings, "collection_default_timeout_ms", 15_000), patch.object(
            settings, "collection_default_retries", 4
        ):
            config = await DatabaseChainConfigSource(session_factory).load()

        (entry,) = config.for_collector(CollectorType.PERPLEXITY).ordered()
        assert entry.provider == ProviderName.SERPAPI
        assert entry.timeout_ms == 15_000
        assert entry.max_retries == 4
