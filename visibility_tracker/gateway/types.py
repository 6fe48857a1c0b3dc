"""Core types and DTOs for the provider gateway."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class CollectorType(str, Enum):
    """Logical answer-engine targets."""

    CHATGPT = "chatgpt"
    GOOGLE_AIO = "google_aio"
    PERPLEXITY = "perplexity"
    CLAUDE = "claude"
    BING_COPILOT = "bing_copilot"
    GEMINI = "gemini"
    GROK = "grok"
    DEEPSEEK = "deepseek"


class ProviderName(str, Enum):
    """Upstream vendors with a concrete adapter."""

    BRIGHTDATA = "brightdata"
    OXYLABS = "oxylabs"
    SERPAPI = "serpapi"
    DATAFORSEO = "dataforseo"
    OPENROUTER = "openrouter"
    GOOGLE_GEMINI_DIRECT = "google_gemini_direct"


class ProviderStatus(str, Enum):
    """Outcome of a single adapter attempt."""

    SUCCESS = "success"
    PENDING = "pending"  # async job submitted, snapshot not ready before the deadline
    RATE_LIMITED = "rate_limited"
    VENDOR_ERROR = "vendor_error"
    TIMEOUT = "timeout"
    PARSE_ERROR = "parse_error"
    AUTH_ERROR = "auth_error"
    NOT_CONFIGURED = "not_configured"
    CIRCUIT_OPEN = "circuit_open"


# ---------------------------------------------------------------------------
# Provider request / response
# ---------------------------------------------------------------------------


@dataclass
class ProviderRequest:
    """Abstract request handed to any adapter."""

    prompt: str
    collector_type: CollectorType = CollectorType.CHATGPT
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    locale: str = "en-US"
    country: str = "US"
    query_id: str = ""
    brand_id: str = ""
    customer_id: str = ""
    extra_options: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedAnswer:
    """Common shape every vendor parser produces."""

    text: str = ""
    citations: list[str] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)


@dataclass
class ProviderResponse:
    """Normalized output of one adapter attempt."""

    provider: ProviderName
    collector_type: CollectorType
    request_id: str = ""
    status: ProviderStatus = ProviderStatus.SUCCESS

    answer: str = ""
    citations: list[str] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)

    snapshot_id: str | None = None
    model: str = ""
    latency_ms: int = 0

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    error_code: str = ""
    error_message: str = ""

    vendor_raw: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == ProviderStatus.SUCCESS and bool(self.answer.strip())

    def apply(self, parsed: ParsedAnswer) -> None:
        self.answer = parsed.text
        self.citations = parsed.citations
        self.urls = parsed.urls

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict for storage."""
        return {
            "provider": self.provider.value,
            "collector_type": self.collector_type.value,
            "request_id": self.request_id,
            "status": self.status.value,
            "snapshot_id": self.snapshot_id,
            "model": self.model,
            "latency_ms": self.latency_ms,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "citations_count": len(self.citations),
            "urls_count": len(self.urls),
        }


# ---------------------------------------------------------------------------
# Fallback chain configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainEntry:
    """One provider slot inside a collector's fallback chain."""

    provider: ProviderName
    priority: int
    timeout_ms: int = 60_000
    max_retries: int = 2
    continue_on_failure: bool = True
    enabled: bool = True

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


@dataclass(frozen=True)
class CollectorChain:
    collector_type: CollectorType
    entries: tuple[ChainEntry, ...]

    def ordered(self) -> list[ChainEntry]:
        """Enabled entries sorted by ascending priority."""
        return sorted((e for e in self.entries if e.enabled), key=lambda e: e.priority)


@dataclass(frozen=True)
class ChainConfig:
    """Immutable collector → chain mapping injected into the chain executor."""

    chains: tuple[CollectorChain, ...]
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    def for_collector(self, collector_type: CollectorType) -> CollectorChain | None:
        for chain in self.chains:
            if chain.collector_type == collector_type:
                return chain
        return None

    @property
    def collector_types(self) -> list[CollectorType]:
        return [c.collector_type for c in self.chains]


def _chain(collector: CollectorType, *entries: ChainEntry) -> CollectorChain:
    return CollectorChain(collector_type=collector, entries=tuple(entries))


DEFAULT_CHAIN_CONFIG = ChainConfig(
    chains=(
        _chain(
            CollectorType.CHATGPT,
            ChainEntry(ProviderName.BRIGHTDATA, priority=1, timeout_ms=600_000, max_retries=1),
            ChainEntry(ProviderName.OXYLABS, priority=2, timeout_ms=60_000, max_retries=2),
        ),
        _chain(
            CollectorType.GOOGLE_AIO,
            ChainEntry(ProviderName.OXYLABS, priority=1, timeout_ms=60_000, max_retries=2),
            ChainEntry(ProviderName.DATAFORSEO, priority=2, timeout_ms=45_000, max_retries=1),
        ),
        _chain(
            CollectorType.PERPLEXITY,
            ChainEntry(ProviderName.OXYLABS, priority=1, timeout_ms=60_000, max_retries=2),
            ChainEntry(ProviderName.DATAFORSEO, priority=2, timeout_ms=45_000, max_retries=1),
        ),
        _chain(
            CollectorType.CLAUDE,
            ChainEntry(ProviderName.OPENROUTER, priority=1, timeout_ms=60_000, max_retries=2, continue_on_failure=False),
            ChainEntry(ProviderName.DATAFORSEO, priority=2, timeout_ms=45_000, max_retries=1, enabled=False),
        ),
        _chain(
            CollectorType.BING_COPILOT,
            ChainEntry(ProviderName.SERPAPI, priority=1, timeout_ms=60_000, max_retries=2),
            ChainEntry(ProviderName.BRIGHTDATA, priority=2, timeout_ms=600_000, max_retries=1),
        ),
        _chain(
            CollectorType.GEMINI,
            ChainEntry(ProviderName.BRIGHTDATA, priority=1, timeout_ms=600_000, max_retries=1),
            ChainEntry(ProviderName.GOOGLE_GEMINI_DIRECT, priority=2, timeout_ms=45_000, max_retries=2),
        ),
        _chain(
            CollectorType.GROK,
            ChainEntry(ProviderName.BRIGHTDATA, priority=1, timeout_ms=600_000, max_retries=1),
        ),
        _chain(
            CollectorType.DEEPSEEK,
            ChainEntry(ProviderName.OPENROUTER, priority=1, timeout_ms=45_000, max_retries=1),
        ),
    )
)


# ---------------------------------------------------------------------------
# Chain result
# ---------------------------------------------------------------------------


@dataclass
class AttemptRecord:
    """Diagnostics for a single adapter attempt inside a chain run."""

    provider: ProviderName
    attempt: int
    status: ProviderStatus
    latency_ms: int = 0
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "provider": self.provider.value,
            "attempt": self.attempt,
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


@dataclass
class ChainResult:
    """Outcome of running a collector's whole fallback chain."""

    collector_type: CollectorType
    success: bool = False
    provider: ProviderName | None = None
    answer: str = ""
    citations: list[str] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)
    snapshot_id: str | None = None
    model: str = ""
    execution_time_ms: int = 0
    fallback_used: bool = False
    fallback_chain: list[ProviderName] = field(default_factory=list)
    attempts: list[AttemptRecord] = field(default_factory=list)
    error: Exception | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def retry_count(self) -> int:
        """Attempts beyond the first one, across all providers."""
        return max(len(self.attempts) - 1, 0)

    @property
    def failed_providers(self) -> list[ProviderName]:
        seen: list[ProviderName] = []
        for rec in self.attempts:
            if rec.status != ProviderStatus.SUCCESS and rec.provider not in seen and rec.provider != self.provider:
                seen.append(rec.provider)
        return seen

    def diagnostics(self) -> dict:
        return {
            "provider": self.provider.value if self.provider else None,
            "fallback_used": self.fallback_used,
            "fallback_chain": [p.value for p in self.fallback_chain],
            "failed_providers": [p.value for p in self.failed_providers],
            "attempts": [a.to_dict() for a in self.attempts],
            "retry_count": self.retry_count,
            **self.metadata,
        }
