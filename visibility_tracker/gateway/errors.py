"""Error taxonomy for collection and scoring.

Adapters never raise for vendor trouble: they report a ProviderStatus. The
fallback chain turns the last failed attempt into a CollectorError, which is
what ends up in collector_results.error_message / error_metadata.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

from visibility_tracker.gateway.types import ProviderName, ProviderResponse, ProviderStatus


class CollectorErrorType(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    API = "api"
    VALIDATION = "validation"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    PARSE = "parse"
    UNKNOWN = "unknown"


_RETRYABLE_BY_DEFAULT = {
    CollectorErrorType.NETWORK: True,
    CollectorErrorType.TIMEOUT: True,
    CollectorErrorType.API: True,
    CollectorErrorType.VALIDATION: False,
    CollectorErrorType.AUTH: False,
    CollectorErrorType.RATE_LIMIT: True,
    CollectorErrorType.PARSE: True,
    CollectorErrorType.UNKNOWN: True,
}

_STATUS_TO_ERROR_TYPE = {
    ProviderStatus.TIMEOUT: CollectorErrorType.TIMEOUT,
    ProviderStatus.PENDING: CollectorErrorType.TIMEOUT,
    ProviderStatus.RATE_LIMITED: CollectorErrorType.RATE_LIMIT,
    ProviderStatus.AUTH_ERROR: CollectorErrorType.AUTH,
    ProviderStatus.PARSE_ERROR: CollectorErrorType.PARSE,
    ProviderStatus.NOT_CONFIGURED: CollectorErrorType.VALIDATION,
    ProviderStatus.CIRCUIT_OPEN: CollectorErrorType.API,
    ProviderStatus.VENDOR_ERROR: CollectorErrorType.API,
}


class CollectorError(Exception):
    """A classified collection failure."""

    def __init__(
        self,
        message: str,
        error_type: CollectorErrorType = CollectorErrorType.UNKNOWN,
        provider: ProviderName | None = None,
        status_code: int = 0,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.provider = provider
        self.status_code = status_code
        self.retryable = _RETRYABLE_BY_DEFAULT[error_type] if retryable is None else retryable
        self.details = details or {}
        self.occurred_at = datetime.now(timezone.utc)

    @classmethod
    def from_exception(cls, exc: BaseException, provider: ProviderName | None = None) -> CollectorError:
        """Classify an arbitrary exception raised around a provider call."""
        if isinstance(exc, CollectorError):
            return exc
        if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
            return cls(f"Request timed out: {exc}", CollectorErrorType.TIMEOUT, provider)
        if isinstance(exc, httpx.HTTPStatusError):
            return cls.from_status_code(exc.response.status_code, str(exc), provider)
        if isinstance(exc, httpx.TransportError):
            return cls(f"Network error: {exc}", CollectorErrorType.NETWORK, provider)
        if isinstance(exc, (json.JSONDecodeError, ValueError, KeyError, TypeError)):
            return cls(f"Malformed provider payload: {exc}", CollectorErrorType.PARSE, provider)
        return cls(str(exc) or type(exc).__name__, CollectorErrorType.UNKNOWN, provider)

    @classmethod
    def from_status_code(cls, status_code: int, message: str, provider: ProviderName | None = None) -> CollectorError:
        if status_code in (401, 403):
            return cls(message, CollectorErrorType.AUTH, provider, status_code)
        if status_code == 429:
            return cls(message, CollectorErrorType.RATE_LIMIT, provider, status_code)
        if status_code == 408:
            return cls(message, CollectorErrorType.TIMEOUT, provider, status_code)
        if 400 <= status_code < 500:
            return cls(message, CollectorErrorType.API, provider, status_code, retryable=False)
        return cls(message, CollectorErrorType.API, provider, status_code, retryable=True)

    @classmethod
    def from_response(cls, response: ProviderResponse) -> CollectorError:
        """Build an error from a failed adapter response."""
        message = response.error_message or f"{response.provider.value} returned {response.status.value}"
        status_code = int(response.error_code) if response.error_code.isdigit() else 0
        if response.status == ProviderStatus.VENDOR_ERROR and status_code:
            return cls.from_status_code(status_code, message, response.provider)
        if response.status == ProviderStatus.SUCCESS:
            return cls(f"{response.provider.value} returned an empty answer", CollectorErrorType.PARSE, response.provider)
        error_type = _STATUS_TO_ERROR_TYPE.get(response.status, CollectorErrorType.UNKNOWN)
        return cls(message, error_type, response.provider, status_code)

    def to_dict(self) -> dict:
        return {
            "type": self.error_type.value,
            "message": self.message,
            "provider": self.provider.value if self.provider else None,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "details": self.details,
            "occurred_at": self.occurred_at.isoformat(),
        }

    def to_database_format(self) -> dict:
        """Columns written to collector_results on failure."""
        return {"error_message": self.message, "error_metadata": self.to_dict()}


class ChainExhaustedError(CollectorError):
    """Every provider of a collector's chain failed (or fallback was disabled)."""

    def __init__(
        self,
        collector: str,
        tried: list[ProviderName],
        last_error: CollectorError | None,
        fallback_disabled: bool = False,
    ):
        if fallback_disabled and tried:
            message = f"Provider {tried[-1].value} failed and fallback is disabled: {last_error}"
        elif not tried:
            message = f"No providers available for {collector}"
        else:
            message = f"All providers failed for {collector}. Tried: {', '.join(p.value for p in tried)}"
        super().__init__(
            message,
            error_type=last_error.error_type if last_error else CollectorErrorType.VALIDATION,
            provider=last_error.provider if last_error else None,
            status_code=last_error.status_code if last_error else 0,
            retryable=last_error.retryable if last_error else False,
            details={
                "tried": [p.value for p in tried],
                "last_error": last_error.to_dict() if last_error else None,
                "fallback_disabled": fallback_disabled,
            },
        )
        self.tried = tried
        self.last_error = last_error


class InvalidStatusTransition(ValueError):
    """A collection status move that would go backward or skip the state machine."""

    def __init__(self, current: str | None, target: str, reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(f"Illegal collection status transition {current} -> {target}{detail}")
        self.current = current
        self.target = target


class StageError(Exception):
    """A scoring stage failed for one collector result."""

    def __init__(self, stage: str, collector_result_id: int, message: str):
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage
        self.collector_result_id = collector_result_id
