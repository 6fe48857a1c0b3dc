"""Per-provider circuit breaker with exponential backoff and jitter.

  - CLOSED: normal operation, attempts pass through
  - OPEN: too many consecutive failures, attempts are skipped
  - HALF_OPEN: after the recovery timeout a single trial request is allowed

Backoff between retries of the same provider:
  delay = min(base * 2^attempt + jitter, max_delay)
  jitter = random(0, base * 0.5)
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum

from visibility_tracker.gateway.types import ProviderName

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class _CircuitStats:
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    state: CircuitState = CircuitState.CLOSED
    opened_at: float = 0.0


FAILURE_THRESHOLD = 5  # consecutive failures to open a circuit
RECOVERY_TIMEOUT = 60.0  # seconds before a half-open trial request


class CircuitBreaker:
    """Tracks provider health across every collector sharing the provider.

    The fallback chain asks ``allow_request`` before each attempt and reports
    the outcome with ``record_success`` / ``record_failure``.
    """

    def __init__(
        self,
        failure_threshold: int = FAILURE_THRESHOLD,
        recovery_timeout: float = RECOVERY_TIMEOUT,
        clock=time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._circuits: dict[ProviderName, _CircuitStats] = {}

    def _get_circuit(self, provider: ProviderName) -> _CircuitStats:
        if provider not in self._circuits:
            self._circuits[provider] = _CircuitStats()
        return self._circuits[provider]

    def allow_request(self, provider: ProviderName) -> bool:
        circuit = self._get_circuit(provider)
        if circuit.state == CircuitState.OPEN:
            if self._clock() - circuit.opened_at >= self.recovery_timeout:
                circuit.state = CircuitState.HALF_OPEN
                logger.info("Circuit for %s transitioning to HALF_OPEN", provider.value)
                return True
            return False
        return True

    def record_success(self, provider: ProviderName) -> None:
        circuit = self._get_circuit(provider)
        circuit.consecutive_failures = 0
        circuit.total_successes += 1
        if circuit.state != CircuitState.CLOSED:
            logger.info("Circuit for %s CLOSED (recovered)", provider.value)
            circuit.state = CircuitState.CLOSED

    def record_failure(self, provider: ProviderName) -> None:
        circuit = self._get_circuit(provider)
        circuit.consecutive_failures += 1
        circuit.total_failures += 1

        if circuit.state == CircuitState.HALF_OPEN or (
            circuit.consecutive_failures >= self.failure_threshold and circuit.state != CircuitState.OPEN
        ):
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            logger.warning(
                "Circuit for %s OPENED after %d consecutive failures",
                provider.value,
                circuit.consecutive_failures,
            )

    @staticmethod
    def calculate_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
        """min(base * 2^attempt + jitter, max_delay), jitter in [0, base * 0.5]."""
        exponential = base_delay * (2**attempt)
        jitter = random.uniform(0, base_delay * 0.5)
        return min(exponential + jitter, max_delay)

    def get_circuit_state(self, provider: ProviderName) -> dict:
        circuit = self._get_circuit(provider)
        return {
            "provider": provider.value,
            "state": circuit.state.value,
            "consecutive_failures": circuit.consecutive_failures,
            "total_failures": circuit.total_failures,
            "total_successes": circuit.total_successes,
        }

    def get_all_states(self) -> list[dict]:
        return [self.get_circuit_state(p) for p in ProviderName]

    def reset(self, provider: ProviderName) -> None:
        circuit = self._get_circuit(provider)
        circuit.state = CircuitState.CLOSED
        circuit.consecutive_failures = 0
        logger.info("Circuit for %s manually RESET", provider.value)
