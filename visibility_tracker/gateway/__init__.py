"""Provider gateway.

Dispatches one prompt to an answer engine through redundant vendors:
  - Provider adapters (sync vendors and submit-then-poll snapshot vendors)
  - Parse cascades producing a common ParsedAnswer
  - Fallback chain with per-entry timeouts, retries and a circuit breaker
  - Error taxonomy and collection status transitions
"""
