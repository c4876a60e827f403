"""Circuit breaker for flaky LLM agent calls."""

__version__ = "0.1.0"
