"""
OpenTelemetry instruments for the copilot core, and the bounded retry
wrapped around reasoning calls.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional, Tuple, Type

from opentelemetry import metrics


# attribute name -> (instrument kind, metric name, unit, description)
_INSTRUMENTS = {
    "deliberations": ("counter", "copilot_deliberations_total", "1", "Deliberations by mode and resolution strategy"),
    "deliberation_ms": ("histogram", "copilot_deliberation_duration_ms", "ms", "Wall time of a deliberation"),
    "challenges": ("counter", "copilot_challenges_total", "1", "Detected challenges by kind"),
    "exhausted": ("counter", "copilot_ensemble_exhausted_total", "1", "Deliberations in which every persona failed"),
    "persona_calls": ("counter", "copilot_persona_calls_total", "1", "Persona contributions by persona and outcome"),
    "persona_ms": ("histogram", "copilot_persona_latency_ms", "ms", "Persona latency including retries"),
    "retries": ("counter", "copilot_retry_attempts_total", "1", "Repeated attempts after a transient failure"),
    "retries_exhausted": ("counter", "copilot_retry_exhausted_total", "1", "Operations that used every attempt"),
    "policy_decisions": ("counter", "copilot_policy_decisions_total", "1", "Policy decisions by decision and autonomy mode"),
    "tool_executions": ("counter", "copilot_tool_executions_total", "1", "Dispatched tool calls by outcome"),
    "draft_resolutions": ("counter", "copilot_draft_resolutions_total", "1", "Draft terminal transitions by status"),
    "active_sessions": ("up_down_counter", "copilot_active_sessions", "1", "Sessions held in memory"),
}


class MetricsCollector:
    """Typed recording methods over a fixed set of instruments."""

    def __init__(self, meter: metrics.Meter):
        self.meter = meter
        factories = {
            "counter": meter.create_counter,
            "histogram": meter.create_histogram,
            "up_down_counter": meter.create_up_down_counter,
        }
        self._instruments = {
            key: factories[kind](name=name, unit=unit, description=description)
            for key, (kind, name, unit, description) in _INSTRUMENTS.items()
        }

    def _add(self, key: str, value: float = 1, **attributes: str) -> None:
        self._instruments[key].add(value, attributes)

    def _record(self, key: str, value: float, **attributes: str) -> None:
        self._instruments[key].record(value, attributes)

    def record_deliberation(self, mode: str, strategy: str, duration_ms: int, challenge_kinds: Tuple[str, ...]) -> None:
        self._add("deliberations", mode=mode, strategy=strategy)
        self._record("deliberation_ms", duration_ms, mode=mode, strategy=strategy)
        for kind in challenge_kinds:
            self._add("challenges", mode=mode, kind=kind)

    def record_ensemble_exhausted(self, mode: str) -> None:
        self._add("exhausted", mode=mode)

    def record_persona_call(self, persona_id: str, succeeded: bool, latency_ms: int, attempts: int) -> None:
        outcome = "ok" if succeeded else "failed"
        self._add("persona_calls", persona=persona_id, outcome=outcome, retried=str(attempts > 1).lower())
        self._record("persona_ms", latency_ms, persona=persona_id, outcome=outcome)

    def record_retry(self, operation: str, exhausted: bool = False) -> None:
        self._add("retries_exhausted" if exhausted else "retries", operation=operation)

    def record_policy_decision(self, tool_name: str, decision: str, autonomy_mode: str) -> None:
        self._add("policy_decisions", tool=tool_name, decision=decision, autonomy_mode=autonomy_mode)

    def record_tool_execution(self, tool_name: str, outcome: str) -> None:
        self._add("tool_executions", tool=tool_name, outcome=outcome)

    def record_draft_resolution(self, tool_name: str, status: str) -> None:
        self._add("draft_resolutions", tool=tool_name, status=status)

    def record_session_created(self) -> None:
        self._add("active_sessions")

    def record_session_evicted(self, count: int = 1) -> None:
        self._add("active_sessions", -count)


def initialize_metrics(meter: metrics.Meter) -> MetricsCollector:
    return MetricsCollector(meter)


@dataclass
class RetryConfig:
    """Backoff settings for RetryHandler."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,)

    def delays(self) -> Iterator[float]:
        """Sleep before each repeated attempt; one fewer than max_attempts."""
        for retry in range(self.max_attempts - 1):
            delay = min(self.base_delay * self.exponential_base ** retry, self.max_delay)
            # up to a quarter either side, never negative
            yield max(0.0, delay * random.uniform(0.75, 1.25)) if self.jitter else delay


class RetryError(Exception):
    """Every attempt failed with a retryable exception."""

    def __init__(self, attempts: int, last_exception: BaseException):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception!r}")


class RetryHandler:
    """Retries an async callable on the configured exception types.

    Exceptions outside ``retryable_exceptions`` propagate from the attempt
    that raised them. Cancellation is never retried.
    """

    def __init__(self, config: RetryConfig, metrics_collector: Optional[MetricsCollector] = None):
        self.config = config
        self.metrics_collector = metrics_collector

    async def call(self, func: Callable[[], Awaitable[Any]], operation_name: str = "unknown") -> Any:
        """Await ``func()`` until it succeeds or attempts run out.

        Raises:
            RetryError: When the final attempt also fails retryably
        """
        delays = self.config.delays()
        attempts = 0
        while True:
            attempts += 1
            try:
                return await func()
            except self.config.retryable_exceptions as e:
                delay = next(delays, None)
                if delay is None:
                    if self.metrics_collector:
                        self.metrics_collector.record_retry(operation_name, exhausted=True)
                    raise RetryError(attempts, e) from e

            if self.metrics_collector:
                self.metrics_collector.record_retry(operation_name)
            await asyncio.sleep(delay)
