"""Deadline-aware retry engine with exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import logging
import random
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from agentdevice.config import get_settings
from agentdevice.resilience.deadline import Deadline
from agentdevice.shared.enums import RetryEventKind
from agentdevice.shared.exceptions import CommandFailedError
from agentdevice.shared.models import RetryTelemetryEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

ShouldRetry = Callable[[BaseException, int], bool]
ClassifyReason = Callable[[BaseException | None], str | None]
EventHandler = Callable[[RetryTelemetryEvent], None]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many times to try and how long to back off between tries."""

    max_attempts: int = 3
    base_delay_ms: int = 200
    max_delay_ms: int = 2000
    jitter: float = 0.2
    should_retry: ShouldRetry | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be non-negative")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within [0, 1]")


@dataclass(frozen=True, slots=True)
class RetryAttemptContext:
    """Handed to every attempt so it can size its own sub-timeouts."""

    attempt: int
    max_attempts: int
    deadline: Deadline | None = None


def compute_delay_ms(
    base_delay_ms: int,
    max_delay_ms: int,
    jitter: float,
    attempt: int,
    rand: Callable[[], float] = random.random,
) -> int:
    """Exponential delay for ``attempt`` (1-based), perturbed by ±jitter."""
    exp = min(max_delay_ms, base_delay_ms * 2 ** (attempt - 1))
    spread = exp * jitter
    return max(0, round(exp + (rand() * 2 - 1) * spread))


async def _sleep_ms(delay_ms: int) -> None:
    await asyncio.sleep(delay_ms / 1000)


def _publish(event: RetryTelemetryEvent, *, to_stderr: bool) -> None:
    level = (
        logging.WARNING
        if event.event in (RetryEventKind.ATTEMPT_FAILED, RetryEventKind.EXHAUSTED)
        else logging.DEBUG
    )
    logger.log(
        level,
        "retry %s phase=%s attempt=%d/%d reason=%s",
        event.event.value,
        event.phase,
        event.attempt,
        event.max_attempts,
        event.reason,
    )
    if to_stderr:
        sys.stderr.write(f"[agent-device][retry] {event.model_dump_json(exclude_none=True)}\n")


async def retry_with_policy(
    operation: Callable[[RetryAttemptContext], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    deadline: Deadline | None = None,
    phase: str | None = None,
    classify_reason: ClassifyReason | None = None,
    on_event: EventHandler | None = None,
    stderr_logs: bool | None = None,
) -> T:
    """Run ``operation`` until it succeeds, the policy gives up or the deadline passes.

    Intermediate failures are reported only through telemetry; once the
    engine stops, the last captured error is re-raised.

    Args:
        operation: Async callable receiving a :class:`RetryAttemptContext`.
        policy: Attempt count, backoff and retry predicate.
        deadline: Optional overall budget; no attempt after the first starts
            once it has expired, and backoff sleeps are clamped to it.
        phase: Label attached to telemetry events.
        classify_reason: Maps an error to a reason string for telemetry.
        on_event: Receives every telemetry event.
        stderr_logs: Echo events to stderr; defaults to the ``retry_logs`` setting.
    """
    policy = policy or RetryPolicy()
    to_stderr = get_settings().retry_logs if stderr_logs is None else stderr_logs

    def emit(kind: RetryEventKind, attempt: int, *, delay_ms: int | None = None, reason: str | None = None) -> None:
        event = RetryTelemetryEvent(
            event=kind,
            attempt=attempt,
            max_attempts=policy.max_attempts,
            phase=phase,
            delay_ms=delay_ms,
            elapsed_ms=deadline.elapsed_ms() if deadline else None,
            remaining_ms=deadline.remaining_ms() if deadline else None,
            reason=reason,
        )
        if on_event is not None:
            on_event(event)
        _publish(event, to_stderr=to_stderr)

    last_error: BaseException | None = None
    for attempt in range(1, policy.max_attempts + 1):
        if attempt > 1 and deadline is not None and deadline.is_expired():
            break
        context = RetryAttemptContext(attempt=attempt, max_attempts=policy.max_attempts, deadline=deadline)
        try:
            result = await operation(context)
        except Exception as exc:
            last_error = exc
            reason = classify_reason(exc) if classify_reason else None
            emit(RetryEventKind.ATTEMPT_FAILED, attempt, reason=reason)
            if attempt >= policy.max_attempts:
                break
            if policy.should_retry is not None and not policy.should_retry(exc, attempt):
                break
            delay = compute_delay_ms(policy.base_delay_ms, policy.max_delay_ms, policy.jitter, attempt)
            if deadline is not None:
                delay = min(delay, deadline.remaining_ms())
            if delay <= 0:
                break
            emit(RetryEventKind.RETRY_SCHEDULED, attempt, delay_ms=delay, reason=reason)
            await _sleep_ms(delay)
        else:
            emit(RetryEventKind.SUCCEEDED, attempt)
            return result

    emit(
        RetryEventKind.EXHAUSTED,
        policy.max_attempts,
        reason=classify_reason(last_error) if classify_reason else None,
    )
    if last_error is not None:
        raise last_error
    raise CommandFailedError("retry failed", {"phase": phase})


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay_ms: int = 200,
    max_delay_ms: int = 2000,
    jitter: float = 0.2,
    should_retry: ShouldRetry | None = None,
) -> T:
    """Retry a zero-argument coroutine function without a deadline."""
    policy = RetryPolicy(
        max_attempts=attempts,
        base_delay_ms=base_delay_ms,
        max_delay_ms=max_delay_ms,
        jitter=jitter,
        should_retry=should_retry,
    )
    return await retry_with_policy(lambda _context: operation(), policy)
