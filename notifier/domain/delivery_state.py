"""
Delivery state machine.

    PENDING  -> DELIVERED | RETRYING
    RETRYING -> DELIVERED | RETRYING | FAILED
    DELIVERED, FAILED: terminal (manual retry may reset FAILED to PENDING)

Pure functions only; persistence applies the resulting ``AttemptOutcome``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from notifier.db.models.webhook_delivery import DeliveryStatus


@dataclass(frozen=True)
class HttpResult:
    """What one POST to a subscriber produced."""

    success: bool
    response_time_ms: int
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None

    @property
    def error_message(self) -> str | None:
        if self.success:
            return None
        if self.error:
            return self.error
        return f"HTTP {self.status_code}"


@dataclass(frozen=True)
class AttemptOutcome:
    """Fields to persist after attempt number ``attempt_number``."""

    attempt_number: int
    status: DeliveryStatus
    occurred_at: datetime
    status_code: int | None
    response_body: str | None
    response_time_ms: int
    error_message: str | None
    next_retry_at: datetime | None
    delivered_at: datetime | None

    @property
    def succeeded(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


def backoff_for(attempt_number: int, retry_delays_seconds: list[int]) -> timedelta:
    """Wait after failed attempt ``attempt_number`` (1-based)."""
    index = min(max(attempt_number, 1), len(retry_delays_seconds)) - 1
    return timedelta(seconds=retry_delays_seconds[index])


def next_transition(
    attempt_number: int,
    result: HttpResult,
    *,
    max_attempts: int,
    retry_delays_seconds: list[int],
    now: datetime,
) -> AttemptOutcome:
    """
    Outcome of attempt ``attempt_number`` given its HTTP result.

    Success always wins. A failure schedules a retry while
    ``attempt_number < max_attempts`` and is terminal otherwise.
    """
    if result.success:
        return AttemptOutcome(
            attempt_number=attempt_number,
            status=DeliveryStatus.DELIVERED,
            occurred_at=now,
            status_code=result.status_code,
            response_body=result.response_body,
            response_time_ms=result.response_time_ms,
            error_message=None,
            next_retry_at=None,
            delivered_at=now,
        )

    if attempt_number < max_attempts:
        status = DeliveryStatus.RETRYING
        next_retry_at = now + backoff_for(attempt_number, retry_delays_seconds)
    else:
        status = DeliveryStatus.FAILED
        next_retry_at = None

    return AttemptOutcome(
        attempt_number=attempt_number,
        status=status,
        occurred_at=now,
        status_code=result.status_code,
        response_body=result.response_body,
        response_time_ms=result.response_time_ms,
        error_message=result.error_message,
        next_retry_at=next_retry_at,
        delivered_at=None,
    )


def can_manually_retry(status: DeliveryStatus) -> bool:
    return status != DeliveryStatus.DELIVERED
