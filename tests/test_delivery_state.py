"""
Tests for the delivery state machine (pure functions)
"""
from datetime import datetime, timedelta

import pytest
from hypothesis import given, strategies as st

from notifier.db.models.webhook_delivery import DeliveryStatus
from notifier.domain.delivery_state import (
    HttpResult,
    backoff_for,
    can_manually_retry,
    next_transition,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)
DELAYS = [60, 300, 900]

OK = HttpResult(success=True, response_time_ms=42, status_code=200, response_body="ok")
SERVER_ERROR = HttpResult(success=False, response_time_ms=30, status_code=500, response_body="boom")
TIMEOUT = HttpResult(success=False, response_time_ms=10000, error="Request timed out after 10s")


def _transition(attempt_number: int, result: HttpResult, max_attempts: int = 3):
    return next_transition(
        attempt_number,
        result,
        max_attempts=max_attempts,
        retry_delays_seconds=DELAYS,
        now=NOW,
    )


class TestBackoff:

    @pytest.mark.unit
    @pytest.mark.parametrize("attempt,seconds", [(1, 60), (2, 300), (3, 900)])
    def test_schedule(self, attempt, seconds):
        assert backoff_for(attempt, DELAYS) == timedelta(seconds=seconds)

    @pytest.mark.unit
    def test_beyond_schedule_uses_last_entry(self):
        assert backoff_for(7, DELAYS) == timedelta(seconds=900)


class TestNextTransition:

    @pytest.mark.unit
    def test_success_delivers(self):
        outcome = _transition(1, OK)

        assert outcome.status == DeliveryStatus.DELIVERED
        assert outcome.delivered_at == NOW
        assert outcome.next_retry_at is None
        assert outcome.error_message is None
        assert outcome.succeeded

    @pytest.mark.unit
    def test_first_failure_retries_after_60s(self):
        outcome = _transition(1, SERVER_ERROR)

        assert outcome.status == DeliveryStatus.RETRYING
        assert outcome.next_retry_at == NOW + timedelta(seconds=60)
        assert outcome.error_message == "HTTP 500"
        assert outcome.response_body == "boom"

    @pytest.mark.unit
    def test_second_failure_retries_after_300s(self):
        outcome = _transition(2, TIMEOUT)

        assert outcome.status == DeliveryStatus.RETRYING
        assert outcome.next_retry_at == NOW + timedelta(seconds=300)
        assert outcome.error_message == "Request timed out after 10s"

    @pytest.mark.unit
    def test_third_failure_is_terminal(self):
        outcome = _transition(3, SERVER_ERROR)

        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.next_retry_at is None
        assert outcome.delivered_at is None

    @pytest.mark.unit
    def test_success_on_last_attempt_still_delivers(self):
        assert _transition(3, OK).status == DeliveryStatus.DELIVERED

    @pytest.mark.unit
    @given(
        attempt=st.integers(min_value=1, max_value=10),
        max_attempts=st.integers(min_value=1, max_value=10),
        success=st.booleans(),
    )
    def test_invariants_hold_for_any_attempt(self, attempt, max_attempts, success):
        result = OK if success else SERVER_ERROR
        outcome = _transition(attempt, result, max_attempts=max_attempts)

        if outcome.status == DeliveryStatus.DELIVERED:
            assert outcome.delivered_at is not None
            assert outcome.next_retry_at is None
        elif outcome.status == DeliveryStatus.RETRYING:
            assert attempt < max_attempts
            assert outcome.next_retry_at > NOW
        else:
            assert outcome.status == DeliveryStatus.FAILED
            assert attempt >= max_attempts
            assert outcome.next_retry_at is None


class TestHttpResult:

    @pytest.mark.unit
    def test_error_message_prefers_transport_error(self):
        assert TIMEOUT.error_message == "Request timed out after 10s"

    @pytest.mark.unit
    def test_error_message_none_on_success(self):
        assert OK.error_message is None


class TestManualRetry:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status", [DeliveryStatus.PENDING, DeliveryStatus.RETRYING, DeliveryStatus.FAILED]
    )
    def test_allowed(self, status):
        assert can_manually_retry(status)

    @pytest.mark.unit
    def test_delivered_is_rejected(self):
        assert not can_manually_retry(DeliveryStatus.DELIVERED)
