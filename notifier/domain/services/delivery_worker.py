"""
Delivery Worker - performs one HTTP attempt for one delivery

Flow of ``DeliveryWorker.attempt``:
    claim (compare-and-set, attempts + 1, lease on next_retry_at)
    -> POST signed payload
    -> next_transition()
    -> record outcome + subscription counters in one transaction

``send_webhook`` never raises: timeouts, connection errors and anything else
raised while building or sending the request become a failed ``HttpResult``.
"""
from __future__ import annotations

import json
import time
from datetime import timedelta
from typing import Any, Optional

import httpx

from notifier.core.config import Settings, settings as default_settings
from notifier.core.logging import get_logger
from notifier.core.signing import sign
from notifier.core.validation import TextSanitizer, WebhookUrlValidator
from notifier.db.database import utcnow
from notifier.db.models.webhook_delivery import WebhookDelivery
from notifier.db.models.webhook_subscription import WebhookSubscription
from notifier.db.store import DeliveryStore
from notifier.domain.delivery_state import HttpResult, next_transition

logger = get_logger(__name__)

# Added to the HTTP timeout when parking next_retry_at during an attempt
LEASE_GRACE_SECONDS = 60

# UTF-8 upper bound; enough raw bytes to fill the stored character limit
MAX_BYTES_PER_CHAR = 4


def serialize_payload(payload: dict[str, Any]) -> bytes:
    """Compact UTF-8 JSON; the exact bytes that are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def build_headers(
    subscription: WebhookSubscription,
    payload: dict[str, Any],
    body: bytes,
    delivery_id: Optional[str] = None,
    user_agent: str = default_settings.WEBHOOK_USER_AGENT,
) -> httpx.Headers:
    """
    Standard webhook headers, then the subscription's custom headers.

    Custom headers are applied last and replace a standard header of the same
    name regardless of case.
    """
    headers = httpx.Headers({
        "Content-Type": "application/json",
        "User-Agent": user_agent,
        "X-Webhook-Id": subscription.id,
        "X-Webhook-Event": payload["event"],
        "X-Webhook-Signature": sign(body, subscription.secret),
        "X-Webhook-Timestamp": payload["timestamp"],
    })
    if delivery_id:
        headers["X-Webhook-Delivery"] = delivery_id

    if subscription.headers:
        overridden = [name for name in subscription.headers if name in headers]
        if overridden:
            logger.debug(
                "Custom headers replace standard headers",
                extra_data={"subscription_id": subscription.id, "headers": overridden},
            )
        headers.update(subscription.headers)

    return headers


async def read_capped(response: httpx.Response, limit: int) -> bytes:
    """Read at most ``limit`` bytes of the body; the rest is never downloaded."""
    buffer = bytearray()
    async for chunk in response.aiter_bytes():
        buffer.extend(chunk)
        if len(buffer) >= limit:
            break
    return bytes(buffer[:limit])


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def send_webhook(
    subscription: WebhookSubscription,
    payload: dict[str, Any],
    delivery_id: Optional[str] = None,
    config: Settings = default_settings,
) -> HttpResult:
    """POST ``payload`` to the subscription URL and describe what happened."""
    started = time.monotonic()

    try:
        body = serialize_payload(payload)
        headers = build_headers(
            subscription,
            payload,
            body,
            delivery_id=delivery_id,
            user_agent=config.WEBHOOK_USER_AGENT,
        )
        async with httpx.AsyncClient(timeout=config.WEBHOOK_TIMEOUT_SECONDS) as client:
            async with client.stream(
                "POST", subscription.url, content=body, headers=headers
            ) as response:
                raw = await read_capped(
                    response, config.WEBHOOK_RESPONSE_BODY_MAX_CHARS * MAX_BYTES_PER_CHAR
                )
        response_body = TextSanitizer.diagnostic(
            raw.decode("utf-8", errors="replace"),
            config.WEBHOOK_RESPONSE_BODY_MAX_CHARS,
        )
    except httpx.TimeoutException:
        return HttpResult(
            success=False,
            response_time_ms=_elapsed_ms(started),
            error=f"Request timed out after {config.WEBHOOK_TIMEOUT_SECONDS:g}s",
        )
    except Exception as exc:
        logger.warning(
            "Webhook request failed",
            extra_data={
                "subscription_id": subscription.id,
                "delivery_id": delivery_id,
                "url": WebhookUrlValidator.mask(subscription.url),
                "error_type": type(exc).__name__,
            },
        )
        return HttpResult(
            success=False,
            response_time_ms=_elapsed_ms(started),
            error=TextSanitizer.diagnostic(
                str(exc) or type(exc).__name__, config.WEBHOOK_ERROR_MAX_CHARS
            ),
        )

    return HttpResult(
        success=200 <= response.status_code < 300,
        response_time_ms=_elapsed_ms(started),
        status_code=response.status_code,
        response_body=response_body,
    )


class DeliveryWorker:
    """Runs delivery attempts against a ``DeliveryStore``."""

    def __init__(self, store: DeliveryStore, config: Settings = default_settings):
        self.store = store
        self.config = config

    async def attempt(
        self,
        subscription: WebhookSubscription,
        delivery: WebhookDelivery,
        payload: Optional[dict[str, Any]] = None,
    ) -> Optional[WebhookDelivery]:
        """
        Make one attempt for ``delivery``.

        Returns the persisted delivery, or ``None`` when another worker owns
        the attempt or the record changed before the outcome could be stored.
        """
        lease_until = utcnow() + timedelta(
            seconds=self.config.WEBHOOK_TIMEOUT_SECONDS + LEASE_GRACE_SECONDS
        )
        claimed = await self.store.claim_attempt(delivery.id, delivery.attempts, lease_until)
        if claimed is None:
            logger.info(
                "Delivery attempt skipped - claimed elsewhere or no longer active",
                extra_data={"delivery_id": delivery.id, "read_attempts": delivery.attempts},
            )
            return None

        attempt_number = claimed.attempts
        result = await send_webhook(
            subscription,
            payload if payload is not None else claimed.payload,
            delivery_id=claimed.id,
            config=self.config,
        )
        outcome = next_transition(
            attempt_number,
            result,
            max_attempts=claimed.max_attempts,
            retry_delays_seconds=self.config.retry_delays_seconds,
            now=utcnow(),
        )

        recorded = await self.store.record_attempt(claimed.id, subscription.id, outcome)
        if recorded is None:
            return None

        log = logger.info if outcome.succeeded else logger.warning
        log(
            "Webhook delivery attempt finished",
            extra_data={
                "delivery_id": recorded.id,
                "subscription_id": subscription.id,
                "event": recorded.event,
                "attempt": attempt_number,
                "status": recorded.status.value,
                "status_code": recorded.status_code,
                "response_time_ms": recorded.response_time_ms,
            },
        )
        return recorded
