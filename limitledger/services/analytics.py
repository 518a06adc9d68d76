from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
import time
from typing import Any

import httpx

from limitledger.core.config import get_settings
from limitledger.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "analytics.sink"


@dataclass(frozen=True)
class AnalyticsDeliveryResult:
    # Summarize analytics delivery for callers that want to inspect it.
    sent: bool
    status_code: int | None
    message: str


def sign_payload(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the exact bytes sent on the wire.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


async def track_event(name: str, properties: dict[str, Any]) -> AnalyticsDeliveryResult:
    """Send one analytics event to the configured sink.

    Fire-and-forget: every failure, including serialization and transport
    errors, is logged and reported in the result instead of raised.
    """
    increment_counter(f"analytics.{name}")
    settings = get_settings()
    if not settings.analytics_enabled:
        return AnalyticsDeliveryResult(sent=False, status_code=None, message="Analytics is disabled")
    if not settings.analytics_url:
        return AnalyticsDeliveryResult(sent=False, status_code=None, message="Analytics is not configured")

    start = time.monotonic()
    try:
        body = json.dumps(
            {
                "name": name,
                "properties": properties,
                "sent_at": datetime.now(timezone.utc).isoformat(),
            },
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        ).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Analytics-Event": name}
        if settings.analytics_secret:
            headers["X-Analytics-Signature"] = sign_payload(settings.analytics_secret, body)
        timeout = settings.analytics_timeout_ms / 1000.0
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(settings.analytics_url, content=body, headers=headers)
    except Exception as exc:  # noqa: BLE001 - analytics failures are non-fatal
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        increment_counter("analytics.failed")
        logger.warning("analytics_send_failed event=%s", name, exc_info=exc)
        return AnalyticsDeliveryResult(sent=False, status_code=None, message=str(exc))

    success = response.status_code < 400
    record_external_call(
        integration=_INTEGRATION,
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=success,
    )
    if not success:
        increment_counter("analytics.failed")
        logger.warning("analytics_send_rejected event=%s status_code=%s", name, response.status_code)
        return AnalyticsDeliveryResult(
            sent=False,
            status_code=response.status_code,
            message=f"Analytics sink responded with status {response.status_code}",
        )
    return AnalyticsDeliveryResult(sent=True, status_code=response.status_code, message="Event delivered")
