# app/webhooks/signature.py
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping

from app.db import utcnow
from app.models.webhook_delivery import SOURCE_MARKETPLACE, SOURCE_STOREFRONT

logger = logging.getLogger("uvicorn.error")

SHOPIFY_HMAC_HEADER = "X-Shopify-Hmac-Sha256"
SHOPIFY_TOPIC_HEADER = "X-Shopify-Topic"
SHOPIFY_DELIVERY_HEADER = "X-Shopify-Webhook-Id"
SHOPIFY_DOMAIN_HEADER = "X-Shopify-Shop-Domain"

NAVER_SIGNATURE_HEADER = "X-Naver-Signature"
NAVER_TIMESTAMP_HEADER = "X-Naver-Timestamp"
NAVER_DELIVERY_HEADER = "X-Naver-Delivery-Id"
NAVER_EVENT_HEADER = "X-Naver-Event"

SIGNATURE_HEADERS = {SHOPIFY_HMAC_HEADER.lower(), NAVER_SIGNATURE_HEADER.lower()}


class SignatureError(Exception):
    """Inbound webhook could not be authenticated (maps to HTTP 401)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class WebhookMeta:
    delivery_id: str
    topic: str
    source: str
    domain: str | None = None
    received_at: datetime = field(default_factory=utcnow)


def b64_hmac_sha256(secret: str, body: bytes) -> str:
    mac = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(mac).decode("utf-8")


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for k, v in headers.items():
        out[k] = "<redacted>" if k.lower() in SIGNATURE_HEADERS else v
    return out


def _get_hdr(headers: Mapping[str, str], key: str) -> str | None:
    v = headers.get(key)
    if v is None:
        v = headers.get(key.lower())
    return (v or "").strip() or None


def verify_storefront(raw_body: bytes, headers: Mapping[str, str], secret: str,
                      expected_domain: str | None = None) -> WebhookMeta:
    """
    Shopify: base64(HMAC-SHA256(secret, raw body)) in X-Shopify-Hmac-Sha256.
    The hash is always computed over the bytes exactly as received.
    """
    received = _get_hdr(headers, SHOPIFY_HMAC_HEADER)
    delivery_id = _get_hdr(headers, SHOPIFY_DELIVERY_HEADER)
    topic = _get_hdr(headers, SHOPIFY_TOPIC_HEADER)
    domain = _get_hdr(headers, SHOPIFY_DOMAIN_HEADER)

    if not received:
        raise SignatureError("missing_signature")
    if not delivery_id or not topic:
        raise SignatureError("missing_headers")
    if not secret:
        raise SignatureError("no_secret_configured")

    expected = b64_hmac_sha256(secret, raw_body)
    if not hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8")):
        raise SignatureError("invalid_signature")

    if expected_domain and domain and domain.lower() != expected_domain.lower():
        raise SignatureError("unexpected_shop_domain")

    return WebhookMeta(delivery_id=delivery_id, topic=topic, source=SOURCE_STOREFRONT, domain=domain)


def verify_marketplace(raw_body: bytes, headers: Mapping[str, str], secret: str,
                       tolerance_seconds: int = 300, now: float | None = None) -> WebhookMeta:
    """
    Naver: base64(HMAC-SHA256(secret, "<timestamp>." + raw body)) in X-Naver-Signature,
    timestamp in epoch millis. Stale timestamps are refused.
    """
    received = _get_hdr(headers, NAVER_SIGNATURE_HEADER)
    timestamp = _get_hdr(headers, NAVER_TIMESTAMP_HEADER)
    delivery_id = _get_hdr(headers, NAVER_DELIVERY_HEADER)
    topic = _get_hdr(headers, NAVER_EVENT_HEADER)

    if not received or not timestamp:
        raise SignatureError("missing_signature")
    if not delivery_id or not topic:
        raise SignatureError("missing_headers")
    if not secret:
        raise SignatureError("no_secret_configured")

    try:
        ts_seconds = int(timestamp) / 1000.0
    except ValueError:
        raise SignatureError("invalid_timestamp")
    current = time.time() if now is None else now
    if tolerance_seconds and abs(current - ts_seconds) > tolerance_seconds:
        raise SignatureError("stale_timestamp")

    expected = b64_hmac_sha256(secret, timestamp.encode("utf-8") + b"." + raw_body)
    if not hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8")):
        raise SignatureError("invalid_signature")

    return WebhookMeta(delivery_id=delivery_id, topic=topic, source=SOURCE_MARKETPLACE)
