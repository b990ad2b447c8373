# whoop_webhook.py
"""
WHOOP webhook signature verification.

WHOOP signs each delivery with base64(HMAC-SHA256(secret, timestamp + body))
and sends the result in X-WHOOP-Signature next to X-WHOOP-Signature-Timestamp.
Verification fails closed: every problem is a logged False, never an exception.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel

import config

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-WHOOP-Signature"
TIMESTAMP_HEADER = "X-WHOOP-Signature-Timestamp"
REPLAY_WINDOW_SECONDS = 5 * 60
# anything this large is an epoch in milliseconds
MILLISECOND_THRESHOLD = 10 ** 12

EVENT_TYPES = (
    "workout.updated",
    "recovery.updated",
    "sleep.updated",
    "cycle.updated",
    "body_measurement.updated",
    "user_profile.updated",
)


class WhoopWebhookPayload(BaseModel):
    user_id: int
    id: Union[int, str]
    type: str
    trace_id: Optional[str] = None


@dataclass
class WebhookHeaders:
    signature: str
    timestamp: str


def _epoch_seconds(timestamp) -> Optional[float]:
    try:
        value = float(str(timestamp).strip())
    except (TypeError, ValueError):
        return None
    if value != value:  # NaN
        return None
    if value > MILLISECOND_THRESHOLD:
        value = value / 1000.0
    return value


def timestamp_within_window(timestamp, now: Optional[float] = None) -> bool:
    """True when the timestamp is neither older nor newer than five minutes."""
    seconds = _epoch_seconds(timestamp)
    if seconds is None:
        return False
    current = time.time() if now is None else now
    return abs(current - seconds) <= REPLAY_WINDOW_SECONDS


def compute_signature(body: str, timestamp, secret: str) -> str:
    message = f"{timestamp}{body}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_whoop_webhook(body: str, signature: str, timestamp, secret: Optional[str] = None,
                         now: Optional[float] = None) -> bool:
    secret = secret if secret is not None else config.webhook_secret()
    if not secret:
        logger.error("webhook_rejected reason=missing_secret")
        return False

    if not signature or timestamp is None or str(timestamp).strip() == "":
        logger.warning("webhook_rejected reason=missing_headers")
        return False

    try:
        base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("webhook_rejected reason=malformed_signature")
        return False

    if not timestamp_within_window(timestamp, now=now):
        logger.warning("webhook_rejected reason=timestamp_out_of_window timestamp=%s", timestamp)
        return False

    expected = compute_signature(body or "", str(timestamp).strip(), secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", "ignore")):
        logger.warning("webhook_rejected reason=signature_mismatch timestamp=%s", timestamp)
        return False

    return True


def _header(headers, name):
    value = headers.get(name)
    if value is None and isinstance(headers, dict):
        # plain dicts are case-sensitive, werkzeug headers are not
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def extract_webhook_headers(headers, now: Optional[float] = None) -> Optional[WebhookHeaders]:
    """
    Pull the signature headers out of a request header mapping.

    Returns None when either header is absent or the timestamp is not a
    number within five minutes of now (stale or in the future).
    """
    signature = _header(headers, SIGNATURE_HEADER)
    timestamp = _header(headers, TIMESTAMP_HEADER)

    if not signature or not timestamp:
        logger.warning("webhook_headers_missing signature=%s timestamp=%s",
                       bool(signature), bool(timestamp))
        return None

    if not timestamp_within_window(timestamp, now=now):
        logger.warning("webhook_headers_stale timestamp=%s", timestamp)
        return None

    return WebhookHeaders(signature=str(signature).strip(), timestamp=str(timestamp).strip())
