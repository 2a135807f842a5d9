"""HMAC-SHA256 request signing for outbound webhooks."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any

SIGNATURE_PREFIX = "sha256="


@dataclass(frozen=True)
class SignedRequest:
    """The exact body bytes that were signed, plus the headers that carry the signature."""

    body: bytes
    headers: dict[str, str]


def serialize_body(payload: dict[str, Any]) -> str:
    """Serialize a payload to compact JSON. The signed text and the sent bytes are this string."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def compute_signature(secret: str, timestamp: str, body: str) -> str:
    """Return the hex HMAC-SHA256 of ``"{timestamp}.{body}"``."""
    message = f"{timestamp}.{body}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_payload(
    app_id: str,
    secret: str,
    payload: dict[str, Any],
    *,
    timestamp: int | None = None,
) -> SignedRequest:
    """Serialize and sign a webhook payload."""
    ts = str(timestamp if timestamp is not None else int(time.time()))
    body = serialize_body(payload)
    signature = compute_signature(secret, ts, body)
    return SignedRequest(
        body=body.encode(),
        headers={
            "Content-Type": "application/json",
            "X-App-Id": app_id,
            "X-Timestamp": ts,
            "X-Signature": f"{SIGNATURE_PREFIX}{signature}",
        },
    )
