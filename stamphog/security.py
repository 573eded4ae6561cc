"""security.py – Slack request signature verification

Implements Slack's signing-secret scheme: the expected signature is
``v0=`` + hex(HMAC-SHA256(secret, "v0:{timestamp}:{raw body}")).  Requests
older (or newer) than the five-minute replay window are rejected before any
HMAC is computed.

The verifier never raises; it returns a :class:`SignatureFailure` describing
the rejection, or ``None`` when the request is authentic.
"""

from __future__ import annotations

import hashlib
import hmac
import math
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Union

from stamphog.config import REPLAY_WINDOW_SECONDS

TIMESTAMP_HEADER = "X-Slack-Request-Timestamp"
SIGNATURE_HEADER = "X-Slack-Signature"


@dataclass(frozen=True)
class SignatureFailure:
    status: int
    reason: str


MISSING_SECRET = SignatureFailure(500, "missing SLACK_SIGNING_SECRET")
MISSING_HEADERS = SignatureFailure(401, "missing slack signature headers")
STALE_REQUEST = SignatureFailure(401, "stale slack request")
INVALID_SIGNATURE = SignatureFailure(401, "invalid slack signature")


def sign_payload(secret: str, timestamp: str, raw_body: Union[bytes, str]) -> str:
    """Return the ``v0=`` signature Slack would send for *raw_body*."""
    body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
    base = b"v0:" + timestamp.encode("utf-8") + b":" + body
    digest = hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"v0={digest}"


def secure_compare(expected: str, provided: str) -> bool:
    """Compare two signatures without leaking the mismatch position.

    Lengths are checked first; equal-length inputs are always compared in
    full by :func:`hmac.compare_digest`.
    """
    if len(expected) != len(provided):
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return (value or "").strip()


def verify_slack_signature(
    headers: Mapping[str, str],
    raw_body: Union[bytes, str],
    signing_secret: Optional[str],
    *,
    clock: Callable[[], float] = time.time,
) -> Optional[SignatureFailure]:
    if not signing_secret:
        return MISSING_SECRET

    timestamp = _header(headers, TIMESTAMP_HEADER)
    signature = _header(headers, SIGNATURE_HEADER)
    if not (timestamp and signature):
        return MISSING_HEADERS

    try:
        age = abs(clock() - float(timestamp))
    except ValueError:
        return STALE_REQUEST
    if not math.isfinite(age) or age > REPLAY_WINDOW_SECONDS:
        return STALE_REQUEST

    expected = sign_payload(signing_secret, timestamp, raw_body)
    if not secure_compare(expected, signature):
        return INVALID_SIGNATURE
    return None
